# Overview: Pytest coverage for gateway registration, deletion and status reconciliation.

import pytest

from conftest import FakeEslCloud, STORE_ID

from shelfsync.errors import ConflictError, NotFoundError, TransientError, ValidationError
from shelfsync.models import Gateway
from shelfsync.services.esl_cloud import CloudGatewayDevice
from shelfsync.services.gateway_service import (
    delete_gateway,
    list_gateways,
    reconcile_gateway_status,
    register_gateway,
)
from shelfsync.services.tenant_service import TenantAccessError


class TestRegisterGateway:

    def test_stores_upper_canonical_mac(self, db_session, org_a):
        cloud = FakeEslCloud()

        gateway = register_gateway(org_a.id, "Front", "AA:BB:CC:11:22:33", store_id=STORE_ID, client=cloud)

        assert gateway.mac_address == "AABBCC112233"
        assert gateway.is_online is False
        assert cloud.calls_to("add_gateway") == [("add_gateway", STORE_ID, "AABBCC112233", "Front")]

    def test_local_duplicate_never_calls_cloud(self, db_session, org_a):
        cloud = FakeEslCloud()
        register_gateway(org_a.id, "Front", "aabbcc112233", store_id=STORE_ID, client=cloud)

        with pytest.raises(ConflictError):
            register_gateway(org_a.id, "Back", "AA-BB-CC-11-22-33", store_id=STORE_ID, client=cloud)

        assert len(cloud.calls_to("add_gateway")) == 1

    def test_same_mac_allowed_in_other_tenant(self, db_session, org_a, org_b):
        cloud = FakeEslCloud()
        register_gateway(org_a.id, "Front", "aabbcc112233", store_id=STORE_ID, client=cloud)
        register_gateway(org_b.id, "Front", "aabbcc112233", store_id=STORE_ID, client=cloud)

        assert len(list_gateways(org_a.id)) == 1
        assert len(list_gateways(org_b.id)) == 1

    def test_cloud_failure_leaves_no_local_row(self, db_session, org_a):
        cloud = FakeEslCloud()
        cloud.fail("add_gateway", TransientError("timeout"))

        with pytest.raises(TransientError):
            register_gateway(org_a.id, "Front", "aabbcc112233", store_id=STORE_ID, client=cloud)

        assert db_session.query(Gateway).count() == 0

    @pytest.mark.parametrize("name,mac", [("Front", "xyz"), ("", "aabbcc112233"), ("  ", "aabbcc112233")])
    def test_invalid_input(self, db_session, org_a, name, mac):
        cloud = FakeEslCloud()
        with pytest.raises(ValidationError):
            register_gateway(org_a.id, name, mac, store_id=STORE_ID, client=cloud)
        assert cloud.calls == []


class TestDeleteGateway:

    @pytest.fixture
    def registered(self, db_session, org_a):
        cloud = FakeEslCloud()
        gateway = register_gateway(org_a.id, "Front", "aabbcc112233", store_id=STORE_ID, client=cloud)
        return cloud, gateway

    def test_cloud_then_local(self, db_session, org_a, registered):
        cloud, gateway = registered

        result = delete_gateway(org_a.id, gateway.id, store_id=STORE_ID, client=cloud)

        assert result["cloud_deleted"] is True
        assert result["local_deleted"] is True
        assert cloud.calls_to("delete_gateway") == [("delete_gateway", STORE_ID, "gw-1")]
        assert db_session.query(Gateway).count() == 0

    def test_absent_in_cloud_deletes_locally(self, db_session, org_a, registered):
        cloud, gateway = registered
        cloud.gateways = []

        result = delete_gateway(org_a.id, gateway.id, store_id=STORE_ID, client=cloud)

        assert result["cloud_deleted"] is False
        assert db_session.query(Gateway).count() == 0

    def test_cloud_not_found_deletes_locally(self, db_session, org_a, registered):
        cloud, gateway = registered
        cloud.fail("delete_gateway", NotFoundError("gone"))

        delete_gateway(org_a.id, gateway.id, store_id=STORE_ID, client=cloud)

        assert db_session.query(Gateway).count() == 0

    def test_cloud_error_keeps_local_row(self, db_session, org_a, registered):
        cloud, gateway = registered
        cloud.fail("delete_gateway", TransientError("timeout"))

        with pytest.raises(TransientError):
            delete_gateway(org_a.id, gateway.id, store_id=STORE_ID, client=cloud)

        assert db_session.query(Gateway).count() == 1

    def test_force_deletes_despite_cloud_error(self, db_session, org_a, registered):
        cloud, gateway = registered
        cloud.fail("delete_gateway", TransientError("timeout"))

        result = delete_gateway(org_a.id, gateway.id, store_id=STORE_ID, client=cloud, force=True)

        assert result["forced"] is True
        assert result["cloud_error"] == "timeout"
        assert db_session.query(Gateway).count() == 0

    def test_other_tenant_cannot_delete(self, db_session, org_a, org_b, registered):
        cloud, gateway = registered

        with pytest.raises(TenantAccessError):
            delete_gateway(org_b.id, gateway.id, store_id=STORE_ID, client=cloud)

        assert cloud.calls_to("delete_gateway") == []


class TestReconcileGatewayStatus:

    def test_matched_online_unmatched_offline(self, db_session, org_a):
        db_session.add_all([
            Gateway(org_id=org_a.id, name="Front", mac_address="AABBCC112233", is_online=False),
            Gateway(org_id=org_a.id, name="Back", mac_address="AABBCC112244", is_online=True),
        ])
        db_session.commit()
        cloud = FakeEslCloud()
        cloud.gateways = [CloudGatewayDevice(cloud_id="9", mac="aabbcc112233", is_online=True)]

        report = reconcile_gateway_status(org_a.id, store_id=STORE_ID, client=cloud)

        by_mac = {row["mac_address"]: row for row in report}
        assert by_mac["AABBCC112233"]["is_online"] is True
        assert by_mac["AABBCC112233"]["matched_by"] == "exact"
        assert by_mac["AABBCC112233"]["cloud_id"] == "9"
        assert by_mac["AABBCC112244"]["is_online"] is False
        assert by_mac["AABBCC112244"]["cloud_id"] is None

        db_session.expire_all()
        front = db_session.query(Gateway).filter_by(mac_address="AABBCC112233").one()
        assert front.last_seen_at is not None

    def test_suffix_match(self, db_session, org_a):
        db_session.add(Gateway(org_id=org_a.id, name="Front", mac_address="00BBCC112233"))
        db_session.commit()
        cloud = FakeEslCloud()
        cloud.gateways = [CloudGatewayDevice(cloud_id="9", mac="aabbcc112233", is_online=True)]

        report = reconcile_gateway_status(org_a.id, store_id=STORE_ID, client=cloud)

        assert report[0]["matched_by"] == "suffix"
        assert report[0]["is_online"] is True

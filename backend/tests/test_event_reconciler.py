# Overview: Pytest coverage for button event reconciliation and the button webhook.

from datetime import datetime, timedelta

import bcrypt
import pytest

from conftest import FakeEslCloud, STORE_ID, make_event

from shelfsync.errors import TransientError
from shelfsync.models import Organization, Product, ReplenishmentRequest, User
from shelfsync.services.esl_cloud import CloudTag
from shelfsync.services.event_reconciler import (
    handle_button_webhook,
    reconcile,
    reconcile_all_tenants,
    reconcile_button_events,
)
from shelfsync.services.token_service import set_config_value


WINDOW_START = datetime(2026, 3, 1, 9, 0, 0)
WINDOW_END = datetime(2026, 3, 1, 11, 0, 0)


def _requests(db_session):
    return db_session.query(ReplenishmentRequest).order_by(ReplenishmentRequest.created_at).all()


def _run(org, cloud, **kwargs):
    kwargs.setdefault("wake_tags", False)
    return reconcile(org.id, STORE_ID, WINDOW_START, WINDOW_END, client=cloud, **kwargs)


class TestReconcile:

    def test_creates_pending_request_from_press(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(event_id="501")]

        result = _run(org_a, cloud)

        assert result.processed == 1
        request = _requests(db_session)[0]
        assert request.status == "PENDING"
        assert request.request_method == "BUTTON"
        assert request.product_id == synced_product.id
        assert request.source_device_id == "e10000031c76"
        assert request.source_event_id == "501"
        assert request.requested_qty == 12
        assert request.location == "Aisle 3"
        assert request.created_at == datetime(2026, 3, 1, 10, 0, 0)
        assert request.notes == "ESL button pressed at 2026-03-01 10:00:00 UTC. Gateway: aabbcc112233"

    def test_requests_attributed_to_system_actor(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event()]

        _run(org_a, cloud)
        _run(org_a, cloud)  # second run reuses the actor

        actors = db_session.query(User).filter_by(org_id=org_a.id, is_system=True).all()
        assert len(actors) == 1
        assert actors[0].username == "system"
        password_hash = actors[0].password_hash.encode("utf-8")
        assert password_hash.startswith(b"$2b$")
        assert bcrypt.checkpw(b"system", password_hash) is False
        assert _requests(db_session)[0].requested_by_user_id == actors[0].id

    def test_dedup_window(self, db_session, org_a, synced_product):
        """T, T+30s and T+61s in one window: two requests, at T and T+61s."""
        cloud = FakeEslCloud()
        cloud.events = [
            make_event(when="2026-03-01 10:01:01"),
            make_event(when="2026-03-01 10:00:00"),
            make_event(when="2026-03-01 10:00:30"),
        ]

        result = _run(org_a, cloud)

        assert result.processed == 2
        assert result.skipped == 1
        assert result.skip_reasons == {"duplicate": 1}
        assert [r.created_at for r in _requests(db_session)] == [
            datetime(2026, 3, 1, 10, 0, 0),
            datetime(2026, 3, 1, 10, 1, 1),
        ]

    def test_replay_is_idempotent(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(event_id="501"), make_event(when="2026-03-01 10:05:00", event_id="502")]

        first = _run(org_a, cloud)
        second = _run(org_a, cloud)

        assert first.processed == 2
        assert second.processed == 0
        assert second.skipped == 2
        assert len(_requests(db_session)) == 2

    def test_same_event_id_outside_window_is_duplicate(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(event_id="501")]
        _run(org_a, cloud)

        cloud.events = [make_event(when="2026-03-01 10:30:00", event_id="501")]
        assert _run(org_a, cloud).skip_reasons == {"duplicate": 1}

    def test_other_device_is_not_a_duplicate(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(), make_event(mac="e10000031c77", when="2026-03-01 10:00:10")]

        assert _run(org_a, cloud).processed == 2

    def test_unbound_and_unsynced_are_skipped(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(goods_id=None), make_event(goods_id="G-UNKNOWN")]

        result = _run(org_a, cloud)

        assert result.processed == 0
        assert result.skip_reasons == {"unbound": 1, "not synced": 1}
        assert _requests(db_session) == []

    def test_goods_of_other_tenant_not_synced_here(self, db_session, org_a, org_b, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event()]

        result = reconcile(org_b.id, STORE_ID, WINDOW_START, WINDOW_END, client=cloud, wake_tags=False)

        assert result.skip_reasons == {"not synced": 1}

    def test_unparseable_time_is_recorded_error(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.events = [make_event(when="garbage"), make_event()]

        result = _run(org_a, cloud)

        assert result.processed == 1
        assert result.errors[0]["device"] == "e10000031c76"

    def test_failing_event_does_not_stop_batch(self, db_session, org_a, synced_product, monkeypatch):
        from shelfsync.services import event_reconciler

        real = event_reconciler._create_button_request
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("disk full")
            return real(*args, **kwargs)

        monkeypatch.setattr(event_reconciler, "_create_button_request", flaky)
        cloud = FakeEslCloud()
        cloud.events = [make_event(mac="e10000031c77"), make_event()]

        result = _run(org_a, cloud)

        assert result.processed == 1
        assert result.errors == [{"device": "e10000031c77", "error": "disk full"}]
        assert len(_requests(db_session)) == 1

    def test_wake_failure_does_not_block(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.tags = [CloudTag(mac="e10000031c76", firmware="MIX")]
        cloud.fail("wakeup_esl_tags", TransientError("gateway busy"))
        cloud.events = [make_event()]

        result = _run(org_a, cloud, wake_tags=True)

        assert result.wake["status"] == "error"
        assert result.processed == 1

    def test_unexpected_wake_error_does_not_block(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.fail("iter_esl_tags", KeyError("firmware"))
        cloud.events = [make_event()]

        result = _run(org_a, cloud, wake_tags=True)

        assert result.wake["status"] == "error"
        assert result.processed == 1
        assert len(_requests(db_session)) == 1

    def test_wakes_only_mix_firmware(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.tags = [CloudTag(mac="e10000031c76", firmware="MIX-2"), CloudTag(mac="e10000031c77", firmware="BLE")]

        result = _run(org_a, cloud, wake_tags=True)

        assert cloud.calls_to("wakeup_esl_tags")[0][2] == ["e10000031c76"]
        assert result.wake == {"requested": 1, "status": "woken"}

    def test_log_fetch_failure_propagates(self, db_session, org_a):
        cloud = FakeEslCloud()
        cloud.fail("get_button_events", TransientError("timeout"))
        with pytest.raises(TransientError):
            _run(org_a, cloud)


class TestScheduledReconcile:

    def test_uses_default_store_and_window(self, db_session, org_a, synced_product):
        set_config_value("default_store_id", "store-9", owner_id=org_a.id)
        cloud = FakeEslCloud()
        now = datetime(2026, 3, 1, 10, 30, 0)

        reconcile_button_events(org_a.id, client=cloud, now=now, wake_tags=False)

        _, store_id, start, end = cloud.calls_to("get_button_events")[0]
        assert store_id == "store-9"
        assert end - start == timedelta(minutes=60)
        assert end == now

    def test_all_tenants_isolates_failures(self, db_session, org_a, org_b, synced_product):
        inactive = Organization(name="Gone", code="GONE", is_active=False)
        db_session.add(inactive)
        db_session.commit()

        cloud = FakeEslCloud()
        cloud.events = [make_event(when="2026-03-01 10:20:00")]
        cloud.fail("get_button_events", TransientError("timeout"))

        results = reconcile_all_tenants(client=cloud, now=datetime(2026, 3, 1, 10, 30, 0))

        assert set(results) == {org_a.id, org_b.id}
        assert "error" in results[org_a.id]
        assert results[org_b.id]["skip_reasons"] == {"not synced": 1}
        assert len(cloud.calls_to("wakeup_esl_tags")) == 0
        assert len(cloud.calls_to("iter_esl_tags")) == 1


class TestWebhook:

    def test_short_press(self, db_session, org_a, synced_product):
        synced_product.bound_label_mac = "e10000031c76"
        db_session.commit()

        result = handle_button_webhook(
            {"mac": "E1:00:00:03:1C:76", "buttonId": "1", "buttonEvent": "01", "buttonTime": "2026-03-01 10:00:00"},
            client=FakeEslCloud(),
        )

        assert result["status"] == "success"
        assert result["priority"] == "NORMAL"
        assert result["requested_qty"] == 12

    def test_long_press_is_urgent_double_quantity(self, db_session, org_a, synced_product):
        synced_product.bound_label_mac = "e10000031c76"
        db_session.commit()

        result = handle_button_webhook(
            {"mac": "e10000031c76", "buttonEvent": "02", "buttonTime": "2026-03-01 10:00:00"},
            client=FakeEslCloud(),
        )

        request = db_session.get(ReplenishmentRequest, result["request_id"])
        assert request.priority == "URGENT"
        assert request.requested_qty == 24

    def test_defaults_without_standard_quantity(self, db_session, org_a):
        product = Product(org_id=org_a.id, sku="X", name="X", cloud_goods_id="G-X", bound_label_mac="e10000031c76")
        db_session.add(product)
        db_session.commit()

        long_press = handle_button_webhook(
            {"mac": "e10000031c76", "buttonEvent": "02", "buttonTime": "2026-03-01 10:00:00"}, client=FakeEslCloud(),
        )
        short_press = handle_button_webhook(
            {"mac": "e10000031c76", "buttonEvent": "01", "buttonTime": "2026-03-01 10:05:00"}, client=FakeEslCloud(),
        )

        assert long_press["requested_qty"] == 50
        assert short_press["requested_qty"] == 10

    def test_redelivery_is_duplicate(self, db_session, org_a, synced_product):
        synced_product.bound_label_mac = "e10000031c76"
        db_session.commit()
        payload = {"mac": "e10000031c76", "buttonEvent": "01", "buttonTime": "2026-03-01 10:00:00"}

        first = handle_button_webhook(payload, client=FakeEslCloud())
        second = handle_button_webhook(dict(payload, buttonTime="2026-03-01 10:00:20"), client=FakeEslCloud())

        assert second == {"status": "duplicate", "request_id": first["request_id"], "mac": "e10000031c76"}

    def test_falls_back_to_cloud_tag_goods(self, db_session, org_a, synced_product):
        cloud = FakeEslCloud()
        cloud.tags = [CloudTag(mac="e10000031c76", goods_id="G-100", is_bound=True)]

        result = handle_button_webhook(
            {"mac": "e10000031c76", "buttonEvent": "01", "buttonTime": "2026-03-01 10:00:00"}, client=cloud,
        )

        assert result["status"] == "success"
        assert result["product_id"] == synced_product.id

    def test_unknown_tag_is_skipped(self, db_session, org_a):
        result = handle_button_webhook({"mac": "e10000031c76", "buttonEvent": "01"}, client=FakeEslCloud())
        assert result["status"] == "skipped"

    @pytest.mark.parametrize("payload", [None, {}, {"buttonEvent": "01"}, "not json"])
    def test_missing_mac(self, db_session, payload):
        assert handle_button_webhook(payload, client=FakeEslCloud())["status"] == "error"

    def test_bad_time(self, db_session, org_a, synced_product):
        result = handle_button_webhook({"mac": "e10000031c76", "buttonTime": "yesterday"}, client=FakeEslCloud())
        assert result["status"] == "error"

# Overview: Pytest coverage for the ESL cloud HTTP client against a mock transport.

import json
from datetime import datetime

import httpx
import pytest

from shelfsync.errors import (
    AuthenticationError,
    CloudRejectedError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from shelfsync.services.esl_cloud import CloudBinding, CloudTag, EslCloudClient


def ok(data=None, **extra):
    body = {"code": 200, "msg": "success", "data": data}
    body.update(extra)
    return httpx.Response(200, json=body)


class MockCloud:
    """Routes requests by path; the login endpoint hands out token-1, token-2, ..."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.logins = 0

    def on(self, path, handler):
        self.routes[path] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/apis/action/login":
            self.logins += 1
            return httpx.Response(200, json={"code": 200, "msg": "ok", "data": {"token": f"token-{self.logins}"}})
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404)
        return handler(request)

    def last(self, path):
        return [r for r in self.requests if r.url.path == path][-1]


@pytest.fixture
def mock_cloud():
    return MockCloud()


@pytest.fixture
def esl(mock_cloud):
    client = EslCloudClient(
        "https://esl.test",
        "tester",
        "secret",
        transport=httpx.MockTransport(mock_cloud),
        min_login_interval=0,
    )
    yield client
    client.close()


class TestAuth:

    def test_login_sends_md5_password(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/store/list", lambda r: ok([]))
        esl.list_stores()

        body = json.loads(mock_cloud.last("/apis/action/login").content)
        assert body == {"username": "tester", "password": "5ebe2294ecd0e0f08eab7690d2a6ee69"}

    def test_token_header_sent(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/store/list", lambda r: ok([]))
        esl.list_stores()
        assert mock_cloud.last("/apis/esl/store/list").headers["token"] == "token-1"

    def test_rejected_token_refreshes_once_and_retries(self, esl, mock_cloud):
        def handler(request):
            if request.headers.get("token") == "token-1":
                return httpx.Response(200, json={"code": 14002, "msg": "token invalid"})
            return ok([{"id": "s1", "name": "Main", "active": 1}])

        mock_cloud.on("/apis/esl/store/list", handler)
        stores = esl.list_stores()

        assert [s.store_id for s in stores] == ["s1"]
        assert mock_cloud.logins == 2

    def test_second_rejection_is_authentication_error(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/store/list", lambda r: httpx.Response(200, json={"code": 14002, "msg": "no"}))
        with pytest.raises(AuthenticationError):
            esl.list_stores()
        assert mock_cloud.logins == 2

    def test_failed_login(self):
        def handler(request):
            return httpx.Response(200, json={"code": 500, "msg": "bad password"})

        client = EslCloudClient("https://esl.test", "tester", "wrong", transport=httpx.MockTransport(handler))
        with pytest.raises(AuthenticationError):
            client.list_stores()

    def test_missing_credentials(self):
        client = EslCloudClient("https://esl.test", "", "", transport=httpx.MockTransport(lambda r: ok()))
        with pytest.raises(AuthenticationError):
            client.list_stores()


class TestErrorMapping:

    @pytest.mark.parametrize("status,error", [
        (500, TransientError),
        (503, TransientError),
        (429, TransientError),
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, NotFoundError),
        (409, ConflictError),
        (400, CloudRejectedError),
    ])
    def test_http_status(self, esl, mock_cloud, status, error):
        mock_cloud.on("/apis/esl/gateway/listPage", lambda r: httpx.Response(status))
        with pytest.raises(error):
            esl.list_gateways("s1")

    def test_timeout_is_transient(self, esl, mock_cloud):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        mock_cloud.on("/apis/esl/gateway/listPage", handler)
        with pytest.raises(TransientError):
            esl.list_gateways("s1")

    def test_connect_error_is_transient(self, esl, mock_cloud):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        mock_cloud.on("/apis/esl/gateway/listPage", handler)
        with pytest.raises(TransientError):
            esl.list_gateways("s1")

    def test_invalid_json_is_transient(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/gateway/listPage", lambda r: httpx.Response(200, content=b"<html>"))
        with pytest.raises(TransientError):
            esl.list_gateways("s1")

    def test_envelope_code_is_rejection(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/gateway/add", lambda r: httpx.Response(200, json={"code": 10001, "msg": "mac exists"}))
        with pytest.raises(CloudRejectedError) as excinfo:
            esl.add_gateway("s1", "AA:BB:CC:11:22:33", "Front")
        assert excinfo.value.code == 10001
        assert isinstance(excinfo.value, ValidationError)


class TestSentinels:

    def test_gateway_mode_and_mac(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/gateway/listPage", lambda r: ok({"items": [
            {"id": 9, "mac": "AA:BB:CC:11:22:33", "mode": 1, "name": "Front"},
            {"id": 10, "mac": "aabbcc112244", "mode": 0},
        ]}))
        gateways = esl.list_gateways("s1")

        assert gateways[0].mac == "aabbcc112233"
        assert gateways[0].is_online is True
        assert gateways[0].cloud_id == "9"
        assert gateways[1].is_online is False

    def test_add_gateway_sends_lower_mac(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/gateway/add", lambda r: ok())
        esl.add_gateway("s1", "AABBCC112233", "Front")
        body = json.loads(mock_cloud.last("/apis/esl/gateway/add").content)
        assert body == {"mac": "aabbcc112233", "name": "Front", "storeId": "s1"}

    def test_tag_fields(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/findByMac", lambda r: ok({
            "mac": "E1:00:00:03:1C:76",
            "isOnline": "2",
            "bind": "1",
            "battery": "130",
            "goodsId": "G-100",
            "demoId": "T-1",
            "firmwareType": "MIX-2.1",
        }))
        tag = esl.get_esl_tag("e10000031c76")

        assert tag.mac == "e10000031c76"
        assert tag.is_online is True
        assert tag.is_bound is True
        assert tag.battery == 100
        assert tag.template_id == "T-1"
        assert tag.needs_wakeup is True

    def test_tag_not_found(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/findByMac", lambda r: ok(None))
        with pytest.raises(NotFoundError):
            esl.get_esl_tag("e10000031c76")

    def test_iter_tags_pages_until_total(self, esl, mock_cloud):
        def handler(request):
            page = int(request.url.params["page"])
            macs = {1: ["e10000000001", "e10000000002"], 2: ["e10000000003"]}[page]
            return ok({"items": [{"mac": m, "isOnline": "1"} for m in macs], "totalNum": 3})

        mock_cloud.on("/apis/esl/label/cascadQuery", handler)
        tags = list(esl.iter_esl_tags("s1", page_size=2))

        assert [t.mac for t in tags] == ["e10000000001", "e10000000002", "e10000000003"]
        assert all(isinstance(t, CloudTag) and not t.is_online for t in tags)

    def test_unknown_status_filter(self, esl):
        with pytest.raises(ValidationError):
            esl.list_esl_tags("s1", status="sleepy")

    def test_wake_not_needed_is_not_an_error(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/batchWake", lambda r: httpx.Response(200, json={"code": 54041, "msg": "not MIX"}))
        result = esl.wakeup_esl_tags("s1", ["e10000031c76"])
        assert result.not_needed is True
        assert result.woken is False

    def test_check_binding(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/queryBinding", lambda r: ok([
            {"labelMac": "e10000031c76", "goodsId": None},
            {"labelMac": "e10000031c76", "goodsId": "G-100", "demoIdMap": {"B": "T-9"}},
        ]))
        binding = esl.check_binding("s1", "E1:00:00:03:1C:76")
        assert binding.goods_id == "G-100"
        assert binding.template_id == "T-9"
        assert binding.side == "B"

    def test_check_binding_none(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/queryBinding", lambda r: ok([]))
        assert esl.check_binding("s1", "e10000031c76") is None

    def test_bind_manual_payload(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/update", lambda r: ok())
        esl.bind_manual("s1", "E1:00:00:03:1C:76", "G-100", "T-1")
        body = json.loads(mock_cloud.last("/apis/esl/label/update").content)
        assert body == {"storeId": "s1", "labelMac": "e10000031c76", "goodsId": "G-100", "demoIdMap": {"A": "T-1"}}


class TestButtonEvents:

    def test_filters_action_type_and_formats_window(self, esl, mock_cloud):
        def handler(request):
            return ok({"items": [
                {"id": 501, "actionType": "6", "labelMac": "E10000031C76", "createTime": "2026-03-01 10:00:00",
                 "goods": {"id": "G-100", "name": "Milk"}, "gatewayMac": "AA:BB:CC:11:22:33"},
                {"id": 502, "actionType": "3", "labelMac": "e10000031c76", "createTime": "2026-03-01 10:00:05"},
                {"id": 503, "actionType": "6", "labelMac": "e10000031c77", "createTime": "not a time"},
            ], "totalNum": 3})

        mock_cloud.on("/apis/esl/logs/queryList", handler)
        events = esl.get_button_events("s1", datetime(2026, 3, 1, 9, 0), datetime(2026, 3, 1, 11, 0))

        body = json.loads(mock_cloud.last("/apis/esl/logs/queryList").content)
        assert body["startTime"] == "2026-03-01 09:00:00"
        assert body["endTime"] == "2026-03-01 11:00:00"
        assert body["actionType"] == "6"

        assert [e.event_id for e in events] == ["501", "503"]
        assert events[0].label_mac == "e10000031c76"
        assert events[0].goods_id == "G-100"
        assert events[0].gateway_mac == "aabbcc112233"
        assert events[0].event_time == datetime(2026, 3, 1, 10, 0, 0)
        assert events[1].event_time is None
        assert events[1].raw_time == "not a time"


class TestStoresAndTemplates:

    def test_create_store_returns_id(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/store/add", lambda r: ok({"storeId": 77}))
        assert esl.create_store("002", "Annex", address="1 Main St") == "77"
        body = json.loads(mock_cloud.last("/apis/esl/store/add").content)
        assert body == {"number": "002", "name": "Annex", "address": "1 Main St"}

    def test_toggle_store(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/store/openOrClose", lambda r: ok())
        esl.toggle_store("s1", False)
        assert mock_cloud.last("/apis/esl/store/openOrClose").url.params["active"] == "0"

    def test_list_templates_from_rows(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/template/findAll", lambda r: httpx.Response(200, json={
            "code": 200, "msg": "ok",
            "rows": [{"demoId": "T-1", "demoName": "Price 2.9", "screenSize": {"inch": "2.9", "width": 296}}],
        }))
        templates = esl.list_templates("s1")
        assert templates[0].template_id == "T-1"
        assert templates[0].inch == 2.9
        assert templates[0].width == 296


class TestBatchOperations:

    def test_batch_bind_payload(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/batchBinding", lambda r: ok())
        esl.batch_bind("s1", [
            CloudBinding(label_mac="E1:00:00:03:1C:76", goods_id="G-1", template_id="T-1"),
            CloudBinding(label_mac="e10000031c77", goods_id="G-2", template_id="T-2", side="B"),
        ])
        body = json.loads(mock_cloud.last("/apis/esl/label/batchBinding").content)
        assert body["labelTemplateDataVOList"] == [
            {"labelMac": "e10000031c76", "goodsId": "G-1", "demoIdMap": {"A": "T-1"}},
            {"labelMac": "e10000031c77", "goodsId": "G-2", "demoIdMap": {"B": "T-2"}},
        ]

    def test_bind_automatic_payload(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/bind/generateBindingByTemplateStrategy", lambda r: ok())
        esl.bind_automatic("s1", [("E1-00-00-03-1C-76", "G-1")])
        body = json.loads(mock_cloud.last("/apis/esl/label/bind/generateBindingByTemplateStrategy").content)
        assert body["labelTemplateDataVOList"] == [{"labelMac": "e10000031c76", "goodsId": "G-1"}]

    def test_import_results_normalized(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/label/batchAdd", lambda r: ok({"E1:00:00:03:1C:76": "exist"}))
        assert esl.import_esl_tags("s1", ["e10000031c76"]) == {"e10000031c76": "exist"}


class TestGoods:

    def test_add_goods_merges_store(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/goods/addToStore", lambda r: ok())
        esl.add_goods("s1", {"id": "5", "name": "Bread"})
        body = json.loads(mock_cloud.last("/apis/esl/goods/addToStore").content)
        assert body == {"storeId": "s1", "id": "5", "name": "Bread"}

    def test_get_goods_missing(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/goods/findByGoodsId", lambda r: ok(None))
        with pytest.raises(NotFoundError):
            esl.get_goods("5")

    def test_delete_goods_stringifies_ids(self, esl, mock_cloud):
        mock_cloud.on("/apis/esl/goods/delete", lambda r: ok())
        esl.delete_goods("s1", [5, "6"])
        body = json.loads(mock_cloud.last("/apis/esl/goods/delete").content)
        assert body == {"storeId": "s1", "ids": ["5", "6"]}

"""
ESL Cloud Client - typed adapter over the vendor's HTTP API

WHY: The vendor API speaks in sentinel strings ("2" = online, "1" = bound,
mode 1 = online) inside a {code, msg, data} envelope and reports most
failures with HTTP 200. Everything past this module works with dataclasses
and the shared error taxonomy only.

WIRE CONVENTIONS:
- JSON envelope {code, msg, data}; code 200 is success
- Token travels in a "token" header
- Envelope code 14002: token rejected -> refresh once and retry
- Envelope code 54041 on wake-up: firmware does not need waking (not an error)
- Button presses are action-log entries with actionType "6"

ERROR MAPPING:
- timeout / transport failure / HTTP 5xx / HTTP 429 -> TransientError
- HTTP 401/403, failed login                       -> AuthenticationError
- HTTP 404, empty lookup result                     -> NotFoundError
- HTTP 409                                          -> ConflictError
- other HTTP 4xx, non-200 envelope code             -> CloudRejectedError

Every MAC leaving this module is lower-case canonical.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterator, Optional

import httpx

from ..errors import (
    AuthenticationError,
    CloudRejectedError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .identity_service import device_mac
from .token_service import DatabaseTokenCache, MemoryTokenCache, TokenManager, hash_cloud_password
from shelfsync.time_utils import format_cloud_datetime, parse_cloud_datetime


logger = logging.getLogger(__name__)

SUCCESS_CODE = 200
TOKEN_REJECTED_CODE = 14002
WAKE_NOT_NEEDED_CODE = 54041

BUTTON_ACTION_TYPE = "6"

# cascadQuery "eqstatus" filter values
TAG_STATUS_FILTERS = {
    "offline": "1",
    "online": "2",
    "low_battery": "5",
    "bound": "8",
    "unbound": "9",
}


def _str_or_none(value) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _int_or_none(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _time_or_none(value) -> datetime | None:
    try:
        return parse_cloud_datetime(value)
    except ValueError:
        return None


def _items(envelope: dict, *keys: str) -> list:
    """
    Pull a list out of an envelope.

    Some list endpoints return items at the envelope root, others under
    data, others as data itself.
    """
    for key in keys:
        if isinstance(envelope.get(key), list):
            return envelope[key]
    data = envelope.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _total(envelope: dict, default: int) -> int:
    for source in (envelope, envelope.get("data") if isinstance(envelope.get("data"), dict) else {}):
        for key in ("totalNum", "totalCount", "total"):
            value = _int_or_none(source.get(key))
            if value is not None:
                return value
    return default


@dataclass
class CloudStore:
    store_id: str
    name: str | None = None
    number: str | None = None
    active: bool = True

    @classmethod
    def from_payload(cls, data: dict) -> "CloudStore":
        return cls(
            store_id=str(data.get("id") or data.get("storeId") or ""),
            name=_str_or_none(data.get("name")),
            number=_str_or_none(data.get("number")),
            active=_int_or_none(data.get("active")) != 0,
        )


@dataclass
class CloudGatewayDevice:
    cloud_id: str
    mac: str
    name: str | None = None
    store_id: str | None = None
    is_online: bool = False
    version: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "CloudGatewayDevice":
        return cls(
            cloud_id=str(data.get("id") or ""),
            mac=device_mac(data.get("mac")),
            name=_str_or_none(data.get("name")),
            store_id=_str_or_none(data.get("storeId")),
            is_online=_int_or_none(data.get("mode")) == 1,
            version=_str_or_none(data.get("version")),
            updated_at=_time_or_none(data.get("updateTime")),
        )


@dataclass
class CloudTag:
    mac: str
    cloud_id: str | None = None
    store_id: str | None = None
    is_online: bool = False
    battery: int | None = None
    is_bound: bool = False
    goods_id: str | None = None
    template_id: str | None = None
    firmware: str | None = None
    screen_size: str | None = None
    updated_at: datetime | None = None

    @property
    def needs_wakeup(self) -> bool:
        """MIX firmware sleeps to save battery and must be woken before polling."""
        return "MIX" in (self.firmware or "").upper()

    @classmethod
    def from_payload(cls, data: dict) -> "CloudTag":
        battery = _int_or_none(data.get("battery"))
        if battery is not None:
            battery = max(0, min(100, battery))
        return cls(
            mac=device_mac(data.get("mac")),
            cloud_id=_str_or_none(data.get("id")),
            store_id=_str_or_none(data.get("storeId")),
            is_online=str(data.get("isOnline")) == "2",
            battery=battery,
            is_bound=str(data.get("bind")) == "1",
            goods_id=_str_or_none(data.get("goodsId")),
            template_id=_str_or_none(data.get("demoId")),
            firmware=_str_or_none(data.get("firmwareType") or data.get("firmware") or data.get("version")),
            screen_size=_str_or_none(data.get("screenSize")),
            updated_at=_time_or_none(data.get("updateTime")),
        )


@dataclass
class CloudBinding:
    label_mac: str
    goods_id: str | None
    template_id: str | None = None
    side: str = "A"

    @classmethod
    def from_payload(cls, data: dict) -> "CloudBinding":
        template_id = _str_or_none(data.get("demoId"))
        side = "A"
        demo_map = data.get("demoIdMap") or {}
        if not template_id and isinstance(demo_map, dict):
            for key in ("A", "B"):
                if demo_map.get(key):
                    template_id, side = str(demo_map[key]), key
                    break
        return cls(
            label_mac=device_mac(data.get("labelMac") or data.get("mac")),
            goods_id=_str_or_none(data.get("goodsId")),
            template_id=template_id,
            side=side,
        )

    def to_payload(self) -> dict:
        return {
            "labelMac": device_mac(self.label_mac),
            "goodsId": self.goods_id,
            "demoIdMap": {self.side: self.template_id},
        }


@dataclass
class ButtonEvent:
    label_mac: str
    event_time: datetime | None
    raw_time: str | None = None
    event_id: str | None = None
    goods_id: str | None = None
    goods_name: str | None = None
    gateway_mac: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "ButtonEvent":
        goods = data.get("goods") or {}
        raw_time = _str_or_none(data.get("createTime"))
        return cls(
            label_mac=device_mac(data.get("labelMac") or data.get("mac")),
            event_time=_time_or_none(raw_time),
            raw_time=raw_time,
            event_id=_str_or_none(data.get("id")),
            goods_id=_str_or_none(goods.get("id") if isinstance(goods, dict) else None),
            goods_name=_str_or_none(goods.get("name") if isinstance(goods, dict) else None),
            gateway_mac=device_mac(data.get("gatewayMac")) or None,
        )


@dataclass
class CloudTemplate:
    template_id: str
    name: str | None = None
    store_id: str | None = None
    color: str | None = None
    inch: float | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "CloudTemplate":
        screen = data.get("screenSize") if isinstance(data.get("screenSize"), dict) else {}
        inch = screen.get("inch")
        return cls(
            template_id=str(data.get("demoId") or data.get("id") or ""),
            name=_str_or_none(data.get("demoName") or data.get("name")),
            store_id=_str_or_none(data.get("storeId")),
            color=_str_or_none(data.get("color")),
            inch=float(inch) if inch not in (None, "") else None,
            width=_int_or_none(screen.get("width")),
            height=_int_or_none(screen.get("height")),
        )


@dataclass
class WakeResult:
    requested: int
    woken: bool
    not_needed: bool = False
    code: int | None = None
    message: str | None = None


@dataclass
class ActionLogPage:
    items: list[dict] = field(default_factory=list)
    total: int = 0


class EslCloudClient:
    """
    Synchronous client for the ESL cloud, one instance per cloud account.

    The httpx.Client carries the timeout for every call. Tokens come from
    `self.tokens` (a TokenManager); a rejected token is refreshed once and
    the call retried.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 8.0,
        token_cache=None,
        token_ttl: timedelta = timedelta(hours=23),
        safety_margin: timedelta = timedelta(seconds=300),
        min_login_interval: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json;charset=utf-8"},
        )
        self.tokens = TokenManager(
            username=username,
            login=self._login_with_credentials,
            cache=token_cache if token_cache is not None else MemoryTokenCache(),
            token_ttl=token_ttl,
            safety_margin=safety_margin,
            min_login_interval=min_login_interval,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, *, params=None, json=None, token: str | None = None) -> dict:
        headers = {"token": token} if token else None
        try:
            response = self._http.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError(f"ESL cloud timed out on {path}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"ESL cloud unreachable on {path}: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(f"ESL cloud returned HTTP {status} on {path}")
        if status in (401, 403):
            raise AuthenticationError(f"ESL cloud refused access on {path} (HTTP {status})")
        if status == 404:
            raise NotFoundError(f"ESL cloud resource not found: {path}")
        if status == 409:
            raise ConflictError(f"ESL cloud reported a conflict on {path}")
        if status >= 400:
            raise CloudRejectedError(f"ESL cloud rejected {path} (HTTP {status})", code=status)

        try:
            envelope = response.json()
        except ValueError as exc:
            raise TransientError(f"ESL cloud returned invalid JSON on {path}") from exc
        if not isinstance(envelope, dict):
            raise TransientError(f"ESL cloud returned an unexpected body on {path}")
        return envelope

    def _call(self, method: str, path: str, *, params=None, json=None) -> dict:
        """Authenticated call; returns the raw envelope (code not yet checked)."""
        token = self.tokens.get_token()
        envelope = self._send(method, path, params=params, json=json, token=token)
        if envelope.get("code") == TOKEN_REJECTED_CODE:
            logger.info("ESL cloud rejected cached token on %s; refreshing", path)
            token = self.tokens.refresh(stale_token=token)
            envelope = self._send(method, path, params=params, json=json, token=token)
            if envelope.get("code") == TOKEN_REJECTED_CODE:
                raise AuthenticationError("ESL cloud rejected a freshly issued token")
        return envelope

    @staticmethod
    def _ok(envelope: dict, what: str) -> dict:
        code = envelope.get("code")
        if code != SUCCESS_CODE:
            raise CloudRejectedError(
                f"{what} failed: {envelope.get('msg') or 'unknown error'}",
                code=code,
            )
        return envelope

    def _checked(self, method: str, path: str, what: str, *, params=None, json=None) -> dict:
        return self._ok(self._call(method, path, params=params, json=json), what)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def login(self, username: str, hashed_password: str) -> str:
        """Exchange credentials for a token. Raises AuthenticationError."""
        envelope = self._send(
            "POST",
            "/apis/action/login",
            json={"username": username, "password": hashed_password},
        )
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        token = envelope.get("token") or data.get("token")
        if envelope.get("code") not in (None, SUCCESS_CODE) or not token:
            raise AuthenticationError(f"ESL cloud login failed: {envelope.get('msg') or 'no token returned'}")
        logger.info("ESL cloud login succeeded for %s", username)
        return token

    def _login_with_credentials(self) -> str:
        if not self.username or not self._password:
            raise AuthenticationError("ESL cloud credentials are not configured")
        return self.login(self.username, hash_cloud_password(self._password))

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    def list_stores(self, active: bool = True) -> list[CloudStore]:
        envelope = self._checked(
            "GET", "/apis/esl/store/list", "List stores",
            params={"active": "1" if active else "0"},
        )
        return [CloudStore.from_payload(s) for s in _items(envelope, "items")]

    def create_store(self, number: str, name: str, address: str | None = None) -> str:
        body = {"number": number, "name": name}
        if address:
            body["address"] = address
        envelope = self._checked("POST", "/apis/esl/store/add", "Create store", json=body)
        data = envelope.get("data") or {}
        return str(data.get("storeId") or data.get("id") or "")

    def toggle_store(self, store_id: str, active: bool) -> None:
        self._checked(
            "GET", "/apis/esl/store/openOrClose", "Toggle store",
            params={"storeId": store_id, "active": "1" if active else "0"},
        )

    # ------------------------------------------------------------------
    # Gateways
    # ------------------------------------------------------------------

    def list_gateways(self, store_id: str) -> list[CloudGatewayDevice]:
        envelope = self._checked(
            "GET", "/apis/esl/gateway/listPage", "List gateways",
            params={"page": "1", "size": "100", "storeId": store_id},
        )
        return [CloudGatewayDevice.from_payload(g) for g in _items(envelope, "items")]

    def add_gateway(self, store_id: str, mac: str, name: str) -> None:
        self._checked(
            "POST", "/apis/esl/gateway/add", "Add gateway",
            json={"mac": device_mac(mac), "name": name, "storeId": store_id},
        )

    def delete_gateway(self, store_id: str, cloud_id: str) -> None:
        self._checked(
            "GET", "/apis/esl/gateway/delete", "Delete gateway",
            params={"id": cloud_id, "storeId": store_id},
        )

    # ------------------------------------------------------------------
    # ESL tags
    # ------------------------------------------------------------------

    def list_esl_tags(
        self,
        store_id: str,
        *,
        page: int = 1,
        size: int = 50,
        status: str | None = None,
    ) -> tuple[list[CloudTag], int]:
        params = {"page": str(page), "size": str(size), "storeId": store_id, "type": "1"}
        if status:
            if status not in TAG_STATUS_FILTERS:
                raise ValidationError(f"Unknown tag status filter: {status}", value=status)
            params["eqstatus"] = TAG_STATUS_FILTERS[status]
        envelope = self._checked("GET", "/apis/esl/label/cascadQuery", "List ESL tags", params=params)
        tags = [CloudTag.from_payload(t) for t in _items(envelope, "items")]
        return tags, _total(envelope, len(tags))

    def iter_esl_tags(self, store_id: str, *, page_size: int = 100, status: str | None = None) -> Iterator[CloudTag]:
        page = 1
        seen = 0
        while True:
            tags, total = self.list_esl_tags(store_id, page=page, size=page_size, status=status)
            yield from tags
            seen += len(tags)
            if not tags or seen >= total:
                return
            page += 1

    def get_esl_tag(self, mac: str, store_id: str | None = None) -> CloudTag:
        params = {"mac": device_mac(mac)}
        if store_id:
            params["storeId"] = store_id
        envelope = self._checked("GET", "/apis/esl/label/findByMac", "Get ESL tag", params=params)
        data = envelope.get("data")
        if not isinstance(data, dict) or not data:
            raise NotFoundError(f"ESL tag {device_mac(mac)} not found in cloud")
        return CloudTag.from_payload(data)

    def import_esl_tags(self, store_id: str, macs: list[str]) -> dict[str, str]:
        """Returns the cloud's per-MAC result strings (e.g. "success", "exist")."""
        envelope = self._checked(
            "POST", "/apis/esl/label/batchAdd", "Import ESL tags",
            json={"storeId": store_id, "macArray": [device_mac(m) for m in macs], "type": 1},
        )
        data = envelope.get("data") or {}
        if not isinstance(data, dict):
            return {}
        return {device_mac(k): str(v) for k, v in data.items()}

    def wakeup_esl_tags(self, store_id: str, macs: list[str]) -> WakeResult:
        envelope = self._call(
            "POST", "/apis/esl/label/batchWake",
            json={"storeId": store_id, "macs": [device_mac(m) for m in macs]},
        )
        code = envelope.get("code")
        if code == WAKE_NOT_NEEDED_CODE:
            return WakeResult(requested=len(macs), woken=False, not_needed=True, code=code, message=envelope.get("msg"))
        self._ok(envelope, "Wake ESL tags")
        return WakeResult(requested=len(macs), woken=True, code=code, message=envelope.get("msg"))

    def locate_esl_tag(self, store_id: str, mac: str) -> None:
        self._checked(
            "POST", "/apis/esl/label/located", "Locate ESL tag",
            json={"storeId": store_id, "mac": device_mac(mac)},
        )

    def delete_esl_tags(self, store_id: str, macs: list[str]) -> None:
        self._checked(
            "POST", "/apis/esl/label/batchDeleteLabels", "Delete ESL tags",
            json={"storeId": store_id, "macArray": [device_mac(m) for m in macs]},
        )

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def check_binding(self, store_id: str, mac: str) -> Optional[CloudBinding]:
        envelope = self._checked(
            "GET", "/apis/esl/label/queryBinding", "Check binding",
            params={"mac": device_mac(mac), "storeId": store_id},
        )
        rows = _items(envelope, "items")
        for row in rows:
            binding = CloudBinding.from_payload(row)
            if binding.goods_id:
                return binding
        return None

    def bind_automatic(self, store_id: str, pairs: list[tuple[str, str]]) -> None:
        self._checked(
            "POST", "/apis/esl/label/bind/generateBindingByTemplateStrategy", "Automatic bind",
            json={
                "storeId": store_id,
                "labelTemplateDataVOList": [
                    {"labelMac": device_mac(mac), "goodsId": goods_id} for mac, goods_id in pairs
                ],
            },
        )

    def bind_manual(self, store_id: str, mac: str, goods_id: str, template_id: str, side: str = "A") -> None:
        self._checked(
            "POST", "/apis/esl/label/update", "Bind ESL tag",
            json={
                "storeId": store_id,
                "labelMac": device_mac(mac),
                "goodsId": goods_id,
                "demoIdMap": {side: template_id},
            },
        )

    def batch_bind(self, store_id: str, bindings: list[CloudBinding]) -> None:
        self._checked(
            "POST", "/apis/esl/label/batchBinding", "Batch bind",
            json={"storeId": store_id, "labelTemplateDataVOList": [b.to_payload() for b in bindings]},
        )

    def unbind(self, store_id: str, mac: str) -> None:
        self._checked(
            "POST", "/apis/esl/label/deleteBind", "Unbind ESL tag",
            params={"mac": device_mac(mac), "storeId": store_id},
        )

    def refresh_displays(self, store_id: str, macs: list[str]) -> None:
        self._checked(
            "POST", "/apis/esl/label/batchRefresh", "Refresh displays",
            json={"storeId": store_id, "macs": [device_mac(m) for m in macs]},
        )

    # ------------------------------------------------------------------
    # Action logs / button events
    # ------------------------------------------------------------------

    def get_action_logs(
        self,
        store_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        action_type: str | None = None,
        page: int = 1,
        size: int = 50,
    ) -> ActionLogPage:
        body: dict[str, Any] = {
            "storeId": store_id,
            "objectType": "1",
            "currentPage": page,
            "pageSize": size,
        }
        if action_type:
            body["actionType"] = action_type
        if start:
            body["startTime"] = format_cloud_datetime(start)
        if end:
            body["endTime"] = format_cloud_datetime(end)
        envelope = self._checked("POST", "/apis/esl/logs/queryList", "Query action logs", json=body)
        items = _items(envelope, "items")
        return ActionLogPage(items=items, total=_total(envelope, len(items)))

    def get_button_events(
        self,
        store_id: str,
        start: datetime,
        end: datetime,
        *,
        page_size: int = 50,
    ) -> list[ButtonEvent]:
        events: list[ButtonEvent] = []
        page = 1
        seen = 0
        while True:
            log_page = self.get_action_logs(
                store_id, start=start, end=end, action_type=BUTTON_ACTION_TYPE, page=page, size=page_size,
            )
            for item in log_page.items:
                if str(item.get("actionType", BUTTON_ACTION_TYPE)) == BUTTON_ACTION_TYPE:
                    events.append(ButtonEvent.from_payload(item))
            seen += len(log_page.items)
            if not log_page.items or seen >= log_page.total:
                return events
            page += 1

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def list_templates(self, store_id: str, *, page: int = 1, size: int = 100) -> list[CloudTemplate]:
        envelope = self._checked(
            "GET", "/apis/esl/template/findAll", "List templates",
            params={"page": str(page), "size": str(size), "storeId": store_id},
        )
        return [CloudTemplate.from_payload(t) for t in _items(envelope, "rows", "items")]

    # ------------------------------------------------------------------
    # Goods (cloud-side product records)
    # ------------------------------------------------------------------

    def add_goods(self, store_id: str, goods: dict) -> None:
        self._checked("POST", "/apis/esl/goods/addToStore", "Add goods", json={"storeId": store_id, **goods})

    def update_goods(self, store_id: str, goods: dict) -> None:
        self._checked("POST", "/apis/esl/goods/update", "Update goods", json={"storeId": store_id, **goods})

    def get_goods(self, goods_id: str) -> dict:
        envelope = self._checked(
            "GET", "/apis/esl/goods/findByGoodsId", "Get goods",
            params={"goodsId": goods_id},
        )
        data = envelope.get("data")
        if not isinstance(data, dict) or not data:
            raise NotFoundError(f"Goods {goods_id} not found in cloud")
        return data

    def delete_goods(self, store_id: str, goods_ids: list[str]) -> None:
        self._checked(
            "POST", "/apis/esl/goods/delete", "Delete goods",
            json={"storeId": store_id, "ids": [str(g) for g in goods_ids]},
        )


def get_cloud_client(app) -> EslCloudClient:
    """
    Per-application client, created on first use and cached in app.extensions.

    Tokens are cached in the token_cache table so every worker process
    shares one login.
    """
    client = app.extensions.get("esl_cloud")
    if client is None:
        cfg = app.config
        client = EslCloudClient(
            cfg["ESL_CLOUD_BASE_URL"],
            cfg.get("ESL_CLOUD_USERNAME", ""),
            cfg.get("ESL_CLOUD_PASSWORD", ""),
            timeout=float(cfg.get("ESL_CLOUD_TIMEOUT_SECONDS", 8.0)),
            token_cache=DatabaseTokenCache(),
            token_ttl=timedelta(hours=cfg.get("ESL_TOKEN_TTL_HOURS", 23)),
            safety_margin=timedelta(seconds=cfg.get("ESL_TOKEN_SAFETY_MARGIN_SECONDS", 300)),
            min_login_interval=float(cfg.get("ESL_LOGIN_MIN_INTERVAL_SECONDS", 5.0)),
        )
        app.extensions["esl_cloud"] = client
    return client

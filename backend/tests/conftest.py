"""
Pytest fixtures for the shelfsync backend tests.

Provides an in-memory database, tenant fixtures, and FakeEslCloud: an
in-process stand-in for EslCloudClient with scriptable failures.
"""

from datetime import datetime

import pytest

from shelfsync import create_app
from shelfsync.extensions import db
from shelfsync.errors import NotFoundError
from shelfsync.models import Organization, Product, DeviceStatus
from shelfsync.services.esl_cloud import (
    ButtonEvent,
    CloudBinding,
    CloudGatewayDevice,
    CloudStore,
    CloudTag,
    WakeResult,
)
from shelfsync.services.identity_service import device_mac
from shelfsync.services.token_service import MemoryTokenCache, TokenManager


STORE_ID = "store-1"


class FakeEslCloud:
    """
    Records every call in `calls` as (name, *args).

    fail(name, exc, ...) queues exceptions raised by the next calls of
    `name`, one per call; fail_always(name, exc) raises on every call.
    """

    def __init__(self):
        self.stores = [CloudStore(store_id=STORE_ID, name="Main", number="001")]
        self.gateways: list[CloudGatewayDevice] = []
        self.tags: list[CloudTag] = []
        self.events: list[ButtonEvent] = []
        self.bindings: dict[str, CloudBinding] = {}
        self.goods: dict[str, dict] = {}
        self.import_results: dict[str, str] = {}
        self.wake_not_needed = False
        self.calls: list[tuple] = []
        self._failures: dict[str, list] = {}
        self._always: dict[str, Exception] = {}
        self.tokens = TokenManager(
            username="fake",
            login=lambda: "fake-token",
            cache=MemoryTokenCache(),
            min_login_interval=0,
        )

    def fail(self, name, *errors):
        self._failures.setdefault(name, []).extend(errors)

    def fail_always(self, name, error):
        self._always[name] = error

    def recover(self, name):
        self._always.pop(name, None)
        self._failures.pop(name, None)

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self._always:
            raise self._always[name]
        queued = self._failures.get(name)
        if queued:
            raise queued.pop(0)

    # Stores / gateways

    def list_stores(self, active=True):
        self._record("list_stores", active)
        return list(self.stores)

    def list_gateways(self, store_id):
        self._record("list_gateways", store_id)
        return list(self.gateways)

    def add_gateway(self, store_id, mac, name):
        self._record("add_gateway", store_id, mac, name)
        self.gateways.append(CloudGatewayDevice(
            cloud_id=f"gw-{len(self.gateways) + 1}", mac=device_mac(mac), name=name, store_id=store_id,
        ))

    def delete_gateway(self, store_id, cloud_id):
        self._record("delete_gateway", store_id, cloud_id)
        self.gateways = [g for g in self.gateways if g.cloud_id != cloud_id]

    # Tags

    def iter_esl_tags(self, store_id, *, page_size=100, status=None):
        self._record("iter_esl_tags", store_id)
        return iter(list(self.tags))

    def get_esl_tag(self, mac, store_id=None):
        self._record("get_esl_tag", mac, store_id)
        for tag in self.tags:
            if tag.mac == device_mac(mac):
                return tag
        raise NotFoundError(f"ESL tag {mac} not found in cloud")

    def import_esl_tags(self, store_id, macs):
        self._record("import_esl_tags", store_id, list(macs))
        return {device_mac(m): self.import_results.get(device_mac(m), "success") for m in macs}

    def wakeup_esl_tags(self, store_id, macs):
        self._record("wakeup_esl_tags", store_id, list(macs))
        if self.wake_not_needed:
            return WakeResult(requested=len(macs), woken=False, not_needed=True, code=54041)
        return WakeResult(requested=len(macs), woken=True, code=200)

    # Bindings

    def check_binding(self, store_id, mac):
        self._record("check_binding", store_id, mac)
        return self.bindings.get(device_mac(mac))

    def bind_manual(self, store_id, mac, goods_id, template_id, side="A"):
        self._record("bind_manual", store_id, mac, goods_id, template_id, side)
        self.bindings[device_mac(mac)] = CloudBinding(
            label_mac=device_mac(mac), goods_id=goods_id, template_id=template_id, side=side,
        )

    def unbind(self, store_id, mac):
        self._record("unbind", store_id, mac)
        self.bindings.pop(device_mac(mac), None)

    # Events

    def get_button_events(self, store_id, start, end, *, page_size=50):
        self._record("get_button_events", store_id, start, end)
        return list(self.events)

    # Goods

    def add_goods(self, store_id, goods):
        self._record("add_goods", store_id, goods)
        self.goods[goods["id"]] = dict(goods)

    def update_goods(self, store_id, goods):
        self._record("update_goods", store_id, goods)
        self.goods[goods["id"]] = dict(goods)

    def delete_goods(self, store_id, goods_ids):
        self._record("delete_goods", store_id, list(goods_ids))
        for goods_id in goods_ids:
            self.goods.pop(str(goods_id), None)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ESL_CLOUD_BASE_URL': 'https://esl.test',
        'ESL_CLOUD_USERNAME': 'tester',
        'ESL_CLOUD_PASSWORD': 'secret',
        'ESL_DEFAULT_STORE_ID': None,
        'CRON_SECRET': 'test-cron-secret',
        'SYNC_QUEUE_MAX_RETRIES': 3,
        'SYNC_QUEUE_BACKOFF_BASE_SECONDS': 30,
        'SYNC_QUEUE_BACKOFF_CAP_SECONDS': 3600,
        'BUTTON_DEDUP_WINDOW_SECONDS': 60,
        'BUTTON_LOOKBACK_MINUTES': 60,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def cloud(app):
    """Fake cloud installed as the application's client for route tests."""
    fake = FakeEslCloud()
    previous = app.extensions.get("esl_cloud")
    app.extensions["esl_cloud"] = fake
    yield fake
    if previous is None:
        app.extensions.pop("esl_cloud", None)
    else:
        app.extensions["esl_cloud"] = previous


@pytest.fixture(scope='function')
def cron_headers():
    return {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Acme Corp", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - Beta Inc", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def synced_product(db_session, org_a):
    """Product of Org A already pushed to the cloud as goods "G-100"."""
    product = Product(
        org_id=org_a.id,
        sku="MILK-1L",
        name="Milk 1L",
        location="Aisle 3",
        price_cents=199,
        standard_order_qty=12,
        cloud_goods_id="G-100",
        cloud_synced=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def tag_a(db_session, org_a):
    """Device shadow of Org A for tag e10000031c76."""
    device = DeviceStatus(org_id=org_a.id, device_id="e10000031c76", is_online=True)
    db_session.add(device)
    db_session.commit()
    return device


def make_event(mac="e10000031c76", when="2026-03-01 10:00:00", goods_id="G-100", event_id=None, gateway="aabbcc112233"):
    """Action-log button event as the cloud client returns it."""
    event_time = datetime.strptime(when, "%Y-%m-%d %H:%M:%S") if when and when[0].isdigit() else None
    return ButtonEvent(
        label_mac=mac,
        event_time=event_time,
        raw_time=when,
        event_id=event_id,
        goods_id=goods_id,
        goods_name="Milk 1L",
        gateway_mac=gateway,
    )

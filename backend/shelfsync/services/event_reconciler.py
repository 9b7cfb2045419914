# Overview: Service-layer operations for ESL button events; turns presses into replenishment requests.

"""
Event Reconciler

WHY: An ESL button press means "restock this shelf". The cloud records
presses as action-log entries (polled by cron) and can also push them to a
webhook. Both paths must create at most one replenishment request per
(tenant, product, device) per dedup window, however often an event is
re-delivered.

ALGORITHM (per event, oldest first):
1. No bound goods on the event          -> skipped ("unbound")
2. Goods id unknown to this tenant       -> skipped ("not synced")
3. Same source_event_id already recorded -> skipped ("duplicate")
   An existing BUTTON request for the same product/device with created_at
   in [T - W, T + W]                     -> skipped ("duplicate")
4. Resolve the tenant's system actor (created lazily)
5. Create a PENDING request with created_at = T and a provenance note
6. Any per-event failure is recorded against the device MAC and the
   batch continues; committed requests are never rolled back by a later
   event's failure

WAKE-UP: MIX-firmware tags sleep to save battery and must be woken before
their presses are flushed to the cloud log. Wake failures are logged and
never block processing of already-buffered events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import SyncError, TransientError
from ..models import DeviceStatus, Product, ReplenishmentRequest
from ..models.inventory import REQUEST_METHOD_BUTTON
from .actor_service import get_or_create_system_user
from .esl_cloud import ButtonEvent
from .identity_service import device_mac
from .tenant_service import get_active_org_ids, scoped_query
from .token_service import get_default_store_id
from shelfsync.time_utils import format_cloud_datetime, parse_cloud_datetime, utcnow


SHORT_PRESS = "01"
LONG_PRESS = "02"


@dataclass
class ReconcileResult:
    processed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    created_request_ids: list[int] = field(default_factory=list)
    skip_reasons: dict[str, int] = field(default_factory=dict)
    wake: dict | None = None

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "created_request_ids": self.created_request_ids,
            "skip_reasons": self.skip_reasons,
            "wake": self.wake,
        }


def _dedup_window() -> timedelta:
    return timedelta(seconds=current_app.config.get("BUTTON_DEDUP_WINDOW_SECONDS", 60))


def find_duplicate_request(
    owner_id: int,
    product_id: int,
    device_id: str,
    event_time: datetime,
    *,
    source_event_id: str | None = None,
) -> ReplenishmentRequest | None:
    """
    Existing BUTTON request that makes this event a re-delivery, if any.

    An exact source_event_id match wins; otherwise any request for the same
    product and device created within the dedup window on either side of
    the event time.
    """
    base = scoped_query(ReplenishmentRequest, owner_id).filter(
        ReplenishmentRequest.request_method == REQUEST_METHOD_BUTTON,
    )
    if source_event_id:
        hit = base.filter(ReplenishmentRequest.source_event_id == source_event_id).first()
        if hit:
            return hit

    window = _dedup_window()
    return base.filter(
        ReplenishmentRequest.product_id == product_id,
        ReplenishmentRequest.source_device_id == device_id,
        ReplenishmentRequest.created_at >= event_time - window,
        ReplenishmentRequest.created_at <= event_time + window,
    ).order_by(ReplenishmentRequest.created_at).first()


def _create_button_request(
    owner_id: int,
    product: Product,
    device_id: str,
    event_time: datetime,
    *,
    source_event_id: str | None,
    notes: str,
    priority: str = "NORMAL",
    requested_qty: int | None = None,
) -> ReplenishmentRequest:
    actor = get_or_create_system_user(owner_id)
    request = ReplenishmentRequest(
        org_id=owner_id,
        product_id=product.id,
        requested_by_user_id=actor.id,
        request_method=REQUEST_METHOD_BUTTON,
        source_device_id=device_id,
        source_event_id=source_event_id,
        requested_qty=requested_qty if requested_qty is not None else product.standard_order_qty,
        location=product.location,
        notes=notes,
        status="PENDING",
        priority=priority,
        created_at=event_time,
        updated_at=utcnow(),
    )
    db.session.add(request)
    db.session.commit()
    return request


def wake_sleeping_tags(client, store_id: str) -> dict:
    """
    Wake every MIX-firmware tag in the store.

    Never raises: the outcome is returned and logged.
    """
    try:
        macs = [tag.mac for tag in client.iter_esl_tags(store_id) if tag.needs_wakeup]
        if not macs:
            return {"requested": 0, "status": "none"}
        result = client.wakeup_esl_tags(store_id, macs)
    except SyncError as exc:
        current_app.logger.warning("ESL tag wake-up failed for store %s: %s", store_id, exc)
        return {"requested": 0, "status": "error", "error": str(exc)}
    except Exception as exc:
        current_app.logger.exception("ESL tag wake-up for store %s raised unexpectedly", store_id)
        return {"requested": 0, "status": "error", "error": str(exc) or type(exc).__name__}

    if result.not_needed:
        current_app.logger.info("ESL tags in store %s do not need waking", store_id)
        return {"requested": result.requested, "status": "not_needed"}
    current_app.logger.info("Woke %s MIX firmware tags in store %s", result.requested, store_id)
    return {"requested": result.requested, "status": "woken"}


def process_button_event(owner_id: int, event: ButtonEvent, result: ReconcileResult) -> None:
    """Apply one polled event to the tenant; outcome recorded on `result`."""
    device_id = event.label_mac

    if not event.goods_id:
        result.skip("unbound")
        return

    if event.event_time is None:
        result.errors.append({
            "device": device_id,
            "error": f"Unparseable event time: {event.raw_time!r}",
        })
        return

    product = scoped_query(Product, owner_id).filter(
        Product.cloud_goods_id == event.goods_id
    ).first()
    if product is None:
        result.skip("not synced")
        return

    if find_duplicate_request(
        owner_id, product.id, device_id, event.event_time, source_event_id=event.event_id,
    ):
        result.skip("duplicate")
        return

    gateway = event.gateway_mac or "unknown"
    request = _create_button_request(
        owner_id,
        product,
        device_id,
        event.event_time,
        source_event_id=event.event_id,
        notes=(
            f"ESL button pressed at {format_cloud_datetime(event.event_time)} UTC. "
            f"Gateway: {gateway}"
        ),
    )
    result.processed += 1
    result.created_request_ids.append(request.id)


def reconcile(
    owner_id: int,
    store_id: str,
    window_start: datetime,
    window_end: datetime,
    *,
    client,
    wake_tags: bool = True,
) -> ReconcileResult:
    """
    Turn the store's button presses in [window_start, window_end] into requests.

    Returns a partial-success summary; raises only when the event log itself
    cannot be fetched.
    """
    result = ReconcileResult()

    if wake_tags:
        result.wake = wake_sleeping_tags(client, store_id)

    events = client.get_button_events(store_id, window_start, window_end)
    events.sort(key=lambda e: (e.event_time is None, e.event_time or datetime.min))

    for event in events:
        try:
            process_button_event(owner_id, event, result)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to process button event from %s for org %s", event.label_mac, owner_id
            )
            result.errors.append({"device": event.label_mac, "error": str(exc)})

    current_app.logger.info(
        "Button reconcile org=%s store=%s events=%s processed=%s skipped=%s errors=%s",
        owner_id, store_id, len(events), result.processed, result.skipped, len(result.errors),
    )
    return result


def reconcile_button_events(
    owner_id: int,
    window: timedelta | None = None,
    *,
    client,
    now: datetime | None = None,
    wake_tags: bool = True,
) -> ReconcileResult:
    """Reconcile the trailing window (default BUTTON_LOOKBACK_MINUTES) for one tenant."""
    now = now or utcnow()
    if window is None:
        window = timedelta(minutes=current_app.config.get("BUTTON_LOOKBACK_MINUTES", 60))

    store_id = get_default_store_id(client, owner_id)
    if not store_id:
        raise TransientError("No ESL cloud store configured")
    return reconcile(owner_id, store_id, now - window, now, client=client, wake_tags=wake_tags)


def reconcile_all_tenants(
    *,
    client,
    window: timedelta | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Cron entry point: reconcile every active organization.

    Tags are woken once per store, not once per tenant. One tenant's
    failure is recorded and the rest still run.
    """
    now = now or utcnow()
    if window is None:
        window = timedelta(minutes=current_app.config.get("BUTTON_LOOKBACK_MINUTES", 60))

    results = {}
    woken_stores = set()
    for owner_id in get_active_org_ids():
        try:
            store_id = get_default_store_id(client, owner_id)
            if not store_id:
                results[owner_id] = {"error": "No ESL cloud store configured"}
                continue
            wake = store_id not in woken_stores
            woken_stores.add(store_id)
            outcome = reconcile(owner_id, store_id, now - window, now, client=client, wake_tags=wake)
            results[owner_id] = outcome.to_dict()
        except SyncError as exc:
            db.session.rollback()
            current_app.logger.warning("Button reconcile failed for org %s: %s", owner_id, exc)
            results[owner_id] = {"error": str(exc)}
    return results


def _find_product_for_tag(tag_mac: str, client) -> Product | None:
    """Local lookup by bound label / device shadow, then the cloud tag's goods id."""
    product = db.session.query(Product).filter(Product.bound_label_mac == tag_mac).first()
    if product:
        return product

    shadow = db.session.query(DeviceStatus).filter(
        DeviceStatus.device_id == tag_mac,
        DeviceStatus.bound_goods_id.isnot(None),
    ).first()
    if shadow:
        product = scoped_query(Product, shadow.org_id).filter(
            Product.cloud_goods_id == shadow.bound_goods_id
        ).first()
        if product:
            return product

    try:
        tag = client.get_esl_tag(tag_mac)
    except SyncError as exc:
        current_app.logger.warning("Cloud lookup for tag %s failed: %s", tag_mac, exc)
        return None
    if not tag.goods_id:
        return None
    return db.session.query(Product).filter(Product.cloud_goods_id == tag.goods_id).first()


def handle_button_webhook(payload: dict, *, client) -> dict:
    """
    Process one pushed button event.

    Payload: {mac, buttonId, buttonEvent ("01" short / "02" long),
    buttonTime ("YYYY-MM-DD HH:MM:SS"), opcode}. Never raises for bad input;
    the returned dict carries status "success", "duplicate", "skipped" or
    "error" so the caller can always answer 200.
    """
    if not isinstance(payload, dict) or not payload.get("mac"):
        return {"status": "error", "message": "Missing required field: mac"}

    tag_mac = device_mac(payload.get("mac"))
    is_long_press = str(payload.get("buttonEvent") or "") == LONG_PRESS

    try:
        event_time = parse_cloud_datetime(payload.get("buttonTime")) or utcnow()
    except ValueError:
        return {"status": "error", "message": f"Invalid buttonTime: {payload.get('buttonTime')!r}", "mac": tag_mac}

    product = _find_product_for_tag(tag_mac, client)
    if product is None:
        current_app.logger.warning("No product bound to ESL tag %s; webhook skipped", tag_mac)
        return {"status": "skipped", "message": f"No product bound to ESL tag {tag_mac}", "mac": tag_mac}

    owner_id = product.org_id
    existing = find_duplicate_request(owner_id, product.id, tag_mac, event_time)
    if existing:
        return {"status": "duplicate", "request_id": existing.id, "mac": tag_mac}

    if is_long_press:
        priority = "URGENT"
        qty = product.standard_order_qty * 2 if product.standard_order_qty else 50
    else:
        priority = "NORMAL"
        qty = product.standard_order_qty or 10

    press = "long" if is_long_press else "short"
    try:
        request = _create_button_request(
            owner_id,
            product,
            tag_mac,
            event_time,
            source_event_id=None,
            priority=priority,
            requested_qty=qty,
            notes=(
                f"ESL button {press} press at {format_cloud_datetime(event_time)} UTC "
                f"(button {payload.get('buttonId') or 'n/a'})"
            ),
        )
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create request from ESL webhook for %s", tag_mac)
        return {"status": "error", "message": str(exc), "mac": tag_mac}

    current_app.logger.info(
        "ESL webhook created request %s (%s) for product %s", request.id, priority, product.id
    )
    return {
        "status": "success",
        "request_id": request.id,
        "product_id": product.id,
        "priority": priority,
        "requested_qty": qty,
        "mac": tag_mac,
    }

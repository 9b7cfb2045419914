# Overview: Service-layer operations for tag bindings; cloud-first bind/unbind with local shadow cache.

"""
Binding Service (tag <-> product)

WHY: A binding tells a tag which product to display. The cloud is the
source of truth; DeviceStatus.bound_* and Product.bound_label_mac are a
local cache of it.

COMMIT ORDER (never reversed):
1. Validate input (MAC canonical, goods id / template id present)
2. Cloud call
3. Local update, only after the cloud confirmed

FAILURE HANDLING:
- Cloud TransientError: local state untouched; a device/bind (or unbind)
  queue item is enqueued and the result status is "queued"
- A direct bind or unbind that reaches the cloud retires any bind/unbind
  still pending for the tag, and a newly queued one retires the opposite
- Other cloud errors propagate; local state untouched
- Local write failure after cloud success: logged, reported as
  local_synced=False, never retried inline. reconcile_binding() re-derives
  local state from the cloud binding query.

CONCURRENCY: bind and unbind of the same MAC never interleave inside one
process (per-MAC KeyedLock). The sync queue uses the same key.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import NotFoundError, TransientError, ValidationError
from ..models import DeviceStatus, Product
from .concurrency import entity_key, entity_locks
from .esl_cloud import CloudBinding
from .identity_service import validate_mac
from .sync_queue_service import enqueue, register_handler, supersede_pending
from .tenant_service import scoped_query
from shelfsync.time_utils import utcnow


BIND_SIDES = ("A", "B")


def _lock_key(mac: str) -> str:
    return entity_key("device", mac)


def _validate_bind_input(mac, goods_id, template_id, side) -> str:
    canonical = validate_mac(mac)
    if not goods_id:
        raise ValidationError("goods_id is required", value=goods_id)
    if not template_id:
        raise ValidationError("template_id is required", value=template_id)
    if side not in BIND_SIDES:
        raise ValidationError(f"side must be one of {BIND_SIDES}", value=side)
    return canonical


def _get_or_create_shadow(owner_id: int, mac: str) -> DeviceStatus:
    shadow = scoped_query(DeviceStatus, owner_id).filter(DeviceStatus.device_id == mac).first()
    if shadow is None:
        shadow = DeviceStatus(org_id=owner_id, device_id=mac, is_online=False)
        db.session.add(shadow)
    return shadow


def apply_local_bind(owner_id: int, mac: str, goods_id: str, template_id: str | None) -> bool:
    """
    Mirror a confirmed cloud binding locally. Returns False if the write failed.

    Any product previously showing on this tag loses its linkage.
    """
    now = utcnow()
    try:
        shadow = _get_or_create_shadow(owner_id, mac)
        shadow.bound_flag = True
        shadow.bound_goods_id = goods_id
        shadow.bound_template_id = template_id
        shadow.bound_at = now

        stale = scoped_query(Product, owner_id).filter(
            Product.bound_label_mac == mac,
            db.or_(Product.cloud_goods_id.is_(None), Product.cloud_goods_id != goods_id),
        ).all()
        for product in stale:
            product.bound_label_mac = None
            product.bound_at = None

        product = scoped_query(Product, owner_id).filter(Product.cloud_goods_id == goods_id).first()
        if product is not None:
            product.bound_label_mac = mac
            product.bound_at = now
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Cloud bound %s to goods %s but the local update failed; reconcile will repair it", mac, goods_id
        )
        return False


def apply_local_unbind(owner_id: int, mac: str) -> bool:
    try:
        shadow = scoped_query(DeviceStatus, owner_id).filter(DeviceStatus.device_id == mac).first()
        if shadow is not None:
            shadow.bound_flag = False
            shadow.bound_goods_id = None
            shadow.bound_template_id = None
            shadow.bound_at = None
        for product in scoped_query(Product, owner_id).filter(Product.bound_label_mac == mac).all():
            product.bound_label_mac = None
            product.bound_at = None
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Cloud unbound %s but the local update failed; reconcile will repair it", mac
        )
        return False


def _bind_locked(owner_id, mac, goods_id, template_id, side, *, store_id, client) -> dict:
    client.bind_manual(store_id, mac, goods_id, template_id, side=side)
    local_synced = apply_local_bind(owner_id, mac, goods_id, template_id)
    return {
        "status": "bound",
        "mac": mac,
        "goods_id": goods_id,
        "template_id": template_id,
        "local_synced": local_synced,
    }


def _unbind_locked(owner_id, mac, *, store_id, client) -> dict:
    client.unbind(store_id, mac)
    local_synced = apply_local_unbind(owner_id, mac)
    return {"status": "unbound", "mac": mac, "local_synced": local_synced}


def _retire_queued(owner_id: int, mac: str, operation: str) -> None:
    """A direct bind or unbind overrides whatever was still queued for the tag."""
    supersede_pending(
        owner_id, "device", mac, ["bind", "unbind"],
        reason=f"Superseded by a direct {operation}",
    )


def bind_tag(
    owner_id: int,
    mac: str,
    goods_id: str,
    template_id: str,
    *,
    store_id: str,
    client,
    side: str = "A",
    queue_on_transient: bool = True,
) -> dict:
    """
    Bind a tag to a product's goods record with a display template.

    Returns {status: "bound"|"queued", mac, goods_id, template_id, local_synced}.
    """
    mac = _validate_bind_input(mac, goods_id, template_id, side)
    goods_id = str(goods_id)
    template_id = str(template_id)

    with entity_locks.hold(_lock_key(mac)):
        try:
            result = _bind_locked(owner_id, mac, goods_id, template_id, side, store_id=store_id, client=client)
        except TransientError as exc:
            if not queue_on_transient:
                raise
            item = enqueue(owner_id, "device", mac, "bind", {
                "goods_id": goods_id,
                "template_id": template_id,
                "side": side,
            })
            current_app.logger.warning("Bind of %s deferred to sync queue (item %s): %s", mac, item.id, exc)
            return {
                "status": "queued",
                "mac": mac,
                "goods_id": goods_id,
                "template_id": template_id,
                "local_synced": False,
                "queue_item_id": item.id,
            }
        _retire_queued(owner_id, mac, "bind")
        return result


def unbind_tag(
    owner_id: int,
    mac: str,
    *,
    store_id: str,
    client,
    queue_on_transient: bool = True,
) -> dict:
    mac = validate_mac(mac)
    with entity_locks.hold(_lock_key(mac)):
        try:
            result = _unbind_locked(owner_id, mac, store_id=store_id, client=client)
        except TransientError as exc:
            if not queue_on_transient:
                raise
            item = enqueue(owner_id, "device", mac, "unbind", {})
            current_app.logger.warning("Unbind of %s deferred to sync queue (item %s): %s", mac, item.id, exc)
            return {"status": "queued", "mac": mac, "local_synced": False, "queue_item_id": item.id}
        _retire_queued(owner_id, mac, "unbind")
        return result


def batch_bind(owner_id: int, bindings: list[dict], *, store_id: str, client) -> dict:
    """
    Bind many tags, each member committed cloud-first on its own.

    `bindings` items: {mac, goods_id, template_id, side?}. Never all-or-nothing:
    returns {processed, queued, skipped, errors[], results[]}.
    """
    summary = {"processed": 0, "queued": 0, "skipped": 0, "errors": [], "results": []}
    for entry in bindings:
        mac = entry.get("mac") if isinstance(entry, dict) else None
        try:
            result = bind_tag(
                owner_id,
                mac,
                entry.get("goods_id"),
                entry.get("template_id"),
                side=entry.get("side") or "A",
                store_id=store_id,
                client=client,
            )
        except ValidationError as exc:
            summary["skipped"] += 1
            summary["errors"].append({"mac": mac, "error": str(exc), "type": type(exc).__name__})
            continue
        except Exception as exc:
            db.session.rollback()
            current_app.logger.warning("Batch bind member %s failed: %s", mac, exc)
            summary["errors"].append({"mac": mac, "error": str(exc), "type": type(exc).__name__})
            continue

        summary["results"].append(result)
        if result["status"] == "queued":
            summary["queued"] += 1
        else:
            summary["processed"] += 1
    return summary


def reconcile_binding(owner_id: int, mac: str, *, store_id: str, client) -> dict:
    """Re-derive the local binding cache for one tag from the cloud."""
    mac = validate_mac(mac)
    with entity_locks.hold(_lock_key(mac)):
        binding: CloudBinding | None = client.check_binding(store_id, mac)
        if binding and binding.goods_id:
            ok = apply_local_bind(owner_id, mac, binding.goods_id, binding.template_id)
            return {"mac": mac, "bound": True, "goods_id": binding.goods_id, "local_synced": ok}
        ok = apply_local_unbind(owner_id, mac)
        return {"mac": mac, "bound": False, "goods_id": None, "local_synced": ok}


def reconcile_bindings(owner_id: int, *, store_id: str, client) -> dict:
    """Re-derive every known tag's binding; returns {processed, skipped, errors[]}."""
    summary = {"processed": 0, "skipped": 0, "errors": []}
    macs = [row.device_id for row in scoped_query(DeviceStatus, owner_id).order_by(DeviceStatus.id).all()]
    for mac in macs:
        try:
            reconcile_binding(owner_id, mac, store_id=store_id, client=client)
            summary["processed"] += 1
        except ValidationError as exc:
            summary["skipped"] += 1
            summary["errors"].append({"mac": mac, "error": str(exc)})
        except Exception as exc:
            db.session.rollback()
            current_app.logger.warning("Binding reconcile for %s failed: %s", mac, exc)
            summary["errors"].append({"mac": mac, "error": str(exc)})
    return summary


# ----------------------------------------------------------------------
# Sync queue handlers (dispatch already holds the entity lock)
# ----------------------------------------------------------------------

@register_handler("device", "bind")
def _handle_bind(item, *, client, store_id):
    payload = item.payload or {}
    goods_id = payload.get("goods_id")
    template_id = payload.get("template_id")
    side = payload.get("side") or "A"
    mac = _validate_bind_input(item.entity_id, goods_id, template_id, side)
    result = _bind_locked(item.org_id, mac, str(goods_id), str(template_id), side, store_id=store_id, client=client)
    if not result["local_synced"]:
        current_app.logger.warning("Queued bind of %s reached the cloud but not the local cache", mac)


@register_handler("device", "unbind")
def _handle_unbind(item, *, client, store_id):
    mac = validate_mac(item.entity_id)
    try:
        _unbind_locked(item.org_id, mac, store_id=store_id, client=client)
    except NotFoundError:
        # Already gone in the cloud; the desired end state holds
        apply_local_unbind(item.org_id, mac)

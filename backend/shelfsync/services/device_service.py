# Overview: Service-layer operations for ESL tags; cloud import, status sync and metadata edits.

"""
Device Service - ESL tag shadows

WHY: DeviceStatus rows are the local view of the cloud's tags (online,
battery, binding). Sync overwrites them from the cloud; people may only
edit name and location.

RULES:
- device_id is lower-case canonical MAC
- Tags missing from the cloud are marked offline, never deleted
  (products may still reference them)
- register_device imports into the cloud first; "already exists" counts
  as success
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import CloudRejectedError, ConflictError, NotFoundError
from ..models import DeviceStatus
from .identity_service import match_devices, validate_mac
from .tenant_service import require_owned, scoped_query
from shelfsync.time_utils import utcnow


IMPORT_OK_RESULTS = ("success", "exist", "exists", "already exists")


def register_device(
    owner_id: int,
    mac: str,
    *,
    store_id: str,
    client,
    device_type: str | None = None,
    name: str | None = None,
    location: str | None = None,
) -> DeviceStatus:
    mac = validate_mac(mac)

    existing = scoped_query(DeviceStatus, owner_id).filter(DeviceStatus.device_id == mac).first()
    if existing:
        raise ConflictError(f"Device {mac} is already registered")

    results = client.import_esl_tags(store_id, [mac])
    outcome = (results.get(mac) or "success").strip().lower()
    if not any(ok in outcome for ok in IMPORT_OK_RESULTS):
        raise CloudRejectedError(f"Cloud refused to import tag {mac}: {outcome}", value=mac)

    device = DeviceStatus(
        org_id=owner_id,
        device_id=mac,
        device_type=device_type,
        name=name,
        location=location,
        is_online=False,
        cloud_store_id=store_id,
    )
    db.session.add(device)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(f"Device {mac} is already registered") from exc
    return device


def _apply_tag(device: DeviceStatus, tag, now) -> None:
    device.is_online = tag.is_online
    device.battery_level = tag.battery
    device.cloud_store_id = tag.store_id or device.cloud_store_id
    device.last_sync_at = now
    if tag.firmware and not device.device_type:
        device.device_type = tag.firmware


def sync_device_status(owner_id: int, *, store_id: str, client, discover: bool = False) -> dict:
    """
    Refresh every shadow of this tenant from the store's tag listing.

    Returns {processed, offline, discovered, skipped, errors[]}.
    """
    tags = list(client.iter_esl_tags(store_id))
    devices = scoped_query(DeviceStatus, owner_id).order_by(DeviceStatus.id).all()
    now = utcnow()

    summary = {"processed": 0, "offline": 0, "discovered": 0, "skipped": 0, "errors": []}
    claimed = set()

    for match in match_devices(devices, tags, local_key=lambda d: d.device_id, remote_key=lambda t: t.mac):
        device = match.local
        if match.matched:
            claimed.add(match.remote.mac)
            _apply_tag(device, match.remote, now)
            summary["processed"] += 1
            continue

        # Not in the listing: confirm with a direct lookup before marking offline
        try:
            tag = client.get_esl_tag(device.device_id, store_id=store_id)
            _apply_tag(device, tag, now)
            summary["processed"] += 1
        except NotFoundError:
            device.is_online = False
            device.last_sync_at = now
            summary["offline"] += 1
        except Exception as exc:
            current_app.logger.warning("Status sync for %s failed: %s", device.device_id, exc)
            summary["errors"].append({"device": device.device_id, "error": str(exc)})

    if discover:
        for tag in tags:
            if tag.mac in claimed or not tag.mac:
                continue
            shadow = DeviceStatus(org_id=owner_id, device_id=tag.mac, device_type=tag.firmware)
            _apply_tag(shadow, tag, now)
            shadow.bound_flag = tag.is_bound
            shadow.bound_goods_id = tag.goods_id if tag.is_bound else None
            db.session.add(shadow)
            summary["discovered"] += 1

    db.session.commit()
    current_app.logger.info(
        "Device sync org=%s processed=%s offline=%s discovered=%s errors=%s",
        owner_id, summary["processed"], summary["offline"], summary["discovered"], len(summary["errors"]),
    )
    return summary


def update_device_metadata(
    owner_id: int,
    device_id: int,
    *,
    name: str | None = None,
    location: str | None = None,
) -> DeviceStatus:
    """Name and location are the only user-editable fields."""
    device = require_owned(DeviceStatus, device_id, owner_id)
    if name is not None:
        device.name = name.strip() or None
    if location is not None:
        device.location = location.strip() or None
    db.session.commit()
    return device

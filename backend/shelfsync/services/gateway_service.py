# Overview: Service-layer operations for gateways; registration, deletion and status reconciliation.

"""
Gateway Service

WHY: A gateway only works once the cloud knows it. Local rows therefore
follow the cloud, never lead it:
- register: local duplicate check -> cloud add -> local insert
- delete: cloud delete -> local delete (or cloud says it's already gone,
  or the operator forces it)

IDENTITY: Gateway.mac_address is UPPER canonical. Cloud listings are
matched exact first, then by unambiguous 6-char suffix.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Gateway
from .identity_service import fuzzy_mac_match, match_devices, validate_mac
from .tenant_service import require_owned, scoped_query
from shelfsync.time_utils import utcnow


def list_gateways(owner_id: int) -> list[Gateway]:
    return scoped_query(Gateway, owner_id).order_by(Gateway.id).all()


def register_gateway(owner_id: int, name: str, mac: str, *, store_id: str, client) -> Gateway:
    """
    Register a gateway in the cloud, then record it locally.

    Raises ValidationError (bad MAC / name), ConflictError (already known
    locally, or a concurrent insert won), or the cloud's error unchanged.
    """
    mac = validate_mac(mac, upper=True)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Gateway name is required", value=name)

    existing = scoped_query(Gateway, owner_id).filter(Gateway.mac_address == mac).first()
    if existing:
        raise ConflictError(f"Gateway {mac} is already registered")

    client.add_gateway(store_id, mac, name)

    gateway = Gateway(org_id=owner_id, name=name, mac_address=mac, is_online=False)
    db.session.add(gateway)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(f"Gateway {mac} is already registered") from exc

    current_app.logger.info("Registered gateway %s for org %s", mac, owner_id)
    return gateway


def delete_gateway(
    owner_id: int,
    gateway_id: int,
    *,
    store_id: str,
    client,
    force: bool = False,
) -> dict:
    """
    Delete a gateway in the cloud, then locally.

    Without force, a cloud failure leaves the local row in place and the
    error propagates. With force, the local row is removed regardless.
    """
    gateway = require_owned(Gateway, gateway_id, owner_id)
    mac = gateway.mac_address
    cloud_deleted = False
    cloud_error = None

    try:
        remote = fuzzy_mac_match(mac, client.list_gateways(store_id), key=lambda g: g.mac)
        if remote is None:
            current_app.logger.info("Gateway %s not found in cloud; deleting locally", mac)
        else:
            client.delete_gateway(store_id, remote.cloud_id)
            cloud_deleted = True
    except NotFoundError:
        current_app.logger.info("Gateway %s already absent from cloud", mac)
    except Exception as exc:
        if not force:
            raise
        cloud_error = str(exc)
        current_app.logger.warning("Cloud delete of gateway %s failed, forcing local delete: %s", mac, exc)

    db.session.delete(gateway)
    db.session.commit()
    return {
        "id": gateway_id,
        "mac_address": mac,
        "cloud_deleted": cloud_deleted,
        "local_deleted": True,
        "forced": bool(force and cloud_error),
        "cloud_error": cloud_error,
    }


def reconcile_gateway_status(owner_id: int, *, store_id: str, client) -> list[dict]:
    """
    Refresh is_online for every local gateway from the cloud listing.

    Unmatched gateways are marked offline.
    """
    remotes = client.list_gateways(store_id)
    gateways = list_gateways(owner_id)
    now = utcnow()

    report = []
    for match in match_devices(
        gateways, remotes, local_key=lambda g: g.mac_address, remote_key=lambda r: r.mac,
    ):
        gateway = match.local
        if match.matched:
            gateway.is_online = match.remote.is_online
            if match.remote.is_online:
                gateway.last_seen_at = now
        else:
            gateway.is_online = False
        report.append({
            "id": gateway.id,
            "mac_address": gateway.mac_address,
            "name": gateway.name,
            "is_online": gateway.is_online,
            "cloud_id": match.remote.cloud_id if match.matched else None,
            "matched_by": match.matched_by,
        })
    db.session.commit()
    return report

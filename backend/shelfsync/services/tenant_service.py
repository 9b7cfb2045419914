"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

WHY: Every owned table (gateways, device_status, products, replenishment
requests, sync_queue) carries org_id. Centralizing the filter keeps one
tenant from ever reading or mutating another tenant's rows.

SECURITY INVARIANTS:
1. Every service query on an owned table goes through scoped_query/require_owned
2. A row owned by another tenant is indistinguishable from a missing row
   (same exception, same message)

USAGE:
    from shelfsync.services.tenant_service import scoped_query, require_owned

    devices = scoped_query(DeviceStatus, owner_id).filter_by(is_online=True).all()
    product = require_owned(Product, product_id, owner_id)
"""

from ..extensions import db
from ..errors import NotFoundError
from ..models import Organization


class TenantAccessError(NotFoundError):
    """Raised when a record is missing or owned by a different tenant."""
    pass


def scoped_query(model, owner_id: int):
    """
    Base query for `model` restricted to one tenant.

    Args:
        model: SQLAlchemy model class (must have an org_id column)
        owner_id: Organization ID

    Usage:
        products = scoped_query(Product, owner_id).filter_by(is_active=True).all()
    """
    if owner_id is None:
        raise TenantAccessError("Tenant context is required")
    return db.session.query(model).filter(model.org_id == owner_id)


def require_owned(model, record_id, owner_id: int):
    """Fetch one row by primary key, or raise TenantAccessError."""
    record = scoped_query(model, owner_id).filter(model.id == record_id).first()
    if record is None:
        raise TenantAccessError(f"{model.__name__} {record_id} not found")
    return record


def validate_org_active(owner_id: int) -> Organization:
    org = db.session.get(Organization, owner_id)
    if not org:
        raise TenantAccessError("Organization not found")
    if not org.is_active:
        raise TenantAccessError("Organization is not active")
    return org


def get_active_org_ids() -> list[int]:
    rows = db.session.query(Organization.id).filter(
        Organization.is_active.is_(True)
    ).order_by(Organization.id).all()
    return [row[0] for row in rows]

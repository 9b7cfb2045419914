# Overview: Service-layer operations for pushing products to the ESL cloud as goods records.

"""
Product Sync Service

WHY: Tags can only display a product once the cloud has a goods record for
it. Every push goes through the sync queue so a cloud outage delays the
change instead of losing it.

RULES:
- Cloud goods id = str(product.id), fixed for the life of the product
- create when the product has no cloud_goods_id yet, update otherwise
- cloud_synced* fields are written only after the cloud confirmed
- A terminal queue failure records cloud_sync_error on the product
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import ConflictError, NotFoundError
from ..models import Product
from .sync_queue_service import dispatch, enqueue, register_handler
from .tenant_service import TenantAccessError, require_owned, scoped_query
from shelfsync.time_utils import utcnow


def goods_payload(product: Product) -> dict:
    """Cloud goods record for a product."""
    price = None
    if product.price_cents is not None:
        price = f"{product.price_cents / 100:.2f}"
    return {
        "id": str(product.id),
        "name": product.name,
        "price": price,
        "coding": product.sku,
        "PartNo": product.sku,
        "specification": product.description or "",
        "quantity": str(product.standard_order_qty) if product.standard_order_qty is not None else "",
        "location": product.location or "",
    }


def _load_product(item) -> Product:
    product = db.session.get(Product, int(item.entity_id))
    if product is None or product.org_id != item.org_id:
        raise NotFoundError(f"Product {item.entity_id} not found")
    return product


def _mark_synced(product: Product, goods_id: str) -> None:
    product.cloud_goods_id = goods_id
    product.cloud_synced = True
    product.cloud_synced_at = utcnow()
    product.cloud_sync_error = None
    db.session.commit()


def _record_sync_error(item, exc) -> None:
    product = db.session.get(Product, int(item.entity_id))
    if product is None or product.org_id != item.org_id:
        return
    product.cloud_synced = False
    product.cloud_sync_error = str(exc) or type(exc).__name__


@register_handler("product", "create", on_failure=_record_sync_error)
def _handle_create(item, *, client, store_id):
    product = _load_product(item)
    payload = goods_payload(product)
    try:
        client.add_goods(store_id, payload)
    except ConflictError:
        # Goods record survived an earlier attempt whose local write was lost
        client.update_goods(store_id, payload)
    _mark_synced(product, payload["id"])


@register_handler("product", "update", on_failure=_record_sync_error)
def _handle_update(item, *, client, store_id):
    product = _load_product(item)
    payload = goods_payload(product)
    client.update_goods(store_id, payload)
    _mark_synced(product, payload["id"])


@register_handler("product", "delete")
def _handle_delete(item, *, client, store_id):
    product = _load_product(item)
    goods_id = product.cloud_goods_id or str(product.id)
    try:
        client.delete_goods(store_id, [goods_id])
    except NotFoundError:
        current_app.logger.info("Goods %s already absent from cloud", goods_id)


def sync_products(owner_id: int, product_ids: list[int] | None = None, *, store_id: str, client) -> dict:
    """
    Push products to the cloud now.

    Without product_ids: every active product of the owner not yet synced.
    With product_ids: exactly those (other tenants' ids are skipped).

    Returns {processed, skipped, errors[]}; failed pushes stay in the queue
    for the cron dispatcher.
    """
    summary = {"processed": 0, "skipped": 0, "errors": []}

    if product_ids is None:
        products = scoped_query(Product, owner_id).filter(
            Product.is_active.is_(True),
            Product.cloud_synced.is_(False),
        ).order_by(Product.id).all()
    else:
        products = []
        for product_id in product_ids:
            try:
                products.append(require_owned(Product, product_id, owner_id))
            except TenantAccessError as exc:
                summary["skipped"] += 1
                summary["errors"].append({"product_id": product_id, "error": str(exc)})

    now = utcnow()
    item_ids = []
    for product in products:
        if not product.is_active:
            summary["skipped"] += 1
            continue
        operation = "update" if product.cloud_goods_id else "create"
        item = enqueue(owner_id, "product", product.id, operation, now=now)
        if item.scheduled_at > now:
            # Explicit sync overrides any backoff left from earlier attempts
            item.scheduled_at = now
            db.session.commit()
        item_ids.append(item.id)

    result = dispatch(client, store_id=store_id, owner_id=owner_id, item_ids=item_ids, now=now)
    summary["processed"] += result["succeeded"]
    summary["skipped"] += result["skipped"]
    summary["errors"].extend(result["errors"])

    current_app.logger.info(
        "Product sync org=%s processed=%s skipped=%s errors=%s",
        owner_id, summary["processed"], summary["skipped"], len(summary["errors"]),
    )
    return summary


def queue_product_delete(owner_id: int, product_id: int):
    """
    Enqueue removal of a product's goods record. The local row is kept.

    Raises TenantAccessError when the product is not the owner's.
    """
    product = require_owned(Product, product_id, owner_id)
    goods_id = product.cloud_goods_id or str(product.id)
    product.cloud_synced = False
    return enqueue(owner_id, "product", product_id, "delete", {"goods_id": goods_id})


# Overview: Service-layer operations for the cloud sync queue; durable, retryable propagation of local changes.

"""
Sync Queue Service

WHY: Local mutations (product edits, tag bindings) must reach the ESL cloud
even when the cloud is slow or down. Each mutation becomes a durable
sync_queue row that cron-driven dispatch works through.

STATE MACHINE:
    pending -> processing -> success
                          -> pending   (transient failure, retry_count < max_retries)
                          -> failed    (permanent failure, or retries exhausted)
    failed  -> pending                 (manual retry_failed only)

RULES:
- Claims are compare-and-swap UPDATEs (WHERE status='pending'), so two
  overlapping dispatch runs never process the same item
- An item is not claimed while another item for the same entity is
  processing, and the in-process entity lock is held for the whole run
- TransientError / AuthenticationError: retry with exponential backoff
- ValidationError / NotFoundError / ConflictError: failed immediately
- last_error always records the most recent failure
- A pending device bind is superseded (marked success with a note) by a
  newer unbind of the same tag, and the other way round
- An item left in processing longer than SYNC_QUEUE_PROCESSING_TIMEOUT_SECONDS
  counts as a transient failure at the start of the next dispatch
- Without an explicit store_id, each item runs against its tenant's store

HANDLERS:
Handlers are registered per (entity_type, operation) with register_handler.
Product handlers live in product_sync_service, device bind/unbind handlers
in binding_service.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable

from flask import current_app
from sqlalchemy import exists, false, func, update
from sqlalchemy.orm import aliased

from ..extensions import db
from ..errors import PERMANENT_ERRORS, RETRYABLE_ERRORS, TransientError, ValidationError
from ..models import SyncQueueItem
from ..models.sync import (
    SYNC_ENTITY_TYPES,
    SYNC_OPERATIONS,
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PENDING,
    SYNC_STATUS_PROCESSING,
    SYNC_STATUS_SUCCESS,
)
from .concurrency import entity_key, entity_locks
from .token_service import get_default_store_id
from shelfsync.time_utils import to_utc_z, utcnow


_HANDLERS: dict[tuple[str, str], Callable] = {}
_FAILURE_HOOKS: dict[tuple[str, str], Callable] = {}

# Operations that cancel each other's pending items
_OPPOSITE_OPERATIONS = {
    ("device", "bind"): "unbind",
    ("device", "unbind"): "bind",
}


def register_handler(entity_type: str, operation: str, *, on_failure: Callable | None = None):
    """
    Decorator registering the cloud call for one (entity_type, operation).

    The handler is called as handler(item, client=..., store_id=...) and
    signals failure by raising from the error taxonomy. on_failure(item, exc)
    runs once the item reaches `failed`.
    """
    def decorator(func):
        _HANDLERS[(entity_type, operation)] = func
        if on_failure is not None:
            _FAILURE_HOOKS[(entity_type, operation)] = on_failure
        return func
    return decorator


def _load_builtin_handlers() -> None:
    # Importing registers the handlers
    from . import binding_service, product_sync_service  # noqa: F401


def _config(key: str, default):
    return current_app.config.get(key, default)


def backoff_seconds(retry_count: int, *, base: int | None = None, cap: int | None = None) -> int:
    """base * 2**(retry_count - 1), capped. retry_count 1 -> base."""
    if base is None:
        base = _config("SYNC_QUEUE_BACKOFF_BASE_SECONDS", 30)
    if cap is None:
        cap = _config("SYNC_QUEUE_BACKOFF_CAP_SECONDS", 3600)
    exponent = max(retry_count, 1) - 1
    return min(base * (2 ** exponent), cap)


def enqueue(
    owner_id: int,
    entity_type: str,
    entity_id,
    operation: str,
    payload: dict | None = None,
    *,
    max_retries: int | None = None,
    now=None,
) -> SyncQueueItem:
    """
    Queue a change for propagation.

    A still-pending item for the same (owner, entity, operation) absorbs the
    new payload instead of creating a duplicate.
    """
    if entity_type not in SYNC_ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}", value=entity_type)
    if operation not in SYNC_OPERATIONS:
        raise ValidationError(f"Unknown sync operation: {operation}", value=operation)

    now = now or utcnow()
    entity_id = str(entity_id)

    opposite = _OPPOSITE_OPERATIONS.get((entity_type, operation))
    if opposite:
        supersede_pending(
            owner_id, entity_type, entity_id, [opposite],
            reason=f"Superseded by a later {operation}", now=now,
        )

    existing = db.session.query(SyncQueueItem).filter_by(
        org_id=owner_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        status=SYNC_STATUS_PENDING,
    ).first()
    if existing:
        existing.payload = payload
        existing.updated_at = now
        db.session.commit()
        return existing

    item = SyncQueueItem(
        org_id=owner_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        payload=payload,
        status=SYNC_STATUS_PENDING,
        retry_count=0,
        max_retries=max_retries if max_retries is not None else _config("SYNC_QUEUE_MAX_RETRIES", 3),
        scheduled_at=now,
        created_at=now,
        updated_at=now,
    )
    db.session.add(item)
    db.session.commit()
    return item


def supersede_pending(
    owner_id: int,
    entity_type: str,
    entity_id,
    operations: list[str],
    *,
    reason: str,
    now=None,
) -> int:
    """
    Retire still-pending items whose intent a newer action replaced.

    They end as success with `reason` in last_error, so neither dispatch
    nor retry_failed replays them. Returns the number of items retired.
    """
    now = now or utcnow()
    result = db.session.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.org_id == owner_id,
            SyncQueueItem.entity_type == entity_type,
            SyncQueueItem.entity_id == str(entity_id),
            SyncQueueItem.operation.in_(operations),
            SyncQueueItem.status == SYNC_STATUS_PENDING,
        )
        .values(status=SYNC_STATUS_SUCCESS, last_error=reason, processed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount:
        current_app.logger.info(
            "Superseded %s pending %s/%s item(s): %s", result.rowcount, entity_type, entity_id, reason
        )
    return result.rowcount


def recover_stale_processing(owner_id: int | None = None, *, now=None) -> int:
    """
    Release items stuck in processing past the lease (crashed or killed run).

    Each one is treated as a transient failure: back to pending with backoff,
    or failed once retries are exhausted. Returns the number recovered.
    """
    now = now or utcnow()
    lease = _config("SYNC_QUEUE_PROCESSING_TIMEOUT_SECONDS", 600)
    cutoff = now - timedelta(seconds=lease)

    q = db.session.query(SyncQueueItem.id).filter(
        SyncQueueItem.status == SYNC_STATUS_PROCESSING,
        SyncQueueItem.updated_at < cutoff,
    )
    if owner_id is not None:
        q = q.filter(SyncQueueItem.org_id == owner_id)
    stale_ids = [row.id for row in q.order_by(SyncQueueItem.id).all()]

    recovered = 0
    for item_id in stale_ids:
        # Take over the lease so a concurrent dispatch does not recover it twice
        result = db.session.execute(
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == SYNC_STATUS_PROCESSING,
                SyncQueueItem.updated_at < cutoff,
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount != 1:
            continue
        current_app.logger.warning("Sync item %s was stuck in processing; releasing it", item_id)
        _mark_failure(item_id, TransientError("Processing lease expired"), now, retryable=True)
        recovered += 1
    return recovered


def _claim(item: SyncQueueItem, now) -> bool:
    """pending -> processing, only if still pending and its entity is idle."""
    other = aliased(SyncQueueItem)
    entity_busy = exists().where(
        other.org_id == item.org_id,
        other.entity_type == item.entity_type,
        other.entity_id == item.entity_id,
        other.status == SYNC_STATUS_PROCESSING,
    )
    result = db.session.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item.id,
            SyncQueueItem.status == SYNC_STATUS_PENDING,
            ~entity_busy,
        )
        .values(status=SYNC_STATUS_PROCESSING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _mark_success(item_id: int, now) -> None:
    item = db.session.get(SyncQueueItem, item_id)
    item.status = SYNC_STATUS_SUCCESS
    item.processed_at = now
    item.last_error = None
    item.updated_at = now
    db.session.commit()


def _mark_failure(item_id: int, exc: Exception, now, *, retryable: bool) -> str:
    item = db.session.get(SyncQueueItem, item_id)
    item.last_error = str(exc) or type(exc).__name__
    item.updated_at = now

    if retryable:
        item.retry_count += 1
        if item.retry_count < item.max_retries:
            item.status = SYNC_STATUS_PENDING
            item.scheduled_at = now + timedelta(seconds=backoff_seconds(item.retry_count))
            db.session.commit()
            return "retried"

    item.status = SYNC_STATUS_FAILED
    item.processed_at = now
    db.session.commit()

    hook = _FAILURE_HOOKS.get((item.entity_type, item.operation))
    if hook is not None:
        hook(item, exc)
        db.session.commit()
    return "failed"


def _run_item(item: SyncQueueItem, *, client, store_id, now) -> str:
    item_id = item.id
    handler = _HANDLERS.get((item.entity_type, item.operation))
    try:
        if handler is None:
            raise ValidationError(f"No handler for {item.entity_type}/{item.operation}")
        handler(item, client=client, store_id=store_id)
    except RETRYABLE_ERRORS as exc:
        db.session.rollback()
        current_app.logger.warning("Sync item %s will retry: %s", item_id, exc)
        return _mark_failure(item_id, exc, now, retryable=True)
    except PERMANENT_ERRORS as exc:
        db.session.rollback()
        current_app.logger.warning("Sync item %s failed permanently: %s", item_id, exc)
        return _mark_failure(item_id, exc, now, retryable=False)
    except Exception as exc:
        # Unclassified (DB error, bug): keep the item alive and retry with backoff
        db.session.rollback()
        current_app.logger.exception("Sync item %s raised unexpectedly", item_id)
        return _mark_failure(item_id, exc, now, retryable=True)

    _mark_success(item_id, now)
    return "succeeded"


def dispatch(
    client,
    *,
    store_id: str | None = None,
    owner_id: int | None = None,
    limit: int | None = None,
    item_ids: list[int] | None = None,
    now=None,
) -> dict:
    """
    Process due pending items, oldest scheduled first.

    With store_id=None each item runs against its own tenant's default
    store; a tenant without one keeps its items pending.

    Returns {processed, succeeded, retried, failed, skipped, recovered, errors[]}.
    """
    _load_builtin_handlers()
    now = now or utcnow()
    limit = limit or _config("SYNC_QUEUE_BATCH_SIZE", 50)

    summary = {
        "processed": 0, "succeeded": 0, "retried": 0, "failed": 0, "skipped": 0,
        "recovered": recover_stale_processing(owner_id, now=now),
        "errors": [],
    }

    q = db.session.query(SyncQueueItem).filter(
        SyncQueueItem.status == SYNC_STATUS_PENDING,
        SyncQueueItem.scheduled_at <= now,
    )
    if owner_id is not None:
        q = q.filter(SyncQueueItem.org_id == owner_id)
    if item_ids is not None:
        if not item_ids:
            q = q.filter(false())
        else:
            q = q.filter(SyncQueueItem.id.in_(item_ids))
    due_ids = [row.id for row in q.order_by(SyncQueueItem.scheduled_at, SyncQueueItem.id).limit(limit).all()]

    stores: dict[int, str | None] = {}

    for item_id in due_ids:
        item = db.session.get(SyncQueueItem, item_id)
        if item is None:
            continue

        item_store = store_id
        if item_store is None:
            if item.org_id not in stores:
                stores[item.org_id] = get_default_store_id(client, item.org_id)
            item_store = stores[item.org_id]
            if not item_store:
                summary["skipped"] += 1
                summary["errors"].append({
                    "id": item_id,
                    "entity": entity_key(item.entity_type, item.entity_id),
                    "operation": item.operation,
                    "status": item.status,
                    "error": "No ESL cloud store configured",
                })
                continue

        with entity_locks.hold(entity_key(item.entity_type, item.entity_id)):
            if not _claim(item, now):
                summary["skipped"] += 1
                continue
            db.session.refresh(item)
            summary["processed"] += 1
            outcome = _run_item(item, client=client, store_id=item_store, now=now)
            summary[outcome] += 1
            if outcome != "succeeded":
                refreshed = db.session.get(SyncQueueItem, item_id)
                summary["errors"].append({
                    "id": item_id,
                    "entity": entity_key(refreshed.entity_type, refreshed.entity_id),
                    "operation": refreshed.operation,
                    "status": refreshed.status,
                    "error": refreshed.last_error,
                })

    return summary


def retry_failed(ids: list[int] | None = None, *, owner_id: int | None = None, now=None) -> int:
    """
    Manual reset: failed -> pending with retry_count=0.

    ids=None resets every failed item (of the owner, if given).
    Returns the number of items reset.
    """
    now = now or utcnow()
    stmt = update(SyncQueueItem).where(SyncQueueItem.status == SYNC_STATUS_FAILED)
    if ids is not None:
        stmt = stmt.where(SyncQueueItem.id.in_(ids))
    if owner_id is not None:
        stmt = stmt.where(SyncQueueItem.org_id == owner_id)
    result = db.session.execute(
        stmt.values(
            status=SYNC_STATUS_PENDING,
            retry_count=0,
            scheduled_at=now,
            last_error=None,
            processed_at=None,
            updated_at=now,
        ).execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount


def get_sync_queue_status(owner_id: int | None = None, *, client=None) -> dict:
    """Counts per status plus the most recent failures and the next due items."""
    base = db.session.query(SyncQueueItem)
    if owner_id is not None:
        base = base.filter(SyncQueueItem.org_id == owner_id)

    counts_q = db.session.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
    if owner_id is not None:
        counts_q = counts_q.filter(SyncQueueItem.org_id == owner_id)
    counts = {status: 0 for status in (
        SYNC_STATUS_PENDING, SYNC_STATUS_PROCESSING, SYNC_STATUS_SUCCESS, SYNC_STATUS_FAILED,
    )}
    for status, count in counts_q.group_by(SyncQueueItem.status).all():
        counts[status] = count

    recent_failed = base.filter(SyncQueueItem.status == SYNC_STATUS_FAILED).order_by(
        SyncQueueItem.updated_at.desc(), SyncQueueItem.id.desc()
    ).limit(20).all()
    next_pending = base.filter(SyncQueueItem.status == SYNC_STATUS_PENDING).order_by(
        SyncQueueItem.scheduled_at, SyncQueueItem.id
    ).limit(20).all()

    status = {
        "counts": counts,
        "total": sum(counts.values()),
        "recent_failed": [i.to_dict() for i in recent_failed],
        "next_pending": [i.to_dict() for i in next_pending],
        "config": {
            "max_retries": _config("SYNC_QUEUE_MAX_RETRIES", 3),
            "backoff_base_seconds": _config("SYNC_QUEUE_BACKOFF_BASE_SECONDS", 30),
            "backoff_cap_seconds": _config("SYNC_QUEUE_BACKOFF_CAP_SECONDS", 3600),
            "retention_days": _config("SYNC_QUEUE_RETENTION_DAYS", 30),
        },
    }
    if client is not None:
        token = client.tokens.status()
        status["token"] = {
            "has_token": token["has_token"],
            "is_valid": token["is_valid"],
            "expires_at": to_utc_z(token["expires_at"]),
            "last_refreshed_at": to_utc_z(token["last_refreshed_at"]),
        }
    return status

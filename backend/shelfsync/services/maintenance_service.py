# Overview: Service-layer operations for maintenance; retention of terminal sync queue items.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SyncQueueItem
from ..models.sync import SYNC_TERMINAL_STATUSES
from shelfsync.time_utils import utcnow


def cleanup_sync_queue(*, retention_days: int = 30, now=None) -> int:
    """
    Delete success/failed queue items not updated within retention_days.

    pending and processing items are never purged by age.
    """
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = db.session.query(SyncQueueItem).filter(
        SyncQueueItem.status.in_(SYNC_TERMINAL_STATUSES),
        SyncQueueItem.updated_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted

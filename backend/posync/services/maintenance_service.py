# Overview: Service-layer operations for maintenance; stale staged records and the abandoned-record log.

from __future__ import annotations

import logging
from datetime import timedelta

from ..config import SyncPolicy
from ..extensions import db
from ..models import AbandonedRecord, StagedRecord
from ..time_utils import utcnow
from .concurrency import local_transaction
from .staging_service import log_abandoned

logger = logging.getLogger(__name__)


def cleanup_stale_staged(*, policy: SyncPolicy | None = None) -> int:
    """
    Abandon staged records that hit the retry cap or whose last attempt is older than
    the stale age. Nothing is deleted without an abandoned_records row.
    """
    policy = policy or SyncPolicy()
    cutoff = utcnow() - policy.stale_max_age
    rows = (
        db.session.query(StagedRecord)
        .filter(
            db.or_(
                StagedRecord.sync_retry_count >= policy.max_retries,
                db.and_(
                    StagedRecord.last_sync_attempt.isnot(None),
                    StagedRecord.last_sync_attempt < cutoff,
                ),
            )
        )
        .order_by(StagedRecord.id.asc())
        .all()
    )
    if not rows:
        return 0

    entries = []
    with local_transaction():
        for row in rows:
            reason = (
                AbandonedRecord.REASON_MAX_RETRIES
                if (row.sync_retry_count or 0) >= policy.max_retries
                else AbandonedRecord.REASON_STALE
            )
            entry = AbandonedRecord(
                entity=row.entity,
                operation=row.operation,
                local_id=row.local_id,
                server_id=row.server_id,
                transaction_id=row.transaction_id,
                payload=dict(row.payload or {}),
                retry_count=row.sync_retry_count or 0,
                last_error=row.last_sync_error,
                reason=reason,
                staged_at=row.created_at,
                abandoned_at=utcnow(),
            )
            db.session.add(entry)
            db.session.delete(row)
            entries.append(entry)

    for entry in entries:
        log_abandoned(entry)
    logger.info("Maintenance abandoned %d stale staged record(s)", len(entries))
    return len(entries)


def purge_abandoned_records(*, retention_days: int = 90) -> int:
    """Delete abandoned records older than retention_days, requeued or not."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(AbandonedRecord).filter(
        AbandonedRecord.abandoned_at < cutoff
    ).delete()
    db.session.commit()
    return deleted

from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AbandonedRecord(db.Model):
    """
    Staged mutations dropped by the sync engine.

    WHY: A record that exhausts its retries (or goes stale) is removed from the staging
    area so it stops blocking the queue. The loss must stay inspectable and recoverable,
    so every drop lands here with the payload and the last error.

    APPEND-ONLY except for requeued_at, which is set when an operator puts the record
    back into the staging area.
    """
    __tablename__ = "abandoned_records"
    __table_args__ = (
        db.Index("ix_abandoned_entity_at", "entity", "abandoned_at"),
        {"sqlite_autoincrement": True},
    )

    REASON_MAX_RETRIES = "MAX_RETRIES"
    REASON_STALE = "STALE"

    id = db.Column(db.Integer, primary_key=True)

    entity = db.Column(db.String(32), nullable=False, index=True)
    operation = db.Column(db.String(8), nullable=False)
    local_id = db.Column(db.String(64), nullable=True)
    server_id = db.Column(db.String(64), nullable=True)
    transaction_id = db.Column(db.String(64), nullable=True)

    payload = db.Column(db.JSON, nullable=False, default=dict)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    reason = db.Column(db.String(32), nullable=False, default=REASON_MAX_RETRIES)

    staged_at = db.Column(db.DateTime, nullable=True)
    abandoned_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    requeued_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity": self.entity,
            "operation": self.operation,
            "localId": self.local_id,
            "serverId": self.server_id,
            "transactionId": self.transaction_id,
            "payload": dict(self.payload or {}),
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "reason": self.reason,
            "stagedAt": to_utc_z(self.staged_at),
            "abandonedAt": to_utc_z(self.abandoned_at),
            "requeuedAt": to_utc_z(self.requeued_at),
        }

from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class StagedRecord(db.Model):
    """
    A locally-persisted mutation not yet confirmed by the server.

    One table backs every conceptual `{entity}_offline_add|update|delete` container;
    `entity` + `operation` select the container.

    KEYS:
    - ADD rows are keyed by local_id (client-generated, stable for the offline lifetime)
    - UPDATE / DELETE rows are keyed by server_id

    LIFECYCLE: created on local mutation; only the sync engine touches the retry
    metadata; deleted once the server confirms the operation or the record is abandoned.
    """
    __tablename__ = "staged_records"
    __table_args__ = (
        db.UniqueConstraint("entity", "operation", "local_id", name="uq_staged_entity_op_local"),
        db.UniqueConstraint("entity", "operation", "server_id", name="uq_staged_entity_op_server"),
        db.Index("ix_staged_entity_op", "entity", "operation"),
        db.Index("ix_staged_entity_txn", "entity", "transaction_id"),
        {"sqlite_autoincrement": True},
    )

    OP_ADD = "ADD"
    OP_UPDATE = "UPDATE"
    OP_DELETE = "DELETE"

    id = db.Column(db.Integer, primary_key=True)

    entity = db.Column(db.String(32), nullable=False)
    operation = db.Column(db.String(8), nullable=False)

    local_id = db.Column(db.String(64), nullable=True)
    server_id = db.Column(db.String(64), nullable=True)

    # Records sharing a transaction id reach the server in one call
    transaction_id = db.Column(db.String(64), nullable=True)

    payload = db.Column(db.JSON, nullable=False, default=dict)

    sync_retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_sync_error = db.Column(db.Text, nullable=True)
    last_sync_attempt = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_modified = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def record_key(self) -> str:
        return self.local_id if self.operation == self.OP_ADD else self.server_id

    def __repr__(self) -> str:
        return (
            f"<StagedRecord {self.entity}/{self.operation} key={self.record_key!r} "
            f"retries={self.sync_retry_count}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity": self.entity,
            "operation": self.operation,
            "localId": self.local_id,
            "serverId": self.server_id,
            "transactionId": self.transaction_id,
            "payload": dict(self.payload or {}),
            "syncRetryCount": self.sync_retry_count,
            "lastSyncError": self.last_sync_error,
            "lastSyncAttempt": to_utc_z(self.last_sync_attempt),
            "createdAt": to_utc_z(self.created_at),
            "lastModified": to_utc_z(self.last_modified),
        }


class AuthoritativeRecord(db.Model):
    """
    The entity as last known from the server (`{entity}_all`), keyed by server id.

    Owned by the sync engine: written by commits and the refresh step, read by the UI.
    """
    __tablename__ = "authoritative_records"
    __table_args__ = (
        db.UniqueConstraint("entity", "server_id", name="uq_authoritative_entity_server"),
        db.Index("ix_authoritative_entity_updated", "entity", "updated_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity = db.Column(db.String(32), nullable=False, index=True)
    server_id = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    # Server-side updatedAt when provided, otherwise when we wrote it
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    fetched_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<AuthoritativeRecord {self.entity}/{self.server_id}>"

    def to_dict(self) -> dict:
        data = dict(self.payload or {})
        data["id"] = self.server_id
        data.setdefault("updatedAt", to_utc_z(self.updated_at))
        return data


class IdMapping(db.Model):
    """
    Durable association localId -> serverId (`synced_{entity}_ids`).

    INVARIANTS (enforced by unique constraints):
    - at most one mapping per (entity, local_id)
    - a server id is never reused across mappings of the same entity

    IMMUTABLE: created once per successful add, deleted only with its subject record.
    """
    __tablename__ = "id_mappings"
    __table_args__ = (
        db.UniqueConstraint("entity", "local_id", name="uq_id_mappings_entity_local"),
        db.UniqueConstraint("entity", "server_id", name="uq_id_mappings_entity_server"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity = db.Column(db.String(32), nullable=False, index=True)
    local_id = db.Column(db.String(64), nullable=False)
    server_id = db.Column(db.String(64), nullable=False)
    synced_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<IdMapping {self.entity} {self.local_id!r} -> {self.server_id!r}>"

    def to_dict(self) -> dict:
        return {
            "localId": self.local_id,
            "serverId": self.server_id,
            "syncedAt": to_utc_z(self.synced_at),
        }

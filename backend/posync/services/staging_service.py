# Overview: Staging store adapter; typed access to the staged, authoritative and id-mapping containers.

"""
Staging Store Adapter

Every multi-row write for one sync outcome runs inside a single local transaction
(`local_transaction`), so a crash mid-sync can never leave:
- an id mapping without its authoritative record
- a record present in both the staged and the authoritative sets

The adapter never talks to the remote API; the engines decide what to write and
call exactly one commit_* method per outcome.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable

from ..config import SyncPolicy
from ..entities import EntitySpec
from ..extensions import db
from ..models import AbandonedRecord, AuthoritativeRecord, IdMapping, StagedRecord
from ..time_utils import coerce_datetime, utcnow
from .concurrency import local_transaction, run_with_retry

logger = logging.getLogger(__name__)

# (record, server_record) callbacks run inside the commit transaction
CommitHook = Callable[[StagedRecord, dict], None]


def merge_server_record(local_payload: dict | None, server_record: dict) -> dict:
    """Server values win; local values fill the gaps the server left empty."""
    merged = dict(local_payload or {})
    for key, value in server_record.items():
        if value is not None:
            merged[key] = value
    merged["id"] = str(server_record["id"])
    return merged


class StagingStore:
    def __init__(self, policy: SyncPolicy | None = None):
        self.policy = policy or SyncPolicy()

    # ------------------------------------------------------------------ reads

    def list_pending(self, spec: EntitySpec, operation: str) -> list[StagedRecord]:
        return (
            db.session.query(StagedRecord)
            .filter_by(entity=spec.name, operation=operation)
            .order_by(StagedRecord.created_at.asc(), StagedRecord.id.asc())
            .all()
        )

    def get_staged(self, spec: EntitySpec, operation: str, key: str) -> StagedRecord | None:
        query = db.session.query(StagedRecord).filter_by(entity=spec.name, operation=operation)
        if operation == StagedRecord.OP_ADD:
            return query.filter_by(local_id=str(key)).first()
        return query.filter_by(server_id=str(key)).first()

    def get_mapping(self, entity: str, local_id) -> IdMapping | None:
        if local_id is None:
            return None
        return db.session.query(IdMapping).filter_by(entity=entity, local_id=str(local_id)).first()

    def get_mapping_by_server(self, entity: str, server_id) -> IdMapping | None:
        if server_id is None:
            return None
        return db.session.query(IdMapping).filter_by(entity=entity, server_id=str(server_id)).first()

    def get_authoritative(self, entity: str, server_id) -> AuthoritativeRecord | None:
        if server_id is None:
            return None
        return (
            db.session.query(AuthoritativeRecord)
            .filter_by(entity=entity, server_id=str(server_id))
            .first()
        )

    def list_authoritative(self, spec: EntitySpec, *, since: datetime | None = None) -> list[AuthoritativeRecord]:
        query = db.session.query(AuthoritativeRecord).filter_by(entity=spec.name)
        if since is not None:
            query = query.filter(AuthoritativeRecord.updated_at >= since)
        return query.order_by(AuthoritativeRecord.id.asc()).all()

    def mapped_server_ids(self, spec: EntitySpec) -> set[str]:
        rows = db.session.query(IdMapping.server_id).filter_by(entity=spec.name).all()
        return {r[0] for r in rows}

    def is_due(self, record: StagedRecord, now: datetime | None = None) -> bool:
        """Bounded exponential backoff between attempts of the same record."""
        if not record.sync_retry_count or record.last_sync_attempt is None:
            return True
        wait = self.policy.backoff_seconds(record.sync_retry_count)
        if wait <= 0:
            return True
        now = now or utcnow()
        return record.last_sync_attempt + timedelta(seconds=wait) <= now

    def counts(self, spec: EntitySpec) -> dict[str, int]:
        containers = spec.containers()
        staged = dict(
            db.session.query(StagedRecord.operation, db.func.count(StagedRecord.id))
            .filter_by(entity=spec.name)
            .group_by(StagedRecord.operation)
            .all()
        )
        return {
            containers["all"]: db.session.query(AuthoritativeRecord).filter_by(entity=spec.name).count(),
            containers["add"]: int(staged.get(StagedRecord.OP_ADD, 0)),
            containers["update"]: int(staged.get(StagedRecord.OP_UPDATE, 0)),
            containers["delete"]: int(staged.get(StagedRecord.OP_DELETE, 0)),
            containers["mapping"]: db.session.query(IdMapping).filter_by(entity=spec.name).count(),
        }

    # ------------------------------------------------------- in-transaction helpers

    def _upsert_authoritative(self, entity: str, server_record: dict, local_payload: dict | None = None) -> AuthoritativeRecord:
        server_id = str(server_record["id"])
        payload = merge_server_record(local_payload, server_record)
        updated_at = coerce_datetime(server_record.get("updatedAt")) or utcnow()
        row = self.get_authoritative(entity, server_id)
        if row is None:
            row = AuthoritativeRecord(entity=entity, server_id=server_id)
            db.session.add(row)
        row.payload = payload
        row.updated_at = updated_at
        row.fetched_at = utcnow()
        return row

    def _write_mapping(self, entity: str, local_id: str, server_id: str) -> IdMapping | None:
        existing = self.get_mapping(entity, local_id)
        if existing is not None:
            return existing
        claimed = self.get_mapping_by_server(entity, server_id)
        if claimed is not None:
            # Server collapsed two local records into one; never reuse a server id
            logger.warning(
                "Server id %s for %s already mapped to local %s; not mapping local %s",
                server_id, entity, claimed.local_id, local_id,
            )
            return None
        mapping = IdMapping(entity=entity, local_id=str(local_id), server_id=str(server_id), synced_at=utcnow())
        db.session.add(mapping)
        db.session.flush()
        return mapping

    def _settle_in_flight(self, spec: EntitySpec, local_id: str, server_id: str, sent_payload: dict) -> None:
        """Drop the confirmed staged add, carrying over local changes made after it was sent."""
        current = (
            db.session.query(StagedRecord)
            .populate_existing()
            .filter_by(entity=spec.name, operation=StagedRecord.OP_ADD, local_id=local_id)
            .first()
        )
        if current is None:
            logger.info("%s %s was deleted while in flight; staging delete of %s", spec.name, local_id, server_id)
            if self.get_staged(spec, StagedRecord.OP_DELETE, server_id) is None:
                db.session.add(
                    StagedRecord(entity=spec.name, operation=StagedRecord.OP_DELETE, server_id=server_id, payload={})
                )
            return

        late = {
            k: v for k, v in (current.payload or {}).items()
            if k not in sent_payload or sent_payload[k] != v
        }
        if late:
            logger.info("%s %s was edited while in flight; staging update of %s", spec.name, local_id, server_id)
            pending = self.get_staged(spec, StagedRecord.OP_UPDATE, server_id)
            if pending is None:
                db.session.add(
                    StagedRecord(entity=spec.name, operation=StagedRecord.OP_UPDATE, server_id=server_id, payload=late)
                )
            else:
                pending.payload = {**(pending.payload or {}), **late}
        db.session.delete(current)

    def rewrite_reference(self, spec: EntitySpec, field: str, old_value: str, new_value: str) -> int:
        """Point every staged record of `spec` referencing `old_value` at `new_value`."""
        rewritten = 0
        rows = db.session.query(StagedRecord).filter_by(entity=spec.name).all()
        for row in rows:
            payload = row.payload or {}
            if field in payload and payload[field] is not None and str(payload[field]) == str(old_value):
                row.payload = {**payload, field: new_value}
                rewritten += 1
        return rewritten

    def _abandon(self, record: StagedRecord, error: str | None, reason: str) -> AbandonedRecord:
        entry = AbandonedRecord(
            entity=record.entity,
            operation=record.operation,
            local_id=record.local_id,
            server_id=record.server_id,
            transaction_id=record.transaction_id,
            payload=dict(record.payload or {}),
            retry_count=record.sync_retry_count or 0,
            last_error=error,
            reason=reason,
            staged_at=record.created_at,
            abandoned_at=utcnow(),
        )
        db.session.add(entry)
        db.session.delete(record)
        return entry

    # ---------------------------------------------------------------- commits

    def commit_adds(
        self,
        spec: EntitySpec,
        outcomes: Iterable[tuple[StagedRecord, dict, dict]],
        *,
        on_mapped: Callable[[str, str], None] | None = None,
        hooks: Iterable[CommitHook] = (),
        sent: dict[str, dict] | None = None,
    ) -> list[str]:
        """
        Commit one or more accepted adds atomically.

        Each outcome is (staged record, resolved payload, server record). For each:
        write the authoritative record, write the id mapping, let `on_mapped` rewrite
        dependents, delete the staged add.

        `sent` maps local id -> staged payload as it was when submitted. The staged row
        is re-read here: edits made while the add was in flight are staged as an
        UPDATE of the new server record, and a staged add deleted meanwhile becomes a
        staged DELETE.
        """
        sent = sent or {}
        outcomes = [
            (record.local_id, record, payload, server_record)
            for record, payload, server_record in outcomes
        ]
        snapshots = {
            local_id: dict(sent.get(local_id, record.payload or {}))
            for local_id, record, _, _ in outcomes
        }
        hooks = list(hooks)

        def _op():
            server_ids = []
            with local_transaction():
                for local_id, record, payload, server_record in outcomes:
                    server_id = str(server_record["id"])
                    self._upsert_authoritative(spec.name, server_record, payload)
                    self._write_mapping(spec.name, local_id, server_id)
                    if on_mapped is not None:
                        on_mapped(local_id, server_id)
                    for hook in hooks:
                        hook(record, server_record)
                    self._settle_in_flight(spec, local_id, server_id, snapshots[local_id])
                    server_ids.append(server_id)
            return server_ids

        return run_with_retry(_op)

    def commit_add(self, spec: EntitySpec, server_record: dict, record: StagedRecord, payload: dict, **kwargs) -> str:
        return self.commit_adds(spec, [(record, payload, server_record)], **kwargs)[0]

    def adopt(
        self,
        spec: EntitySpec,
        record: StagedRecord,
        server_id: str,
        *,
        on_mapped: Callable[[str, str], None] | None = None,
    ) -> None:
        """A previous submission of `record` already produced `server_id`: map it, drop the stage."""
        with local_transaction():
            mapping = self._write_mapping(spec.name, record.local_id, str(server_id))
            if mapping is not None and on_mapped is not None:
                on_mapped(record.local_id, str(server_id))
            db.session.delete(record)

    def link_embedded(self, spec: EntitySpec, local_id: str, server_record: dict) -> bool:
        """
        Commit a record that travelled embedded in another entity's submission.

        Must run inside the caller's transaction (commit hook). Returns False when the
        embedded record is no longer staged.
        """
        staged = self.get_staged(spec, StagedRecord.OP_ADD, local_id)
        if staged is None:
            return False
        self._upsert_authoritative(spec.name, server_record, staged.payload)
        self._write_mapping(spec.name, staged.local_id, str(server_record["id"]))
        db.session.delete(staged)
        return True

    def discard(self, record: StagedRecord) -> None:
        """Drop a staged record whose goal state is already true server-side."""
        with local_transaction():
            db.session.delete(record)

    def commit_update(self, spec: EntitySpec, record: StagedRecord, server_record: dict | None) -> None:
        def _op():
            with local_transaction():
                current = self.get_authoritative(spec.name, record.server_id)
                base = dict(current.payload or {}) if current is not None else {}
                base.update(record.payload or {})
                if server_record:
                    self._upsert_authoritative(spec.name, {**server_record, "id": record.server_id}, base)
                else:
                    self._upsert_authoritative(spec.name, {"id": record.server_id}, base)
                db.session.delete(record)
        run_with_retry(_op)

    def commit_delete(self, spec: EntitySpec, record: StagedRecord) -> None:
        def _op():
            with local_transaction():
                server_id = record.server_id
                db.session.query(AuthoritativeRecord).filter_by(entity=spec.name, server_id=server_id).delete()
                db.session.query(IdMapping).filter_by(entity=spec.name, server_id=server_id).delete()
                db.session.query(StagedRecord).filter_by(
                    entity=spec.name, operation=StagedRecord.OP_UPDATE, server_id=server_id
                ).delete()
                db.session.delete(record)
        run_with_retry(_op)

    def mark_retry(self, spec: EntitySpec, record: StagedRecord, error) -> bool:
        """
        Record a failed attempt. Returns True when the record hit the retry cap and
        was abandoned (moved to abandoned_records) instead.
        """
        message = str(error) or error.__class__.__name__
        with local_transaction():
            record.sync_retry_count = (record.sync_retry_count or 0) + 1
            record.last_sync_error = message
            record.last_sync_attempt = utcnow()
            if record.sync_retry_count < self.policy.max_retries:
                return False
            entry = self._abandon(record, message, AbandonedRecord.REASON_MAX_RETRIES)
        log_abandoned(entry)
        return True

    def abandon(self, record: StagedRecord, error: str | None, reason: str) -> AbandonedRecord:
        with local_transaction():
            entry = self._abandon(record, error, reason)
        log_abandoned(entry)
        return entry

    # ---------------------------------------------------------------- refresh

    def replace_authoritative(self, spec: EntitySpec, server_records: list[dict]) -> int:
        """
        Replace `{entity}_all` wholesale with the server's list and prune id mappings
        whose server id no longer exists remotely. Returns the number of pruned mappings.
        """
        def _op():
            with local_transaction():
                db.session.query(AuthoritativeRecord).filter_by(entity=spec.name).delete()
                now = utcnow()
                seen: set[str] = set()
                for server_record in server_records:
                    server_id = str(server_record["id"])
                    if server_id in seen:
                        continue
                    seen.add(server_id)
                    db.session.add(
                        AuthoritativeRecord(
                            entity=spec.name,
                            server_id=server_id,
                            payload=merge_server_record(None, server_record),
                            updated_at=coerce_datetime(server_record.get("updatedAt"))
                            or coerce_datetime(server_record.get("createdAt"))
                            or now,
                            fetched_at=now,
                        )
                    )
                stale = db.session.query(IdMapping).filter(IdMapping.entity == spec.name)
                if seen:
                    stale = stale.filter(IdMapping.server_id.notin_(sorted(seen)))
                return stale.delete(synchronize_session=False)
        return run_with_retry(_op)


def log_abandoned(entry: AbandonedRecord) -> None:
    logger.warning(
        "Abandoned staged %s %s (local=%s server=%s) after %d attempts: %s",
        entry.entity,
        entry.operation,
        entry.local_id,
        entry.server_id,
        entry.retry_count,
        entry.last_error,
        extra={
            "sync_event": "record_abandoned",
            "abandoned_id": entry.id,
            "entity": entry.entity,
            "operation": entry.operation,
            "local_id": entry.local_id,
            "server_id": entry.server_id,
            "transaction_id": entry.transaction_id,
            "retry_count": entry.retry_count,
            "reason": entry.reason,
            "last_error": entry.last_error,
        },
    )

# Overview: Local write surface for offline mutations, plus the generic reconcile/merged view.

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable

from ..entities import EntitySpec, dependents_of, get_spec
from ..extensions import db
from ..models import AbandonedRecord, AuthoritativeRecord, IdMapping, StagedRecord
from ..time_utils import coerce_datetime, to_utc_z, utcnow
from ..validation import ConflictError, NotFoundError, PayloadPolicy, ValidationError, validate_payload
from .concurrency import write_with_retry

LOCAL_ID_PREFIX = "local-"


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def _staged(spec: EntitySpec, operation: str, **keys) -> StagedRecord | None:
    return db.session.query(StagedRecord).filter_by(entity=spec.name, operation=operation, **keys).first()


def _server_id_for(spec: EntitySpec, record_id: str) -> str:
    mapping = db.session.query(IdMapping).filter_by(entity=spec.name, local_id=record_id).first()
    return mapping.server_id if mapping is not None else record_id


def _has_authoritative(spec: EntitySpec, server_id: str) -> bool:
    return (
        db.session.query(AuthoritativeRecord.id)
        .filter_by(entity=spec.name, server_id=server_id)
        .first()
        is not None
    )


def _group_value(spec: EntitySpec, payload: dict):
    if not spec.group_field:
        return None
    value = payload.get(spec.group_field)
    return str(value) if value not in (None, "") else None


def stage_add(entity: str, payload: dict, *, created_at: datetime | None = None) -> StagedRecord:
    """Record a new entity created on this terminal. Returns the staged ADD."""
    spec = get_spec(entity)
    clean = validate_payload(payload=payload, policy=PayloadPolicy.for_entity(spec), partial=False)

    backorder_id = clean.get("backorderLocalId")
    if backorder_id and _staged(get_spec("backorder"), StagedRecord.OP_ADD, local_id=str(backorder_id)) is None:
        raise NotFoundError(f"Staged backorder not found: {backorder_id}")

    stamp = coerce_datetime(created_at) or utcnow()
    record = StagedRecord(
        entity=spec.name,
        operation=StagedRecord.OP_ADD,
        local_id=new_local_id(),
        transaction_id=_group_value(spec, clean),
        payload=clean,
        created_at=stamp,
        last_modified=stamp,
    )
    write_with_retry(lambda: db.session.add(record))
    return record


def stage_update(entity: str, record_id: str, patch: dict) -> StagedRecord:
    """
    Record an edit.

    - still-staged ADD: the patch is folded into the add (it never reached the server)
    - synced local id: translated to its server id
    - otherwise an UPDATE is staged, merged into any pending UPDATE for the same id
    """
    spec = get_spec(entity)
    if not spec.supports_update:
        raise ValidationError(f"{spec.name} records cannot be updated")
    clean = validate_payload(payload=patch, policy=PayloadPolicy.for_entity(spec), partial=True)
    if not clean:
        raise ValidationError("Nothing to update")
    record_id = str(record_id)

    pending_add = _staged(spec, StagedRecord.OP_ADD, local_id=record_id)
    if pending_add is not None:
        def _fold():
            merged = {**(pending_add.payload or {}), **clean}
            pending_add.payload = merged
            pending_add.transaction_id = _group_value(spec, merged)
            pending_add.last_modified = utcnow()
            return pending_add
        return write_with_retry(_fold)

    server_id = _server_id_for(spec, record_id)
    if _staged(spec, StagedRecord.OP_DELETE, server_id=server_id) is not None:
        raise ConflictError(f"{spec.name} {server_id} is pending deletion")

    pending_update = _staged(spec, StagedRecord.OP_UPDATE, server_id=server_id)
    if pending_update is None and not _has_authoritative(spec, server_id):
        raise NotFoundError(f"{spec.name} not found: {record_id}")

    def _stage():
        if pending_update is not None:
            pending_update.payload = {**(pending_update.payload or {}), **clean}
            pending_update.last_modified = utcnow()
            return pending_update
        row = StagedRecord(
            entity=spec.name,
            operation=StagedRecord.OP_UPDATE,
            server_id=server_id,
            payload=clean,
        )
        db.session.add(row)
        return row

    return write_with_retry(_stage)


def stage_delete(entity: str, record_id: str) -> dict:
    """
    Record a deletion.

    Deleting a still-staged ADD just drops it; no server call is ever made for it.
    """
    spec = get_spec(entity)
    if not spec.supports_delete:
        raise ValidationError(f"{spec.name} records cannot be deleted")
    record_id = str(record_id)

    pending_add = _staged(spec, StagedRecord.OP_ADD, local_id=record_id)
    if pending_add is not None:
        for dep_spec, ref in dependents_of(spec.name):
            for row in db.session.query(StagedRecord).filter_by(entity=dep_spec.name).all():
                if str((row.payload or {}).get(ref.field)) == record_id:
                    raise ConflictError(
                        f"{dep_spec.name} {row.record_key} still references {spec.name} {record_id}"
                    )
        write_with_retry(lambda: db.session.delete(pending_add))
        return {"localId": record_id, "staged": False}

    server_id = _server_id_for(spec, record_id)
    pending_update = _staged(spec, StagedRecord.OP_UPDATE, server_id=server_id)
    existing = _staged(spec, StagedRecord.OP_DELETE, server_id=server_id)
    if existing is None and pending_update is None and not _has_authoritative(spec, server_id):
        raise NotFoundError(f"{spec.name} not found: {record_id}")

    def _stage():
        if pending_update is not None:
            db.session.delete(pending_update)
        if existing is not None:
            return existing
        row = StagedRecord(entity=spec.name, operation=StagedRecord.OP_DELETE, server_id=server_id, payload={})
        db.session.add(row)
        return row

    row = write_with_retry(_stage)
    return {"serverId": server_id, "staged": True, "record": row.to_dict()}


def reconcile(
    all_records: Iterable[dict],
    adds: Iterable[dict],
    updates: Iterable[dict],
    deletes: Iterable,
) -> list[dict]:
    """
    The one merge used by every entity.

    authoritative - pending deletes, overlaid with pending updates, then pending adds
    (keyed by localId). Pending rows carry "pending": True.
    """
    deleted = {str(d) for d in deletes}
    patches: dict[str, dict] = {}
    for upd in updates:
        patches.setdefault(str(upd["id"]), {}).update(upd)

    merged: list[dict] = []
    for rec in all_records:
        sid = str(rec["id"])
        if sid in deleted:
            continue
        if sid in patches:
            rec = {**rec, **patches[sid], "id": sid, "pending": True}
        merged.append(rec)

    for add in adds:
        local_id = add["localId"]
        merged.append({**add, "id": local_id, "localId": local_id, "pending": True})
    return merged


def merged_view(entity: str) -> list[dict]:
    spec = get_spec(entity)
    authoritative = (
        db.session.query(AuthoritativeRecord)
        .filter_by(entity=spec.name)
        .order_by(AuthoritativeRecord.id.asc())
        .all()
    )
    staged = (
        db.session.query(StagedRecord)
        .filter_by(entity=spec.name)
        .order_by(StagedRecord.created_at.asc(), StagedRecord.id.asc())
        .all()
    )
    adds = [
        {**(r.payload or {}), "localId": r.local_id, "createdAt": to_utc_z(r.created_at)}
        for r in staged
        if r.operation == StagedRecord.OP_ADD
    ]
    updates = [{**(r.payload or {}), "id": r.server_id} for r in staged if r.operation == StagedRecord.OP_UPDATE]
    deletes = [r.server_id for r in staged if r.operation == StagedRecord.OP_DELETE]
    return reconcile([a.to_dict() for a in authoritative], adds, updates, deletes)


def list_staged(entity: str | None = None) -> list[StagedRecord]:
    query = db.session.query(StagedRecord)
    if entity:
        query = query.filter_by(entity=get_spec(entity).name)
    return query.order_by(StagedRecord.created_at.asc(), StagedRecord.id.asc()).all()


def list_abandoned(entity: str | None = None, *, include_requeued: bool = False) -> list[AbandonedRecord]:
    query = db.session.query(AbandonedRecord)
    if entity:
        query = query.filter_by(entity=get_spec(entity).name)
    if not include_requeued:
        query = query.filter(AbandonedRecord.requeued_at.is_(None))
    return query.order_by(AbandonedRecord.abandoned_at.desc(), AbandonedRecord.id.desc()).all()


def requeue_abandoned(abandoned_id: int) -> StagedRecord:
    """Put an abandoned mutation back into the staging area with fresh retry counters."""
    entry = db.session.get(AbandonedRecord, abandoned_id)
    if entry is None:
        raise NotFoundError(f"Abandoned record not found: {abandoned_id}")
    if entry.requeued_at is not None:
        raise ConflictError(f"Abandoned record {abandoned_id} was already requeued")

    spec = get_spec(entry.entity)
    if entry.operation == StagedRecord.OP_ADD:
        if _staged(spec, StagedRecord.OP_ADD, local_id=entry.local_id) is not None:
            raise ConflictError(f"{spec.name} {entry.local_id} is already staged")
        if db.session.query(IdMapping).filter_by(entity=spec.name, local_id=entry.local_id).first():
            raise ConflictError(f"{spec.name} {entry.local_id} is already synced")
    elif _staged(spec, entry.operation, server_id=entry.server_id) is not None:
        raise ConflictError(f"{spec.name} {entry.server_id} already has a staged {entry.operation}")

    def _requeue():
        now = utcnow()
        row = StagedRecord(
            entity=entry.entity,
            operation=entry.operation,
            local_id=entry.local_id,
            server_id=entry.server_id,
            transaction_id=entry.transaction_id,
            payload=dict(entry.payload or {}),
            sync_retry_count=0,
            # Idempotency keys embed created_at
            created_at=entry.staged_at or now,
            last_modified=now,
        )
        db.session.add(row)
        entry.requeued_at = now
        return row

    return write_with_retry(_requeue)

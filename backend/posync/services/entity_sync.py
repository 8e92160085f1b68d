# Overview: Entity sync engines; add/update/delete passes and the authoritative refresh for one entity.

"""
Entity Sync Engine

One engine per entity with `has_engine`. A pass runs:

    adds -> updates -> deletes -> refresh (when due)

Records are processed sequentially so a dependency resolution always sees every
IdMapping committed earlier in the same pass. Per-record failures are caught and
turned into retry bookkeeping; only SyncTimeoutError escapes a pass.

Outcome classification per record:
- dependency not ready, not due yet, already in flight, duplicate: skipped
- server confirmed: processed (committed in one local transaction)
- 409 / server-reported duplicate: skipped, stage cleared, no mapping
- 404 on delete: processed (goal state already true)
- anything else: error, retry counter incremented, abandoned at the cap
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Optional

from ..config import SyncPolicy
from ..entities import BACKORDER, EntitySpec, ENTITIES
from ..models import StagedRecord
from ..time_utils import epoch_millis, to_utc_z, utcnow
from .duplicate_guard import MATCH_MAPPED, DuplicateGuard
from .id_resolver import DependencyNotReady, IdResolver
from .remote_api import RemoteApi, RemoteApiError, RemoteConflictError
from .staging_service import StagingStore
from .transaction_grouper import NOT_PROCESSED, TransactionGrouper

logger = logging.getLogger(__name__)

# Payload keys that only exist on this terminal
LOCAL_ONLY_FIELDS = ("backorderLocalId",)


class SyncTimeoutError(Exception):
    """The pass ran past its deadline; raised between records, never mid-call."""


@dataclass
class PassResult:
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    abandoned: int = 0
    total: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "abandoned": self.abandoned,
            "total": self.total,
            "lastError": self.last_error,
        }


@dataclass
class EntitySyncResult:
    entity: str
    adds: PassResult = field(default_factory=PassResult)
    updates: PassResult = field(default_factory=PassResult)
    deletes: PassResult = field(default_factory=PassResult)
    refreshed: bool = False

    @property
    def changed(self) -> int:
        return self.adds.processed + self.updates.processed + self.deletes.processed

    @property
    def errors(self) -> int:
        return self.adds.errors + self.updates.errors + self.deletes.errors

    @property
    def last_error(self) -> Optional[str]:
        return self.deletes.last_error or self.updates.last_error or self.adds.last_error

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "adds": self.adds.to_dict(),
            "updates": self.updates.to_dict(),
            "deletes": self.deletes.to_dict(),
            "refreshed": self.refreshed,
        }


def _key_part(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return re.sub(r"\s+", "-", value.strip())
    return str(value)


def check_deadline(deadline: Optional[float]) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise SyncTimeoutError("Sync pass ran past its deadline")


class EntitySyncEngine:
    passthrough_errors = (SyncTimeoutError,)

    def __init__(
        self,
        spec: EntitySpec,
        *,
        store: StagingStore,
        api: RemoteApi,
        resolver: IdResolver,
        guard: DuplicateGuard,
        policy: SyncPolicy,
    ):
        self.spec = spec
        self.store = store
        self.api = api
        self.resolver = resolver
        self.guard = guard
        self.policy = policy

        # Record keys currently in flight (status + lock safety valve)
        self.processing: set[str] = set()
        self.last_refresh_at: Optional[datetime] = None
        self.last_sync_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.spec.name}>"

    # ---------------------------------------------------------------- pass

    def sync_entity(self, *, deadline: Optional[float] = None) -> EntitySyncResult:
        result = EntitySyncResult(entity=self.spec.name)
        result.adds = self.sync_adds(deadline=deadline)
        if self.spec.supports_update:
            result.updates = self.sync_updates(deadline=deadline)
        if self.spec.supports_delete:
            result.deletes = self.sync_deletes(deadline=deadline)
        if self.should_refresh(result.changed):
            result.refreshed = self.refresh()

        self.last_sync_at = utcnow()
        self.last_error = result.last_error
        logger.info(
            "%s sync: adds %d/%d/%d updates %d/%d/%d deletes %d/%d/%d (processed/skipped/errors)",
            self.spec.name,
            result.adds.processed, result.adds.skipped, result.adds.errors,
            result.updates.processed, result.updates.skipped, result.updates.errors,
            result.deletes.processed, result.deletes.skipped, result.deletes.errors,
        )
        return result

    # ---------------------------------------------------------------- adds

    def sync_adds(self, *, deadline: Optional[float] = None) -> PassResult:
        result = PassResult()
        pending = self.store.list_pending(self.spec, StagedRecord.OP_ADD)
        result.total = len(pending)
        claimed: set[str] = set()
        for record in pending:
            check_deadline(deadline)
            self.sync_add(record, result, claimed)
        return result

    def sync_add(self, record: StagedRecord, result: PassResult, claimed: set[str]) -> None:
        key = record.local_id
        if key in self.processing or not self.store.is_due(record):
            result.skipped += 1
            return

        self.processing.add(key)
        try:
            sent = {key: dict(record.payload or {})}
            try:
                payload = self.resolver.resolve_references(self.spec, record.payload)
            except DependencyNotReady as exc:
                logger.debug("Skipping %s %s: %s", self.spec.name, key, exc)
                result.skipped += 1
                return

            if self.absorb_duplicate(record, payload, claimed):
                result.skipped += 1
                return

            server_record = self._create_remote(record, payload)
            self.store.commit_add(
                self.spec,
                server_record,
                record,
                payload,
                on_mapped=partial(self.resolver.propagate, self.spec.name),
                hooks=self.commit_hooks(),
                sent=sent,
            )
            result.processed += 1
            logger.debug("Synced %s %s -> %s", self.spec.name, key, server_record["id"])
        except RemoteConflictError as exc:
            logger.info("Server reports %s %s as duplicate (%s); clearing stage", self.spec.name, key, exc)
            self.store.discard(record)
            result.skipped += 1
        except self.passthrough_errors:
            raise
        except Exception as exc:
            self.record_failure(record, exc, result)
        finally:
            self.processing.discard(key)

    def absorb_duplicate(self, record: StagedRecord, payload: dict, claimed: set[str]) -> bool:
        """Run the duplicate guard; on a hit clear the stage without a server call."""
        match = self.guard.check(self.spec, record, payload, claimed=claimed)
        if match is None:
            return False
        if match.reason == MATCH_MAPPED:
            logger.info("%s %s already mapped to %s; dropping stale stage", self.spec.name, record.local_id, match.server_id)
            self.store.discard(record)
        else:
            logger.info(
                "%s %s matches recent server record %s; adopting it",
                self.spec.name, record.local_id, match.server_id,
            )
            self.store.adopt(
                self.spec,
                record,
                match.server_id,
                on_mapped=partial(self.resolver.propagate, self.spec.name),
            )
        return True

    def idempotency_key(self, record: StagedRecord, payload: dict) -> str:
        """`{entity}-{localId}-{createdAt ms}-{key fields...}`; stable across retries."""
        parts = [self.spec.name, record.local_id, str(epoch_millis(record.created_at))]
        parts.extend(_key_part(payload.get(name)) for name in self.spec.key_fields)
        return "-".join(parts)

    def build_body(self, record: StagedRecord, payload: dict) -> dict:
        return {k: v for k, v in payload.items() if k not in LOCAL_ONLY_FIELDS}

    def _create_remote(self, record: StagedRecord, payload: dict) -> dict:
        envelope = self.api.create(
            self.spec, self.build_body(record, payload), self.idempotency_key(record, payload)
        )
        return envelope.first

    def commit_hooks(self) -> list:
        return []

    def record_failure(self, record: StagedRecord, exc: Exception, result: PassResult) -> None:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, RemoteApiError):
            logger.warning("%s %s sync failed: %s", self.spec.name, record.record_key, message)
        else:
            logger.exception("%s %s sync failed", self.spec.name, record.record_key)
        result.errors += 1
        result.last_error = message
        if self.store.mark_retry(self.spec, record, message):
            result.abandoned += 1

    # ---------------------------------------------------------------- updates / deletes

    def sync_updates(self, *, deadline: Optional[float] = None) -> PassResult:
        result = PassResult()
        pending = self.store.list_pending(self.spec, StagedRecord.OP_UPDATE)
        result.total = len(pending)
        for record in pending:
            check_deadline(deadline)
            key = record.server_id
            if key in self.processing or not self.store.is_due(record):
                result.skipped += 1
                continue
            self.processing.add(key)
            try:
                try:
                    body = self.resolver.resolve_references(self.spec, record.payload)
                except DependencyNotReady as exc:
                    logger.debug("Skipping %s update %s: %s", self.spec.name, key, exc)
                    result.skipped += 1
                    continue
                envelope = self.api.update(self.spec, key, self.build_body(record, body))
                self.store.commit_update(self.spec, record, envelope.record)
                result.processed += 1
            except RemoteConflictError as exc:
                logger.warning("Server rejected %s update %s as conflict: %s", self.spec.name, key, exc)
                self.store.discard(record)
                result.skipped += 1
            except self.passthrough_errors:
                raise
            except Exception as exc:
                self.record_failure(record, exc, result)
            finally:
                self.processing.discard(key)
        return result

    def sync_deletes(self, *, deadline: Optional[float] = None) -> PassResult:
        result = PassResult()
        pending = self.store.list_pending(self.spec, StagedRecord.OP_DELETE)
        result.total = len(pending)
        for record in pending:
            check_deadline(deadline)
            key = record.server_id
            if key in self.processing or not self.store.is_due(record):
                result.skipped += 1
                continue
            self.processing.add(key)
            try:
                envelope = self.api.delete(self.spec, key, self.build_body(record, record.payload or {}))
                self.store.commit_delete(self.spec, record)
                result.processed += 1
                if envelope.already_absent:
                    logger.info("%s %s was already deleted on server", self.spec.name, key)
            except RemoteConflictError as exc:
                logger.warning("Server refused to delete %s %s: %s", self.spec.name, key, exc)
                self.store.discard(record)
                result.skipped += 1
            except self.passthrough_errors:
                raise
            except Exception as exc:
                self.record_failure(record, exc, result)
            finally:
                self.processing.discard(key)
        return result

    # ---------------------------------------------------------------- refresh

    def should_refresh(self, changed: int = 0) -> bool:
        if changed or self.last_refresh_at is None:
            return True
        return utcnow() - self.last_refresh_at >= self.policy.refresh_cooldown

    def refresh(self) -> bool:
        """Replace the authoritative set wholesale. Failures are logged, never raised."""
        try:
            envelope = self.api.list(self.spec)
            pruned = self.store.replace_authoritative(self.spec, envelope.records)
        except Exception as exc:
            logger.warning("Refresh of %s failed: %s", self.spec.plural, exc)
            return False
        self.last_refresh_at = utcnow()
        if pruned:
            logger.info("Pruned %d %s mapping(s) missing on server", pruned, self.spec.name)
        return True

    # ---------------------------------------------------------------- status

    def reset_processing(self) -> int:
        cleared = len(self.processing)
        self.processing.clear()
        return cleared

    def status(self) -> dict:
        return {
            "entity": self.spec.name,
            "containers": self.store.counts(self.spec),
            "processing": sorted(self.processing),
            "lastSyncAt": to_utc_z(self.last_sync_at),
            "lastRefreshAt": to_utc_z(self.last_refresh_at),
            "lastError": self.last_error,
        }


class GroupedSyncEngine(EntitySyncEngine):
    """
    Entities whose adds are batch-created. Lines sharing a transactionId go through the
    TransactionGrouper, the rest are sent as one-line batches.
    """

    def __init__(self, spec: EntitySpec, **kwargs):
        super().__init__(spec, **kwargs)
        self.grouper = TransactionGrouper(self)

    def sync_adds(self, *, deadline: Optional[float] = None) -> PassResult:
        result = PassResult()
        pending = self.store.list_pending(self.spec, StagedRecord.OP_ADD)
        result.total = len(pending)
        groups = self.grouper.group(pending)

        # Units in staging order; a group is never split across chunks
        units: list[tuple[Optional[str], list[StagedRecord]]] = []
        seen: set[str] = set()
        for record in pending:
            tid = record.transaction_id
            if not tid:
                units.append((None, [record]))
            elif tid not in seen:
                seen.add(tid)
                units.append((tid, groups[tid]))

        claimed: set[str] = set()
        for chunk in self._chunks(units):
            logger.debug("Processing %s chunk of %d record(s)", self.spec.name, sum(len(u[1]) for u in chunk))
            for tid, records in chunk:
                check_deadline(deadline)
                if tid is None:
                    self.sync_add(records[0], result, claimed)
                else:
                    self.grouper.submit(tid, records, result, claimed)
        return result

    def _chunks(self, units):
        chunk, size = [], 0
        for unit in units:
            if chunk and size + len(unit[1]) > self.policy.batch_size:
                yield chunk
                chunk, size = [], 0
            chunk.append(unit)
            size += len(unit[1])
        if chunk:
            yield chunk

    def split_line(self, record: StagedRecord, payload: dict) -> tuple[dict, dict]:
        """(line item, call-level fields) for one line."""
        body = self.build_body(record, payload)
        shared = {k: body[k] for k in self.spec.shared_fields if body.get(k) not in (None, "")}
        item = {k: v for k, v in body.items() if k not in self.spec.shared_fields}
        return item, shared

    def split_group(self, members: list[tuple[StagedRecord, dict]]) -> tuple[list[dict], dict]:
        items = []
        shared: dict = {}
        for record, payload in members:
            item, line_shared = self.split_line(record, payload)
            items.append(item)
            # Client and user info come from the first member
            for k, v in line_shared.items():
                shared.setdefault(k, v)
        return items, shared

    def _create_remote(self, record: StagedRecord, payload: dict) -> dict:
        item, shared = self.split_line(record, payload)
        envelope = self.api.create_many(self.spec, [item], shared, self.idempotency_key(record, payload))
        if not envelope.records:
            raise RemoteApiError(NOT_PROCESSED)
        return envelope.first


class StockOutSyncEngine(GroupedSyncEngine):
    """
    Sales lines. A line may embed a staged backorder (backorderLocalId) which is
    committed with it.
    """

    def split_line(self, record: StagedRecord, payload: dict) -> tuple[dict, dict]:
        item, shared = super().split_line(record, payload)
        item.setdefault("isBackOrder", False)

        backorder_id = payload.get("backorderLocalId")
        if backorder_id:
            staged = self.store.get_staged(BACKORDER, StagedRecord.OP_ADD, backorder_id)
            mapping = self.store.get_mapping(BACKORDER.name, backorder_id)
            if staged is not None:
                item["isBackOrder"] = True
                item["backOrder"] = dict(staged.payload or {})
            elif mapping is not None:
                item["isBackOrder"] = True
                item["backorderId"] = mapping.server_id
        return item, shared

    def commit_hooks(self) -> list:
        return [self._link_backorder]

    def _link_backorder(self, record: StagedRecord, server_record: dict) -> None:
        backorder_id = (record.payload or {}).get("backorderLocalId")
        if not backorder_id:
            return
        server_backorder = server_record.get("backOrder") or server_record.get("backorder")
        server_backorder_id = server_record.get("backorderId")
        if server_backorder_id is None and isinstance(server_backorder, dict):
            server_backorder_id = server_backorder.get("id")
        if server_backorder_id is None:
            return
        linked = {**(server_backorder if isinstance(server_backorder, dict) else {}), "id": str(server_backorder_id)}
        self.store.link_embedded(BACKORDER, backorder_id, linked)

    def refresh(self) -> bool:
        refreshed = super().refresh()
        try:
            envelope = self.api.list(BACKORDER)
            self.store.replace_authoritative(BACKORDER, envelope.records)
        except Exception as exc:
            logger.warning("Refresh of %s failed: %s", BACKORDER.plural, exc)
        return refreshed


ENGINE_CLASSES = {
    "stockout": StockOutSyncEngine,
}


def build_engines(*, store: StagingStore, api: RemoteApi, policy: SyncPolicy) -> dict[str, EntitySyncEngine]:
    resolver = IdResolver(store)
    guard = DuplicateGuard(store, policy)
    engines = {}
    for name, spec in ENTITIES.items():
        if not spec.has_engine:
            continue
        cls = ENGINE_CLASSES.get(name, GroupedSyncEngine if spec.batch_create else EntitySyncEngine)
        engines[name] = cls(spec, store=store, api=api, resolver=resolver, guard=guard, policy=policy)
    return engines

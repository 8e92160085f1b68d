# Overview: Transaction grouper; submits staged adds sharing a transaction id as one multi-item call.

from __future__ import annotations

import logging
from collections import OrderedDict
from functools import partial
from typing import TYPE_CHECKING, Iterable

from ..models import StagedRecord
from ..time_utils import epoch_millis
from .id_resolver import DependencyNotReady
from .remote_api import RemoteApiError, RemoteConflictError

if TYPE_CHECKING:
    from .entity_sync import EntitySyncEngine, PassResult

logger = logging.getLogger(__name__)

NOT_PROCESSED = "Server did not process this record"


class TransactionGrouper:
    """
    Partial acceptance rules for one group of N members:
    - server returns K < N records: the first K members commit, the remaining N-K get a
      retry each (the server is the source of truth for what it accepted)
    - server reports a conflict/duplicate: every member is cleared, nothing is mapped
    - any other failure: every member gets a retry
    """

    def __init__(self, engine: "EntitySyncEngine"):
        self.engine = engine

    @staticmethod
    def group(records: Iterable[StagedRecord]) -> "OrderedDict[str, list[StagedRecord]]":
        groups: "OrderedDict[str, list[StagedRecord]]" = OrderedDict()
        for record in records:
            if record.transaction_id:
                groups.setdefault(record.transaction_id, []).append(record)
        return groups

    @staticmethod
    def group_key(transaction_id: str, records: Iterable[StagedRecord]) -> str:
        records = list(records)
        local_ids = sorted(r.local_id for r in records)
        earliest = min(epoch_millis(r.created_at) for r in records)
        return f"transaction-{transaction_id}-{'-'.join(local_ids)}-{earliest}"

    def submit(
        self,
        transaction_id: str,
        records: list[StagedRecord],
        result: "PassResult",
        claimed: set[str],
    ) -> None:
        engine = self.engine
        spec = engine.spec
        keys = [r.local_id for r in records]

        if any(key in engine.processing for key in keys):
            result.skipped += len(records)
            return
        if not all(engine.store.is_due(r) for r in records):
            result.skipped += len(records)
            return

        engine.processing.update(keys)
        remaining: list[StagedRecord] = list(records)
        try:
            sent = {r.local_id: dict(r.payload or {}) for r in records}
            try:
                resolved = [(r, engine.resolver.resolve_references(spec, r.payload)) for r in records]
            except DependencyNotReady as exc:
                logger.debug("Holding transaction %s: %s", transaction_id, exc)
                result.skipped += len(records)
                return

            pending: list[tuple[StagedRecord, dict]] = []
            for record, payload in resolved:
                if engine.absorb_duplicate(record, payload, claimed):
                    result.skipped += 1
                else:
                    pending.append((record, payload))
            remaining = [r for r, _ in pending]
            if not pending:
                return

            items, shared = engine.split_group(pending)
            key = self.group_key(transaction_id, remaining)
            logger.info("Submitting transaction %s with %d %s record(s)", transaction_id, len(items), spec.name)
            envelope = engine.api.create_many(spec, items, shared, key)

            accepted = envelope.records[: len(pending)]
            if accepted:
                engine.store.commit_adds(
                    spec,
                    [(record, payload, server) for (record, payload), server in zip(pending, accepted)],
                    on_mapped=partial(engine.resolver.propagate, spec.name),
                    hooks=engine.commit_hooks(),
                    sent=sent,
                )
                result.processed += len(accepted)

            leftover = remaining[len(accepted):]
            if leftover:
                logger.warning(
                    "Transaction %s: server accepted %d of %d record(s)",
                    transaction_id, len(accepted), len(remaining),
                )
            for record in leftover:
                engine.record_failure(record, RemoteApiError(NOT_PROCESSED), result)
        except RemoteConflictError as exc:
            logger.info("Server reports transaction %s as duplicate (%s); clearing it", transaction_id, exc)
            for record in remaining:
                engine.store.discard(record)
            result.skipped += len(remaining)
        except engine.passthrough_errors:
            raise
        except Exception as exc:
            logger.warning("Transaction %s failed: %s", transaction_id, exc)
            for record in remaining:
                engine.record_failure(record, exc, result)
        finally:
            engine.processing.difference_update(keys)

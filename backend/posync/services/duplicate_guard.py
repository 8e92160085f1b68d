# Overview: Duplicate guard; suppresses re-submission of adds the server already holds.

"""
Two independent signals, either one suppresses the submission:

(a) an IdMapping already exists for the staged local id
    (a previous pass, or a concurrent one, finished this record)
(b) an AuthoritativeRecord with the same discriminating fields was updated within the
    trailing window and is not mapped to any other local record
    (a previous submission succeeded but its local cleanup never committed)

Grouped records (same transactionId) use the transaction window and must also match
on the transactionId itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from ..config import SyncPolicy
from ..entities import EntitySpec
from ..models import StagedRecord
from ..time_utils import utcnow
from .staging_service import StagingStore

MATCH_MAPPED = "mapped"
MATCH_CONTENT = "content"


@dataclass(frozen=True)
class DuplicateMatch:
    reason: str
    server_id: str


def _normalize(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value)).normalize()
    if isinstance(value, str):
        text = value.strip()
        try:
            return Decimal(text).normalize()
        except InvalidOperation:
            return text
    return value


def same_content(fields, local: dict, remote: dict) -> bool:
    """Every discriminating field the local payload sets must match the remote value."""
    compared = 0
    for name in fields:
        mine = _normalize(local.get(name))
        if mine is None or mine == "":
            continue
        if mine != _normalize(remote.get(name)):
            return False
        compared += 1
    return compared > 0


class DuplicateGuard:
    def __init__(self, store: StagingStore, policy: SyncPolicy | None = None):
        self.store = store
        self.policy = policy or store.policy

    def check(
        self,
        spec: EntitySpec,
        record: StagedRecord,
        payload: dict,
        *,
        claimed: set[str] | None = None,
        now: datetime | None = None,
    ) -> DuplicateMatch | None:
        """
        `payload` is the resolved payload (references already server ids).

        `claimed` collects server ids matched earlier in the same pass; each remote
        record can absorb at most one staged record.
        """
        mapping = self.store.get_mapping(spec.name, record.local_id)
        if mapping is not None:
            return DuplicateMatch(MATCH_MAPPED, mapping.server_id)

        if not spec.duplicate_fields:
            return None

        grouped = bool(spec.group_field and record.transaction_id)
        if grouped:
            window: timedelta = self.policy.transaction_duplicate_window
            fields = tuple(spec.duplicate_fields) + (spec.group_field,)
        else:
            window = self.policy.duplicate_window
            fields = tuple(spec.duplicate_fields)

        claimed = claimed if claimed is not None else set()
        now = now or utcnow()
        taken = self.store.mapped_server_ids(spec) | claimed
        probe = dict(payload or {})
        if grouped:
            probe[spec.group_field] = record.transaction_id

        for candidate in self.store.list_authoritative(spec, since=now - window):
            if candidate.server_id in taken:
                continue
            if same_content(fields, probe, candidate.payload or {}):
                claimed.add(candidate.server_id)
                return DuplicateMatch(MATCH_CONTENT, candidate.server_id)
        return None

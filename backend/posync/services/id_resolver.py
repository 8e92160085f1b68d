# Overview: Cross-entity id resolver; turns local foreign ids into server ids and rewrites staged dependents.

from __future__ import annotations

import logging

from ..entities import EntitySpec, dependents_of
from .concurrency import write_with_retry
from .staging_service import StagingStore

logger = logging.getLogger(__name__)


class DependencyNotReady(Exception):
    """A referenced record has no server id yet; not an error, the record waits a pass."""

    def __init__(self, entity: str, field: str, value):
        super().__init__(f"{field}={value!r} references an unsynced {entity}")
        self.entity = entity
        self.field = field
        self.value = value


class IdResolver:
    """
    resolve(entity, foreign_id) -> server id | None

    Lookup order:
    1) IdMapping of the foreign entity (local id already synced)
    2) AuthoritativeRecord of the foreign entity (value already is a server id)

    A hit in (1) rewrites every still-staged dependent record so later passes never
    re-resolve the same local id.
    """

    def __init__(self, store: StagingStore):
        self.store = store

    def resolve(self, entity: str, foreign_id) -> str | None:
        if foreign_id is None or foreign_id == "":
            return None
        mapping = self.store.get_mapping(entity, foreign_id)
        if mapping is not None:
            server_id = mapping.server_id
            rewritten = write_with_retry(lambda: self.propagate(entity, str(foreign_id), server_id))
            if rewritten:
                logger.debug("Rewrote %d staged reference(s) %s -> %s", rewritten, foreign_id, server_id)
            return server_id
        if self.store.get_authoritative(entity, foreign_id) is not None:
            return str(foreign_id)
        return None

    def propagate(self, entity: str, local_id: str, server_id: str) -> int:
        """
        Rewrite references to `local_id` in every staged record that depends on `entity`.

        Runs inside the caller's transaction (commit_add passes it as on_mapped), so the
        mapping and the rewrites land together.
        """
        total = 0
        for spec, ref in dependents_of(entity):
            total += self.store.rewrite_reference(spec, ref.field, local_id, server_id)
        return total

    def resolve_references(self, spec: EntitySpec, payload: dict) -> dict:
        """
        Return a copy of `payload` whose references all carry server ids.

        Empty references are left alone (e.g. a product without a category).
        Raises DependencyNotReady for the first reference that cannot be resolved.
        """
        resolved = dict(payload or {})
        for ref in spec.references:
            value = resolved.get(ref.field)
            if value is None or value == "":
                continue
            server_id = self.resolve(ref.entity, value)
            if server_id is None:
                raise DependencyNotReady(ref.entity, ref.field, value)
            resolved[ref.field] = server_id
        return resolved

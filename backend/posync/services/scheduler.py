# Overview: Sync scheduler; owns engines, per-entity locks, connectivity and triggers, and emits sync events.

"""
Sync Scheduler

Triggers (all funnelled through the same per-entity locks, so they never overlap):
- connectivity restored  -> sync_all after SYNC_ONLINE_DELAY_SECONDS (debounced)
- application focus      -> sync_all after SYNC_FOCUS_DELAY_SECONDS, only if online and idle
- interval timer         -> sync_all every SYNC_INTERVAL_SECONDS while online
- cleanup timer          -> stale staged records abandoned every SYNC_CLEANUP_INTERVAL_SECONDS

Events emitted to listeners registered with on():
    sync-started   {"entity": name | None}
    sync-completed {"entity": ..., "results": {...}}
    sync-error     {"entity": ..., "message": str}
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from flask import current_app, has_app_context

from ..config import SyncPolicy
from ..entities import ancestors_of, get_spec, sync_order
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError
from .connectivity import ConnectivityState
from .entity_sync import EntitySyncEngine, EntitySyncResult, SyncTimeoutError, build_engines
from .maintenance_service import cleanup_stale_staged
from .remote_api import RemoteApi
from .staging_service import StagingStore
from .sync_lock import SyncLock

logger = logging.getLogger(__name__)

EVENT_STARTED = "sync-started"
EVENT_COMPLETED = "sync-completed"
EVENT_ERROR = "sync-error"
EVENTS = (EVENT_STARTED, EVENT_COMPLETED, EVENT_ERROR)

OFFLINE_MESSAGE = "Offline; sync postponed"


@dataclass
class SyncOutcome:
    entity: Optional[str]
    success: bool
    results: dict[str, EntitySyncResult] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return sum(r.changed for r in self.results.values())

    @property
    def errors(self) -> int:
        return sum(r.errors for r in self.results.values())

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "success": self.success,
            "error": self.error,
            "processed": self.processed,
            "errors": self.errors,
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "startedAt": to_utc_z(self.started_at),
            "finishedAt": to_utc_z(self.finished_at),
        }


class SyncScheduler:
    def __init__(
        self,
        app,
        *,
        engines: dict[str, EntitySyncEngine],
        store: StagingStore,
        api: RemoteApi,
        policy: SyncPolicy,
        connectivity: ConnectivityState,
    ):
        self.app = app
        self.engines = engines
        self.store = store
        self.api = api
        self.policy = policy
        self.connectivity = connectivity
        self.locks = {
            name: SyncLock(name, timeout=policy.lock_timeout, on_force_clear=engine.reset_processing)
            for name, engine in engines.items()
        }

        self._listeners: dict[str, list[Callable[[dict], None]]] = {e: [] for e in EVENTS}
        self._listeners_lock = threading.Lock()
        self.last_outcome: Optional[SyncOutcome] = None

        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.started = False

        connectivity.on_change(self._on_connectivity_change)

    # ---------------------------------------------------------------- events

    def on(self, event: str, callback: Callable[[dict], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown sync event: {event}")
        with self._listeners_lock:
            self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[[dict], None]) -> None:
        with self._listeners_lock:
            if callback in self._listeners.get(event, []):
                self._listeners[event].remove(callback)

    def _emit(self, event: str, payload: dict) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners[event])
        for cb in listeners:
            try:
                cb(payload)
            except Exception:
                logger.exception("Listener for %s failed", event)

    # ---------------------------------------------------------------- passes

    @contextmanager
    def _app_context(self):
        if has_app_context():
            yield
        else:
            with self.app.app_context():
                yield

    def _engine(self, name: str) -> EntitySyncEngine:
        spec = get_spec(name)
        engine = self.engines.get(spec.name)
        if engine is None:
            raise ValidationError(f"{spec.name} has no sync engine")
        return engine

    def _deadline(self) -> float:
        return time.monotonic() + self.policy.lock_timeout

    def _adds_only(self, name: str, deadline: float) -> EntitySyncResult:
        engine = self.engines[name]
        return EntitySyncResult(entity=name, adds=engine.sync_adds(deadline=deadline))

    def _finish(self, outcome: SyncOutcome) -> SyncOutcome:
        outcome.finished_at = utcnow()
        self.last_outcome = outcome
        if outcome.success:
            self._emit(EVENT_COMPLETED, {"entity": outcome.entity, "results": outcome.to_dict()["results"]})
        else:
            self._emit(EVENT_ERROR, {"entity": outcome.entity, "message": outcome.error})
        return outcome

    def _guarded(self, entity: Optional[str], body: Callable[[SyncOutcome], None]) -> SyncOutcome:
        outcome = SyncOutcome(entity=entity, success=False)
        if not self.connectivity.online:
            outcome.error = OFFLINE_MESSAGE
            outcome.finished_at = utcnow()
            return outcome

        self._emit(EVENT_STARTED, {"entity": entity})
        with self._app_context():
            try:
                body(outcome)
                outcome.success = True
            except SyncTimeoutError as exc:
                logger.warning("Sync of %s timed out: %s", entity or "all entities", exc)
                outcome.error = str(exc)
            except Exception as exc:
                logger.exception("Sync of %s failed", entity or "all entities")
                outcome.error = str(exc) or exc.__class__.__name__
        return self._finish(outcome)

    def sync_entity(self, name: str, *, force: bool = False) -> SyncOutcome:
        """
        One full pass for `name`, preceded by the adds passes of everything it depends
        on (each through that entity's own lock). Concurrent callers join the in-flight
        pass unless force=True.
        """
        engine = self._engine(name)
        name = engine.spec.name

        def body(outcome: SyncOutcome) -> None:
            deadline = self._deadline()
            for dep in ancestors_of(name):
                outcome.results[dep] = self.locks[dep].run(
                    lambda dep=dep: self._adds_only(dep, deadline), join=False
                )
            outcome.results[name] = self.locks[name].run(
                lambda: engine.sync_entity(deadline=deadline), join=not force
            )

        return self._guarded(name, body)

    def sync_all(self, *, force: bool = False) -> SyncOutcome:
        """Every entity in dependency order."""

        def body(outcome: SyncOutcome) -> None:
            deadline = self._deadline()
            for name in sync_order():
                engine = self.engines[name]
                outcome.results[name] = self.locks[name].run(
                    lambda engine=engine: engine.sync_entity(deadline=deadline), join=not force
                )

        return self._guarded(None, body)

    def force_sync(self, entity: Optional[str] = None) -> SyncOutcome:
        if entity:
            return self.sync_entity(entity, force=True)
        return self.sync_all(force=True)

    def run_maintenance(self) -> int:
        with self._app_context():
            try:
                return cleanup_stale_staged(policy=self.policy)
            except Exception:
                logger.exception("Periodic cleanup failed")
                return 0

    # ---------------------------------------------------------------- triggers

    def _schedule(self, delay: float, reason: str) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(delay, self._trigger, args=(reason,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _cancel_pending(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _trigger(self, reason: str) -> Optional[SyncOutcome]:
        with self._timer_lock:
            self._timer = None
        if not self.connectivity.online:
            return None
        logger.info("Sync triggered by %s", reason)
        return self.sync_all()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._schedule(self.policy.online_delay, "connectivity")
        else:
            self._cancel_pending()

    def set_online(self, online: bool) -> bool:
        return self.connectivity.set_online(online)

    def notify_focus(self) -> bool:
        """Application regained focus. Returns True when a sync was scheduled."""
        if not self.connectivity.online:
            return False
        if any(lock.is_syncing for lock in self.locks.values()):
            return False
        self._schedule(self.policy.focus_delay, "focus")
        return True

    def _loop(self, interval: float, action: Callable[[], Any], name: str) -> None:
        while not self._stop.wait(interval):
            try:
                action()
            except Exception:
                logger.exception("%s loop iteration failed", name)

    def _interval_tick(self) -> None:
        if self.connectivity.online:
            self.sync_all()

    def start(self) -> None:
        if self.started:
            return
        self._stop.clear()
        self.started = True
        loops = [
            ("sync-interval", self.policy.interval, self._interval_tick),
            ("sync-cleanup", self.policy.cleanup_interval, self.run_maintenance),
        ]
        for name, interval, action in loops:
            if interval <= 0:
                continue
            thread = threading.Thread(target=self._loop, args=(interval, action, name), name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        if self.connectivity.online:
            self._schedule(self.policy.online_delay, "startup")
        logger.info("Sync scheduler started (interval=%.0fs)", self.policy.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._cancel_pending()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self.started = False
        logger.info("Sync scheduler stopped")

    # ---------------------------------------------------------------- status

    def status(self) -> dict:
        with self._app_context():
            entities = {}
            for name in sync_order():
                engine = self.engines[name]
                entities[name] = {**engine.status(), "lock": self.locks[name].status()}
        return {
            **self.connectivity.to_dict(),
            "started": self.started,
            "entities": entities,
            "lastOutcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }


def build_scheduler(app, *, transport=None) -> SyncScheduler:
    policy = SyncPolicy.from_config(app.config)
    store = StagingStore(policy)
    api = RemoteApi.from_config(app.config, transport=transport)
    return SyncScheduler(
        app,
        engines=build_engines(store=store, api=api, policy=policy),
        store=store,
        api=api,
        policy=policy,
        connectivity=ConnectivityState(online=app.config.get("SYNC_ASSUME_ONLINE", True)),
    )


def init_sync(app, *, transport=None) -> SyncScheduler:
    scheduler = build_scheduler(app, transport=transport)
    app.extensions["sync_scheduler"] = scheduler
    if app.config.get("SYNC_AUTOSTART"):
        scheduler.start()
    return scheduler


def get_scheduler() -> SyncScheduler:
    return current_app.extensions["sync_scheduler"]

# Overview: Single-flight lock for one entity family; explicit IDLE/SYNCING state machine with a timeout.

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"


class SyncLock:
    """
    IDLE -> SYNCING -> IDLE

    run(func) while IDLE executes func. While SYNCING, a second caller waits for the
    in-flight run and receives its result (join=True), or waits and then starts a
    fresh run (join=False, force sync).

    If the in-flight run exceeds `timeout` the lock is force-cleared, `on_force_clear`
    resets stale processing markers and the waiting caller runs. This is a safety
    valve for a wedged run, not a correctness guarantee: the wedged thread may still
    finish later, but it no longer owns the lock.
    """

    def __init__(
        self,
        name: str,
        *,
        timeout: float = 300.0,
        on_force_clear: Optional[Callable[[], Any]] = None,
    ):
        self.name = name
        self.timeout = timeout
        self._on_force_clear = on_force_clear
        self._cond = threading.Condition()

        self.state = SyncState.IDLE
        self._run_id = 0
        self._completed_id = 0
        self._started_at: Optional[float] = None
        self._last_result: Any = None
        self._last_exc: Optional[BaseException] = None
        self.force_clears = 0

    @property
    def is_syncing(self) -> bool:
        with self._cond:
            return self.state == SyncState.SYNCING

    def _force_clear(self) -> None:
        # Caller holds self._cond
        age = time.monotonic() - (self._started_at or time.monotonic())
        logger.warning("Force-clearing %s sync lock held for %.1fs (run %d)", self.name, age, self._run_id)
        self.state = SyncState.IDLE
        self._started_at = None
        self.force_clears += 1
        if self._on_force_clear is not None:
            try:
                self._on_force_clear()
            except Exception:
                logger.exception("Resetting %s processing markers failed", self.name)
        self._cond.notify_all()

    def _wait_for_idle(self) -> bool:
        """Wait until the in-flight run ends. False when it timed out and was force-cleared."""
        in_flight = self._run_id
        while self.state == SyncState.SYNCING and self._run_id == in_flight:
            elapsed = time.monotonic() - (self._started_at or time.monotonic())
            remaining = self.timeout - elapsed
            if remaining <= 0:
                self._force_clear()
                return False
            self._cond.wait(remaining)
        return True

    def run(self, func: Callable[[], Any], *, join: bool = True) -> Any:
        with self._cond:
            if self.state == SyncState.SYNCING:
                awaited = self._run_id
                finished = self._wait_for_idle()
                if finished and join and self._completed_id == awaited:
                    if self._last_exc is not None:
                        raise self._last_exc
                    return self._last_result
                # Another waiter may have started a run while we were woken
                while self.state == SyncState.SYNCING:
                    self._wait_for_idle()

            self._run_id += 1
            run_id = self._run_id
            self.state = SyncState.SYNCING
            self._started_at = time.monotonic()

        result = None
        error: Optional[BaseException] = None
        try:
            result = func()
            return result
        except BaseException as exc:
            error = exc
            raise
        finally:
            with self._cond:
                if self._run_id == run_id and self.state == SyncState.SYNCING:
                    self.state = SyncState.IDLE
                    self._started_at = None
                    self._completed_id = run_id
                    self._last_result = result
                    self._last_exc = error
                    self._cond.notify_all()

    def status(self) -> dict:
        with self._cond:
            held_for = None
            if self._started_at is not None:
                held_for = round(time.monotonic() - self._started_at, 3)
            return {
                "state": self.state.value,
                "runId": self._run_id,
                "heldForSeconds": held_for,
                "forceClears": self.force_clears,
            }

# Overview: Connectivity oracle adapter; an online flag fed by external probes, with transition callbacks.

from __future__ import annotations

import logging
import threading
from typing import Callable

from ..time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)


class ConnectivityState:
    """
    The core never probes the network. Whatever knows (the UI shell, an OS hook, a
    health check) calls set_online(); registered callbacks fire on transitions only.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._changed_at = utcnow()
        self._callbacks: list[Callable[[bool], None]] = []
        self._lock = threading.Lock()

    @property
    def online(self) -> bool:
        with self._lock:
            return self._online

    def on_change(self, callback: Callable[[bool], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def set_online(self, online: bool) -> bool:
        """Returns True when this call changed the state."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            self._changed_at = utcnow()
            callbacks = list(self._callbacks)

        logger.info("Connectivity %s", "restored" if online else "lost")
        for cb in callbacks:
            try:
                cb(online)
            except Exception:
                logger.exception("Connectivity callback failed")
        return True

    def to_dict(self) -> dict:
        with self._lock:
            return {"online": self._online, "changedAt": to_utc_z(self._changed_at)}

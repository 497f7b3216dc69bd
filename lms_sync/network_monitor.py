# =============================================================================
# LMS Sync Client -- Connectivity Monitor
# =============================================================================
#
# Online/offline flag with change listeners. The embedding app feeds it from
# whatever signal it has (OS network events, failed requests, health probes).
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from ._logging import logger

ConnectivityListener = Callable[[bool], Any]


class ConnectivityMonitor:
    """Track whether the backend is believed reachable.

    Listeners fire only on transitions, never for a repeated state.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._changed_at: float | None = None
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def changed_at(self) -> float | None:
        """``time.monotonic()`` of the last transition."""
        return self._changed_at

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._changed_at = time.monotonic()
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.error("Connectivity listener failed", exc_info=True)

    async def check(self, probe: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> bool:
        """Run *probe* and record its verdict. Errors count as offline."""
        try:
            online = bool(await asyncio.wait_for(probe(), timeout=timeout))
        except asyncio.TimeoutError:
            online = False
        except Exception as e:
            logger.debug("Connectivity probe failed: %s", e)
            online = False
        self.set_online(online)
        return online

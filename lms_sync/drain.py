# =============================================================================
# LMS Sync Client -- Drain Worker
# =============================================================================
#
# Drains one item kind whenever connectivity returns, and re-arms itself
# with the scheduler's suggested backoff while items remain.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Callable

from ._logging import logger
from .constants import DRAIN_ONLINE_DELAY
from .scheduler import DrainHandler
from .types import ProcessResult, QueueItem, QueueItemKind

if TYPE_CHECKING:
    from .network_monitor import ConnectivityMonitor
    from .offline_queue import MutationQueue

SyncErrorHandler = Callable[[QueueItem, BaseException | None], Any]


class DrainWorker:
    """Background replay of queued items of one kind.

    Args:
        queue: Queue to drain.
        kind: Item kind this worker owns.
        handler: Delivery function; returns True when the server
            accepted the item.
        connectivity: Optional monitor; draining pauses while offline
            and restarts shortly after the link comes back.
        on_sync_error: Called with the item and the exception (``None``
            when the handler returned False).
        online_delay: Seconds to wait after reconnecting before draining.
        interval: Optional periodic catch-up drain in seconds.
    """

    def __init__(
        self,
        queue: MutationQueue,
        kind: QueueItemKind,
        handler: DrainHandler,
        *,
        connectivity: ConnectivityMonitor | None = None,
        on_sync_error: SyncErrorHandler | None = None,
        online_delay: float = DRAIN_ONLINE_DELAY,
        interval: float | None = None,
    ) -> None:
        self._queue = queue
        self._kind = kind
        self._handler = handler
        self._connectivity = connectivity
        self._on_sync_error = on_sync_error
        self._online_delay = online_delay
        self._interval = interval

        self._timer: asyncio.Task[None] | None = None
        self._periodic: asyncio.Task[None] | None = None
        self._current: asyncio.Task[ProcessResult] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._running = False
        self.last_sync: float | None = None
        self.last_result: ProcessResult | None = None

    @property
    def kind(self) -> QueueItemKind:
        return self._kind

    @property
    def is_processing(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def _online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self._queue.initialize()
        if self._connectivity is not None:
            self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        if self._interval:
            self._periodic = asyncio.ensure_future(self._periodic_loop(self._interval))
        if self._online and self._queue.has_pending(self._kind):
            self.schedule(0.0)

    async def stop(self) -> None:
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [t for t in (self._timer, self._periodic, self._current) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer = self._periodic = self._current = None

    # -- Scheduling -----------------------------------------------------------

    def schedule(self, delay: float) -> None:
        """Replace any pending timer with a drain after *delay* seconds."""
        if not self._running:
            return
        timer = self._timer
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        self._timer = asyncio.ensure_future(self._delayed_drain(delay))

    async def _delayed_drain(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.drain()

    async def _periodic_loop(self, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            if self._queue.has_pending(self._kind) and not self.is_scheduled:
                await self.drain()

    def _on_connectivity(self, online: bool) -> None:
        if online:
            if self._queue.has_pending(self._kind):
                self.schedule(self._online_delay)
        elif self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # -- Draining -------------------------------------------------------------

    async def drain(self) -> ProcessResult | None:
        """Run one drain pass now. Returns None while offline."""
        if not self._online:
            logger.debug("Skipping %s drain while offline", self._kind.value)
            return None
        if self.is_processing:
            return await asyncio.shield(self._current)

        self._current = asyncio.ensure_future(
            self._queue.process_type(self._kind, self._deliver)
        )
        result = await asyncio.shield(self._current)
        self.last_result = result

        if result.processed > 0:
            self.last_sync = time.time()
            logger.info("Synced %d queued %s item(s)", result.processed, self._kind.value)
        if result.remaining > 0 and result.next_delay is not None:
            self.schedule(result.next_delay)
        return result

    async def _deliver(self, item: QueueItem) -> bool:
        try:
            ok = bool(await self._handler(item))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report(item, e)
            raise
        if not ok:
            self._report(item, None)
        return ok

    def _report(self, item: QueueItem, error: BaseException | None) -> None:
        if self._on_sync_error is None:
            return
        try:
            self._on_sync_error(item, error)
        except Exception:
            logger.error("Sync error handler failed", exc_info=True)

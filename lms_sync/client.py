# =============================================================================
# LMS Sync Client -- Client Composition
# =============================================================================
#
# Primary public API. Wires the queue, session gate, refresh coordinator,
# request pipeline, producers and drain workers together. Async context
# manager.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable

from ._logging import logger
from .broadcast import BroadcastChannel, LocalBroadcastHub
from .credentials import CredentialStore, Session
from .drain import DrainWorker, SyncErrorHandler
from .network_monitor import ConnectivityMonitor
from .offline_queue import MutationQueue
from .pipeline import RequestPipeline, SessionCall
from .producers import AssignmentRequest, AssignmentRequests, AssignmentSubmission, ProgressSync
from .refresh import RefreshCoordinator
from .session_gate import SessionGate
from .storage import KeyValueBackend, StorageErrorHandler
from .transport import HttpxTransport, Transport
from .types import (
    PipelineConfig,
    QueueConfig,
    QueueItem,
    QueueItemKind,
    RefreshConfig,
    Response,
)


class OfflineSyncClient:
    """Offline-tolerant LMS API client.

    Args:
        base_url: API origin, used when no *transport* is given.
        storage: Durable backend for the offline queue; ``None`` keeps the
            queue in memory only.
        session_storage: Backend shared with sibling clients for the cached
            session, so a refresh done by one client reaches the others.
            Defaults to *storage*.
        channel: Broadcast channel shared with sibling clients of the same
            user. Defaults to a private in-process channel.
        transport: Request transport; defaults to :class:`HttpxTransport`.
        session: Initial cached session.
        online: Initial connectivity state.
        queue_config / refresh_config / pipeline_config: Tuning.
        session_bootstrap / token_refresh: Overrides for the auth calls.
        on_queue_full: Called once per queue overflow episode.
        on_storage_error: Called once when persistence degrades.
        on_sync_error: Called for every failed replay attempt.
        drain_interval: Optional periodic catch-up drain in seconds.

    Example::

        async with OfflineSyncClient("https://lms.example", storage=FileBackend(path)) as client:
            await client.progress.sync_event("u1", "c1", "l1", percent=40)
            client.set_online(False)
            ...
            client.set_online(True)   # queued items drain shortly after
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        storage: KeyValueBackend | None = None,
        session_storage: KeyValueBackend | None = None,
        channel: BroadcastChannel | None = None,
        transport: Transport | None = None,
        session: Session | None = None,
        online: bool = True,
        queue_config: QueueConfig | None = None,
        refresh_config: RefreshConfig | None = None,
        pipeline_config: PipelineConfig | None = None,
        session_bootstrap: SessionCall | None = None,
        token_refresh: SessionCall | None = None,
        on_queue_full: Callable[[], Any] | None = None,
        on_storage_error: StorageErrorHandler | None = None,
        on_sync_error: SyncErrorHandler | None = None,
        drain_interval: float | None = None,
    ) -> None:
        refresh_config = refresh_config or RefreshConfig()
        pipeline_config = pipeline_config or PipelineConfig(base_url=base_url)

        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(pipeline_config.base_url or base_url)
        self._channel = channel or LocalBroadcastHub().channel(refresh_config.channel_name)

        self.credentials = CredentialStore(
            session, backend=session_storage if session_storage is not None else storage
        )
        self.connectivity = ConnectivityMonitor(online)
        self.queue = MutationQueue(
            storage,
            config=queue_config,
            on_queue_full=on_queue_full,
            on_storage_error=on_storage_error,
        )
        self.gate = SessionGate(self.credentials)
        self.coordinator = RefreshCoordinator(
            self._channel, watchdog_timeout=refresh_config.watchdog_timeout
        )
        self.pipeline = RequestPipeline(
            self._transport,
            self.gate,
            self.credentials,
            self.coordinator,
            config=pipeline_config,
            session_bootstrap=session_bootstrap,
            token_refresh=token_refresh,
        )
        self.progress = ProgressSync(self.pipeline, self.queue, connectivity=self.connectivity)
        self.assignments = AssignmentRequests(
            self.pipeline, self.queue, connectivity=self.connectivity
        )

        def worker(kind: QueueItemKind, handler: Any) -> DrainWorker:
            return DrainWorker(
                self.queue,
                kind,
                handler,
                connectivity=self.connectivity,
                on_sync_error=on_sync_error,
                interval=drain_interval,
            )

        self._workers = {
            QueueItemKind.PROGRESS_EVENT: worker(QueueItemKind.PROGRESS_EVENT, self.progress.replay),
            QueueItemKind.PROGRESS_SNAPSHOT: worker(
                QueueItemKind.PROGRESS_SNAPSHOT, self.progress.replay
            ),
            QueueItemKind.ASSIGNMENT_REQUEST: worker(
                QueueItemKind.ASSIGNMENT_REQUEST, self.assignments.replay
            ),
        }
        self._started = False
        self._closed = False

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> OfflineSyncClient:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.dispose()

    # -- Lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the shared session and persisted queue, start the drain workers."""
        if self._started:
            return
        await self._channel.start()
        if not self.credentials.has_session():
            await self.credentials.reload()
        await self.queue.initialize()
        for drain_worker in self._workers.values():
            await drain_worker.start()
        self._started = True
        logger.info("Offline sync client ready (%d queued)", self.queue.size)

    async def dispose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for drain_worker in self._workers.values():
            await drain_worker.stop()
        await self.coordinator.dispose()
        await self.queue.dispose()
        await self._channel.close()
        if self._owns_transport and isinstance(self._transport, HttpxTransport):
            await self._transport.aclose()
        logger.info("Offline sync client closed")

    # -- Convenience ----------------------------------------------------------

    def set_online(self, online: bool) -> None:
        """Report a connectivity change; going online triggers a drain."""
        self.connectivity.set_online(online)

    async def request(self, path: str, **kwargs: Any) -> Response:
        return await self.pipeline.request(path, **kwargs)

    async def assign(self, request: AssignmentRequest) -> AssignmentSubmission:
        return await self.assignments.submit(request)

    async def sync_event(self, *args: Any, **kwargs: Any) -> QueueItem | None:
        return await self.progress.sync_event(*args, **kwargs)

    async def flush(self) -> int:
        """Drain every kind now; returns the number of items delivered."""
        results = await asyncio.gather(*(w.drain() for w in self._workers.values()))
        return sum(r.processed for r in results if r is not None)

    def worker(self, kind: QueueItemKind) -> DrainWorker:
        return self._workers[kind]

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        state = self.coordinator.state
        return {
            "online": self.connectivity.is_online,
            "has_session": self.gate.has_active_session(),
            "refresh": {
                "phase": state.phase.value,
                "token": state.token,
                "initiator": self.coordinator.is_initiator,
            },
            "queue": self.queue.get_stats(),
            "workers": {
                kind.value: {
                    "processing": w.is_processing,
                    "scheduled": w.is_scheduled,
                    "last_sync": w.last_sync,
                }
                for kind, w in self._workers.items()
            },
        }

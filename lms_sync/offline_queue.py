# =============================================================================
# LMS Sync Client -- Offline Mutation Queue
# =============================================================================
#
# Buffers mutations that could not be delivered and drains them in priority
# order once the backend is reachable again. The in-memory mirror is the
# source of truth for this process; every change is mirrored to the durable
# store after subscribers have been notified.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable
from uuid import uuid4

from ._logging import logger
from .errors import QueueNotInitializedError
from .idempotency import build_idempotency_key
from .scheduler import DrainHandler, QueueScheduler, compact, dedupe, dedupe_key, sort_items
from .storage import DurableQueueStore, KeyValueBackend, StorageErrorHandler, is_quota_error
from .types import ProcessResult, QueueConfig, QueueItem, QueueItemKind, QueuePriority

QueueListener = Callable[[list[QueueItem]], Any]

_KEY_ACTION = {
    QueueItemKind.PROGRESS_EVENT: "progress.sync",
    QueueItemKind.PROGRESS_SNAPSHOT: "progress.snapshot",
    QueueItemKind.ASSIGNMENT_REQUEST: "course.assign",
}


class MutationQueue:
    """Durable, priority-ordered queue of pending mutations.

    This is the only component that writes the persisted snapshot.
    Producers enqueue through it and drain workers walk it through
    :meth:`process_type`.

    Args:
        backend: Durable key-value backend, or ``None`` for memory-only.
        config: Capacity, backoff and storage keys.
        on_queue_full: Called once per overflow episode.
        on_storage_error: Called once when persistence degrades.

    Example::

        queue = MutationQueue(FileBackend("~/.lms/queue"))
        await queue.initialize()
        item = await queue.enqueue(
            QueueItemKind.PROGRESS_EVENT,
            owner_id="u1",
            scope_id="c1",
            payload={"lesson_id": "l1", "percent": 40},
        )
    """

    def __init__(
        self,
        backend: KeyValueBackend | None = None,
        *,
        config: QueueConfig | None = None,
        on_queue_full: Callable[[], Any] | None = None,
        on_storage_error: StorageErrorHandler | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._store = DurableQueueStore(
            backend,
            key=self._config.storage_key,
            legacy_key=self._config.legacy_key,
            on_error=on_storage_error,
        )
        self._scheduler = QueueScheduler(self._config, on_queue_full=on_queue_full)

        self._items: list[QueueItem] = []
        self._listeners: list[QueueListener] = []
        self._last_timestamp = 0
        self._ready = False
        self._disposed = False
        self._init_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._drains: dict[QueueItemKind, asyncio.Task[ProcessResult]] = {}

    # -- Lifecycle ------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """Load persisted and legacy items once. Safe to call repeatedly."""
        self._check_alive()
        if self._ready:
            return
        if self._init_task is None or self._init_task.cancelled():
            self._init_task = asyncio.ensure_future(self._load())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            # A failed load must not poison later attempts
            if self._init_task is task:
                self._init_task = None
            raise

    async def _load(self) -> None:
        stored = await self._store.read_all()
        legacy = await self._store.migrate_legacy()

        merged: dict[str, QueueItem] = {}
        for item in (*legacy, *stored):
            merged[item.id] = item

        items = dedupe(sorted(merged.values(), key=lambda i: i.enqueued_at))
        items, evicted = self._scheduler.trim(items)
        self._items = sort_items(items)
        self._last_timestamp = max((i.enqueued_at for i in self._items), default=0)
        self._scheduler.observe_size(len(self._items))
        self._ready = True

        logger.info(
            "Offline queue initialized: %d items (%d migrated, %d evicted)",
            len(self._items),
            len(legacy),
            len(evicted),
        )
        self._notify()
        await self._persist()

    async def dispose(self) -> None:
        """Stop drains, flush the last snapshot and drop all listeners."""
        if self._disposed:
            return
        self._disposed = True
        for task in self._drains.values():
            task.cancel()
        self._drains.clear()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        if self._ready:
            await self._persist()
        self._listeners.clear()

    # -- Reads ----------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def storage_degraded(self) -> bool:
        return self._store.degraded

    def snapshot(self, kind: QueueItemKind | None = None) -> list[QueueItem]:
        """Synchronous copy of the queue in drain order."""
        if kind is None:
            return list(self._items)
        return [i for i in self._items if i.kind == kind]

    def has_pending(self, kind: QueueItemKind | None = None) -> bool:
        if kind is None:
            return bool(self._items)
        return any(i.kind == kind for i in self._items)

    def get(self, item_id: str) -> QueueItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    # -- Subscriptions --------------------------------------------------------

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Writes ---------------------------------------------------------------

    async def enqueue(
        self,
        kind: QueueItemKind,
        *,
        owner_id: str,
        scope_id: str,
        payload: dict[str, Any] | None = None,
        priority: QueuePriority = QueuePriority.MEDIUM,
        idempotency_key: str | None = None,
        module_id: str | None = None,
        lesson_id: str | None = None,
        action: str | None = None,
    ) -> QueueItem:
        """Buffer a mutation and return the stored item.

        The idempotency key is generated here only when the producer did
        not already create one for this submission.
        """
        await self.initialize()

        if idempotency_key is None:
            idempotency_key = build_idempotency_key(
                _KEY_ACTION[kind],
                {"ownerId": owner_id, "scopeId": scope_id, "lessonId": lesson_id},
            )

        item = compact(
            QueueItem(
                id=f"queue_{uuid4().hex}",
                kind=kind,
                owner_id=owner_id,
                scope_id=scope_id,
                payload=dict(payload or {}),
                priority=priority,
                enqueued_at=self._next_timestamp(),
                attempts=0,
                idempotency_key=idempotency_key,
                module_id=module_id,
                lesson_id=lesson_id,
                action=action,
            )
        )

        items = self._items
        key = dedupe_key(item)
        if key is not None:
            superseded = [i for i in items if dedupe_key(i) == key]
            if superseded:
                logger.debug("Replacing %d superseded %s item(s)", len(superseded), kind.value)
                ids = {i.id for i in superseded}
                items = [i for i in items if i.id not in ids]

        self._items, _ = self._scheduler.apply_capacity(items, item)
        self._changed()
        await self._persist()
        return item

    async def remove(self, item_id: str) -> bool:
        await self.initialize()
        before = len(self._items)
        self._items = [i for i in self._items if i.id != item_id]
        if len(self._items) == before:
            return False
        self._changed()
        await self._persist()
        return True

    async def clear(self) -> None:
        await self.initialize()
        self._items = []
        self._changed()
        await self._persist()

    # -- Draining -------------------------------------------------------------

    async def process_type(self, kind: QueueItemKind, handler: DrainHandler) -> ProcessResult:
        """Drain items of *kind* through *handler*.

        Only one drain per kind runs at a time; a concurrent call awaits
        and returns the result of the drain already in flight.
        """
        await self.initialize()
        task = self._drains.get(kind)
        if task is None or task.done():
            task = asyncio.ensure_future(self._scheduler.process_type(self, kind, handler))
            self._drains[kind] = task
            task.add_done_callback(lambda t, k=kind: self._drain_done(k, t))
        return await asyncio.shield(task)

    def _drain_done(self, kind: QueueItemKind, task: asyncio.Task[ProcessResult]) -> None:
        if self._drains.get(kind) is task:
            del self._drains[kind]

    # DrainTarget protocol

    def first_pending(self, kind: QueueItemKind) -> QueueItem | None:
        for item in self._items:
            if item.kind == kind:
                return item
        return None

    def count(self, kind: QueueItemKind) -> int:
        return sum(1 for i in self._items if i.kind == kind)

    async def complete(self, item: QueueItem) -> None:
        self._items = [i for i in self._items if i.id != item.id]
        self._changed()
        await self._persist()

    async def record_failure(self, item: QueueItem) -> QueueItem:
        current = self.get(item.id) or item
        failed = current.with_attempts(current.attempts + 1)
        self._items = [failed if i.id == item.id else i for i in self._items]
        self._changed()
        await self._persist()
        return failed

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        by_kind: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        for item in self._items:
            by_kind[item.kind.value] = by_kind.get(item.kind.value, 0) + 1
            by_priority[item.priority.value] = by_priority.get(item.priority.value, 0) + 1
        return {
            "size": len(self._items),
            "capacity": self._config.max_size,
            "ready": self._ready,
            "by_kind": by_kind,
            "by_priority": by_priority,
            "storage_degraded": self._store.degraded,
            "overflowing": self._scheduler.overflowing,
            "draining": sorted(k.value for k in self._drains),
        }

    # -- Internal -------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise QueueNotInitializedError("Offline queue has been disposed")

    def _next_timestamp(self) -> int:
        now = int(time.time() * 1000)
        self._last_timestamp = max(now, self._last_timestamp + 1)
        return self._last_timestamp

    def _changed(self) -> None:
        self._scheduler.observe_size(len(self._items))
        self._notify()

    def _notify(self) -> None:
        snapshot = list(self._items)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.error("Offline queue listener failed", exc_info=True)

    async def _persist(self) -> None:
        # Writes are serialized and always carry the newest mirror, so a
        # slow earlier write can never overwrite a later snapshot.
        async with self._write_lock:
            if await self._store.write_all(list(self._items)):
                return
            if not is_quota_error(self._store.last_error):
                return

            shrunk = self._scheduler.shrink(self._items)
            dropped = len(self._items) - len(shrunk)
            logger.warning(
                "Storage quota exceeded, shrinking offline queue by %d items", dropped
            )
            self._items = shrunk
            self._changed()
            await self._store.write_all(list(self._items))

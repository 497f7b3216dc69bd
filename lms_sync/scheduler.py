# =============================================================================
# LMS Sync Client -- Priority / Backoff Scheduler
# =============================================================================
#
# Decides drain order, capacity eviction and retry timing for queued items.
# Holds no items itself: the MutationQueue owns the in-memory mirror and
# exposes it through the DrainTarget protocol.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Protocol

from ._logging import logger
from .constants import SNAPSHOT_MAX_LESSON_IDS, SNAPSHOT_MAX_LESSONS
from .types import ProcessResult, QueueConfig, QueueItem, QueueItemKind, QueuePriority

DrainHandler = Callable[[QueueItem], Awaitable[bool]]

PROGRESS_UPDATE_ACTION = "progress_update"


class DrainTarget(Protocol):
    """Mutable view of the queue that a drain pass walks."""

    def first_pending(self, kind: QueueItemKind) -> QueueItem | None: ...

    def count(self, kind: QueueItemKind) -> int: ...

    async def complete(self, item: QueueItem) -> None: ...

    async def record_failure(self, item: QueueItem) -> QueueItem: ...


# -- Ordering / backoff -------------------------------------------------------


def sort_key(item: QueueItem) -> tuple[int, int]:
    return (item.priority.rank, item.enqueued_at)


def sort_items(items: Iterable[QueueItem]) -> list[QueueItem]:
    """Priority band first (high, medium, low), FIFO within a band."""
    return sorted(items, key=sort_key)


def compute_backoff(attempts: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait after *attempts* failed deliveries."""
    return min(max_delay, base_delay * (2 ** max(0, attempts)))


# -- Dedupe / compaction --------------------------------------------------------


def dedupe_key(item: QueueItem) -> str | None:
    """Logical key under which a newer item supersedes an older one."""
    if item.kind == QueueItemKind.PROGRESS_EVENT and item.action == PROGRESS_UPDATE_ACTION:
        return f"event|{item.owner_id}|{item.lesson_id or ''}"
    if item.kind == QueueItemKind.PROGRESS_SNAPSHOT:
        return f"snapshot|{item.owner_id}|{item.scope_id}"
    return None


def dedupe(items: Iterable[QueueItem]) -> list[QueueItem]:
    """Keep only the newest item per dedupe key; others pass through."""
    items = list(items)
    latest: dict[str, QueueItem] = {}
    for item in items:
        key = dedupe_key(item)
        if key is None:
            continue
        prev = latest.get(key)
        if prev is None or item.enqueued_at >= prev.enqueued_at:
            latest[key] = item

    keep = {item.id for item in latest.values()}
    return [item for item in items if dedupe_key(item) is None or item.id in keep]


def _clamp_int(value: Any, low: int, high: int | None = None) -> int:
    try:
        number = round(float(value))
    except (TypeError, ValueError):
        number = 0
    number = max(low, number)
    return min(high, number) if high is not None else number


def compact(item: QueueItem) -> QueueItem:
    """Trim known payload shapes down to the fields replay needs."""
    payload = item.payload
    if item.kind == QueueItemKind.PROGRESS_EVENT and item.action == PROGRESS_UPDATE_ACTION:
        compacted: dict[str, Any] = {"client_event_id": payload.get("client_event_id") or item.id}
        for field_name in ("user_id", "lesson_id"):
            if payload.get(field_name):
                compacted[field_name] = payload[field_name]
        for field_name in ("resume_at_s", "percent"):
            if isinstance(payload.get(field_name), (int, float)):
                compacted[field_name] = payload[field_name]
        if payload.get("course_id") and not payload.get("lesson_id"):
            compacted["course_id"] = payload["course_id"]
        return item.with_payload(compacted)

    if item.kind == QueueItemKind.PROGRESS_SNAPSHOT:
        lesson_ids = payload.get("lessonIds")
        lessons = payload.get("lessons")
        total_time = payload.get("totalTimeSeconds")
        compacted = {
            "userId": str(payload.get("userId") or item.owner_id),
            "courseId": str(payload.get("courseId") or item.scope_id),
            "lessonIds": lesson_ids[:SNAPSHOT_MAX_LESSON_IDS] if isinstance(lesson_ids, list) else [],
            "lessons": [
                {
                    "lessonId": str(lesson.get("lessonId") or ""),
                    "progressPercent": _clamp_int(lesson.get("progressPercent"), 0, 100),
                    "completed": bool(lesson.get("completed")),
                    "positionSeconds": _clamp_int(lesson.get("positionSeconds"), 0),
                    "lastAccessedAt": lesson.get("lastAccessedAt"),
                }
                for lesson in lessons[-SNAPSHOT_MAX_LESSONS:]
                if isinstance(lesson, dict)
            ]
            if isinstance(lessons, list)
            else [],
            "overallPercent": _clamp_int(payload.get("overallPercent"), 0, 100),
            "completedAt": payload.get("completedAt"),
            "totalTimeSeconds": _clamp_int(total_time, 0)
            if isinstance(total_time, (int, float))
            else None,
            "lastLessonId": payload.get("lastLessonId"),
        }
        return item.with_payload(compacted)

    return item


# -- Scheduler ------------------------------------------------------------------


class QueueScheduler:
    """Capacity policy and drain walk for the offline queue.

    Args:
        config: Capacity and backoff settings.
        on_queue_full: Called once per overflow episode when an item of
            non-low priority had to be evicted.
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        on_queue_full: Callable[[], Any] | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self.on_queue_full = on_queue_full
        self._overflowing = False

    @property
    def max_size(self) -> int:
        return self._config.max_size

    @property
    def overflowing(self) -> bool:
        return self._overflowing

    def backoff(self, attempts: int) -> float:
        return compute_backoff(attempts, self._config.base_delay, self._config.max_delay)

    def observe_size(self, size: int) -> None:
        """End the current overflow episode once the queue has room again."""
        if size < self._config.max_size:
            self._overflowing = False

    def apply_capacity(
        self, items: list[QueueItem], incoming: QueueItem
    ) -> tuple[list[QueueItem], list[QueueItem]]:
        """Admit *incoming*, evicting as needed to stay within the cap.

        Returns ``(sorted_items, evicted)``.
        """
        kept, evicted = self.trim(items, limit=self._config.max_size - 1)
        kept.append(incoming)
        return sort_items(kept), evicted

    def trim(
        self, items: list[QueueItem], *, limit: int | None = None
    ) -> tuple[list[QueueItem], list[QueueItem]]:
        """Evict until at most *limit* items remain (default: the cap).

        Oldest low-priority items go first; when none are left the oldest
        item of any priority is dropped and the queue-full signal fires.
        """
        if limit is None:
            limit = self._config.max_size
        limit = max(0, limit)
        kept = list(items)
        evicted: list[QueueItem] = []

        while len(kept) > limit:
            low = [i for i in kept if i.priority == QueuePriority.LOW]
            if low:
                victim = min(low, key=lambda i: i.enqueued_at)
                logger.warning(
                    "Offline queue at capacity (%d), evicting low-priority item %s",
                    self._config.max_size,
                    victim.id,
                )
            else:
                victim = min(kept, key=lambda i: i.enqueued_at)
                logger.warning(
                    "Offline queue full (%d), dropping oldest item %s (%s)",
                    self._config.max_size,
                    victim.id,
                    victim.kind.value,
                )
                self._signal_full()
            kept = [i for i in kept if i.id != victim.id]
            evicted.append(victim)

        return kept, evicted

    def shrink(self, items: list[QueueItem]) -> list[QueueItem]:
        """Storage-pressure fallback: drop low priority, keep the newest half."""
        keep = max(1, self._config.max_size // 2)
        survivors = sorted(
            (i for i in dedupe(items) if i.priority != QueuePriority.LOW),
            key=lambda i: i.enqueued_at,
        )[-keep:]
        return sort_items(compact(i) for i in survivors)

    async def process_type(
        self,
        target: DrainTarget,
        kind: QueueItemKind,
        handler: DrainHandler,
    ) -> ProcessResult:
        """Deliver items of *kind* in priority order until one fails.

        The walk stops at the first failure so relative order is kept and
        a degraded backend is not hammered. Never raises except for
        cancellation.
        """
        processed = 0

        while True:
            item = target.first_pending(kind)
            if item is None:
                break

            try:
                success = bool(await handler(item))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Drain handler failed for %s (%s): %s", item.id, kind.value, e
                )
                success = False

            if success:
                await target.complete(item)
                processed += 1
                logger.debug("Delivered queued %s item %s", kind.value, item.id)
                continue

            failed = await target.record_failure(item)
            delay = self.backoff(failed.attempts)
            remaining = target.count(kind)
            logger.debug(
                "Drain of %s stopped at %s (attempt %d), retry in %.1fs",
                kind.value,
                item.id,
                failed.attempts,
                delay,
            )
            return ProcessResult(processed=processed, remaining=remaining, next_delay=delay)

        return ProcessResult(processed=processed, remaining=target.count(kind))

    def _signal_full(self) -> None:
        if self._overflowing:
            return
        self._overflowing = True
        if self.on_queue_full is not None:
            try:
                self.on_queue_full()
            except Exception:
                logger.error("Queue-full handler raised", exc_info=True)

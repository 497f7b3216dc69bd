# =============================================================================
# LMS Sync Client -- Mutation Producers
# =============================================================================
#
# Producers try the network first and fall back to the offline queue when
# the failure is transient (offline, no response, timeout, 5xx). Auth
# failures and definitive 4xx rejections are raised to the caller instead.
# Each submission gets its idempotency key exactly once; the queued item
# carries it so every replay sends the same value.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Literal
from uuid import uuid4

from ._logging import logger
from .constants import (
    ASSIGNMENT_PATH,
    CLIENT_REQUEST_ID_HEADER,
    PROGRESS_EVENTS_PATH,
    PROGRESS_SNAPSHOT_PATH,
)
from .errors import ApiError, NotAuthenticatedError, is_retriable, should_queue
from .idempotency import build_idempotency_key, create_action_identifiers
from .scheduler import PROGRESS_UPDATE_ACTION
from .types import QueueItem, QueueItemKind, QueuePriority

if TYPE_CHECKING:
    from .network_monitor import ConnectivityMonitor
    from .offline_queue import MutationQueue
    from .pipeline import RequestPipeline

SNAPSHOT_ACTION = "course_snapshot"
ASSIGN_ACTION = "course.assign"


def _is_online(connectivity: ConnectivityMonitor | None) -> bool:
    return connectivity is None or connectivity.is_online


async def _replay(
    pipeline: RequestPipeline,
    item: QueueItem,
    path: str,
    body: Any,
    headers: dict[str, str] | None = None,
) -> bool:
    """Shared drain handler body.

    Returns False to keep the item for a later pass (transient failure or
    missing session). A definitive rejection drops the item, since
    replaying an identical request cannot change the outcome.
    """
    try:
        await pipeline.request(
            path,
            method="POST",
            json=body,
            headers=headers,
            require_auth=True,
            idempotency_key=item.idempotency_key,
        )
    except NotAuthenticatedError:
        logger.info("Replay of %s deferred until a session is available", item.id)
        return False
    except ApiError as e:
        if is_retriable(e):
            return False
        logger.warning(
            "Server rejected queued %s item %s (%d %s), dropping",
            item.kind.value,
            item.id,
            e.status,
            e.code or "",
        )
    return True


# -- Progress -------------------------------------------------------------------


class ProgressSync:
    """Learner progress events and course snapshots.

    Args:
        pipeline: Request pipeline used for delivery.
        queue: Offline queue for undeliverable events.
        connectivity: When offline, events go straight to the queue.
    """

    def __init__(
        self,
        pipeline: RequestPipeline,
        queue: MutationQueue,
        *,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._queue = queue
        self._connectivity = connectivity

    async def sync_event(
        self,
        owner_id: str,
        course_id: str,
        lesson_id: str,
        *,
        percent: float,
        resume_at_s: float | None = None,
        module_id: str | None = None,
    ) -> QueueItem | None:
        """Send one progress update, queueing it if delivery is not possible.

        Returns the queued item, or ``None`` when the server accepted the
        update immediately. Completions (``percent >= 100``) are queued
        with high priority.

        Raises:
            NotAuthenticatedError: No session; the event is not queued.
            ApiError: The server rejected the event definitively.
        """
        key = build_idempotency_key(
            "progress.sync", {"userId": owner_id, "lessonId": lesson_id}
        )
        payload: dict[str, Any] = {
            "client_event_id": f"evt_{uuid4().hex}",
            "user_id": owner_id,
            "course_id": course_id,
            "lesson_id": lesson_id,
            "percent": percent,
        }
        if resume_at_s is not None:
            payload["resume_at_s"] = resume_at_s

        online = _is_online(self._connectivity)
        if online:
            try:
                await self._pipeline.request(
                    PROGRESS_EVENTS_PATH,
                    method="POST",
                    json=payload,
                    require_auth=True,
                    idempotency_key=key,
                )
                return None
            except ApiError as e:
                online = _is_online(self._connectivity)
                if not should_queue(e, online=online):
                    raise
                logger.info("Progress update for %s queued: %s", lesson_id, e)

        return await self._queue.enqueue(
            QueueItemKind.PROGRESS_EVENT,
            owner_id=owner_id,
            scope_id=course_id,
            payload=payload,
            priority=QueuePriority.HIGH if percent >= 100 else QueuePriority.MEDIUM,
            idempotency_key=key,
            module_id=module_id,
            lesson_id=lesson_id,
            action=PROGRESS_UPDATE_ACTION,
        )

    async def enqueue_snapshot(self, snapshot: dict[str, Any]) -> QueueItem:
        """Queue a full course progress snapshot for later delivery."""
        lesson_ids = snapshot.get("lessonIds")
        owner_id = str(snapshot.get("userId") or "")
        scope_id = str(snapshot.get("courseId") or "")
        return await self._queue.enqueue(
            QueueItemKind.PROGRESS_SNAPSHOT,
            owner_id=owner_id,
            scope_id=scope_id,
            payload=snapshot,
            priority=QueuePriority.MEDIUM,
            idempotency_key=build_idempotency_key(
                "progress.snapshot", {"userId": owner_id, "courseId": scope_id}
            ),
            module_id=snapshot.get("moduleId"),
            lesson_id=lesson_ids[0] if isinstance(lesson_ids, list) and lesson_ids else None,
            action=SNAPSHOT_ACTION,
        )

    async def replay(self, item: QueueItem) -> bool:
        """Drain handler for both progress kinds."""
        if item.kind == QueueItemKind.PROGRESS_SNAPSHOT:
            return await _replay(
                self._pipeline, item, PROGRESS_SNAPSHOT_PATH, snapshot_body(item.payload)
            )
        return await _replay(self._pipeline, item, PROGRESS_EVENTS_PATH, item.payload)


def snapshot_body(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Wire shape of a stored course snapshot."""
    return {
        "userId": snapshot.get("userId"),
        "courseId": snapshot.get("courseId"),
        "lessonIds": snapshot.get("lessonIds") or [],
        "lessons": snapshot.get("lessons") or [],
        "course": {
            "percent": snapshot.get("overallPercent"),
            "completedAt": snapshot.get("completedAt"),
            "totalTimeSeconds": snapshot.get("totalTimeSeconds"),
            "lastLessonId": snapshot.get("lastLessonId"),
        },
    }


# -- Assignments ------------------------------------------------------------------


def normalize_user_ids(user_ids: Iterable[Any]) -> list[str]:
    """Trim, lowercase and dedupe user ids, keeping first-seen order."""
    seen: dict[str, None] = {}
    for raw in user_ids:
        value = str(raw).strip().lower() if raw is not None else ""
        if value:
            seen.setdefault(value, None)
    return list(seen)


@dataclass(frozen=True, slots=True)
class AssignmentRequest:
    course_id: str
    organization_id: str | None
    user_ids: list[str]
    due_date: str | None = None
    note: str | None = None
    assigned_by: str | None = None
    mode: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AssignmentSubmission:
    """Outcome of :meth:`AssignmentRequests.submit`.

    ``request_id`` is the idempotency key when sent, or the queue item id
    when queued.
    """

    status: Literal["sent", "queued"]
    request_id: str
    count: int


class AssignmentRequests:
    """Course assignment submissions with offline fallback."""

    def __init__(
        self,
        pipeline: RequestPipeline,
        queue: MutationQueue,
        *,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._queue = queue
        self._connectivity = connectivity

    async def submit(self, request: AssignmentRequest) -> AssignmentSubmission:
        user_ids = normalize_user_ids(request.user_ids)
        total = max(len(user_ids), 1)
        identifiers = create_action_identifiers(
            ASSIGN_ACTION,
            {
                "courseId": request.course_id,
                "orgId": request.organization_id,
                "attempt": self._queue.count(QueueItemKind.ASSIGNMENT_REQUEST) + 1,
            },
        )
        body = {
            "courseId": request.course_id,
            "organizationId": request.organization_id,
            "userIds": user_ids,
            "dueAt": request.due_date,
            "note": request.note,
            "assignedBy": request.assigned_by,
            "clientRequestId": identifiers.client_request_id,
            "metadata": {
                **request.metadata,
                "mode": request.mode,
                "source": request.metadata.get("source", "sync_client"),
            },
        }

        online = _is_online(self._connectivity)
        if online:
            try:
                response = await self._pipeline.request(
                    ASSIGNMENT_PATH.format(course_id=request.course_id),
                    method="POST",
                    json=body,
                    headers={CLIENT_REQUEST_ID_HEADER: identifiers.client_request_id},
                    require_auth=True,
                    idempotency_key=identifiers.idempotency_key,
                )
                rows = response.body if isinstance(response.body, list) else []
                return AssignmentSubmission(
                    status="sent",
                    request_id=identifiers.idempotency_key,
                    count=len(rows) or total,
                )
            except ApiError as e:
                online = _is_online(self._connectivity)
                if not should_queue(e, online=online):
                    raise
                logger.info("Assignment for course %s queued: %s", request.course_id, e)

        item = await self._queue.enqueue(
            QueueItemKind.ASSIGNMENT_REQUEST,
            owner_id=request.assigned_by or "",
            scope_id=request.course_id,
            payload=body,
            priority=QueuePriority.HIGH,
            idempotency_key=identifiers.idempotency_key,
            action=ASSIGN_ACTION,
        )
        return AssignmentSubmission(status="queued", request_id=item.id, count=total)

    async def replay(self, item: QueueItem) -> bool:
        """Drain handler; resends with the key stored at first submission."""
        headers = {}
        request_id = item.payload.get("clientRequestId")
        if request_id:
            headers[CLIENT_REQUEST_ID_HEADER] = str(request_id)
        return await _replay(
            self._pipeline,
            item,
            ASSIGNMENT_PATH.format(course_id=item.payload.get("courseId") or item.scope_id),
            item.payload,
            headers,
        )

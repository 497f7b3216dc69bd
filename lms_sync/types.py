# =============================================================================
# LMS Sync Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .constants import (
    BACKOFF_BASE_DELAY,
    BACKOFF_MAX_DELAY,
    QUEUE_LEGACY_KEY,
    QUEUE_MAX_SIZE,
    QUEUE_STORAGE_KEY,
    REFRESH_CHANNEL_NAME,
    REFRESH_WATCHDOG_TIMEOUT,
    REQUEST_TIMEOUT,
    SESSION_BOOTSTRAP_PATH,
    SESSION_REFRESH_PATH,
)


class QueuePriority(str, Enum):
    """Drain priority of a buffered mutation.

    Used only for ordering. HIGH drains first, LOW is evicted first
    under capacity pressure.
    """

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    QueuePriority.HIGH: 0,
    QueuePriority.MEDIUM: 1,
    QueuePriority.LOW: 2,
}


class QueueItemKind(str, Enum):
    """Tagged variant of a buffered mutation."""

    PROGRESS_EVENT = "progress-event"
    PROGRESS_SNAPSHOT = "progress-snapshot"
    ASSIGNMENT_REQUEST = "assignment-request"


class RefreshPhase(str, Enum):
    """Refresh coordinator state machine.

    IDLE -> IN_PROGRESS -> SUCCEEDED | FAILED -> IDLE. The terminal
    phases are only observable from state-change listeners; the
    coordinator collapses them back to IDLE immediately.
    """

    IDLE = "idle"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class QueueItem:
    """One buffered mutation awaiting delivery.

    Attributes:
        id: Unique identifier assigned at enqueue time.
        kind: Item variant, see :class:`QueueItemKind`.
        owner_id: User the mutation belongs to (display/filtering only).
        scope_id: Course or organization id (display/filtering only).
        payload: Serializable action data.
        priority: Drain priority.
        enqueued_at: Epoch milliseconds, strictly increasing per process.
        attempts: Delivery attempts so far; drives backoff.
        idempotency_key: Reused verbatim on every retry of this item.
        module_id: Optional module the mutation refers to.
        lesson_id: Optional lesson the mutation refers to.
        action: Optional producer-defined action name, e.g.
            ``"progress_update"``.
    """

    id: str
    kind: QueueItemKind
    owner_id: str
    scope_id: str
    payload: dict[str, Any]
    priority: QueuePriority
    enqueued_at: int
    attempts: int
    idempotency_key: str
    module_id: str | None = None
    lesson_id: str | None = None
    action: str | None = None

    def with_attempts(self, attempts: int) -> QueueItem:
        return replace(self, attempts=attempts)

    def with_payload(self, payload: dict[str, Any]) -> QueueItem:
        return replace(self, payload=payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "ownerId": self.owner_id,
            "scopeId": self.scope_id,
            "payload": self.payload,
            "priority": self.priority.value,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "idempotencyKey": self.idempotency_key,
            "moduleId": self.module_id,
            "lessonId": self.lesson_id,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: Any) -> QueueItem | None:
        """Rebuild an item from its persisted form, or ``None`` if malformed."""
        if not isinstance(data, dict):
            return None
        try:
            payload = data.get("payload") or {}
            if not isinstance(payload, dict):
                return None
            return cls(
                id=str(data["id"]),
                kind=QueueItemKind(data["kind"]),
                owner_id=str(data.get("ownerId") or ""),
                scope_id=str(data.get("scopeId") or ""),
                payload=payload,
                priority=QueuePriority(data.get("priority", QueuePriority.MEDIUM.value)),
                enqueued_at=int(data["enqueuedAt"]),
                attempts=max(0, int(data.get("attempts") or 0)),
                idempotency_key=str(data["idempotencyKey"]),
                module_id=data.get("moduleId"),
                lesson_id=data.get("lessonId"),
                action=data.get("action"),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of one drain pass.

    Attributes:
        processed: Items delivered and deleted during this pass.
        remaining: Items of the drained kind still queued.
        next_delay: Suggested seconds before the next pass, set only
            when the pass stopped at a failure.
    """

    processed: int
    remaining: int
    next_delay: float | None = None


@dataclass(frozen=True, slots=True)
class RefreshState:
    phase: RefreshPhase = RefreshPhase.IDLE
    token: str | None = None
    started_at: float | None = None
    success: bool | None = None


@dataclass(frozen=True, slots=True)
class Response:
    """Transport-level response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class QueueConfig:
    """Offline queue configuration.

    Attributes:
        max_size: Hard item cap across all kinds.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.
        storage_key: Record key of the persisted snapshot.
        legacy_key: Record key of the pre-v2 snapshot list.
    """

    max_size: int = QUEUE_MAX_SIZE
    base_delay: float = BACKOFF_BASE_DELAY
    max_delay: float = BACKOFF_MAX_DELAY
    storage_key: str = QUEUE_STORAGE_KEY
    legacy_key: str = QUEUE_LEGACY_KEY


@dataclass
class RefreshConfig:
    watchdog_timeout: float = REFRESH_WATCHDOG_TIMEOUT
    channel_name: str = REFRESH_CHANNEL_NAME


@dataclass
class PipelineConfig:
    """Request pipeline configuration.

    Attributes:
        base_url: Prepended to relative paths by the HTTP transport.
        timeout: Default per-request timeout in seconds.
        bootstrap_path: Read-only "who am I" endpoint.
        refresh_path: Token refresh endpoint.
    """

    base_url: str = ""
    timeout: float = REQUEST_TIMEOUT
    bootstrap_path: str = SESSION_BOOTSTRAP_PATH
    refresh_path: str = SESSION_REFRESH_PATH

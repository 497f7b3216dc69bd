# =============================================================================
# LMS Sync Client -- Idempotency Keys
# =============================================================================
#
# One key per logical action. The generator is stateless: callers create a
# key exactly once per submission and persist it with the queued item so
# every retry carries the same value.
# =============================================================================

from __future__ import annotations

import random
import secrets
import time
from dataclasses import dataclass
from typing import Any, Mapping

IDEMPOTENT_ACTIONS = frozenset(
    {
        "course.assign",
        "course.save",
        "course.publish",
        "progress.sync",
        "progress.snapshot",
    }
)


@dataclass(frozen=True, slots=True)
class ActionIdentifiers:
    idempotency_key: str
    client_request_id: str


def _random_suffix() -> str:
    try:
        return secrets.token_hex(8)
    except (NotImplementedError, OSError):
        # No OS entropy source
        return f"{time.time_ns():x}{random.getrandbits(32):08x}"


def _context_segment(parts: Mapping[str, Any]) -> str:
    pairs = [
        f"{key}={value}"
        for key, value in sorted(parts.items())
        if value is not None and value != ""
    ]
    return "|".join(pairs)


def build_idempotency_key(action: str, parts: Mapping[str, Any] | None = None) -> str:
    """Build a unique, traceable key for one action attempt.

    Layout is ``<prefix>:<sorted k=v pairs>:<random suffix>``, e.g.
    ``course-assign:attempt=1|courseId=c1|orgId=o9:3f9a0c1d2e4b5a69``.

    Raises:
        ValueError: If *action* is not a known idempotent action.
    """
    if action not in IDEMPOTENT_ACTIONS:
        raise ValueError(f"Unknown idempotent action: {action!r}")
    prefix = action.replace(".", "-")
    return f"{prefix}:{_context_segment(parts or {})}:{_random_suffix()}"


def create_action_identifiers(
    action: str, parts: Mapping[str, Any] | None = None
) -> ActionIdentifiers:
    """Return the idempotency key plus a client request id for tracing."""
    key = build_idempotency_key(action, parts)
    return ActionIdentifiers(
        idempotency_key=key,
        client_request_id=f"req_{_random_suffix()}",
    )

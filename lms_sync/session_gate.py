# =============================================================================
# LMS Sync Client -- Session Gate
# =============================================================================
#
# Pure per-request policy: does this path need an authenticated session?
# Public endpoints never do, privileged endpoints always do, anything else
# is left to the caller's explicit overrides.
# =============================================================================

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Pattern
from urllib.parse import urlsplit

from .errors import SessionGateError

if TYPE_CHECKING:
    from .credentials import CredentialStore


def _prefix_patterns(prefixes: Iterable[str]) -> tuple[Pattern[str], ...]:
    """Case-insensitive prefix match ending on a word boundary, so
    ``api/admin`` covers ``/api/admin/users`` and ``/api/admin-tools``
    but not ``/api/administrators``."""
    return tuple(
        re.compile(rf"^/?{re.escape(prefix.strip('/'))}\b", re.IGNORECASE)
        for prefix in prefixes
    )


PUBLIC_ENDPOINTS = _prefix_patterns(
    [
        "api/health",
        "api/status",
        "api/auth",
        "api/mfa",
        "api/csrf-token",
        "api/csrf",
        "api/invite",
        "api/public",
    ]
)

PRIVILEGED_ENDPOINTS = _prefix_patterns(
    [
        "api/admin",
        "api/client",
        "api/learner",
        "api/analytics",
        "api/orgs",
        "api/notifications",
        "api/audit-log",
        "api/onboarding",
        "api/batch",
    ]
)


def normalize_path(target: str) -> str:
    """Reduce a URL or path to a bare, slash-led path without query/fragment."""
    if not target:
        return ""
    trimmed = target.strip()
    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        path = urlsplit(trimmed).path or "/"
    else:
        path = re.split(r"[?#]", trimmed, maxsplit=1)[0]
    if not path.startswith("/"):
        path = f"/{path}"
    if path != "/":
        path = path.rstrip("/") or "/"
    return path


class SessionGate:
    """Decide whether an outgoing request requires a session.

    Args:
        credentials: Local session cache; only inspected, never refreshed.
        public_patterns: Paths that never require a session.
        privileged_patterns: Paths that always require one.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        public_patterns: Iterable[Pattern[str]] = PUBLIC_ENDPOINTS,
        privileged_patterns: Iterable[Pattern[str]] = PRIVILEGED_ENDPOINTS,
    ) -> None:
        self._credentials = credentials
        self._public = tuple(public_patterns)
        self._privileged = tuple(privileged_patterns)

    def is_public(self, target: str) -> bool:
        path = normalize_path(target)
        return bool(path) and any(p.search(path) for p in self._public)

    def is_privileged(self, target: str) -> bool:
        path = normalize_path(target)
        return bool(path) and any(p.search(path) for p in self._privileged)

    def should_require_session(
        self,
        target: str,
        *,
        require_auth: bool = False,
        allow_anonymous: bool = False,
    ) -> bool:
        if allow_anonymous:
            return False
        if require_auth:
            return True
        path = normalize_path(target)
        if not path or self.is_public(path):
            return False
        return self.is_privileged(path)

    def has_active_session(self) -> bool:
        return self._credentials.has_session()

    def guard_request(
        self,
        target: str,
        *,
        require_auth: bool = False,
        allow_anonymous: bool = False,
        reason: str | None = None,
    ) -> None:
        """Raise :class:`SessionGateError` if *target* needs a missing session."""
        path = normalize_path(target)
        if not self.should_require_session(
            path, require_auth=require_auth, allow_anonymous=allow_anonymous
        ):
            return
        if self.has_active_session():
            return
        message = reason or f"Blocked privileged request without session ({path})"
        raise SessionGateError(message, path)

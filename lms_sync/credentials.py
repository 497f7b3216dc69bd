# =============================================================================
# LMS Sync Client -- Credential Store
# =============================================================================
#
# The session cache optionally mirrors itself into a KeyValueBackend shared
# by every client of the same user. A client that joined a sibling's refresh
# re-reads the record to pick up the new tokens.
# =============================================================================

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, fields, replace
from typing import TYPE_CHECKING, Any

from . import serialization
from ._logging import logger
from .constants import SESSION_STORAGE_KEY

if TYPE_CHECKING:
    from .storage import KeyValueBackend


@dataclass(frozen=True, slots=True)
class Session:
    """Locally cached session state.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Token exchanged for a new access token.
        user_id: Cached identity from the last bootstrap.
        expires_at: Epoch seconds when the access token expires.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    user_id: str | None = None
    expires_at: float | None = None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= time.time()

    @property
    def is_empty(self) -> bool:
        return self == Session()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Session | None:
        if not isinstance(data, dict):
            return None
        values = {f.name: data.get(f.name) for f in fields(cls)}
        expires_at = values.pop("expires_at")
        return cls(
            **{k: str(v) if v is not None else None for k, v in values.items()},
            expires_at=float(expires_at) if isinstance(expires_at, (int, float)) else None,
        )


class CredentialStore:
    """Session cache consulted by the session gate and pipeline.

    Args:
        session: Initial session.
        backend: Optional store shared with sibling clients. ``save()``
            writes the current session there and ``reload()`` adopts
            whatever a sibling wrote last.
        key: Record key of the shared session.
    """

    def __init__(
        self,
        session: Session | None = None,
        *,
        backend: KeyValueBackend | None = None,
        key: str = SESSION_STORAGE_KEY,
    ) -> None:
        self._session = session or Session()
        self._backend = backend
        self._key = key

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_shared(self) -> bool:
        return self._backend is not None

    @property
    def access_token(self) -> str | None:
        if self._session.expired:
            return None
        return self._session.access_token

    @property
    def refresh_token(self) -> str | None:
        return self._session.refresh_token

    @property
    def user_id(self) -> str | None:
        return self._session.user_id

    def update(self, **changes: Any) -> Session:
        """Merge non-None *changes* into the cached session."""
        self._session = replace(
            self._session, **{k: v for k, v in changes.items() if v is not None}
        )
        return self._session

    def update_from_payload(self, data: Any) -> bool:
        """Absorb a bootstrap/refresh response body.

        Accepts ``accessToken``/``access_token``, ``refreshToken``,
        ``expiresAt`` and a ``user`` object (or ``userId``). Returns True
        if the payload identified an authenticated caller.
        """
        if not isinstance(data, dict):
            return False
        session = data.get("session") if isinstance(data.get("session"), dict) else data
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        user_id = user.get("id") or data.get("userId") or data.get("user_id")
        expires_at = session.get("expiresAt") or session.get("expires_at")
        self.update(
            access_token=session.get("accessToken") or session.get("access_token"),
            refresh_token=session.get("refreshToken") or session.get("refresh_token"),
            expires_at=float(expires_at) if isinstance(expires_at, (int, float)) else None,
            user_id=str(user_id) if user_id else None,
        )
        return bool(self.access_token or user_id)

    def clear(self) -> None:
        self._session = Session()

    def has_session(self) -> bool:
        return bool(self.access_token or self._session.user_id)

    def auth_headers(self) -> dict[str, str]:
        token = self.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    # -- Shared record --------------------------------------------------------

    async def save(self) -> None:
        """Publish the current session to the shared backend (if any)."""
        if self._backend is None:
            return
        try:
            if self._session.is_empty:
                await self._backend.delete(self._key)
            else:
                await self._backend.put(self._key, serialization.dumps(self._session.to_dict()))
        except Exception as e:
            logger.warning("Failed to store session: %s", e)

    async def reload(self) -> bool:
        """Adopt the session a sibling stored. Returns True if one was found."""
        if self._backend is None:
            return False
        try:
            raw = await self._backend.get(self._key)
            stored = Session.from_dict(serialization.loads(raw)) if raw else None
        except Exception as e:
            logger.warning("Failed to read stored session: %s", e)
            return False
        if stored is None or stored.is_empty:
            return False
        if stored != self._session:
            logger.debug("Adopted session stored by a sibling client")
        self._session = stored
        return True

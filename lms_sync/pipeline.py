# =============================================================================
# LMS Sync Client -- Request Pipeline
# =============================================================================
#
# Wraps every outgoing call:
#
#   1. Session gate: if the path needs a session and none is cached (and the
#      caller did not bring its own bearer), bootstrap -> refresh -> bootstrap.
#      No session => NotAuthenticatedError, the call is never attempted.
#   2. Execute with timeout + external cancellation.
#   3. On 401: join/trigger one coordinated refresh, replay exactly once.
#   4. Non-2xx => ApiError with status and code.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

from ._logging import logger
from .constants import IDEMPOTENCY_HEADER, RETRY_MARKER_HEADER
from .credentials import CredentialStore
from .errors import ApiError, NotAuthenticatedError, RequestTimeoutError
from .refresh import RefreshCoordinator, SingleFlight
from .session_gate import SessionGate
from .transport import Transport
from .types import PipelineConfig, Response

SessionCall = Callable[[], Awaitable[bool]]

_AUTH_FAILURE_STATUSES = frozenset({401, 403})


def _has_bearer(headers: dict[str, str]) -> bool:
    for name, value in headers.items():
        if name.lower() == "authorization" and str(value).lower().startswith("bearer "):
            return True
    return False


def _error_from_response(path: str, response: Response) -> ApiError:
    body = response.body
    message = f"Request failed with status {response.status} ({path})"
    code = None
    if isinstance(body, dict):
        message = str(body.get("message") or body.get("error") or message)
        code = str(body["code"]) if body.get("code") is not None else None
    return ApiError(response.status, message, code=code, body=body)


class RequestPipeline:
    """Session-aware request execution.

    Args:
        transport: Performs the raw call.
        gate: Decides which paths need a session.
        credentials: Local session cache (read for headers, updated by
            bootstrap and refresh).
        coordinator: Cross-tab refresh coordinator.
        config: Timeouts and auth endpoint paths.
        session_bootstrap: Override for the "who am I" call; returns True
            when the caller is authenticated.
        token_refresh: Override for the network token refresh; returns
            True on success.
    """

    def __init__(
        self,
        transport: Transport,
        gate: SessionGate,
        credentials: CredentialStore,
        coordinator: RefreshCoordinator,
        *,
        config: PipelineConfig | None = None,
        session_bootstrap: SessionCall | None = None,
        token_refresh: SessionCall | None = None,
    ) -> None:
        self._transport = transport
        self._gate = gate
        self._credentials = credentials
        self._coordinator = coordinator
        self._config = config or PipelineConfig()
        self._session_bootstrap = session_bootstrap
        self._token_refresh = token_refresh
        self._refresh_flight: SingleFlight[bool] = SingleFlight()
        self._refreshes = 0

    @property
    def gate(self) -> SessionGate:
        return self._gate

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    # -- Requests -------------------------------------------------------------

    async def request(
        self,
        path: str,
        *,
        method: str = "GET",
        json: Any = None,
        headers: dict[str, str] | None = None,
        require_auth: bool = False,
        allow_anonymous: bool = False,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        idempotency_key: str | None = None,
        expected_status: Iterable[int] = (),
    ) -> Response:
        """Execute one call through the session gate.

        Raises:
            NotAuthenticatedError: No session could be established, or the
                call was still rejected after one refresh.
            RequestTimeoutError: Timed out or cancelled via *cancel_event*.
            NetworkError: Server unreachable.
            ApiError: Any other non-2xx status.
        """
        caller_headers = dict(headers or {})
        needs_session = self._gate.should_require_session(
            path, require_auth=require_auth, allow_anonymous=allow_anonymous
        )

        if (
            needs_session
            and not self._gate.has_active_session()
            and not _has_bearer(caller_headers)
        ):
            if not await self.ensure_session():
                raise NotAuthenticatedError(f"No session available for {path}")

        if idempotency_key is not None:
            caller_headers.setdefault(IDEMPOTENCY_HEADER, idempotency_key)

        response = await self._execute(
            path,
            method=method,
            headers={**self._credentials.auth_headers(), **caller_headers},
            body=json,
            timeout=timeout,
            cancel_event=cancel_event,
        )

        if response.status == 401 and not allow_anonymous and not self._gate.is_public(path):
            logger.debug("401 from %s %s, coordinating refresh", method, path)
            if not await self.refresh_session():
                raise NotAuthenticatedError(
                    f"Session refresh failed for {path}", body=response.body
                )
            replay_headers = {**caller_headers, RETRY_MARKER_HEADER: "1"}
            if not _has_bearer(caller_headers):
                replay_headers = {**self._credentials.auth_headers(), **replay_headers}
            response = await self._execute(
                path,
                method=method,
                headers=replay_headers,
                body=json,
                timeout=timeout,
                cancel_event=cancel_event,
            )
            if response.status == 401:
                raise NotAuthenticatedError(
                    f"Request rejected after refresh: {path}", body=response.body
                )

        if not response.ok and response.status not in set(expected_status):
            raise _error_from_response(path, response)
        return response

    # -- Session --------------------------------------------------------------

    async def ensure_session(self) -> bool:
        """Bootstrap, and on an auth failure refresh then bootstrap once more."""
        await self._credentials.reload()
        if await self._bootstrap():
            return True
        if not await self.refresh_session():
            return False
        return await self._bootstrap()

    async def refresh_session(self) -> bool:
        """Join or start a coordinated refresh across all clients.

        When the cycle was won by a sibling client, this client's cached
        tokens are stale; they are replaced before returning.
        """
        refreshes = self._refreshes
        success = await self._coordinator.queue_refresh(self.refresh_tokens)
        if success and self._refreshes == refreshes:
            await self._adopt_sibling_session()
        return success

    async def refresh_tokens(self) -> bool:
        """The network refresh itself; concurrent callers share one call."""
        return await self._refresh_flight.run(self._do_refresh)

    async def _adopt_sibling_session(self) -> None:
        if await self._credentials.reload():
            return
        if self._credentials.is_shared:
            logger.warning("Sibling refresh succeeded but no shared session was stored")
            return
        # Unshared store: the server-side session (cookies) is the only carrier
        try:
            await self._bootstrap()
        except ApiError as e:
            logger.warning("Session bootstrap after sibling refresh failed: %s", e)

    async def _bootstrap(self) -> bool:
        if self._session_bootstrap is not None:
            ok = bool(await self._session_bootstrap())
        else:
            ok = await self._fetch_session()
        if ok:
            await self._credentials.save()
        return ok

    async def _fetch_session(self) -> bool:
        response = await self._execute(
            self._config.bootstrap_path,
            method="GET",
            headers=self._credentials.auth_headers(),
        )
        if response.status in _AUTH_FAILURE_STATUSES:
            return False
        if not response.ok:
            raise _error_from_response(self._config.bootstrap_path, response)
        return self._credentials.update_from_payload(response.body)

    async def _do_refresh(self) -> bool:
        success = await self._refresh_once()
        if success:
            self._refreshes += 1
            await self._credentials.save()
        return success

    async def _refresh_once(self) -> bool:
        if self._token_refresh is not None:
            return bool(await self._token_refresh())

        refresh_token = self._credentials.refresh_token
        try:
            response = await self._execute(
                self._config.refresh_path,
                method="POST",
                headers={},
                body={"refreshToken": refresh_token} if refresh_token else None,
            )
        except ApiError as e:
            logger.warning("Token refresh call failed: %s", e)
            return False

        if response.status in _AUTH_FAILURE_STATUSES:
            logger.info("Refresh rejected (%d), clearing cached session", response.status)
            self._credentials.clear()
            await self._credentials.save()
            return False
        if not response.ok:
            logger.warning("Token refresh returned %d", response.status)
            return False
        return self._credentials.update_from_payload(response.body)

    # -- Transport ------------------------------------------------------------

    async def _execute(
        self,
        path: str,
        *,
        method: str,
        headers: dict[str, str],
        body: Any = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Response:
        if timeout is None:
            timeout = self._config.timeout
        if cancel_event is not None and cancel_event.is_set():
            raise RequestTimeoutError(f"Request cancelled: {method} {path}")

        send = asyncio.ensure_future(
            self._transport.send(
                path, method=method, headers=headers, body=body, timeout=timeout
            )
        )
        waiters: set[asyncio.Future[Any]] = {send}
        cancelled = None
        if cancel_event is not None:
            cancelled = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout if timeout and timeout > 0 else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancelled is not None:
                cancelled.cancel()
            if not send.done():
                send.cancel()

        if send in done:
            return send.result()
        if cancelled is not None and cancelled in done:
            raise RequestTimeoutError(f"Request cancelled: {method} {path}")
        raise RequestTimeoutError(f"Request timed out after {timeout:.1f}s: {method} {path}")

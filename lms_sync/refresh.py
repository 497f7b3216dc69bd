# =============================================================================
# LMS Sync Client -- Session Refresh Coordination
# =============================================================================
#
# Two single-flight layers:
#
#   SingleFlight        concurrent callers inside one client share one
#                       in-flight refresh network call and its result.
#   RefreshCoordinator  one refresh at a time across every client ("tab")
#                       on the broadcast channel:
#
#       Idle --queue_refresh()/refresh-start--> InProgress(token)
#       InProgress --refresh-end(token)--------> Succeeded | Failed -> Idle
#       InProgress --watchdog/refresh-timeout--> Failed -> Idle
#
# Ownership of a cycle is expressed by token identity; messages for any
# other token are stale and ignored.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Generic, TypeVar
from uuid import uuid4

from ._logging import logger
from .broadcast import BroadcastChannel
from .constants import (
    MSG_REFRESH_END,
    MSG_REFRESH_START,
    MSG_REFRESH_TIMEOUT,
    REFRESH_WATCHDOG_TIMEOUT,
)
from .types import RefreshPhase, RefreshState

T = TypeVar("T")

RefreshFn = Callable[[], Awaitable[bool]]
StateListener = Callable[[RefreshState], Any]


class SingleFlight(Generic[T]):
    """Share one in-flight awaitable among concurrent callers."""

    def __init__(self) -> None:
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(fn())
        # One caller being cancelled must not abort the shared call
        return await asyncio.shield(self._task)


class RefreshCoordinator:
    """Cross-tab single-flight token refresh with a watchdog.

    Args:
        channel: Broadcast channel shared by all clients of the user.
        watchdog_timeout: Seconds after which a refresh without a matching
            ``refresh-end`` is treated as failed.
        on_state_change: Optional listener for every state transition.

    Example::

        coordinator = RefreshCoordinator(hub.channel("auth"))
        ok = await coordinator.queue_refresh(pipeline.refresh_tokens)
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        *,
        watchdog_timeout: float = REFRESH_WATCHDOG_TIMEOUT,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._channel = channel
        self._watchdog_timeout = watchdog_timeout
        self._on_state_change = on_state_change

        self._state = RefreshState()
        self._pending: asyncio.Future[bool] | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._initiator = False
        self._disposed = False
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe = channel.subscribe(self._on_message)

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def is_initiator(self) -> bool:
        return self.is_refreshing and self._initiator

    # -- Public API -----------------------------------------------------------

    async def queue_refresh(self, do_refresh: RefreshFn) -> bool:
        """Run *do_refresh* unless a refresh is already in flight anywhere.

        Returns the shared outcome of the active cycle: True only when
        the refresh succeeded. Never raises for refresh failures.
        """
        if self._disposed:
            return False
        if self.is_refreshing:
            return await asyncio.shield(self._pending)

        token = uuid4().hex
        pending = self._begin(token, initiator=True)
        logger.info("Starting session refresh %s", token[:8])
        await self._post(
            {
                "type": MSG_REFRESH_START,
                "token": token,
                "startedAt": int(self._state.started_at * 1000),
            }
        )
        self._fire_task(self._run(token, do_refresh))
        return await asyncio.shield(pending)

    async def wait_for_refresh(self) -> bool | None:
        """Wait for the active cycle. ``None`` when no refresh is running."""
        if not self.is_refreshing:
            return None
        return await asyncio.shield(self._pending)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._unsubscribe()
        if self._state.token is not None:
            self._finish(self._state.token, False)
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()

    # -- State machine --------------------------------------------------------

    def _begin(self, token: str, *, initiator: bool) -> asyncio.Future[bool]:
        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        self._initiator = initiator
        self._set_state(
            RefreshState(phase=RefreshPhase.IN_PROGRESS, token=token, started_at=time.time())
        )
        self._watchdog = loop.call_later(self._watchdog_timeout, self._on_watchdog, token)
        return self._pending

    def _finish(self, token: str, success: bool) -> None:
        if self._state.token != token:
            return
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

        pending = self._pending
        self._pending = None
        self._initiator = False

        phase = RefreshPhase.SUCCEEDED if success else RefreshPhase.FAILED
        self._set_state(RefreshState(phase=phase, token=token, success=success))
        self._set_state(RefreshState())

        if pending is not None and not pending.done():
            pending.set_result(success)

    async def _run(self, token: str, do_refresh: RefreshFn) -> None:
        try:
            success = bool(await do_refresh())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Session refresh %s raised: %s", token[:8], e)
            success = False

        if self._state.token != token:
            logger.warning(
                "Session refresh %s finished after its cycle ended, result ignored", token[:8]
            )
            return

        logger.info("Session refresh %s %s", token[:8], "succeeded" if success else "failed")
        self._finish(token, success)
        await self._post({"type": MSG_REFRESH_END, "token": token, "success": success})

    def _on_watchdog(self, token: str) -> None:
        if self._state.token != token:
            return
        self._watchdog = None
        logger.warning(
            "Session refresh %s timed out after %.1fs", token[:8], self._watchdog_timeout
        )
        self._finish(token, False)
        self._fire_task(self._post({"type": MSG_REFRESH_TIMEOUT, "token": token}))

    def _on_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        token = message.get("token")
        if not isinstance(token, str):
            return

        if msg_type == MSG_REFRESH_START:
            if self.is_refreshing:
                if token != self._state.token:
                    logger.debug("Ignoring refresh-start %s, tracking %s", token[:8], self._state.token)
                return
            if self._disposed:
                return
            logger.debug("Sibling started session refresh %s", token[:8])
            self._begin(token, initiator=False)
            return

        if token != self._state.token:
            logger.debug("Ignoring stale %s for %s", msg_type, token[:8])
            return

        if msg_type == MSG_REFRESH_END:
            self._finish(token, bool(message.get("success")))
        elif msg_type == MSG_REFRESH_TIMEOUT:
            self._finish(token, False)

    def _set_state(self, state: RefreshState) -> None:
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.error("Refresh state listener failed", exc_info=True)

    # -- Helpers --------------------------------------------------------------

    async def _post(self, message: dict[str, Any]) -> None:
        try:
            await self._channel.post(message)
        except Exception as e:
            logger.warning("Failed to broadcast %s: %s", message.get("type"), e)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

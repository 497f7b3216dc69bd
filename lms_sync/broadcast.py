# =============================================================================
# LMS Sync Client -- Broadcast Channels
# =============================================================================
#
# Fire-and-forget fan-out between client instances ("tabs") of one user on
# one machine. A message posted on a channel reaches every OTHER participant
# of the same channel name; the sender never receives its own message.
#
#   LocalBroadcastHub      several clients inside one process (and tests)
#   RedisBroadcastChannel  separate processes, via Redis pub/sub
# =============================================================================

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import uuid4

from . import serialization
from ._logging import logger

BroadcastListener = Callable[[dict[str, Any]], Any]


@runtime_checkable
class BroadcastChannel(Protocol):
    async def start(self) -> None: ...

    async def post(self, message: dict[str, Any]) -> None: ...

    def subscribe(self, listener: BroadcastListener) -> Callable[[], None]: ...

    async def close(self) -> None: ...


class _ListenerSet:
    def __init__(self) -> None:
        self._listeners: list[BroadcastListener] = []

    def add(self, listener: BroadcastListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, message: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.error("Broadcast listener failed", exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()


# -- In-process -----------------------------------------------------------------


class LocalBroadcastHub:
    """Registry of in-process channels, one namespace per hub."""

    def __init__(self) -> None:
        self._channels: dict[str, list[LocalBroadcastChannel]] = {}

    def channel(self, name: str) -> LocalBroadcastChannel:
        ch = LocalBroadcastChannel(self, name)
        self._channels.setdefault(name, []).append(ch)
        return ch

    def _peers(self, sender: LocalBroadcastChannel) -> list[LocalBroadcastChannel]:
        return [c for c in self._channels.get(sender.name, []) if c is not sender]

    def _detach(self, channel: LocalBroadcastChannel) -> None:
        peers = self._channels.get(channel.name, [])
        if channel in peers:
            peers.remove(channel)


class LocalBroadcastChannel:
    """One participant of a :class:`LocalBroadcastHub` channel.

    Messages are copied through the JSON codec (so receivers never share
    mutable state with the sender) and delivered on the next loop
    iteration, like a real cross-process channel.
    """

    def __init__(self, hub: LocalBroadcastHub, name: str) -> None:
        self._hub = hub
        self.name = name
        self._listeners = _ListenerSet()
        self._closed = False

    async def post(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        frame = serialization.dumps(message)
        loop = asyncio.get_running_loop()
        for peer in self._hub._peers(self):
            loop.call_soon(peer._deliver, frame)

    async def start(self) -> None:
        """Delivery is immediate; nothing to start."""

    def subscribe(self, listener: BroadcastListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    async def close(self) -> None:
        self._closed = True
        self._listeners.clear()
        self._hub._detach(self)

    def _deliver(self, frame: bytes) -> None:
        if not self._closed:
            self._listeners.dispatch(serialization.loads(frame))


# -- Redis ------------------------------------------------------------------------


class RedisBroadcastChannel:
    """Cross-process channel over Redis pub/sub.

    Publishes with the shared client and listens on a dedicated
    ``pubsub()`` connection from the same pool. Each frame carries the
    sender id so a process ignores its own echoes.

    Args:
        redis_client: A ``redis.asyncio.Redis`` instance.
        name: Channel name; prefixed with ``lms:`` on the wire.
    """

    def __init__(self, redis_client: Any, name: str) -> None:
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client
        self._channel = f"lms:{name}"
        self._sender_id = uuid4().hex
        self._listeners = _ListenerSet()
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._start_task: asyncio.Task[None] | None = None
        self._running = False
        self._consecutive_errors = 0

    @classmethod
    def from_url(cls, url: str, name: str) -> RedisBroadcastChannel:
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url), name)

    async def start(self) -> None:
        """Subscribe and spawn the listener task. Safe to call repeatedly."""
        if self._running:
            return
        self._running = True
        try:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self._channel)
        except Exception:
            self._running = False
            self._pubsub = None
            raise
        self._listener_task = asyncio.ensure_future(self._listen_loop())
        logger.info("Broadcast channel %s listening", self._channel)

    async def post(self, message: dict[str, Any]) -> None:
        frame = serialization.dumps({"sender": self._sender_id, "message": message})
        try:
            await self._redis.publish(self._channel, frame)
        except Exception as e:
            logger.warning("Failed to publish on %s: %s", self._channel, e)

    def subscribe(self, listener: BroadcastListener) -> Callable[[], None]:
        """Register *listener*; starts listening when called inside a loop."""
        unsubscribe = self._listeners.add(listener)
        self._start_soon()
        return unsubscribe

    def _start_soon(self) -> None:
        if self._running or self._start_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: start() must be awaited explicitly
            return
        self._start_task = loop.create_task(self.start())
        self._start_task.add_done_callback(self._on_started)

    def _on_started(self, task: asyncio.Task[None]) -> None:
        self._start_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Broadcast channel %s failed to start: %s", self._channel, exc)

    async def close(self) -> None:
        self._running = False
        if self._start_task is not None:
            self._start_task.cancel()
            self._start_task = None
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except Exception as e:
                logger.warning("Error closing pubsub for %s: %s", self._channel, e)
            self._pubsub = None
        self._listeners.clear()

    async def _listen_loop(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                self._consecutive_errors = 0
                if message and message.get("type") == "message":
                    self._handle(message["data"])
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._consecutive_errors += 1
                delay = min(1.0 * (2 ** (self._consecutive_errors - 1)), 30.0)
                delay = max(0.1, delay + delay * 0.2 * (2 * random.random() - 1))
                logger.error(
                    "Broadcast listener error on %s (attempt %d): %s. Retrying in %.2fs",
                    self._channel,
                    self._consecutive_errors,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

    def _handle(self, data: bytes | str) -> None:
        try:
            frame = serialization.loads(data)
        except (serialization.DecodeError, UnicodeDecodeError) as e:
            logger.warning("Dropping undecodable broadcast frame: %s", e)
            return
        if not isinstance(frame, dict) or frame.get("sender") == self._sender_id:
            return
        message = frame.get("message")
        if isinstance(message, dict):
            self._listeners.dispatch(message)

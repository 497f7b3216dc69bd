"""Shared fixtures for lms_sync tests."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from lms_sync.broadcast import LocalBroadcastHub
from lms_sync.credentials import CredentialStore, Session
from lms_sync.offline_queue import MutationQueue
from lms_sync.refresh import RefreshCoordinator
from lms_sync.session_gate import SessionGate
from lms_sync.storage import MemoryBackend
from lms_sync.types import QueueConfig, Response


@dataclass
class SentRequest:
    path: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: float | None = None


class FakeTransport:
    """In-process transport. ``handler`` maps a :class:`SentRequest` to a
    :class:`Response` (or an exception to raise); it may be async."""

    def __init__(self, handler: Callable[[SentRequest], Any] | None = None) -> None:
        self.calls: list[SentRequest] = []
        self.handler = handler or (lambda req: Response(200, body={}))

    async def send(self, path, *, method="GET", headers=None, body=None, timeout=None):
        request = SentRequest(path, method, dict(headers or {}), body, timeout)
        self.calls.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    def paths(self) -> list[str]:
        return [c.path for c in self.calls]


def make_fake_redis(*frames: bytes) -> tuple[MagicMock, MagicMock]:
    """A ``redis.asyncio.Redis`` stand-in whose pubsub yields *frames*
    (and anything later appended to ``pubsub.pending``) as channel
    messages, then idles."""
    pending = list(frames)

    async def get_message(ignore_subscribe_messages=True, timeout=1.0):
        if pending:
            return {"type": "message", "data": pending.pop(0)}
        await asyncio.sleep(0.01)
        return None

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=get_message)
    redis = MagicMock()
    redis.publish = AsyncMock()
    pubsub.pending = pending
    redis.pubsub.return_value = pubsub
    return redis, pubsub


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest_asyncio.fixture
async def queue(backend):
    q = MutationQueue(backend, config=QueueConfig(max_size=10))
    await q.initialize()
    yield q
    await q.dispose()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def credentials():
    return CredentialStore(Session(access_token="tok-1", user_id="u1"))


@pytest.fixture
def gate(credentials):
    return SessionGate(credentials)


@pytest.fixture
def hub():
    return LocalBroadcastHub()


@pytest_asyncio.fixture
async def coordinator(hub):
    c = RefreshCoordinator(hub.channel("auth"), watchdog_timeout=1.0)
    yield c
    await c.dispose()

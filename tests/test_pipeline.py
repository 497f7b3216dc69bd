"""Tests for the request pipeline: session gate, 401 replay, aborts."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from lms_sync.credentials import CredentialStore, Session
from lms_sync.errors import (
    ApiError,
    NetworkError,
    NotAuthenticatedError,
    RequestTimeoutError,
    is_retriable,
)
from lms_sync.pipeline import RequestPipeline
from lms_sync.refresh import RefreshCoordinator
from lms_sync.session_gate import SessionGate
from lms_sync.storage import MemoryBackend
from lms_sync.types import PipelineConfig, Response

from tests.conftest import FakeTransport

ADMIN = "/api/admin/courses"


def _pipeline(transport, credentials, coordinator, **kwargs):
    return RequestPipeline(
        transport,
        SessionGate(credentials),
        credentials,
        coordinator,
        config=PipelineConfig(timeout=1.0),
        **kwargs,
    )


def _refreshing_backend(new_token="tok-2", refresh_delay=0.0):
    """Target paths accept only *new_token*; refresh hands it out."""
    refresh_calls = []

    async def handler(req):
        if req.path == "/api/auth/refresh":
            refresh_calls.append(req)
            if refresh_delay:
                await asyncio.sleep(refresh_delay)
            return Response(200, body={"accessToken": new_token})
        if req.headers.get("Authorization") == f"Bearer {new_token}":
            return Response(200, body={"ok": True})
        return Response(401, body={"code": "token_expired"})

    return FakeTransport(handler), refresh_calls


class TestSessionAwareRequests:
    @pytest.mark.asyncio
    async def test_sends_bearer_and_returns_response(self, credentials, coordinator):
        transport = FakeTransport(lambda req: Response(200, body=[1, 2]))
        pipeline = _pipeline(transport, credentials, coordinator)
        response = await pipeline.request(ADMIN)
        assert response.body == [1, 2]
        assert transport.calls[0].headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_idempotency_header(self, credentials, coordinator, transport):
        pipeline = _pipeline(transport, credentials, coordinator)
        await pipeline.request(ADMIN, method="POST", json={"a": 1}, idempotency_key="k-1")
        call = transport.calls[0]
        assert call.headers["Idempotency-Key"] == "k-1"
        assert call.method == "POST"
        assert call.body == {"a": 1}

    @pytest.mark.asyncio
    async def test_public_path_skips_bootstrap(self, coordinator, transport):
        pipeline = _pipeline(transport, CredentialStore(), coordinator)
        await pipeline.request("/api/health")
        assert transport.paths() == ["/api/health"]
        assert "Authorization" not in transport.calls[0].headers

    @pytest.mark.asyncio
    async def test_explicit_bearer_skips_bootstrap(self, coordinator, transport):
        pipeline = _pipeline(transport, CredentialStore(), coordinator)
        await pipeline.request(ADMIN, headers={"Authorization": "Bearer explicit"})
        assert transport.paths() == [ADMIN]
        assert transport.calls[0].headers["Authorization"] == "Bearer explicit"


class TestSessionEstablishment:
    @pytest.mark.asyncio
    async def test_fails_fast_without_session(self, coordinator):
        transport = FakeTransport(lambda req: Response(401))
        credentials = CredentialStore()
        pipeline = _pipeline(transport, credentials, coordinator)

        with pytest.raises(NotAuthenticatedError) as exc_info:
            await pipeline.request(ADMIN)

        assert exc_info.value.status == 401
        assert exc_info.value.code == "not_authenticated"
        assert transport.paths() == ["/api/auth/session", "/api/auth/refresh"]
        assert ADMIN not in transport.paths()

    @pytest.mark.asyncio
    async def test_refresh_then_bootstrap_once_more(self, coordinator):
        def handler(req):
            if req.path == "/api/auth/refresh":
                return Response(200, body={"accessToken": "tok-9"})
            if req.path == "/api/auth/session":
                if req.headers.get("Authorization") == "Bearer tok-9":
                    return Response(200, body={"user": {"id": "u1"}})
                return Response(401)
            return Response(200, body={"ok": True})

        transport = FakeTransport(handler)
        credentials = CredentialStore()
        pipeline = _pipeline(transport, credentials, coordinator)

        response = await pipeline.request(ADMIN)
        assert response.body == {"ok": True}
        assert transport.paths() == [
            "/api/auth/session",
            "/api/auth/refresh",
            "/api/auth/session",
            ADMIN,
        ]
        assert credentials.user_id == "u1"

    @pytest.mark.asyncio
    async def test_bootstrap_override(self, coordinator, transport):
        credentials = CredentialStore()

        async def bootstrap():
            credentials.update(access_token="from-bootstrap")
            return True

        pipeline = _pipeline(transport, credentials, coordinator, session_bootstrap=bootstrap)
        await pipeline.request(ADMIN)
        assert transport.calls[0].headers["Authorization"] == "Bearer from-bootstrap"

    @pytest.mark.asyncio
    async def test_bootstrap_network_error_propagates(self, coordinator):
        transport = FakeTransport(lambda req: NetworkError("offline"))
        pipeline = _pipeline(transport, CredentialStore(), coordinator)
        with pytest.raises(NetworkError):
            await pipeline.request(ADMIN)


class TestUnauthorizedReplay:
    @pytest.mark.asyncio
    async def test_replays_once_after_refresh(self, credentials, coordinator):
        transport, refresh_calls = _refreshing_backend()
        pipeline = _pipeline(transport, credentials, coordinator)

        response = await pipeline.request(ADMIN)

        assert response.body == {"ok": True}
        assert transport.paths() == [ADMIN, "/api/auth/refresh", ADMIN]
        replay = transport.calls[-1]
        assert replay.headers["X-Auth-Retry"] == "1"
        assert replay.headers["Authorization"] == "Bearer tok-2"
        assert len(refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_second_401_is_final(self, credentials, coordinator):
        def handler(req):
            if req.path == "/api/auth/refresh":
                return Response(200, body={"accessToken": "tok-2"})
            return Response(401)

        transport = FakeTransport(handler)
        pipeline = _pipeline(transport, credentials, coordinator)

        with pytest.raises(NotAuthenticatedError):
            await pipeline.request(ADMIN)
        assert transport.paths().count(ADMIN) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_replayed(self, credentials, coordinator):
        transport = FakeTransport(lambda req: Response(401))
        pipeline = _pipeline(transport, credentials, coordinator)

        with pytest.raises(NotAuthenticatedError):
            await pipeline.request(ADMIN)
        assert transport.paths() == [ADMIN, "/api/auth/refresh"]
        assert not credentials.has_session()

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_refresh(self, credentials, coordinator):
        transport, refresh_calls = _refreshing_backend(refresh_delay=0.05)
        pipeline = _pipeline(transport, credentials, coordinator)

        responses = await asyncio.gather(*(pipeline.request(ADMIN) for _ in range(3)))

        assert all(r.body == {"ok": True} for r in responses)
        assert len(refresh_calls) == 1
        assert transport.paths().count(ADMIN) == 6

    @pytest.mark.asyncio
    async def test_anonymous_request_not_refreshed(self, credentials, coordinator):
        transport = FakeTransport(lambda req: Response(401))
        pipeline = _pipeline(transport, credentials, coordinator)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.request(ADMIN, allow_anonymous=True)
        assert exc_info.value.status == 401
        assert transport.paths() == [ADMIN]

    @pytest.mark.asyncio
    async def test_token_refresh_override(self, credentials, coordinator):
        def handler(req):
            if req.headers.get("Authorization") == "Bearer custom":
                return Response(200)
            return Response(401)

        async def token_refresh():
            credentials.update(access_token="custom")
            return True

        transport = FakeTransport(handler)
        pipeline = _pipeline(transport, credentials, coordinator, token_refresh=token_refresh)
        response = await pipeline.request(ADMIN)
        assert response.status == 200
        assert "/api/auth/refresh" not in transport.paths()

    @pytest.mark.asyncio
    async def test_refresh_tokens_single_flight(self, credentials, coordinator):
        transport, refresh_calls = _refreshing_backend(refresh_delay=0.02)
        pipeline = _pipeline(transport, credentials, coordinator)
        results = await asyncio.gather(pipeline.refresh_tokens(), pipeline.refresh_tokens())
        assert results == [True, True]
        assert len(refresh_calls) == 1
        assert credentials.access_token == "tok-2"


class TestAbortAndErrors:
    @pytest.mark.asyncio
    async def test_timeout(self, credentials, coordinator):
        async def slow(req):
            await asyncio.sleep(1.0)
            return Response(200)

        pipeline = _pipeline(FakeTransport(slow), credentials, coordinator)
        with pytest.raises(RequestTimeoutError) as exc_info:
            await pipeline.request(ADMIN, timeout=0.01)
        assert exc_info.value.status == 0
        assert exc_info.value.code == "timeout"
        assert is_retriable(exc_info.value)

    @pytest.mark.asyncio
    async def test_external_cancel(self, credentials, coordinator):
        async def slow(req):
            await asyncio.sleep(1.0)
            return Response(200)

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        pipeline = _pipeline(FakeTransport(slow), credentials, coordinator)
        with pytest.raises(RequestTimeoutError):
            await pipeline.request(ADMIN, cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_already_cancelled(self, credentials, coordinator, transport):
        cancel = asyncio.Event()
        cancel.set()
        pipeline = _pipeline(transport, credentials, coordinator)
        with pytest.raises(RequestTimeoutError):
            await pipeline.request(ADMIN, cancel_event=cancel)
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_server_error_is_retriable(self, credentials, coordinator):
        transport = FakeTransport(lambda req: Response(503, body={"message": "maintenance"}))
        pipeline = _pipeline(transport, credentials, coordinator)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.request(ADMIN)
        assert exc_info.value.status == 503
        assert str(exc_info.value) == "maintenance"
        assert is_retriable(exc_info.value)

    @pytest.mark.asyncio
    async def test_client_error_is_definitive(self, credentials, coordinator):
        transport = FakeTransport(
            lambda req: Response(422, body={"code": "invalid_users", "error": "bad ids"})
        )
        pipeline = _pipeline(transport, credentials, coordinator)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.request(ADMIN)
        assert exc_info.value.code == "invalid_users"
        assert not is_retriable(exc_info.value)

    @pytest.mark.asyncio
    async def test_expected_status_passes_through(self, credentials, coordinator):
        transport = FakeTransport(lambda req: Response(404))
        pipeline = _pipeline(transport, credentials, coordinator)
        response = await pipeline.request(ADMIN, expected_status=[404])
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, credentials, coordinator):
        transport = FakeTransport(lambda req: NetworkError())
        pipeline = _pipeline(transport, credentials, coordinator)
        with pytest.raises(NetworkError) as exc_info:
            await pipeline.request(ADMIN)
        assert exc_info.value.code == "network_error"

    @pytest.mark.asyncio
    async def test_refresh_session_uses_coordinator(self, credentials, coordinator):
        pipeline = _pipeline(FakeTransport(), credentials, coordinator)
        coordinator.queue_refresh = AsyncMock(return_value=True)
        assert await pipeline.refresh_session() is True
        coordinator.queue_refresh.assert_awaited_once_with(pipeline.refresh_tokens)


class TestSiblingRefresh:
    @staticmethod
    def _server(delay=0.05):
        state = {"token": "tok-2", "refreshes": 0}

        async def handler(req):
            if req.path == "/api/auth/refresh":
                state["refreshes"] += 1
                await asyncio.sleep(delay)
                state["token"] = "tok-3"
                return Response(200, body={"accessToken": "tok-3", "userId": "u1"})
            if req.headers.get("Authorization") == f"Bearer {state['token']}":
                return Response(200, body={"user": {"id": "u1"}})
            return Response(401)

        return handler, state

    @pytest.mark.asyncio
    async def test_joiner_adopts_shared_session(self, hub, coordinator):
        handler, state = self._server()
        shared = MemoryBackend()
        session = Session(access_token="tok-1", user_id="u1")
        first = _pipeline(
            FakeTransport(handler), CredentialStore(session, backend=shared), coordinator
        )
        second_credentials = CredentialStore(session, backend=shared)
        second_transport = FakeTransport(handler)
        sibling = RefreshCoordinator(hub.channel("auth"), watchdog_timeout=1.0)
        second = _pipeline(second_transport, second_credentials, sibling)

        task = asyncio.ensure_future(first.request(ADMIN))
        await asyncio.sleep(0.01)
        assert sibling.is_refreshing

        response = await second.request(ADMIN)
        await task

        assert response.status == 200
        assert state["refreshes"] == 1
        assert second_credentials.access_token == "tok-3"
        assert second_transport.calls[-1].headers["Authorization"] == "Bearer tok-3"
        assert "/api/auth/refresh" not in second_transport.paths()
        await sibling.dispose()

    @pytest.mark.asyncio
    async def test_unshared_joiner_bootstraps(self, hub, coordinator, credentials):
        sibling = RefreshCoordinator(hub.channel("auth"), watchdog_timeout=1.0)

        def handler(req):
            if req.path == "/api/auth/session":
                return Response(200, body={"accessToken": "tok-3", "user": {"id": "u1"}})
            if req.headers.get("Authorization") == "Bearer tok-3":
                return Response(200)
            return Response(401)

        transport = FakeTransport(handler)
        pipeline = _pipeline(transport, credentials, sibling)
        release = asyncio.Event()

        async def slow_refresh():
            await release.wait()
            return True

        leader = asyncio.ensure_future(coordinator.queue_refresh(slow_refresh))
        await asyncio.sleep(0.01)
        request = asyncio.ensure_future(pipeline.request(ADMIN))
        await asyncio.sleep(0.01)
        release.set()

        response = await request
        assert await leader is True
        assert response.status == 200
        assert transport.paths() == [ADMIN, "/api/auth/session", ADMIN]
        assert credentials.access_token == "tok-3"
        await sibling.dispose()

    @pytest.mark.asyncio
    async def test_own_refresh_saved_for_siblings(self, coordinator):
        transport, _ = _refreshing_backend()
        shared = MemoryBackend()
        credentials = CredentialStore(Session(access_token="tok-1"), backend=shared)
        pipeline = _pipeline(transport, credentials, coordinator)

        await pipeline.request(ADMIN)

        reader = CredentialStore(backend=shared)
        assert await reader.reload() is True
        assert reader.access_token == "tok-2"

# =============================================================================
# LMS Sync Client -- HTTP Transport
# =============================================================================
#
# Generic request/response call used by the pipeline. Status classification
# (401, 4xx, 5xx) is the pipeline's job; the transport only maps "no
# response at all" to NetworkError / RequestTimeoutError.
# =============================================================================

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from . import serialization
from ._logging import logger
from .errors import NetworkError, RequestTimeoutError
from .types import Response


@runtime_checkable
class Transport(Protocol):
    async def send(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> Response: ...


class HttpxTransport:
    """:class:`Transport` backed by ``httpx.AsyncClient``.

    Args:
        base_url: Prefix for relative paths, e.g. ``"https://lms.example"``.
        client: Existing client to reuse; otherwise one is created and
            owned (closed by :meth:`aclose`).
    """

    def __init__(self, base_url: str = "", *, client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url)

    async def send(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> Response:
        request_headers = dict(headers or {})
        content: bytes | str | None
        if body is None or isinstance(body, (bytes, str)):
            content = body
        else:
            content = serialization.dumps(body)
            request_headers.setdefault("Content-Type", "application/json")

        try:
            resp = await self._client.request(
                method,
                path,
                headers=request_headers,
                content=content,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error for {method} {path}: {e}") from e

        return Response(
            status=resp.status_code,
            headers=dict(resp.headers),
            body=self._decode(resp),
        )

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        if "application/json" in resp.headers.get("content-type", ""):
            try:
                return serialization.loads(resp.content)
            except serialization.DecodeError:
                logger.warning("Response declared JSON but failed to parse")
        return resp.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

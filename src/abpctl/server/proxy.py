"""Transparent reverse proxy from the debug server to the engine API."""

from __future__ import annotations

import logging

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

logger = logging.getLogger(__name__)

# Connection-scoped headers that must not be forwarded (RFC 9110 7.6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def _forwardable(headers: httpx.Headers | dict, drop: frozenset[str] = frozenset()) -> dict[str, str]:
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in drop
    }


class EngineProxy:
    """Relays requests to the engine unchanged and streams the reply back."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward(self, request: Request) -> Response:
        """Forward ``request`` (path, query, headers, body) to the engine.

        Returns 502 on connection failure and 504 on timeout.
        """
        url = httpx.URL(path=request.url.path, query=request.url.query.encode("utf-8"))
        headers = _forwardable(request.headers, drop=frozenset({"host", "content-length"}))
        body = await request.body()
        upstream_request = self._client.build_request(
            request.method, url, headers=headers, content=body
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException:
            logger.warning("Proxy timeout: %s %s", request.method, url)
            return JSONResponse({"error": "Proxy timeout"}, status_code=504)
        except httpx.HTTPError as e:
            logger.warning("Proxy error: %s %s: %s", request.method, url, e)
            return JSONResponse({"error": f"Proxy error: {e}"}, status_code=502)

        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=_forwardable(upstream.headers),
            background=BackgroundTask(upstream.aclose),
        )

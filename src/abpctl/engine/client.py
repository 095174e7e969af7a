"""HTTP client for the control endpoints of a running ABP engine.

Covers only what the supervision layer needs for control flow: the
readiness probe, the session-data lookup, and the shutdown request.
Everything else on the engine's REST surface is proxied opaquely.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


class SessionLocation(BaseModel):
    """Where a running engine keeps its session history."""

    session_dir: str
    database_path: str | None = None
    screenshots_dir: str | None = None


class EngineClient:
    """Talks to the control endpoints of one engine instance.

    Every call carries an explicit timeout. Probe-style calls never raise
    on network failure; they report "not ready" / "no session" instead.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8222",
        status_timeout: float = 2.0,
        session_data_timeout: float = 3.0,
        shutdown_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._status_timeout = status_timeout
        self._session_data_timeout = session_data_timeout
        self._shutdown_timeout = shutdown_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def api_url(self) -> str:
        return f"{self._base_url}{API_PREFIX}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def is_ready(self) -> bool:
        """Return True if the engine answers its status probe as ready."""
        try:
            resp = await self._get_client().get(
                f"{API_PREFIX}/browser/status", timeout=self._status_timeout
            )
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Status probe failed: %s", e)
            return False
        if not isinstance(body, dict) or body.get("success") is not True:
            return False
        data = body.get("data") or {}
        return bool(data.get("ready", True))

    async def session_location(self) -> SessionLocation | None:
        """Ask the engine where its session directory lives."""
        try:
            resp = await self._get_client().get(
                f"{API_PREFIX}/browser/session-data",
                timeout=self._session_data_timeout,
            )
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Session-data lookup failed: %s", e)
            return None
        if not isinstance(body, dict) or not body.get("success"):
            return None
        data = body.get("data") or {}
        if not data.get("session_dir"):
            return None
        return SessionLocation(
            session_dir=data["session_dir"],
            database_path=data.get("database_path"),
            screenshots_dir=data.get("screenshots_dir"),
        )

    async def shutdown(self, timeout_ms: int = 5000) -> None:
        """Request a graceful engine shutdown.

        Raises:
            httpx.HTTPError: If the request fails or times out.
        """
        resp = await self._get_client().post(
            f"{API_PREFIX}/browser/shutdown",
            json={"timeout_ms": timeout_ms},
            timeout=self._shutdown_timeout,
        )
        resp.raise_for_status()
        logger.debug("Engine accepted shutdown request")

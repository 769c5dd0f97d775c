"""
Speed-test server API client.

REST calls go through a single ``aiohttp.ClientSession`` managed via
async-context-manager protocol (``async with SpeedServerAPI(url) as api:``).
The live progress stream is handled by ``client.live``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from engine.constants import API_PREFIX, DEFAULT_SERVER_URL, VERSION, WS_PATH

USER_AGENT = f"speedtest-server-cli/{VERSION}"

COMMON_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/json",
}


class ServerRejected(Exception):
    """The server refused to start a test (HTTP 429)."""

    def __init__(self, reason: str, retry_after: float) -> None:
        super().__init__(f"{reason} (retry in {retry_after:g}s)")
        self.reason = reason
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def ws_url(server_url: str, share: bool = True) -> str:
    """Map ``http(s)://host`` to the ``ws(s)://host/.../ws`` endpoint."""
    parts = urlsplit(server_url.rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = "" if share else "share=false"
    return urlunsplit((scheme, parts.netloc, WS_PATH, query, ""))


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class ServerHealth:
    status: str
    version: str
    uptime_s: float
    active_sessions: int

    @classmethod
    def from_dict(cls, data: dict) -> ServerHealth:
        return cls(
            status=data.get("status", "unknown"),
            version=data.get("version", ""),
            uptime_s=float(data.get("uptime_s", 0)),
            active_sessions=int(data.get("active_sessions", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "version": self.version,
            "uptime_s": self.uptime_s,
            "active_sessions": self.active_sessions,
        }


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

class SpeedServerAPI:
    """Async context-manager wrapping the server's REST endpoints."""

    def __init__(self, base_url: str = DEFAULT_SERVER_URL) -> None:
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> SpeedServerAPI:
        self._session = aiohttp.ClientSession(
            headers=COMMON_HEADERS,
            timeout=aiohttp.ClientTimeout(total=30, connect=5),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._session:
            await self._session.close()
            self._session = None

    # -- Internal helpers ---------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "SpeedServerAPI must be used as an async context manager "
                "(async with SpeedServerAPI(url) as api: ...)"
            )
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # -- Public methods -----------------------------------------------------

    async def health(self) -> ServerHealth:
        session = self._ensure_session()
        async with session.get(self._url(f"{API_PREFIX}/healthz")) as resp:
            resp.raise_for_status()
            return ServerHealth.from_dict(await resp.json())

    async def start_test(self) -> Dict[str, Any]:
        """Ask whether a test may start; raises ``ServerRejected`` on 429."""
        session = self._ensure_session()
        async with session.post(self._url(f"{API_PREFIX}/speedtest/start")) as resp:
            if resp.status == 429:
                data = await resp.json()
                retry = float(resp.headers.get("Retry-After", data.get("retry_after", 0)))
                raise ServerRejected(data.get("error", "rejected"), retry)
            resp.raise_for_status()
            return await resp.json()

    async def get_result(self, result_id: str) -> Optional[Dict[str, Any]]:
        session = self._ensure_session()
        async with session.get(self._url(f"{API_PREFIX}/speedtest/result/{result_id}")) as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            return await resp.json()

    async def get_share(self, code: str) -> Optional[Dict[str, Any]]:
        session = self._ensure_session()
        async with session.get(self._url(f"/s/{code}")) as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            return await resp.json()

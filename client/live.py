"""
WebSocket consumer for a live speed test.

Protocol flow::

    1. Connect to  ws(s)://{host}/api/v1/speedtest/ws[?share=false]
    2. Receive     {"stage", "progress", "rateOrLatency", "message"} frames
    3. Stop after  the single "complete" frame (normal close follows)

A failed test is signalled by a close with code 1011 and the reason text.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import websockets
import websockets.exceptions

from engine.progress import ProgressUpdate, Stage

from .api import USER_AGENT, ServerRejected, ws_url

_WS_CONNECT_TIMEOUT = 10.0
_CLOSE_TIMEOUT = 2.0


class TestStreamError(Exception):
    """The stream ended without a ``complete`` event."""

    __test__ = False

    def __init__(self, reason: str, code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class LiveSummary:
    """Headline numbers collected from the final update of each stage."""

    ping_ms: float = 0.0
    download_mbps: float = 0.0
    upload_mbps: float = 0.0
    message: str = ""
    updates: int = 0
    complete: bool = False

    def observe(self, update: ProgressUpdate) -> None:
        self.updates += 1
        if update.stage is Stage.COMPLETE:
            self.complete = True
            self.message = update.message
        elif update.progress >= 1.0:
            if update.stage is Stage.LATENCY:
                self.ping_ms = update.rate_or_latency
            elif update.stage is Stage.DOWNLOAD:
                self.download_mbps = update.rate_or_latency
            elif update.stage is Stage.UPLOAD:
                self.upload_mbps = update.rate_or_latency

    def to_dict(self) -> dict:
        return {
            "ping_ms": round(self.ping_ms, 3),
            "download_mbps": round(self.download_mbps, 2),
            "upload_mbps": round(self.upload_mbps, 2),
            "message": self.message,
            "complete": self.complete,
        }


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------

async def stream_test(server_url: str, share: bool = True) -> AsyncIterator[ProgressUpdate]:
    """Yield every update of one test, ending with the ``complete`` one."""
    try:
        ws = await websockets.connect(
            ws_url(server_url, share),
            additional_headers={"User-Agent": USER_AGENT},
            ping_interval=None,
            close_timeout=_CLOSE_TIMEOUT,
            open_timeout=_WS_CONNECT_TIMEOUT,
        )
    except websockets.exceptions.InvalidStatus as exc:
        response = exc.response
        if response.status_code == 429:
            try:
                reason = json.loads(response.body or b"{}").get("error", "rejected")
            except ValueError:
                reason = "rejected"
            retry = float(response.headers.get("Retry-After", 0))
            raise ServerRejected(reason, retry) from exc
        raise TestStreamError(f"server answered HTTP {response.status_code}") from exc

    async with ws:
        try:
            async for message in ws:
                update = ProgressUpdate.from_dict(json.loads(message))
                yield update
                if update.is_terminal:
                    return
        except websockets.exceptions.ConnectionClosedError as exc:
            code = exc.rcvd.code if exc.rcvd is not None else None
            reason = exc.rcvd.reason if exc.rcvd is not None else "connection lost"
            raise TestStreamError(reason or "test failed", code) from exc

    raise TestStreamError("stream closed before the test completed")


async def run_live_test(server_url: str, share: bool = True, on_update=None) -> LiveSummary:  # noqa: ANN001
    """Consume a whole test, calling ``on_update(update)`` for each frame."""
    summary = LiveSummary()
    async for update in stream_test(server_url, share):
        summary.observe(update)
        if on_update is not None:
            on_update(update)
    return summary

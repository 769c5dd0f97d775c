"""Speed-test server client -- REST calls and the live progress stream."""

from .api import ServerHealth, ServerRejected, SpeedServerAPI, ws_url
from .live import LiveSummary, TestStreamError, run_live_test, stream_test

__all__ = [
    "LiveSummary",
    "ServerHealth",
    "ServerRejected",
    "SpeedServerAPI",
    "TestStreamError",
    "run_live_test",
    "stream_test",
    "ws_url",
]

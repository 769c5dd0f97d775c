"""HTTP / WebSocket front end for the speed-test engine."""

from .app import WebSocketSink, create_app

__all__ = ["WebSocketSink", "create_app"]

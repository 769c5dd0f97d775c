"""
aiohttp application exposing the engine over HTTP and WebSocket.

Routes::

    GET  /healthz, /api/v1/healthz
    POST /api/v1/speedtest/start          admission pre-check, returns ws url
    GET  /api/v1/speedtest/ws             live test, JSON progress frames
    GET  /api/v1/speedtest/download       random payload (?size=N)
    POST /api/v1/speedtest/upload         consumes the body
    GET  /api/v1/speedtest/result/{id}
    GET  /s/{code}, /share/{code}         shared result (counts a view)
    GET  /s/{code}.svg, /share/{code}.svg  shared result as an SVG card

Each WebSocket frame is one ``ProgressUpdate.to_dict()``.  A successful
test ends with the ``complete`` frame and a normal close; a failed one
closes with code 1011 and the failure as reason.
"""
from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from datetime import datetime
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape

from aiohttp import WSCloseCode, WSMsgType, web

from engine.admission import AdmissionController, client_key
from engine.config import TestSettings
from engine.constants import (
    API_PREFIX,
    DOWNLOAD_PAYLOAD_SIZE,
    MAX_DOWNLOAD_PAYLOAD_SIZE,
    STREAM_CHUNK_SIZE,
    VERSION,
    WS_PATH,
)
from engine.errors import (
    AdmissionRejected,
    ClientDisconnected,
    ConfigurationError,
    SessionFailed,
    TestCancelled,
)
from engine.orchestrator import TestOrchestrator, TestSession
from engine.progress import ProgressSink, ProgressUpdate
from engine.storage import ResultStore, open_store

logger = logging.getLogger(__name__)

SETTINGS_KEY = web.AppKey("settings", TestSettings)
ADMISSION_KEY = web.AppKey("admission", AdmissionController)
STORE_KEY = web.AppKey("store", ResultStore)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", TestOrchestrator)
SESSIONS_KEY = web.AppKey("sessions", dict)
STARTED_KEY = web.AppKey("started", float)


# ---------------------------------------------------------------------------
# Progress sink
# ---------------------------------------------------------------------------

class WebSocketSink(ProgressSink):
    """Sends each update as a JSON text frame."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self.ws = ws

    async def send(self, update: ProgressUpdate) -> None:
        if self.ws.closed:
            raise ClientDisconnected("websocket is closed")
        await self.ws.send_json(update.to_dict())

    async def close(self) -> None:
        if not self.ws.closed:
            await self.ws.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _client_id(request: web.Request) -> str:
    return client_key(request.remote or "unknown")


def _rejection_response(exc: AdmissionRejected) -> web.Response:
    retry_after = max(1, math.ceil(exc.retry_after))
    return web.json_response(
        {"error": exc.reason.value, "retry_after": retry_after},
        status=429,
        headers={"Retry-After": str(retry_after)},
    )


def _share_wanted(request: web.Request, settings: TestSettings) -> bool:
    value = request.query.get("share")
    if value is None:
        return settings.share
    return value.lower() not in ("false", "0", "no")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    app = request.app
    uptime = time.monotonic() - app[STARTED_KEY]
    return web.json_response({
        "status": "healthy",
        "version": VERSION,
        "uptime_s": round(uptime, 1),
        "active_sessions": len(app[SESSIONS_KEY]),
    })


async def handle_start(request: web.Request) -> web.Response:
    decision = request.app[ADMISSION_KEY].check(_client_id(request))
    if not decision.admitted:
        return _rejection_response(AdmissionRejected(decision.reason, decision.retry_after))
    return web.json_response({"status": "ready", "ws_url": WS_PATH})


async def handle_ws(request: web.Request) -> web.StreamResponse:
    app = request.app
    settings = app[SETTINGS_KEY]
    client = _client_id(request)

    ws = web.WebSocketResponse()
    # a request that cannot upgrade must not use up an admission slot
    if not ws.can_prepare(request).ok:
        raise web.HTTPBadRequest(text="expected a websocket upgrade")

    try:
        with app[ADMISSION_KEY].admit(client):
            await ws.prepare(request)
            session = TestSession(
                client_id=client,
                user_agent=request.headers.get("User-Agent", ""),
                share=_share_wanted(request, settings),
            )
            await _run_session(app, ws, session)
            return ws
    except AdmissionRejected as exc:
        return _rejection_response(exc)


async def _run_session(app: web.Application, ws: web.WebSocketResponse, session: TestSession) -> None:
    sessions: Dict[str, TestSession] = app[SESSIONS_KEY]
    sessions[session.id] = session
    run = asyncio.ensure_future(app[ORCHESTRATOR_KEY].run(WebSocketSink(ws), session=session))
    watcher = asyncio.ensure_future(_watch_client(ws, session, run))

    try:
        await run
    except SessionFailed as exc:
        logger.warning("session %s: %s", session.id, exc)
        if not ws.closed:
            await ws.close(code=WSCloseCode.INTERNAL_ERROR, message=str(exc).encode()[:120])
    except ConfigurationError as exc:
        logger.error("session %s not started: %s", session.id, exc)
        if not ws.closed:
            await ws.close(code=WSCloseCode.INTERNAL_ERROR, message=str(exc).encode()[:120])
    else:
        if not ws.closed:
            await ws.close()
    finally:
        sessions.pop(session.id, None)
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass


async def _watch_client(ws: web.WebSocketResponse, session: TestSession, run: asyncio.Future) -> None:
    """Drain incoming frames; a close before the test ends cancels it."""
    async for msg in ws:
        if msg.type == WSMsgType.ERROR:
            break
    if not run.done():
        logger.info("session %s: client went away", session.id)
        session.cancel(ClientDisconnected("client closed the progress channel"))


async def handle_download(request: web.Request) -> web.StreamResponse:
    try:
        size = int(request.query.get("size", DOWNLOAD_PAYLOAD_SIZE))
    except ValueError:
        raise web.HTTPBadRequest(text="size must be an integer")
    if not 0 < size <= MAX_DOWNLOAD_PAYLOAD_SIZE:
        raise web.HTTPBadRequest(text=f"size must be between 1 and {MAX_DOWNLOAD_PAYLOAD_SIZE}")

    resp = web.StreamResponse(headers={"Content-Type": "application/octet-stream"})
    resp.content_length = size
    await resp.prepare(request)

    remaining = size
    while remaining > 0:
        n = min(remaining, STREAM_CHUNK_SIZE)
        await resp.write(os.urandom(n))
        remaining -= n
    await resp.write_eof()
    return resp


async def handle_upload(request: web.Request) -> web.Response:
    total = 0
    async for chunk in request.content.iter_chunked(STREAM_CHUNK_SIZE):
        total += len(chunk)
    return web.json_response({"bytes": total})


async def handle_result(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    loop = asyncio.get_running_loop()
    record = await loop.run_in_executor(None, store.get_result, request.match_info["id"])
    if record is None:
        raise web.HTTPNotFound(text="Test not found")
    return web.json_response(record)


async def _view_share(request: web.Request) -> Dict[str, Any]:
    """Look up a shared record and count the view; store I/O runs off the loop."""
    store = request.app[STORE_KEY]
    code = request.match_info["code"]
    loop = asyncio.get_running_loop()
    record = await loop.run_in_executor(None, store.get_by_share_code, code)
    if record is None:
        raise web.HTTPNotFound(text="Share not found")
    record["share_views"] = await loop.run_in_executor(None, store.increment_share_views, code)
    return record


async def handle_share(request: web.Request) -> web.Response:
    return web.json_response(await _view_share(request))


# -- Share preview ----------------------------------------------------------

SHARE_SVG = """\
<svg width="1200" height="630" xmlns="http://www.w3.org/2000/svg">
  <rect width="1200" height="630" fill="#0f0f23"/>
  <text x="100" y="100" font-family="Arial" font-size="48" fill="white">speedtest</text>
  <text x="100" y="200" font-family="Arial" font-size="32" fill="white">Download: {download:.1f} Mbps</text>
  <text x="100" y="280" font-family="Arial" font-size="32" fill="white">Upload: {upload:.1f} Mbps</text>
  <text x="100" y="360" font-family="Arial" font-size="32" fill="white">Ping: {ping:.1f} ms</text>
  <text x="100" y="440" font-family="Arial" font-size="24" fill="#888">{when}</text>
</svg>
"""


def _format_timestamp(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def render_share_svg(record: Dict[str, Any]) -> str:
    """1200x630 social-preview card for a shared result."""
    return SHARE_SVG.format(
        download=float(record.get("download_mbps", 0.0)),
        upload=float(record.get("upload_mbps", 0.0)),
        ping=float(record.get("ping_ms", 0.0)),
        when=escape(_format_timestamp(str(record.get("timestamp", "")))),
    )


async def handle_share_svg(request: web.Request) -> web.Response:
    record = await _view_share(request)
    return web.Response(
        text=render_share_svg(record),
        content_type="image/svg+xml",
        headers={"Cache-Control": "public, max-age=3600"},
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def _cancel_sessions(app: web.Application) -> None:
    for session in list(app[SESSIONS_KEY].values()):
        session.cancel(TestCancelled("server shutting down"))


def create_app(
    settings: Optional[TestSettings] = None,
    store: Optional[ResultStore] = None,
    orchestrator: Optional[TestOrchestrator] = None,
) -> web.Application:
    """Build the application; raises ``ConfigurationError`` on bad settings."""
    settings = (settings or TestSettings()).validate()
    store = store if store is not None else open_store(settings.results_file)

    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[ADMISSION_KEY] = AdmissionController(settings.max_concurrent, settings.min_interval)
    app[STORE_KEY] = store
    app[ORCHESTRATOR_KEY] = orchestrator or TestOrchestrator(settings, store=store)
    app[SESSIONS_KEY] = {}
    app[STARTED_KEY] = time.monotonic()

    app.router.add_get("/healthz", handle_health)
    app.router.add_get(f"{API_PREFIX}/healthz", handle_health)
    app.router.add_post(f"{API_PREFIX}/speedtest/start", handle_start)
    app.router.add_get(WS_PATH, handle_ws)
    app.router.add_get(f"{API_PREFIX}/speedtest/download", handle_download)
    app.router.add_post(f"{API_PREFIX}/speedtest/upload", handle_upload)
    app.router.add_get(f"{API_PREFIX}/speedtest/result/{{id}}", handle_result)
    for prefix in ("/s", "/share"):
        app.router.add_get(prefix + "/{code:[A-Za-z0-9]+}.svg", handle_share_svg)
        app.router.add_get(prefix + "/{code:[A-Za-z0-9]+}", handle_share)

    app.on_shutdown.append(_cancel_sessions)
    return app

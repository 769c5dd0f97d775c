"""
Test orchestration.

``TestOrchestrator.run`` drives one ``TestSession`` through

    pending -> latency -> download -> upload -> complete

publishing every step to a ``ProgressSink``.  Any unrecoverable error moves
the session to ``failed`` and surfaces as ``SessionFailed`` carrying the
phase that was active and the underlying cause.  Only a session that
reaches ``complete`` produces a ``TestResult``; it is handed to the result
store before the terminal ``complete`` event is sent.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .config import TestSettings
from .errors import (
    SessionFailed,
    SessionTimeout,
    SpeedTestError,
    TestCancelled,
    TransferFailure,
)
from .latency import LatencyProber, PingResult, probe_from_target
from .progress import ProgressEmitter, ProgressSink, ProgressUpdate, Stage
from .stats import format_latency, format_speed
from .storage import ResultStore
from .transfer import ByteCounter, CancelToken, Direction, TransferPhase

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PENDING = "pending"
    LATENCY = "latency"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS = {
    Phase.PENDING: {Phase.LATENCY, Phase.FAILED},
    Phase.LATENCY: {Phase.DOWNLOAD, Phase.FAILED},
    Phase.DOWNLOAD: {Phase.UPLOAD, Phase.FAILED},
    Phase.UPLOAD: {Phase.COMPLETE, Phase.FAILED},
    Phase.COMPLETE: set(),
    Phase.FAILED: set(),
}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass
class TestSession:
    """Transient state of one test, owned by the orchestrator running it."""

    __test__ = False

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_id: str = ""
    user_agent: str = ""
    share: bool = True
    phase: Phase = Phase.PENDING
    started_at: float = 0.0
    phase_started_at: float = 0.0
    phase_deadline: Optional[float] = None
    counter: ByteCounter = field(default_factory=ByteCounter)
    token: CancelToken = field(default_factory=CancelToken)
    failed_phase: Optional[Phase] = None
    cancel_reason: Optional[TestCancelled] = None

    @property
    def cumulative_bytes(self) -> int:
        return self.counter.value

    @property
    def active(self) -> bool:
        return self.phase not in (Phase.COMPLETE, Phase.FAILED)

    def advance(self, phase: Phase, now: float, deadline: Optional[float] = None) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise ValueError(f"illegal transition {self.phase.value} -> {phase.value}")
        if self.phase is Phase.PENDING:
            self.started_at = now
        self.phase = phase
        self.phase_started_at = now
        self.phase_deadline = deadline
        # each phase writes to its own counter
        self.counter = ByteCounter()

    def fail(self) -> Phase:
        """Move to ``failed``; returns the phase that was active."""
        if self.phase is not Phase.FAILED:
            self.failed_phase = self.phase
            self.phase = Phase.FAILED
        self.token.cancel()
        return self.failed_phase

    def cancel(self, reason: Optional[TestCancelled] = None) -> None:
        """Ask the running phases to stop; safe to call from any thread."""
        if self.cancel_reason is None:
            self.cancel_reason = reason or TestCancelled()
        self.token.cancel()

    def raise_if_cancelled(self) -> None:
        if self.token.cancelled:
            raise self.cancel_reason or TestCancelled()


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TestResult:
    """Final measurements of one completed session."""

    __test__ = False

    download_mbps: float
    upload_mbps: float
    ping_ms: float
    jitter_ms: float
    packet_loss_pct: float
    session_id: str = ""
    client_id: str = ""
    user_agent: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "client_id": self.client_id,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp,
            "download_mbps": round(self.download_mbps, 2),
            "upload_mbps": round(self.upload_mbps, 2),
            "ping_ms": round(self.ping_ms, 3),
            "jitter_ms": round(self.jitter_ms, 3),
            "packet_loss_pct": round(self.packet_loss_pct, 2),
        }

    @classmethod
    def from_dict(cls, data: dict) -> TestResult:
        return cls(
            download_mbps=float(data.get("download_mbps", 0.0)),
            upload_mbps=float(data.get("upload_mbps", 0.0)),
            ping_ms=float(data.get("ping_ms", 0.0)),
            jitter_ms=float(data.get("jitter_ms", 0.0)),
            packet_loss_pct=float(data.get("packet_loss_pct", 0.0)),
            session_id=data.get("session_id", ""),
            client_id=data.get("client_id", ""),
            user_agent=data.get("user_agent", ""),
            timestamp=data.get("timestamp", ""),
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TestOrchestrator:
    """Sequences the phases of a test and publishes its progress."""

    __test__ = False

    def __init__(
        self,
        settings: TestSettings,
        prober: Optional[LatencyProber] = None,
        transfer: Optional[TransferPhase] = None,
        store: Optional[ResultStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.prober = prober or LatencyProber(
            probe=probe_from_target(settings.probe_target),
            sample_count=settings.ping_count,
            spacing=settings.ping_spacing,
            timeout=settings.ping_timeout,
        )
        self.transfer = transfer or TransferPhase(
            sample_interval=settings.sample_interval,
            pacing=settings.worker_pacing,
            clock=clock,
        )
        self.store = store
        self._clock = clock

    async def run(self, sink: ProgressSink, session: Optional[TestSession] = None) -> TestResult:
        """Run every phase.  Raises ``ConfigurationError`` before starting
        if the settings are invalid, ``SessionFailed`` if any phase fails."""
        self.settings.validate()
        session = session or TestSession(share=self.settings.share)
        emitter = ProgressEmitter(sink, self.settings.send_timeout)

        logger.info("session %s started", session.id)
        try:
            result = await asyncio.wait_for(
                self._run_phases(session, emitter),
                timeout=self.settings.session_timeout,
            )
        except asyncio.TimeoutError:
            cause = SessionTimeout(self.settings.session_timeout)
            session.cancel(cause)
            phase = session.fail()
            logger.warning("session %s timed out during %s", session.id, phase.value)
            raise SessionFailed(phase.value, cause) from None
        except asyncio.CancelledError:
            session.cancel()
            session.fail()
            raise

        logger.info(
            "session %s complete: down %.2f Mbps, up %.2f Mbps, ping %.1f ms",
            session.id, result.download_mbps, result.upload_mbps, result.ping_ms,
        )
        return result

    async def _run_phases(self, session: TestSession, emitter: ProgressEmitter) -> TestResult:
        try:
            latency = await self._latency_phase(session, emitter)
            download = await self._transfer_phase(session, emitter, Direction.DOWNLOAD)
            upload = await self._transfer_phase(session, emitter, Direction.UPLOAD)
            session.raise_if_cancelled()
        except SpeedTestError as exc:
            phase = session.fail()
            logger.warning("session %s failed during %s: %s", session.id, phase.value, exc)
            raise SessionFailed(phase.value, exc) from exc

        result = TestResult(
            download_mbps=download,
            upload_mbps=upload,
            ping_ms=latency.mean_ms,
            jitter_ms=latency.jitter_ms,
            packet_loss_pct=latency.loss_pct,
            session_id=session.id,
            client_id=session.client_id,
            user_agent=session.user_agent,
        )

        message = "Test complete"
        if self.store is not None:
            loop = asyncio.get_running_loop()
            code = await loop.run_in_executor(None, self._store_result, result, session.share)
            if code:
                message = f"Test complete, share code {code}"

        session.advance(Phase.COMPLETE, self._clock())
        try:
            await emitter.emit(ProgressUpdate.complete(message))
        except SpeedTestError as exc:
            # the result is already stored; only the announcement was lost
            logger.warning("session %s: complete event not delivered: %s", session.id, exc)
        return result

    def _store_result(self, result: TestResult, share: bool) -> Optional[str]:
        """Save *result*, off the event loop; returns a share code if one was wanted."""
        result_id = self.store.save_result(result)
        return self.store.issue_share_code(result_id) if share else None

    # -- Phases -------------------------------------------------------------

    async def _latency_phase(self, session: TestSession, emitter: ProgressEmitter):
        session.advance(Phase.LATENCY, self._clock())
        await emitter.emit(ProgressUpdate(Stage.LATENCY, 0.0, 0.0, "Starting latency test"))

        count = self.settings.ping_count

        async def on_sample(index: int, ping: PingResult) -> None:
            session.raise_if_cancelled()
            await emitter.emit(
                ProgressUpdate(
                    Stage.LATENCY,
                    index / count,
                    ping.latency_ms,
                    format_latency(ping.latency_ms) if ping.success else (ping.error or "lost"),
                )
            )

        latency = await self.prober.probe_latency(sample_count=count, on_sample=on_sample)
        session.raise_if_cancelled()
        await emitter.emit(
            ProgressUpdate(
                Stage.LATENCY, 1.0, latency.mean_ms,
                f"Latency {format_latency(latency.mean_ms)}, "
                f"jitter {latency.jitter_ms:.2f} ms, loss {latency.loss_pct:.0f}%",
            )
        )
        return latency

    async def _transfer_phase(
        self,
        session: TestSession,
        emitter: ProgressEmitter,
        direction: Direction,
    ) -> float:
        session.raise_if_cancelled()
        now = self._clock()
        duration = self.settings.duration
        session.advance(Phase(direction.value), now, deadline=now + duration)
        await emitter.emit(
            ProgressUpdate(direction.stage, 0.0, 0.0, f"Starting {direction.value} test")
        )

        phase = await self.transfer.run(
            direction,
            duration,
            self.settings.workers,
            self.settings.chunk_size,
            on_progress=emitter.emit,
            token=session.token,
            counter=session.counter,
        )
        session.raise_if_cancelled()
        if phase.all_failed:
            raise TransferFailure(direction.value, phase.errors)

        await emitter.emit(
            ProgressUpdate(
                direction.stage, 1.0, phase.average_mbps,
                f"{direction.value.capitalize()} {format_speed(phase.average_mbps)}",
            )
        )
        return phase.average_mbps

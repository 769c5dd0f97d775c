"""
Exception hierarchy for the speed-test engine.

Everything the engine raises on purpose derives from ``SpeedTestError`` so
the HTTP layer can tell expected failures from bugs.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional


class SpeedTestError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SpeedTestError, ValueError):
    """A setting is missing or outside its allowed range."""


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

class RejectReason(str, Enum):
    TOO_MANY_CONCURRENT = "too many concurrent tests"
    INTERVAL_TOO_SHORT = "interval too short"


class AdmissionRejected(SpeedTestError):
    """A client may not start a test right now."""

    def __init__(self, reason: RejectReason, retry_after: float = 0.0) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.retry_after = max(retry_after, 0.0)


# ---------------------------------------------------------------------------
# Measurement
# ---------------------------------------------------------------------------

class ProbeTimeout(SpeedTestError):
    """A single latency probe received no answer in time."""


class TransferFailure(SpeedTestError):
    """Every worker of a transfer phase failed."""

    def __init__(self, direction: str, errors: Optional[List[BaseException]] = None) -> None:
        self.direction = direction
        self.errors = list(errors or [])
        detail = f": {self.errors[0]}" if self.errors else ""
        super().__init__(f"all {direction} workers failed{detail}")


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

class TestCancelled(SpeedTestError):
    """The session was stopped before it could finish."""

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(self, reason: str = "test cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class ClientDisconnected(TestCancelled):
    """The progress sink is gone or stopped accepting updates."""

    def __init__(self, reason: str = "client disconnected") -> None:
        super().__init__(reason)


class SessionTimeout(TestCancelled):
    """The session exceeded its overall time cap."""

    def __init__(self, limit: float) -> None:
        super().__init__(f"session exceeded {limit:g}s limit")
        self.limit = limit


class SessionFailed(SpeedTestError):
    """A session ended in the ``failed`` phase."""

    def __init__(self, phase: str, cause: BaseException) -> None:
        super().__init__(f"{phase} phase failed: {cause}")
        self.phase = phase
        self.cause = cause

"""Speed-test engine -- admission control, measurement phases and progress."""

from .admission import AdmissionController, AdmissionDecision, ClientSlot, client_key
from .config import TestSettings, load_settings
from .errors import (
    AdmissionRejected,
    ClientDisconnected,
    ConfigurationError,
    ProbeTimeout,
    RejectReason,
    SessionFailed,
    SessionTimeout,
    SpeedTestError,
    TestCancelled,
    TransferFailure,
)
from .latency import LatencyProber, LatencyResult, PingResult
from .orchestrator import Phase, TestOrchestrator, TestResult, TestSession
from .progress import ProgressEmitter, ProgressSink, ProgressUpdate, QueueSink, Stage
from .storage import JsonlResultStore, MemoryResultStore, ResultStore, open_store
from .transfer import (
    ByteCounter,
    CancelToken,
    Direction,
    PhaseResult,
    SyntheticChannel,
    TransferChannel,
    TransferPhase,
)

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionRejected",
    "ByteCounter",
    "CancelToken",
    "ClientDisconnected",
    "ClientSlot",
    "ConfigurationError",
    "Direction",
    "JsonlResultStore",
    "LatencyProber",
    "LatencyResult",
    "MemoryResultStore",
    "Phase",
    "PhaseResult",
    "PingResult",
    "ProbeTimeout",
    "ProgressEmitter",
    "ProgressSink",
    "ProgressUpdate",
    "QueueSink",
    "RejectReason",
    "ResultStore",
    "SessionFailed",
    "SessionTimeout",
    "SpeedTestError",
    "Stage",
    "SyntheticChannel",
    "TestCancelled",
    "TestOrchestrator",
    "TestResult",
    "TestSession",
    "TestSettings",
    "TransferChannel",
    "TransferFailure",
    "TransferPhase",
    "client_key",
    "load_settings",
    "open_store",
]

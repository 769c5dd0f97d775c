"""
Per-client admission control.

Limits how many tests one client may run at once and how soon it may
start the next one.  All state lives in a ``ClientSlot`` registry owned by
an ``AdmissionController`` instance and guarded by a single lock, so one
controller can be shared by every request handler.

Usage::

    controller = AdmissionController(max_concurrent_per_client=3,
                                     min_interval_seconds=5)
    with controller.admit(client_key(remote_ip)):
        ...  # run the test; the slot is released on every exit path
"""
from __future__ import annotations

import contextlib
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from .constants import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MIN_INTERVAL,
    SLOT_PRUNE_THRESHOLD,
)
from .errors import AdmissionRejected, ConfigurationError, RejectReason

logger = logging.getLogger(__name__)


def client_key(remote: str) -> str:
    """Stable, non-reversible identifier for a remote address."""
    return hashlib.sha256(remote.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass
class ClientSlot:
    """Admission bookkeeping for one client."""

    active_count: int = 0
    last_admitted_at: Optional[float] = None


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: Optional[RejectReason] = None
    retry_after: float = 0.0

    def raise_for_rejection(self) -> None:
        if not self.admitted:
            raise AdmissionRejected(self.reason, self.retry_after)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class AdmissionController:
    """Thread-safe per-client concurrency and spacing gate."""

    def __init__(
        self,
        max_concurrent_per_client: int = DEFAULT_MAX_CONCURRENT,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent_per_client < 1:
            raise ConfigurationError("max_concurrent_per_client must be >= 1")
        if min_interval_seconds < 0:
            raise ConfigurationError("min_interval_seconds must be >= 0")
        self.max_concurrent = max_concurrent_per_client
        self.min_interval = min_interval_seconds
        self._clock = clock
        self._slots: Dict[str, ClientSlot] = {}
        self._lock = threading.Lock()

    # -- Decisions ----------------------------------------------------------

    def _decide(self, slot: ClientSlot, now: float) -> AdmissionDecision:
        if slot.active_count >= self.max_concurrent:
            return AdmissionDecision(
                False,
                RejectReason.TOO_MANY_CONCURRENT,
                retry_after=max(self.min_interval, 1.0),
            )
        if slot.last_admitted_at is not None:
            elapsed = now - slot.last_admitted_at
            if elapsed < self.min_interval:
                return AdmissionDecision(
                    False,
                    RejectReason.INTERVAL_TOO_SHORT,
                    retry_after=self.min_interval - elapsed,
                )
        return AdmissionDecision(True)

    def check(self, client_id: str) -> AdmissionDecision:
        """Would *client_id* be admitted now?  Does not change any state."""
        with self._lock:
            slot = self._slots.get(client_id) or ClientSlot()
            return self._decide(slot, self._clock())

    def try_admit(self, client_id: str) -> AdmissionDecision:
        """Admit *client_id* if both limits allow it."""
        with self._lock:
            now = self._clock()
            if len(self._slots) > SLOT_PRUNE_THRESHOLD:
                self._prune(now)
            slot = self._slots.setdefault(client_id, ClientSlot())
            decision = self._decide(slot, now)
            if decision.admitted:
                slot.active_count += 1
                slot.last_admitted_at = now
        if not decision.admitted:
            logger.warning(
                "admission rejected for %s: %s (retry in %.1fs)",
                client_id[:12], decision.reason.value, decision.retry_after,
            )
        return decision

    def release(self, client_id: str) -> None:
        with self._lock:
            slot = self._slots.get(client_id)
            if slot is None or slot.active_count == 0:
                logger.error("release without admission for %s", client_id[:12])
                return
            slot.active_count -= 1

    @contextlib.contextmanager
    def admit(self, client_id: str) -> Iterator[AdmissionDecision]:
        """Scoped admission: raises ``AdmissionRejected`` or releases on exit."""
        decision = self.try_admit(client_id)
        decision.raise_for_rejection()
        try:
            yield decision
        finally:
            self.release(client_id)

    # -- Introspection ------------------------------------------------------

    def active(self, client_id: str) -> int:
        with self._lock:
            slot = self._slots.get(client_id)
            return slot.active_count if slot else 0

    def slot(self, client_id: str) -> Optional[ClientSlot]:
        with self._lock:
            slot = self._slots.get(client_id)
            return ClientSlot(slot.active_count, slot.last_admitted_at) if slot else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    # -- Housekeeping -------------------------------------------------------

    def prune(self) -> int:
        """Drop idle slots whose interval has expired.  Returns count removed."""
        with self._lock:
            return self._prune(self._clock())

    def _prune(self, now: float) -> int:
        stale = [
            key for key, slot in self._slots.items()
            if slot.active_count == 0
            and (slot.last_admitted_at is None or now - slot.last_admitted_at >= self.min_interval)
        ]
        for key in stale:
            del self._slots[key]
        return len(stale)

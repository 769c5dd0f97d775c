"""
Round-trip latency measurement.

A probe is any coroutine function returning one round-trip time in
milliseconds.  ``LatencyProber`` runs ``sample_count`` probes one after
another with a small gap between them, each under its own timeout, and
derives mean latency, jitter (population standard deviation) and loss.

Two probes ship with the engine:

* ``synthetic_probe`` -- times a 1 ms sleep; deterministic enough for a
  self-hosted demo and what the server uses by default.
* ``tcp_connect_probe(host, port)`` -- times a TCP handshake.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from .constants import DEFAULT_PING_COUNT, PING_SPACING, PING_TIMEOUT
from .errors import ProbeTimeout
from .stats import LatencyStats

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[float]]


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

async def synthetic_probe() -> float:
    start = time.perf_counter()
    await asyncio.sleep(0.001)
    return (time.perf_counter() - start) * 1000


def tcp_connect_probe(host: str, port: int) -> Probe:
    """Build a probe that measures TCP connection setup to *host*:*port*."""

    async def _probe() -> float:
        start = time.perf_counter()
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError as exc:
            raise ProbeTimeout(f"connect to {host}:{port} failed: {exc}") from exc
        elapsed = (time.perf_counter() - start) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return elapsed

    return _probe


def probe_from_target(target: str) -> Probe:
    """``""`` gives the synthetic probe, ``"host:port"`` a TCP probe."""
    if not target:
        return synthetic_probe
    host, _, port = target.rpartition(":")
    return tcp_connect_probe(host, int(port))


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class PingResult:
    """A single round-trip sample."""

    latency_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None


@dataclass
class LatencyResult:
    """Aggregated latency data for one session."""

    pings: List[PingResult] = field(default_factory=list)
    mean_ms: float = 0.0
    jitter_ms: float = 0.0
    loss_pct: float = 0.0
    stats: LatencyStats = field(default_factory=LatencyStats)

    @property
    def successes(self) -> int:
        return sum(1 for p in self.pings if p.success)

    @property
    def timed_out(self) -> bool:
        """True when no sample succeeded."""
        return bool(self.pings) and self.successes == 0

    def calculate(self) -> None:
        self.stats = LatencyStats(
            samples=[p.latency_ms for p in self.pings if p.success],
            attempts=len(self.pings),
        )
        self.stats.calculate()
        if self.stats.count == 0:
            self.mean_ms, self.jitter_ms, self.loss_pct = 0.0, 0.0, 100.0
            return
        self.mean_ms = self.stats.mean
        self.jitter_ms = self.stats.jitter
        self.loss_pct = self.stats.loss_pct

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.mean_ms, self.jitter_ms, self.loss_pct)

    def to_dict(self) -> dict:
        return {
            "mean_ms": round(self.mean_ms, 3),
            "jitter_ms": round(self.jitter_ms, 3),
            "loss_pct": round(self.loss_pct, 2),
            "stats": self.stats.to_dict(),
        }


# ---------------------------------------------------------------------------
# Prober
# ---------------------------------------------------------------------------

SampleCallback = Callable[[int, PingResult], Awaitable[None]]


class LatencyProber:
    """Sequential round-trip sampler."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        sample_count: int = DEFAULT_PING_COUNT,
        spacing: float = PING_SPACING,
        timeout: float = PING_TIMEOUT,
    ) -> None:
        self.probe = probe or synthetic_probe
        self.sample_count = sample_count
        self.spacing = spacing
        self.timeout = timeout

    async def probe_latency(
        self,
        sample_count: Optional[int] = None,
        on_sample: Optional[SampleCallback] = None,
    ) -> LatencyResult:
        """Take the samples; *on_sample* sees ``(index, ping)`` 1-based."""
        count = self.sample_count if sample_count is None else sample_count
        result = LatencyResult()

        for i in range(count):
            ping = await self._ping_once()
            result.pings.append(ping)
            if on_sample is not None:
                await on_sample(i + 1, ping)
            if i < count - 1 and self.spacing > 0:
                await asyncio.sleep(self.spacing)

        result.calculate()
        if result.timed_out:
            logger.warning("all %d latency probes failed", count)
        return result

    async def _ping_once(self) -> PingResult:
        try:
            rtt = await asyncio.wait_for(self.probe(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return PingResult(success=False, error="Ping timeout")
        except ProbeTimeout as exc:
            return PingResult(success=False, error=str(exc))
        except (ConnectionError, OSError) as exc:
            return PingResult(success=False, error=str(exc))
        return PingResult(latency_ms=float(rtt))

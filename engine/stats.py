"""
Measurement statistics.

Pure functions and lightweight dataclasses -- no I/O, no side effects.
Everything here is deterministic and easy to unit-test.
"""
from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, field
from typing import List


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LatencyStats:
    """Aggregated latency statistics over successful samples."""

    samples: List[float] = field(default_factory=list)
    attempts: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    jitter: float = 0.0
    loss_pct: float = 0.0
    count: int = 0

    def calculate(self) -> None:
        attempts = max(self.attempts, len(self.samples))
        self.count = len(self.samples)
        self.loss_pct = calculate_loss(attempts, self.count)
        if not self.samples:
            return
        self.min = min(self.samples)
        self.max = max(self.samples)
        self.mean = statistics.mean(self.samples)
        self.median = statistics.median(self.samples)
        self.jitter = calculate_jitter(self.samples)

    def to_dict(self) -> dict:
        return {
            "samples": [round(s, 3) for s in self.samples],
            "attempts": self.attempts,
            "min": round(self.min, 3),
            "max": round(self.max, 3),
            "mean": round(self.mean, 3),
            "median": round(self.median, 3),
            "jitter": round(self.jitter, 3),
            "loss_pct": round(self.loss_pct, 2),
            "count": self.count,
        }


# ---------------------------------------------------------------------------
# Pure helper functions
# ---------------------------------------------------------------------------

def calculate_jitter(samples: List[float]) -> float:
    """Population standard deviation of *samples*."""
    if len(samples) < 2:
        return 0.0
    mean = sum(samples) / len(samples)
    variance = sum((s - mean) ** 2 for s in samples) / len(samples)
    return math.sqrt(variance)


def calculate_loss(attempts: int, successes: int) -> float:
    """Percentage of *attempts* that did not succeed, in ``[0, 100]``."""
    if attempts <= 0:
        return 0.0
    successes = min(max(successes, 0), attempts)
    return (attempts - successes) / attempts * 100


def calculate_mbps(bytes_total: int, seconds: float) -> float:
    """Cumulative-average throughput in megabits per second."""
    if seconds <= 0:
        return 0.0
    return (bytes_total * 8) / seconds / 1_000_000


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_speed(speed_mbps: float) -> str:
    """Human-readable speed string."""
    if speed_mbps >= 1000:
        return f"{speed_mbps / 1000:.2f} Gbps"
    return f"{speed_mbps:.1f} Mbps"


def format_latency(latency_ms: float) -> str:
    """Human-readable latency string."""
    if latency_ms >= 1000:
        return f"{latency_ms / 1000:.2f} s"
    return f"{latency_ms:.1f} ms"


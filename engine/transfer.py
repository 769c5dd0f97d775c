"""
Download / upload transfer phases.

A phase runs ``worker_count`` workers in parallel threads.  Each worker
pushes ``chunk_size`` buffers through a ``TransferChannel`` until the phase
deadline, adding what it moved to one shared ``ByteCounter``.  A sampler
coroutine reads the counter every ``sample_interval`` seconds and reports
the cumulative-average rate (total bytes / elapsed time) together with the
time-based progress fraction.

The final speed is computed from the final byte count and the actual
elapsed time, which includes the few milliseconds the workers need to
notice the deadline.

Workers are cooperatively cancelled through a ``CancelToken`` that they
check once per iteration; nothing is ever killed mid-buffer.
"""
from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .config import validate_transfer
from .constants import SAMPLE_INTERVAL, WORKER_PACING
from .progress import ProgressUpdate, Stage
from .stats import calculate_mbps, format_speed

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Awaitable[object]]


class Direction(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"

    @property
    def stage(self) -> Stage:
        return Stage(self.value)


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------

class ByteCounter:
    """Monotonic byte total shared by the workers of one phase."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def add(self, n: int) -> int:
        if n < 0:
            raise ValueError("byte counter cannot decrease")
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class CancelToken:
    """Thread-safe cancellation flag; a child is cancelled with its parent."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancelToken] = []

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def child(self) -> CancelToken:
        token = CancelToken()
        with self._lock:
            if not self._event.is_set():
                self._children.append(token)
                return token
        token.cancel()
        return token

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout*, waking early if this token or a parent is cancelled."""
        return self._event.wait(timeout)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class TransferChannel:
    """Moves one buffer per call and returns the number of bytes moved.

    Implementations are called from worker threads and may block.  An
    ``OSError`` ends the calling worker only.
    """

    def transfer(self, direction: Direction, buffer: bytearray) -> int:
        raise NotImplementedError


class SyntheticChannel(TransferChannel):
    """Counts the buffer as moved without touching a socket."""

    def transfer(self, direction: Direction, buffer: bytearray) -> int:
        return len(buffer)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class PhaseResult:
    """Outcome of one transfer phase."""

    direction: Direction
    average_mbps: float = 0.0
    bytes_total: int = 0
    elapsed_s: float = 0.0
    workers: int = 0
    errors: List[BaseException] = field(default_factory=list)
    samples: List[float] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_workers(self) -> int:
        return len(self.errors)

    @property
    def all_failed(self) -> bool:
        return self.workers > 0 and self.failed_workers >= self.workers

    def calculate(self) -> None:
        if self.all_failed:
            self.average_mbps = 0.0
            return
        self.average_mbps = calculate_mbps(self.bytes_total, self.elapsed_s)

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "speed_mbps": round(self.average_mbps, 2),
            "bytes_total": self.bytes_total,
            "elapsed_s": round(self.elapsed_s, 3),
            "workers": self.workers,
            "failed_workers": self.failed_workers,
            "samples": [round(s, 2) for s in self.samples],
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Phase runner
# ---------------------------------------------------------------------------

class TransferPhase:
    """Run one bounded-duration, multi-worker transfer."""

    def __init__(
        self,
        channel: Optional[TransferChannel] = None,
        sample_interval: float = SAMPLE_INTERVAL,
        pacing: float = WORKER_PACING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel or SyntheticChannel()
        self.sample_interval = sample_interval
        self.pacing = pacing
        self._clock = clock

    async def run(
        self,
        direction: Direction,
        duration_seconds: float,
        worker_count: int,
        chunk_size: int,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancelToken] = None,
        counter: Optional[ByteCounter] = None,
    ) -> PhaseResult:
        validate_transfer(duration_seconds, worker_count, chunk_size)

        direction = Direction(direction)
        stop = token.child() if token is not None else CancelToken()
        counter = counter or ByteCounter()
        result = PhaseResult(direction=direction, workers=worker_count)

        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(
            max_workers=worker_count,
            thread_name_prefix=f"{direction.value}-worker",
        )

        start = self._clock()
        deadline = start + duration_seconds

        futures = [
            loop.run_in_executor(
                executor, self._work, wid, direction, chunk_size, counter, deadline, stop,
            )
            for wid in range(worker_count)
        ]
        workers_done = asyncio.gather(*futures)
        sampler = asyncio.ensure_future(
            self._sample(direction, start, deadline, duration_seconds, counter, stop,
                         on_progress, result.samples)
        )

        try:
            await asyncio.wait({workers_done, sampler}, return_when=asyncio.FIRST_COMPLETED)
            if sampler.done() and not sampler.cancelled() and sampler.exception() is not None:
                stop.cancel()
                await workers_done
                raise sampler.exception()
            outcomes = await workers_done
        finally:
            stop.cancel()
            if not sampler.done():
                sampler.cancel()
                try:
                    await sampler
                except asyncio.CancelledError:
                    pass
            executor.shutdown(wait=False)

        result.elapsed_s = self._clock() - start
        result.bytes_total = counter.value
        result.errors = [exc for exc in outcomes if exc is not None]
        result.cancelled = token is not None and token.cancelled
        result.calculate()

        logger.info(
            "%s phase: %.2f Mbps, %d bytes in %.2fs, %d/%d workers failed",
            direction.value, result.average_mbps, result.bytes_total,
            result.elapsed_s, result.failed_workers, worker_count,
        )
        return result

    # -- Worker -------------------------------------------------------------

    def _work(
        self,
        wid: int,
        direction: Direction,
        chunk_size: int,
        counter: ByteCounter,
        deadline: float,
        stop: CancelToken,
    ) -> Optional[BaseException]:
        if direction is Direction.UPLOAD:
            buffer = bytearray(os.urandom(chunk_size))
        else:
            buffer = bytearray(chunk_size)

        try:
            while not stop.cancelled and self._clock() < deadline:
                moved = self.channel.transfer(direction, buffer)
                counter.add(moved)
                if self.pacing > 0:
                    stop.wait(self.pacing)
        except OSError as exc:
            logger.warning("%s worker %d failed: %s", direction.value, wid, exc)
            return exc
        return None

    # -- Sampler ------------------------------------------------------------

    async def _sample(
        self,
        direction: Direction,
        start: float,
        deadline: float,
        duration: float,
        counter: ByteCounter,
        stop: CancelToken,
        on_progress: Optional[ProgressCallback],
        samples: List[float],
    ) -> None:
        while not stop.cancelled:
            await asyncio.sleep(self.sample_interval)
            now = self._clock()
            if stop.cancelled or now >= deadline:
                return
            elapsed = now - start
            if elapsed <= 0:
                continue

            rate = calculate_mbps(counter.value, elapsed)
            samples.append(rate)
            logger.debug("%s sample: %.2f Mbps at %.2fs", direction.value, rate, elapsed)

            if on_progress is not None:
                await on_progress(
                    ProgressUpdate(
                        stage=direction.stage,
                        progress=min(elapsed / duration, 1.0),
                        rate_or_latency=rate,
                        message=format_speed(rate),
                    )
                )

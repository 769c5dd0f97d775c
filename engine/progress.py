"""
Progress events and the channel they travel through.

A session publishes an ordered stream of ``ProgressUpdate`` values into a
``ProgressSink``.  The engine never assumes a wire format: sinks decide how
updates are delivered (an in-process queue, a WebSocket, ...).  All writes
go through ``ProgressEmitter``, which enforces stage order, keeps progress
non-decreasing within a stage and bounds how long a slow sink may block.
"""
from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from .constants import SEND_TIMEOUT
from .errors import ClientDisconnected


class Stage(str, Enum):
    LATENCY = "latency"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    COMPLETE = "complete"


_STAGE_ORDER = {
    Stage.LATENCY: 0,
    Stage.DOWNLOAD: 1,
    Stage.UPLOAD: 2,
    Stage.COMPLETE: 3,
}


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressUpdate:
    """One progress event.

    ``rate_or_latency`` is in Mbps for transfer stages and milliseconds for
    the latency stage.
    """

    stage: Stage
    progress: float
    rate_or_latency: float = 0.0
    message: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage", Stage(self.stage))
        if not 0.0 <= self.progress <= 1.0:
            raise ValueError(f"progress must be within [0, 1], got {self.progress}")
        if self.stage is Stage.COMPLETE and self.progress != 1.0:
            raise ValueError("complete updates must carry progress 1.0")

    @classmethod
    def complete(cls, message: str = "Test complete") -> ProgressUpdate:
        return cls(Stage.COMPLETE, 1.0, 0.0, message)

    @property
    def is_terminal(self) -> bool:
        return self.stage is Stage.COMPLETE

    # -- Serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "progress": round(self.progress, 4),
            "rateOrLatency": round(self.rate_or_latency, 3),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProgressUpdate:
        return cls(
            stage=Stage(data["stage"]),
            progress=float(data.get("progress", 0.0)),
            rate_or_latency=float(data.get("rateOrLatency", 0.0)),
            message=str(data.get("message", "")),
        )


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class ProgressSink:
    """Destination for progress updates."""

    async def send(self, update: ProgressUpdate) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class QueueSink(ProgressSink):
    """Bounded in-process channel; consumers iterate ``updates()``.

    A full queue makes ``send`` wait, which the emitter turns into a
    ``ClientDisconnected`` once the send timeout expires.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def send(self, update: ProgressUpdate) -> None:
        if self._closed:
            raise ClientDisconnected("progress queue is closed")
        await self._queue.put(update)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            try:
                self._queue.put_nowait(self._CLOSED)
            except asyncio.QueueFull:
                # updates() stops on _closed once the queue drains
                pass

    async def updates(self) -> AsyncIterator[ProgressUpdate]:
        while True:
            if self._closed and self._queue.empty():
                return
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class ProgressEmitter:
    """Ordered, bounded-wait writer in front of a ``ProgressSink``."""

    def __init__(self, sink: ProgressSink, send_timeout: float = SEND_TIMEOUT) -> None:
        self.sink = sink
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()
        self._stage: Optional[Stage] = None
        self._progress = 0.0
        self._broken: Optional[ClientDisconnected] = None
        self.sent = 0

    @property
    def stage(self) -> Optional[Stage]:
        return self._stage

    async def emit(self, update: ProgressUpdate) -> ProgressUpdate:
        """Send *update*, returning what was actually sent."""
        async with self._lock:
            if self._broken is not None:
                raise self._broken
            update = self._order(update)
            try:
                await asyncio.wait_for(self.sink.send(update), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                self._broken = ClientDisconnected(
                    f"progress sink stalled for more than {self.send_timeout:g}s"
                )
                raise self._broken from None
            except ClientDisconnected as exc:
                self._broken = exc
                raise
            except (ConnectionError, OSError) as exc:
                self._broken = ClientDisconnected(f"progress sink failed: {exc}")
                raise self._broken from exc
            self.sent += 1
            return update

    def _order(self, update: ProgressUpdate) -> ProgressUpdate:
        if self._stage is not None:
            current = _STAGE_ORDER[self._stage]
            incoming = _STAGE_ORDER[update.stage]
            if self._stage is Stage.COMPLETE:
                raise ValueError("no updates may follow the complete event")
            if incoming < current:
                raise ValueError(
                    f"{update.stage.value} update after {self._stage.value} stage"
                )
            if incoming == current and update.progress < self._progress:
                update = dataclasses.replace(update, progress=self._progress)
        if update.stage is not self._stage:
            self._stage = update.stage
        self._progress = update.progress
        return update

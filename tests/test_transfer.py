"""Tests for engine.transfer -- workers, sampler, cancellation and failures."""

import asyncio
import threading
import unittest

from engine.constants import MIN_CHUNK_SIZE
from engine.errors import ClientDisconnected, ConfigurationError
from engine.progress import Stage
from engine.transfer import (
    ByteCounter,
    CancelToken,
    Direction,
    PhaseResult,
    SyntheticChannel,
    TransferChannel,
    TransferPhase,
)


MIB = 1024 * 1024


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class CountedChannel(TransferChannel):
    """Serves exactly *chunks* buffers, then jumps the clock past the deadline."""

    def __init__(self, clock, chunks, end):
        self.clock = clock
        self.remaining = chunks
        self.end = end
        self.lock = threading.Lock()

    def transfer(self, direction, buffer):
        with self.lock:
            if self.remaining > 0:
                self.remaining -= 1
                return len(buffer)
            self.clock.now = self.end
            return 0


class FailingChannel(TransferChannel):
    """Raises ``OSError`` for the first *failures* calls."""

    def __init__(self, failures):
        self.failures = failures
        self.lock = threading.Lock()

    def transfer(self, direction, buffer):
        with self.lock:
            if self.failures > 0:
                self.failures -= 1
                raise ConnectionResetError("reset by peer")
        return len(buffer)


class TestByteCounter(unittest.TestCase):
    def test_add(self):
        c = ByteCounter()
        c.add(10)
        self.assertEqual(c.add(5), 15)
        self.assertEqual(c.value, 15)

    def test_negative_rejected(self):
        with self.assertRaises(ValueError):
            ByteCounter().add(-1)

    def test_threaded_adds(self):
        c = ByteCounter()

        def work():
            for _ in range(1000):
                c.add(1)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(c.value, 8000)


class TestCancelToken(unittest.TestCase):
    def test_child_follows_parent(self):
        parent = CancelToken()
        child = parent.child()
        self.assertFalse(child.cancelled)
        parent.cancel()
        self.assertTrue(child.cancelled)

    def test_child_does_not_cancel_parent(self):
        parent = CancelToken()
        parent.child().cancel()
        self.assertFalse(parent.cancelled)

    def test_wait_wakes_on_cancel(self):
        token = CancelToken()
        token.cancel()
        self.assertTrue(token.wait(5.0))

    def test_child_wait_wakes_on_parent_cancel(self):
        parent = CancelToken()
        grandchild = parent.child().child()
        timer = threading.Timer(0.05, parent.cancel)
        timer.start()
        try:
            self.assertTrue(grandchild.wait(5.0))
        finally:
            timer.cancel()
        self.assertTrue(grandchild.cancelled)

    def test_child_of_cancelled_parent(self):
        parent = CancelToken()
        parent.cancel()
        self.assertTrue(parent.child().wait(0))


class TestPhaseResult(unittest.TestCase):
    def test_all_failed_zero_rate(self):
        r = PhaseResult(Direction.DOWNLOAD, bytes_total=1000, elapsed_s=1.0, workers=2,
                        errors=[OSError(), OSError()])
        r.calculate()
        self.assertTrue(r.all_failed)
        self.assertEqual(r.average_mbps, 0.0)

    def test_to_dict(self):
        r = PhaseResult(Direction.UPLOAD, bytes_total=12_500_000, elapsed_s=1.0, workers=1)
        r.calculate()
        d = r.to_dict()
        self.assertEqual(d["direction"], "upload")
        self.assertEqual(d["speed_mbps"], 100.0)
        self.assertEqual(d["failed_workers"], 0)


class TestTransferPhase(unittest.IsolatedAsyncioTestCase):
    async def test_counted_throughput(self):
        clock = FakeClock(0.0)
        channel = CountedChannel(clock, chunks=100, end=10.0)
        phase = TransferPhase(channel, sample_interval=0.01, pacing=0, clock=clock)

        result = await phase.run(Direction.DOWNLOAD, 10, 4, MIB)

        self.assertEqual(result.bytes_total, 100 * MIB)
        self.assertAlmostEqual(result.elapsed_s, 10.0)
        self.assertAlmostEqual(result.average_mbps, 100 * MIB * 8 / 10 / 1e6)
        self.assertFalse(result.errors)
        self.assertFalse(result.cancelled)

    async def test_progress_updates(self):
        updates = []

        async def on_progress(update):
            updates.append(update)

        phase = TransferPhase(sample_interval=0.1, pacing=0.005)
        result = await phase.run(Direction.UPLOAD, 1, 2, MIN_CHUNK_SIZE, on_progress=on_progress)

        self.assertGreater(result.bytes_total, 0)
        self.assertGreater(result.average_mbps, 0)
        self.assertTrue(updates)
        self.assertTrue(all(u.stage is Stage.UPLOAD for u in updates))
        progresses = [u.progress for u in updates]
        self.assertEqual(progresses, sorted(progresses))
        self.assertTrue(all(0.0 < p <= 1.0 for p in progresses))
        self.assertEqual(len(result.samples), len(updates))

    async def test_shared_counter(self):
        counter = ByteCounter()
        phase = TransferPhase(sample_interval=0.1, pacing=0.01)
        result = await phase.run(Direction.DOWNLOAD, 1, 2, MIN_CHUNK_SIZE, counter=counter)
        self.assertEqual(counter.value, result.bytes_total)

    async def test_cancellation(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel)
        phase = TransferPhase(sample_interval=0.05, pacing=0.01)

        started = asyncio.get_running_loop().time()
        result = await phase.run(Direction.DOWNLOAD, 30, 4, MIN_CHUNK_SIZE, token=token)

        self.assertTrue(result.cancelled)
        self.assertLess(asyncio.get_running_loop().time() - started, 5.0)

    async def test_all_workers_fail(self):
        phase = TransferPhase(FailingChannel(failures=1000), sample_interval=0.05, pacing=0)
        with self.assertLogs("engine.transfer", level="WARNING"):
            result = await phase.run(Direction.UPLOAD, 5, 3, MIN_CHUNK_SIZE)
        self.assertTrue(result.all_failed)
        self.assertEqual(result.average_mbps, 0.0)
        self.assertEqual(result.failed_workers, 3)

    async def test_partial_failure_keeps_going(self):
        phase = TransferPhase(FailingChannel(failures=2), sample_interval=0.1, pacing=0.01)
        with self.assertLogs("engine.transfer", level="WARNING"):
            result = await phase.run(Direction.DOWNLOAD, 1, 4, MIN_CHUNK_SIZE)
        self.assertEqual(result.failed_workers, 2)
        self.assertFalse(result.all_failed)
        self.assertGreater(result.average_mbps, 0.0)

    async def test_sink_failure_stops_phase(self):
        async def on_progress(update):
            raise ClientDisconnected("gone")

        phase = TransferPhase(sample_interval=0.02, pacing=0.01)
        started = asyncio.get_running_loop().time()
        with self.assertRaises(ClientDisconnected):
            await phase.run(Direction.DOWNLOAD, 30, 2, MIN_CHUNK_SIZE, on_progress=on_progress)
        self.assertLess(asyncio.get_running_loop().time() - started, 5.0)

    async def test_invalid_parameters(self):
        phase = TransferPhase(SyntheticChannel())
        with self.assertRaises(ConfigurationError):
            await phase.run(Direction.DOWNLOAD, 0, 4, MIN_CHUNK_SIZE)
        with self.assertRaises(ConfigurationError):
            await phase.run(Direction.DOWNLOAD, 1, 0, MIN_CHUNK_SIZE)
        with self.assertRaises(ConfigurationError):
            await phase.run(Direction.DOWNLOAD, 1, 4, 1)


if __name__ == "__main__":
    unittest.main()

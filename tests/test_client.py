"""Tests for the client package -- REST wrapper and live stream consumer."""

import unittest

from aiohttp.test_utils import AioHTTPTestCase

from client.api import ServerRejected, SpeedServerAPI, ws_url
from client.live import LiveSummary, TestStreamError, run_live_test, stream_test
from engine.admission import client_key
from engine.config import TestSettings
from engine.constants import MIN_CHUNK_SIZE
from engine.errors import SessionFailed, TransferFailure
from engine.orchestrator import TestResult
from engine.progress import ProgressUpdate, Stage
from engine.storage import MemoryResultStore
from server.app import ADMISSION_KEY, create_app


def quick_settings(**overrides):
    values = dict(duration=1, workers=2, chunk_size=MIN_CHUNK_SIZE, ping_count=2, min_interval=0)
    values.update(overrides)
    return TestSettings(**values)


class ScriptedOrchestrator:
    """Sends a fixed sequence of updates, optionally failing at the end."""

    def __init__(self, fail=False):
        self.fail = fail

    async def run(self, sink, session=None):
        await sink.send(ProgressUpdate(Stage.LATENCY, 0.0))
        await sink.send(ProgressUpdate(Stage.LATENCY, 1.0, 12.5, "Latency 12.5 ms"))
        if self.fail:
            raise SessionFailed("download", TransferFailure("download"))
        await sink.send(ProgressUpdate(Stage.DOWNLOAD, 0.5, 80.0))
        await sink.send(ProgressUpdate(Stage.DOWNLOAD, 1.0, 95.0))
        await sink.send(ProgressUpdate(Stage.UPLOAD, 1.0, 40.0))
        await sink.send(ProgressUpdate.complete("Test complete, share code abcDEF1234"))


class TestWsUrl(unittest.TestCase):
    def test_http(self):
        self.assertEqual(ws_url("http://host:64580"), "ws://host:64580/api/v1/speedtest/ws")

    def test_https(self):
        self.assertEqual(ws_url("https://speed.example.com/"), "wss://speed.example.com/api/v1/speedtest/ws")

    def test_no_share(self):
        self.assertTrue(ws_url("http://h", share=False).endswith("/ws?share=false"))


class TestLiveSummary(unittest.TestCase):
    def test_collects_final_values(self):
        s = LiveSummary()
        for update in (
            ProgressUpdate(Stage.LATENCY, 0.5, 99.0),
            ProgressUpdate(Stage.LATENCY, 1.0, 10.0),
            ProgressUpdate(Stage.DOWNLOAD, 0.5, 50.0),
            ProgressUpdate(Stage.DOWNLOAD, 1.0, 90.0),
            ProgressUpdate(Stage.UPLOAD, 1.0, 30.0),
            ProgressUpdate.complete("done"),
        ):
            s.observe(update)
        self.assertEqual((s.ping_ms, s.download_mbps, s.upload_mbps), (10.0, 90.0, 30.0))
        self.assertTrue(s.complete)
        self.assertEqual(s.message, "done")
        self.assertEqual(s.updates, 6)
        self.assertEqual(s.to_dict()["download_mbps"], 90.0)


class TestLiveStream(AioHTTPTestCase):
    async def get_application(self):
        return create_app(quick_settings(), orchestrator=ScriptedOrchestrator())

    def base_url(self):
        return str(self.server.make_url("/"))

    async def test_run_live_test(self):
        seen = []
        summary = await run_live_test(self.base_url(), on_update=seen.append)
        self.assertTrue(summary.complete)
        self.assertEqual(summary.ping_ms, 12.5)
        self.assertEqual(summary.download_mbps, 95.0)
        self.assertEqual(summary.upload_mbps, 40.0)
        self.assertIn("abcDEF1234", summary.message)
        self.assertIs(seen[-1].stage, Stage.COMPLETE)

    async def test_stream_ends_with_complete(self):
        stages = [u.stage async for u in stream_test(self.base_url(), share=False)]
        self.assertEqual(stages[-1], Stage.COMPLETE)
        self.assertEqual(stages.count(Stage.COMPLETE), 1)

    async def test_rejected(self):
        controller = self.app[ADMISSION_KEY]
        for _ in range(controller.max_concurrent):
            controller.try_admit(client_key("127.0.0.1"))
        with self.assertRaises(ServerRejected) as ctx:
            await run_live_test(self.base_url())
        self.assertEqual(ctx.exception.reason, "too many concurrent tests")
        self.assertGreaterEqual(ctx.exception.retry_after, 1)


class TestLiveStreamFailure(AioHTTPTestCase):
    async def get_application(self):
        return create_app(quick_settings(), orchestrator=ScriptedOrchestrator(fail=True))

    async def test_failure_raises(self):
        with self.assertRaises(TestStreamError) as ctx:
            await run_live_test(str(self.server.make_url("/")))
        self.assertEqual(ctx.exception.code, 1011)
        self.assertIn("download", ctx.exception.reason)


class TestRestClient(AioHTTPTestCase):
    async def get_application(self):
        self.store = MemoryResultStore()
        return create_app(quick_settings(min_interval=60), store=self.store)

    async def test_health_and_start(self):
        async with SpeedServerAPI(str(self.server.make_url("/"))) as api:
            health = await api.health()
            self.assertEqual(health.status, "healthy")
            ready = await api.start_test()
            self.assertEqual(ready["status"], "ready")

    async def test_start_rejected(self):
        self.app[ADMISSION_KEY].try_admit(client_key("127.0.0.1"))
        async with SpeedServerAPI(str(self.server.make_url("/"))) as api:
            with self.assertRaises(ServerRejected) as ctx:
                await api.start_test()
        self.assertEqual(ctx.exception.reason, "interval too short")

    async def test_result_and_share(self):
        rid = self.store.save_result(TestResult(10.0, 5.0, 3.0, 0.1, 0.0))
        code = self.store.issue_share_code(rid)
        async with SpeedServerAPI(str(self.server.make_url("/"))) as api:
            self.assertEqual((await api.get_result(rid))["id"], rid)
            self.assertIsNone(await api.get_result("missing"))
            self.assertEqual((await api.get_share(code))["share_views"], 1)
            self.assertIsNone(await api.get_share("missing"))

    async def test_requires_context_manager(self):
        with self.assertRaises(RuntimeError):
            await SpeedServerAPI("http://localhost").health()


if __name__ == "__main__":
    unittest.main()

"""Tests for the CLI entry point and its output helpers."""

import json
import os
import tempfile
import unittest
from unittest import mock

from client.live import LiveSummary
from engine.constants import DEFAULT_SERVER_URL
from engine.progress import ProgressUpdate, Stage


def make_summary(**overrides):
    values = dict(ping_ms=15.0, download_mbps=100.0, upload_mbps=50.0,
                  message="Test complete, share code abcDEF1234", complete=True)
    values.update(overrides)
    return LiveSummary(**values)


class TestParser(unittest.TestCase):
    def _parse(self, *argv):
        from speedtest import build_parser
        return build_parser().parse_args(list(argv))

    def test_run_defaults(self):
        args = self._parse("run")
        self.assertEqual(args.server, DEFAULT_SERVER_URL)
        self.assertFalse(args.json)
        self.assertFalse(args.no_share)

    def test_run_options(self):
        args = self._parse("run", "--server", "http://h:1", "--simple", "--no-share", "--csv", "x.csv")
        self.assertEqual(args.server, "http://h:1")
        self.assertTrue(args.simple)
        self.assertTrue(args.no_share)
        self.assertEqual(args.csv, "x.csv")

    def test_serve_options(self):
        args = self._parse("serve", "--port", "8080", "--log-level", "debug")
        self.assertEqual(args.port, 8080)
        self.assertEqual(args.log_level, "DEBUG")
        self.assertIsNone(args.host)

    def test_command_required(self):
        with self.assertRaises(SystemExit):
            with mock.patch("sys.stderr"):
                self._parse()


class TestServeCommand(unittest.TestCase):
    def test_bad_config_exits_nonzero(self):
        from speedtest import build_parser
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.json")
            with open(path, "w") as fh:
                json.dump({"workers": 500}, fh)
            args = build_parser().parse_args(["serve", "--config", path])
            with mock.patch("speedtest.web.run_app") as run_app:
                self.assertEqual(args.func(args), 1)
            run_app.assert_not_called()

    def test_starts_app(self):
        from speedtest import build_parser
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.json")
            args = build_parser().parse_args(["serve", "--config", path, "--port", "9999"])
            with mock.patch("speedtest.web.run_app") as run_app, \
                    mock.patch("speedtest._configure_logging"):
                self.assertEqual(args.func(args), 0)
            self.assertEqual(run_app.call_args.kwargs["port"], 9999)


class TestRunCommand(unittest.TestCase):
    def _run(self, exc):
        from speedtest import build_parser
        args = build_parser().parse_args(["run", "--simple"])

        async def boom(*a, **kw):
            raise exc

        with mock.patch("speedtest.run_speedtest", boom), mock.patch("speedtest.console"):
            return args.func(args)

    def test_rejection_exit_code(self):
        from client.api import ServerRejected
        self.assertEqual(self._run(ServerRejected("too many concurrent tests", 5)), 1)

    def test_failure_exit_code(self):
        from client.live import TestStreamError
        self.assertEqual(self._run(TestStreamError("download phase failed", 1011)), 1)

    def test_unreachable_exit_code(self):
        self.assertEqual(self._run(ConnectionRefusedError("refused")), 1)


class TestCsvAppend(unittest.TestCase):
    def _append(self, path, **overrides):
        from speedtest import _append_csv
        _append_csv(path, make_summary(**overrides), "http://srv:64580")

    def test_creates_header_on_new_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "log.csv")
            self._append(path)
            with open(path) as fh:
                lines = fh.readlines()
            self.assertEqual(len(lines), 2)
            self.assertTrue(lines[0].startswith("timestamp"))
            self.assertIn("http://srv:64580", lines[1])

    def test_no_duplicate_header(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "log.csv")
            for _ in range(3):
                self._append(path)
            with open(path) as fh:
                lines = fh.readlines()
            self.assertEqual(len(lines), 4)
            self.assertEqual(sum(1 for l in lines if l.startswith("timestamp")), 1)

    def test_values_in_row(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "log.csv")
            self._append(path, download_mbps=200.0, upload_mbps=75.0)
            with open(path) as fh:
                row = fh.readlines()[1]
            self.assertIn("200.00", row)
            self.assertIn("75.00", row)
            # message contains a comma, so it must be quoted
            self.assertIn('"Test complete, share code abcDEF1234"', row)


class TestProgressDisplay(unittest.TestCase):
    def test_collects_transfer_samples(self):
        from ui.dashboard import ProgressDisplay
        display = ProgressDisplay()
        for update in (
            ProgressUpdate(Stage.LATENCY, 1.0, 10.0),
            ProgressUpdate(Stage.DOWNLOAD, 0.0, 0.0),
            ProgressUpdate(Stage.DOWNLOAD, 0.5, 80.0),
            ProgressUpdate(Stage.DOWNLOAD, 1.0, 90.0),
            ProgressUpdate(Stage.UPLOAD, 0.3, 20.0),
            ProgressUpdate.complete(),
        ):
            display.update(update)
        self.assertEqual(display.samples[Stage.DOWNLOAD], [80.0])
        self.assertEqual(display.samples[Stage.UPLOAD], [20.0])
        self.assertNotIn(Stage.LATENCY, display.samples)
        self.assertEqual(len(display.progress.tasks), 3)

    def test_histogram(self):
        from ui.dashboard import create_histogram
        self.assertEqual(create_histogram([]), "No data")
        self.assertEqual(create_histogram([1.0, 8.0]), "▁█")
        self.assertEqual(len(create_histogram([5.0] * 7)), 7)


if __name__ == "__main__":
    unittest.main()

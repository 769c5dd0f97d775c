"""Tests for engine.storage -- memory and JSON-lines result stores."""

import json
import os
import tempfile
import unittest

from engine.constants import SHARE_CODE_ALPHABET, SHARE_CODE_LENGTH
from engine.orchestrator import TestResult
from engine.storage import (
    JsonlResultStore,
    MemoryResultStore,
    generate_share_code,
    open_store,
)


def sample_result(**overrides):
    values = dict(download_mbps=95.5, upload_mbps=40.25, ping_ms=10.0,
                  jitter_ms=1.5, packet_loss_pct=0.0, session_id="s-1", client_id="c" * 64)
    values.update(overrides)
    return TestResult(**values)


class TestShareCode(unittest.TestCase):
    def test_format(self):
        code = generate_share_code()
        self.assertEqual(len(code), SHARE_CODE_LENGTH)
        self.assertTrue(all(ch in SHARE_CODE_ALPHABET for ch in code))

    def test_random(self):
        self.assertGreater(len({generate_share_code() for _ in range(50)}), 45)


class TestMemoryResultStore(unittest.TestCase):
    def setUp(self):
        self.store = MemoryResultStore()

    def test_save_and_get(self):
        rid = self.store.save_result(sample_result())
        record = self.store.get_result(rid)
        self.assertEqual(record["id"], rid)
        self.assertEqual(record["download_mbps"], 95.5)
        self.assertEqual(record["client_id"], "c" * 64)
        self.assertIsNone(record["share_code"])
        self.assertEqual(record["share_views"], 0)
        self.assertEqual(len(self.store), 1)

    def test_missing(self):
        self.assertIsNone(self.store.get_result("nope"))
        self.assertIsNone(self.store.get_by_share_code("nope"))

    def test_share_code_lookup(self):
        rid = self.store.save_result(sample_result())
        code = self.store.issue_share_code(rid)
        self.assertEqual(self.store.get_by_share_code(code)["id"], rid)

    def test_share_code_stable(self):
        rid = self.store.save_result(sample_result())
        self.assertEqual(self.store.issue_share_code(rid), self.store.issue_share_code(rid))

    def test_share_code_unknown_result(self):
        with self.assertRaises(KeyError):
            self.store.issue_share_code("nope")

    def test_views(self):
        rid = self.store.save_result(sample_result())
        code = self.store.issue_share_code(rid)
        self.assertEqual(self.store.increment_share_views(code), 1)
        self.assertEqual(self.store.increment_share_views(code), 2)
        self.assertEqual(self.store.get_result(rid)["share_views"], 2)

    def test_views_unknown_code(self):
        with self.assertRaises(KeyError):
            self.store.increment_share_views("nope")

    def test_returned_records_are_copies(self):
        rid = self.store.save_result(sample_result())
        self.store.get_result(rid)["download_mbps"] = 0
        self.assertEqual(self.store.get_result(rid)["download_mbps"], 95.5)


class TestJsonlResultStore(unittest.TestCase):
    def test_persists_and_reloads(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "results.jsonl")
            store = JsonlResultStore(path)
            rid = store.save_result(sample_result())
            code = store.issue_share_code(rid)
            store.increment_share_views(code)

            reloaded = JsonlResultStore(path)
            record = reloaded.get_by_share_code(code)
            self.assertEqual(record["id"], rid)
            self.assertEqual(record["share_views"], 1)

    def test_one_record_per_line(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "results.jsonl")
            store = JsonlResultStore(path)
            store.save_result(sample_result())
            store.save_result(sample_result(session_id="s-2"))
            with open(path, encoding="utf-8") as fh:
                lines = [json.loads(line) for line in fh]
            self.assertEqual([r["session_id"] for r in lines], ["s-1", "s-2"])

    def test_corrupt_lines_skipped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "results.jsonl")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write('{"id": "a", "download_mbps": 1}\nNOT JSON\n\n[1, 2]\n')
            with self.assertLogs("engine.storage", level="WARNING"):
                store = JsonlResultStore(path)
            self.assertEqual(len(store), 1)
            self.assertIsNotNone(store.get_result("a"))

    def test_changes_append_without_rewriting(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "results.jsonl")
            store = JsonlResultStore(path)
            rid = store.save_result(sample_result())
            with open(path, encoding="utf-8") as fh:
                first = fh.read()
            code = store.issue_share_code(rid)
            store.increment_share_views(code)

            with open(path, encoding="utf-8") as fh:
                content = fh.read()
            self.assertTrue(content.startswith(first))
            lines = [json.loads(line) for line in content.splitlines()]
            self.assertEqual(len(lines), 3)
            self.assertEqual(lines[-1]["share_views"], 1)

    def test_reload_compacts_stale_lines(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "results.jsonl")
            store = JsonlResultStore(path)
            rid = store.save_result(sample_result())
            code = store.issue_share_code(rid)
            store.increment_share_views(code)
            store.increment_share_views(code)

            JsonlResultStore(path)
            with open(path, encoding="utf-8") as fh:
                lines = [json.loads(line) for line in fh]
            self.assertEqual(len(lines), 1)
            self.assertEqual(lines[0]["share_views"], 2)
            self.assertEqual(os.listdir(tmpdir), ["results.jsonl"])


class TestOpenStore(unittest.TestCase):
    def test_memory_by_default(self):
        self.assertIs(type(open_store()), MemoryResultStore)

    def test_jsonl_with_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = open_store(os.path.join(tmpdir, "r.jsonl"))
            self.assertIsInstance(store, JsonlResultStore)


if __name__ == "__main__":
    unittest.main()

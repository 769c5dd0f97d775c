"""
Result storage.

The engine hands every finished ``TestResult`` to a ``ResultStore`` and
never reads history back itself.  Stores keep plain JSON-serialisable
records::

    {"id": ..., "session_id": ..., "client_id": ..., "timestamp": ...,
     "download_mbps": ..., "upload_mbps": ...,
     "ping_ms": ..., "jitter_ms": ..., "packet_loss_pct": ...,
     "share_code": "aB3dE5gH7j" | null, "share_views": 0}

``JsonlResultStore`` appends each changed record as one JSON line,
so the file stays readable with ordinary tools.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import uuid
from typing import Any, Dict, List, Optional

from .constants import SHARE_CODE_ALPHABET, SHARE_CODE_LENGTH

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


def generate_share_code(length: int = SHARE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(length))


def generate_result_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ResultStore:
    """Where finished results go."""

    def save_result(self, result) -> str:  # noqa: ANN001 (TestResult)
        """Persist *result*; returns its id."""
        raise NotImplementedError

    def issue_share_code(self, result_id: str) -> str:
        raise NotImplementedError

    def increment_share_views(self, code: str) -> int:
        raise NotImplementedError

    def get_result(self, result_id: str) -> Optional[Record]:
        raise NotImplementedError

    def get_by_share_code(self, code: str) -> Optional[Record]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryResultStore(ResultStore):
    """Thread-safe dict-backed store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Record] = {}
        self._codes: Dict[str, str] = {}

    def save_result(self, result) -> str:  # noqa: ANN001
        record = dict(result.to_dict())
        record["id"] = generate_result_id()
        record["share_code"] = None
        record["share_views"] = 0
        with self._lock:
            self._records[record["id"]] = record
            self._persist(record)
        return record["id"]

    def issue_share_code(self, result_id: str) -> str:
        with self._lock:
            record = self._records.get(result_id)
            if record is None:
                raise KeyError(result_id)
            if record["share_code"]:
                return record["share_code"]
            code = generate_share_code()
            while code in self._codes:
                code = generate_share_code()
            record["share_code"] = code
            self._codes[code] = result_id
            self._persist(record)
        return code

    def increment_share_views(self, code: str) -> int:
        with self._lock:
            result_id = self._codes.get(code)
            if result_id is None:
                raise KeyError(code)
            record = self._records[result_id]
            record["share_views"] += 1
            self._persist(record)
            return record["share_views"]

    def get_result(self, result_id: str) -> Optional[Record]:
        with self._lock:
            record = self._records.get(result_id)
            return dict(record) if record else None

    def get_by_share_code(self, code: str) -> Optional[Record]:
        with self._lock:
            result_id = self._codes.get(code)
            return dict(self._records[result_id]) if result_id else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _persist(self, record: Record) -> None:
        """Hook for subclasses; called with the lock held after *record* changed."""


# ---------------------------------------------------------------------------
# JSON-lines store
# ---------------------------------------------------------------------------

class JsonlResultStore(MemoryResultStore):
    """Memory store mirrored to an append-only JSON-lines file.

    Every change appends the full record; when loading, the last line
    for an id wins and the file is compacted if it held stale lines.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        lines = 0
        for record in self._load():
            lines += 1
            self._records[record["id"]] = record
            if record.get("share_code"):
                self._codes[record["share_code"]] = record["id"]
        if lines > len(self._records):
            self._compact()

    def _load(self) -> List[Record]:
        if not os.path.isfile(self.path):
            return []

        records: List[Record] = []
        with open(self.path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("skipping corrupt line in %s", self.path)
                    continue
                if isinstance(record, dict) and "id" in record:
                    records.append(record)
        return records

    def _persist(self, record: Record) -> None:
        dir_path = os.path.dirname(self.path) or "."
        os.makedirs(dir_path, exist_ok=True)
        try:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise IOError(f"Failed to write results to {self.path}: {exc}") from exc

    def _compact(self) -> None:
        """Rewrite one line per record atomically (write-tmp then rename)."""
        dir_path = os.path.dirname(self.path) or "."
        tmp = os.path.join(dir_path, f".tmp_{os.path.basename(self.path)}")

        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                for record in self._records.values():
                    fh.write(json.dumps(record, ensure_ascii=False) + "\n")
            os.replace(tmp, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise IOError(f"Failed to compact {self.path}: {exc}") from exc


def open_store(path: str = "") -> ResultStore:
    """JSON-lines store at *path*, or an in-memory store if empty."""
    return JsonlResultStore(path) if path else MemoryResultStore()

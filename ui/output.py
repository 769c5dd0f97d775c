"""
Output formatting -- JSON export, plain text, and CSV.
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def create_result_json(
    summary,  # noqa: ANN001 (LiveSummary)
    server_url: str,
    samples: Optional[Dict[str, List[float]]] = None,
) -> Dict[str, Any]:
    """Build the JSON document printed by ``--json``."""
    samples = samples or {}
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server": server_url,
        "ping": round(summary.ping_ms, 3),
        "download": {
            "speed_mbps": round(summary.download_mbps, 2),
            "speed_bps": round(summary.download_mbps * 1_000_000),
            "samples": samples.get("download", []),
        },
        "upload": {
            "speed_mbps": round(summary.upload_mbps, 2),
            "speed_bps": round(summary.upload_mbps * 1_000_000),
            "samples": samples.get("upload", []),
        },
        "message": summary.message,
        "complete": summary.complete,
    }


def save_json(result: Dict[str, Any], filepath: str) -> None:
    """Write *result* to *filepath* atomically (write-tmp then rename)."""
    dir_path = os.path.dirname(filepath) or "."
    tmp = os.path.join(dir_path, f".tmp_{os.path.basename(filepath)}")

    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(result, fh, indent=2, ensure_ascii=False)
        os.replace(tmp, filepath)
    except OSError as exc:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise OSError(f"Failed to save JSON to {filepath}: {exc}") from exc


# ---------------------------------------------------------------------------
# Plain-text / CSV helpers
# ---------------------------------------------------------------------------

def format_text_result(summary, server_url: str) -> str:  # noqa: ANN001
    sep = "=" * 50
    mid = "-" * 50
    lines = [
        sep,
        "Speedtest Results",
        sep,
        f"Server: {server_url}",
        mid,
        f"Ping: {summary.ping_ms:.1f} ms",
        f"Download: {summary.download_mbps:.2f} Mbps",
        f"Upload: {summary.upload_mbps:.2f} Mbps",
    ]
    if summary.message:
        lines.append(summary.message)
    lines.append(sep)
    return "\n".join(lines)


def _csv_escape(value: str) -> str:
    """Quote a field when it contains a separator, quote or newline."""
    if any(ch in value for ch in ',"\n\r'):
        return '"' + value.replace('"', '""') + '"'
    return value


def format_csv_header() -> str:
    return "timestamp,server,ping_ms,download_mbps,upload_mbps,message"


def format_csv_row(summary, server_url: str) -> str:  # noqa: ANN001
    ts = datetime.now(timezone.utc).isoformat()
    return (
        f"{ts},{_csv_escape(server_url)},{summary.ping_ms:.1f},"
        f"{summary.download_mbps:.2f},{summary.upload_mbps:.2f},{_csv_escape(summary.message)}"
    )

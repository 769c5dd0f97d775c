"""
Server configuration file support.

Reads/writes ``~/.speedtest-server/config.json``.  Missing keys fall back
to ``DEFAULTS``; a corrupt file falls back to defaults entirely.

Supported keys::

    host = "0.0.0.0"
    port = 64580
    max_concurrent = 3        # active tests per client
    min_interval = 5.0        # seconds between tests per client
    duration = 10.0           # seconds per transfer phase
    workers = null            # null = auto-detect from CPU count
    chunk_size = null         # null = auto-detect from worker count
    ping_count = 10
    ping_timeout = 1.0
    ping_spacing = 0.05
    sample_interval = 0.2
    worker_pacing = 0.01
    send_timeout = 5.0
    session_timeout = 120.0
    share = true              # issue share codes for finished tests
    results_file = ""         # JSON-lines store, "" = in-memory only
    probe_target = ""         # "host:port" for TCP latency probes
    log_level = "INFO"
"""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    AUTO_MIN_WORKERS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DURATION,
    DEFAULT_HOST,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MIN_INTERVAL,
    DEFAULT_PING_COUNT,
    DEFAULT_PORT,
    MAX_CHUNK_SIZE,
    MAX_DURATION,
    MAX_PING_COUNT,
    MAX_WORKERS,
    MIN_CHUNK_SIZE,
    MIN_DURATION,
    MIN_PING_COUNT,
    MIN_WORKERS,
    PING_SPACING,
    PING_TIMEOUT,
    SAMPLE_INTERVAL,
    SEND_TIMEOUT,
    SESSION_TIMEOUT,
    WORKER_PACING,
)
from .errors import ConfigurationError

_CONFIG_DIR = os.path.join(Path.home(), ".speedtest-server")
_CONFIG_FILE = "config.json"


def _config_path() -> str:
    return os.path.join(_CONFIG_DIR, _CONFIG_FILE)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULTS: Dict[str, Any] = {
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
    "max_concurrent": DEFAULT_MAX_CONCURRENT,
    "min_interval": DEFAULT_MIN_INTERVAL,
    "duration": DEFAULT_DURATION,
    "workers": None,
    "chunk_size": None,
    "ping_count": DEFAULT_PING_COUNT,
    "ping_timeout": PING_TIMEOUT,
    "ping_spacing": PING_SPACING,
    "sample_interval": SAMPLE_INTERVAL,
    "worker_pacing": WORKER_PACING,
    "send_timeout": SEND_TIMEOUT,
    "session_timeout": SESSION_TIMEOUT,
    "share": True,
    "results_file": "",
    "probe_target": "",
    "log_level": "INFO",
}


def auto_worker_count(cpu_count: Optional[int] = None) -> int:
    """One worker per CPU, never fewer than 4 nor more than 16."""
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(AUTO_MIN_WORKERS, min(cpus, MAX_WORKERS))


def auto_chunk_size(workers: int) -> int:
    """More workers get smaller chunks."""
    if workers <= 4:
        return 2 * 1024 * 1024
    if workers >= 12:
        return 512 * 1024
    return DEFAULT_CHUNK_SIZE


# ---------------------------------------------------------------------------
# Read / Write
# ---------------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load config from disk, returning defaults for missing keys."""
    path = path or _config_path()
    config = dict(DEFAULTS)

    if not os.path.isfile(path):
        return config

    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
        if isinstance(user, dict):
            config.update(user)
    except (json.JSONDecodeError, IOError):
        pass  # corrupt file; use defaults

    return config


def save_config(config: Dict[str, Any], path: Optional[str] = None) -> str:
    """Write *config* to disk.  Returns the file path."""
    path = path or _config_path()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config, fh, indent=2, ensure_ascii=False)

    return path


def get_config_value(key: str) -> Any:
    """Get a single config value."""
    return load_config().get(key, DEFAULTS.get(key))


def set_config_value(key: str, value: Any) -> str:
    """Set a single config value and persist.  Returns file path."""
    config = load_config()
    config[key] = value
    return save_config(config)


def config_path() -> str:
    """Return the config file path (for display purposes)."""
    return _config_path()


# ---------------------------------------------------------------------------
# Typed settings
# ---------------------------------------------------------------------------

@dataclass
class TestSettings:
    """Validated, typed view of the configuration used by one server."""

    __test__ = False

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    min_interval: float = DEFAULT_MIN_INTERVAL
    duration: float = DEFAULT_DURATION
    workers: int = AUTO_MIN_WORKERS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    ping_count: int = DEFAULT_PING_COUNT
    ping_timeout: float = PING_TIMEOUT
    ping_spacing: float = PING_SPACING
    sample_interval: float = SAMPLE_INTERVAL
    worker_pacing: float = WORKER_PACING
    send_timeout: float = SEND_TIMEOUT
    session_timeout: float = SESSION_TIMEOUT
    share: bool = True
    results_file: str = ""
    probe_target: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> TestSettings:
        merged = dict(DEFAULTS)
        merged.update({k: v for k, v in config.items() if k in DEFAULTS})

        workers = merged["workers"]
        if workers is None:
            workers = auto_worker_count()
        chunk_size = merged["chunk_size"]
        if chunk_size is None:
            chunk_size = auto_chunk_size(int(workers))

        try:
            return cls(
                host=str(merged["host"]),
                port=int(merged["port"]),
                max_concurrent=int(merged["max_concurrent"]),
                min_interval=float(merged["min_interval"]),
                duration=float(merged["duration"]),
                workers=int(workers),
                chunk_size=int(chunk_size),
                ping_count=int(merged["ping_count"]),
                ping_timeout=float(merged["ping_timeout"]),
                ping_spacing=float(merged["ping_spacing"]),
                sample_interval=float(merged["sample_interval"]),
                worker_pacing=float(merged["worker_pacing"]),
                send_timeout=float(merged["send_timeout"]),
                session_timeout=float(merged["session_timeout"]),
                share=bool(merged["share"]),
                results_file=str(merged["results_file"] or ""),
                probe_target=str(merged["probe_target"] or ""),
                log_level=str(merged["log_level"]).upper(),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

    def validate(self) -> TestSettings:
        """Raise ``ConfigurationError`` if any setting is out of range."""
        validate_transfer(self.duration, self.workers, self.chunk_size)
        if not MIN_PING_COUNT <= self.ping_count <= MAX_PING_COUNT:
            raise ConfigurationError(
                f"ping_count must be between {MIN_PING_COUNT} and {MAX_PING_COUNT}"
            )
        if self.max_concurrent < 1:
            raise ConfigurationError("max_concurrent must be >= 1")
        if self.min_interval < 0:
            raise ConfigurationError("min_interval must be >= 0")
        if not 0 < self.port < 65536:
            raise ConfigurationError("port must be between 1 and 65535")
        for key in ("ping_timeout", "sample_interval", "send_timeout", "session_timeout"):
            if getattr(self, key) <= 0:
                raise ConfigurationError(f"{key} must be > 0")
        for key in ("ping_spacing", "worker_pacing"):
            if getattr(self, key) < 0:
                raise ConfigurationError(f"{key} must be >= 0")
        if self.probe_target and ":" not in self.probe_target:
            raise ConfigurationError("probe_target must look like host:port")
        needed = self.phase_budget()
        if self.session_timeout <= needed:
            raise ConfigurationError(
                f"session_timeout ({self.session_timeout:g} s) must exceed the "
                f"{needed:g} s the ping, download and upload phases can take"
            )
        return self

    def phase_budget(self) -> float:
        """Worst-case seconds a session spends in its three phases."""
        ping = self.ping_count * (self.ping_timeout + self.ping_spacing)
        return ping + 2 * self.duration

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_transfer(duration: float, workers: int, chunk_size: int) -> None:
    """Check the parameters of one transfer phase."""
    if not MIN_DURATION <= duration <= MAX_DURATION:
        raise ConfigurationError(
            f"duration must be between {MIN_DURATION:g} and {MAX_DURATION:g} s"
        )
    if not MIN_WORKERS <= workers <= MAX_WORKERS:
        raise ConfigurationError(
            f"workers must be between {MIN_WORKERS} and {MAX_WORKERS}"
        )
    if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
        raise ConfigurationError(
            f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} bytes"
        )


def load_settings(path: Optional[str] = None, **overrides: Any) -> TestSettings:
    """Load, merge *overrides* (ignoring ``None``) and validate."""
    config = load_config(path)
    config.update({k: v for k, v in overrides.items() if v is not None})
    return TestSettings.from_config(config).validate()

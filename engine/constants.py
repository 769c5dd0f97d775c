"""
Shared constants used across the engine, server and CLI.

Centralises limits, defaults and tunables so they live in exactly one
place.
"""

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 64580
DEFAULT_SERVER_URL = f"http://localhost:{DEFAULT_PORT}"

API_PREFIX = "/api/v1"
WS_PATH = f"{API_PREFIX}/speedtest/ws"

# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------

DEFAULT_MAX_CONCURRENT = 3       # active tests per client
DEFAULT_MIN_INTERVAL = 5.0       # seconds between admissions per client
SLOT_PRUNE_THRESHOLD = 1024      # prune idle client slots beyond this many

# ---------------------------------------------------------------------------
# Transfer phases
# ---------------------------------------------------------------------------

MIN_WORKERS = 1
MAX_WORKERS = 16
AUTO_MIN_WORKERS = 4

MIN_CHUNK_SIZE = 64 * 1024               # 64 KiB
MAX_CHUNK_SIZE = 10 * 1024 * 1024        # 10 MiB
DEFAULT_CHUNK_SIZE = 1024 * 1024         # 1 MiB

DEFAULT_DURATION = 10.0          # seconds per transfer phase
MIN_DURATION = 1.0
MAX_DURATION = 300.0

SAMPLE_INTERVAL = 0.2            # 200 ms between progress samples
WORKER_PACING = 0.01             # per-iteration delay of synthetic workers

# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------

DEFAULT_PING_COUNT = 10
MIN_PING_COUNT = 1
MAX_PING_COUNT = 100
PING_SPACING = 0.05              # 50 ms between samples
PING_TIMEOUT = 1.0               # per-sample timeout

# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

SEND_TIMEOUT = 5.0               # max wait for the progress sink per update
SESSION_TIMEOUT = 120.0          # hard cap on a whole session

# ---------------------------------------------------------------------------
# HTTP payloads and sharing
# ---------------------------------------------------------------------------

DOWNLOAD_PAYLOAD_SIZE = 10 * 1024 * 1024
MAX_DOWNLOAD_PAYLOAD_SIZE = 100 * 1024 * 1024
STREAM_CHUNK_SIZE = 64 * 1024

SHARE_CODE_LENGTH = 10
SHARE_CODE_ALPHABET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
)

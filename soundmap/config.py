"""Soundmap transcode pipeline - Configuration constants.

No external config libraries. Every value can be overridden through an
environment variable; paths are relative to the repository root by default.
"""

import os
import tempfile
from pathlib import Path

# Repository root (parent of soundmap/)
REPO_ROOT = Path(__file__).parent.parent.resolve()

DATA_DIR = REPO_ROOT / "data"


def _get_path(name: str, default: Path) -> Path:
    """Get a path from environment or use default."""
    env_val = os.environ.get(name)
    return Path(env_val) if env_val else default


def _get_positive_int(name: str, default: int) -> int:
    """Get a positive integer from environment or use default.

    Values that do not parse, or are not positive, fall back to the default.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The configured integer.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _tool_timeouts(lease_ttl: int) -> tuple[int, int]:
    """Derive (ffmpeg, ffprobe) timeouts that fit inside one lease window.

    Transcoding gets at most half the lease and inspection a twentieth, capped
    at 300s and 30s, so a hung tool fails the attempt before the lease runs
    out and the job is redelivered.
    """
    if lease_ttl < MIN_LEASE_TTL_SECONDS:
        raise ValueError(
            f"SOUNDMAP_LEASE_TTL_SEC={lease_ttl} is below the minimum of "
            f"{MIN_LEASE_TTL_SECONDS} seconds"
        )
    return min(300, lease_ttl // 2), min(30, lease_ttl // 20)


# --- Queue ledger ---

# Database path for the durable queue ledger
DB_PATH = _get_path("SOUNDMAP_DB_PATH", DATA_DIR / "soundmap.db")

# Huey storage for periodic maintenance tasks
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = _get_path("SOUNDMAP_HUEY_DB_PATH", QUEUE_DIR / "huey.db")

# Lease window: an attempt that does not report within this time is
# considered abandoned and becomes eligible for redelivery.
MIN_LEASE_TTL_SECONDS = 20
LEASE_TTL_SECONDS = _get_positive_int("SOUNDMAP_LEASE_TTL_SEC", 600)

# Retry policy: bounded attempts with exponential backoff.
# Delay after attempt n is RETRY_BASE_DELAY_SECONDS * 2 ** (n - 1).
MAX_ATTEMPTS_TOTAL = _get_positive_int("SOUNDMAP_MAX_ATTEMPTS", 3)
RETRY_BASE_DELAY_SECONDS = _get_positive_int("SOUNDMAP_RETRY_BASE_DELAY_SEC", 30)

# --- Worker ---

# Concurrent attempts per worker process (bounds simultaneous transcodes)
WORKER_CONCURRENCY = _get_positive_int("SOUNDMAP_WORKER_CONCURRENCY", 2)

# Idle poll interval when the queue is empty
POLL_INTERVAL_SECONDS = 1.0

# Per-job staging root (namespaced by job id underneath)
STAGING_DIR = _get_path(
    "SOUNDMAP_STAGING_DIR", Path(tempfile.gettempdir()) / "soundmap-staging"
)

# --- Object store (S3-compatible, path-style addressing) ---

S3_ENDPOINT = os.environ.get("S3_ENDPOINT", "http://localhost:3900")
# Publicly reachable endpoint used to build returned URLs
PUBLIC_S3_ENDPOINT = os.environ.get("PUBLIC_S3_ENDPOINT", "http://localhost:3900")
S3_REGION = os.environ.get("S3_REGION", "garage")
S3_ACCESS_KEY = os.environ.get("S3_ACCESS_KEY", "minioadmin")
S3_SECRET_KEY = os.environ.get("S3_SECRET_KEY", "minioadmin")
S3_BUCKET = os.environ.get("S3_BUCKET_SOUNDS", "sounds")

# --- Delivery format ---

OUTPUT_FORMAT = "mp3"
OUTPUT_EXTENSION = ".mp3"
OUTPUT_CONTENT_TYPE = "audio/mpeg"
TARGET_BITRATE = "128k"

# External tool timeouts in seconds, derived from the lease window
FFMPEG_TIMEOUT_SECONDS, FFPROBE_TIMEOUT_SECONDS = _tool_timeouts(LEASE_TTL_SECONDS)

# --- Completion callback ---

NOTIFY_TIMEOUT_SECONDS = _get_positive_int("SOUNDMAP_NOTIFY_TIMEOUT_SEC", 10)

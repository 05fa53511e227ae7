"""Soundmap transcode pipeline - Audio metadata extraction.

Probes a local file with ``ffprobe`` (JSON output) and derives the technical
metadata reported to the originating application.

Missing optional fields fall back to defaults (0, "unknown", 1 channel) rather
than failing the probe. A file ffprobe cannot parse, or one without an audio
stream, raises ProbeError.

Dependencies:
- Requires ffprobe installed and in PATH
"""

from __future__ import annotations

import json
import logging
import math
import subprocess
from pathlib import Path
from typing import Any

from soundmap.config import FFPROBE_TIMEOUT_SECONDS
from soundmap.errors import ProbeError
from soundmap.schemas import ChannelLayout, TechnicalMetadata

logger = logging.getLogger(__name__)

# Layout strings used verbatim when reported by the probe
_KNOWN_LAYOUTS = {
    layout.value: layout for layout in ChannelLayout if layout is not ChannelLayout.OTHER
}

# Fallback when the layout string is not recognized
_LAYOUT_BY_CHANNEL_COUNT = {
    1: ChannelLayout.MONO,
    2: ChannelLayout.STEREO,
    6: ChannelLayout.SURROUND_5_1,
}


def normalize_channel_layout(layout: str | None, channel_count: int | None) -> ChannelLayout:
    """Map a probed layout string to a ChannelLayout.

    A recognized layout string wins regardless of channel count; otherwise the
    channel count decides (1 -> mono, 2 -> stereo, 6 -> 5.1); else "other".
    """
    if layout in _KNOWN_LAYOUTS:
        return _KNOWN_LAYOUTS[layout]
    return _LAYOUT_BY_CHANNEL_COUNT.get(channel_count, ChannelLayout.OTHER)


def run_ffprobe(path: str | Path) -> dict[str, Any]:
    """Run ffprobe and return its parsed JSON payload.

    Raises:
        ProbeError: If ffprobe is missing, times out, fails, or emits invalid JSON.
    """
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]

    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as e:
        raise ProbeError(str(path), "ffprobe is not installed or not available in PATH") from e
    except subprocess.TimeoutExpired as e:
        raise ProbeError(str(path), f"ffprobe timed out after {FFPROBE_TIMEOUT_SECONDS}s") from e
    except subprocess.CalledProcessError as e:
        stderr_text = (e.stderr or "").strip()
        raise ProbeError(str(path), stderr_text or f"ffprobe exited with {e.returncode}") from e

    try:
        payload = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as e:
        raise ProbeError(str(path), "ffprobe returned invalid JSON") from e

    if not isinstance(payload, dict):
        raise ProbeError(str(path), "ffprobe returned an unexpected payload")
    return payload


def parse_probe_payload(payload: dict[str, Any], path: str = "<payload>") -> TechnicalMetadata:
    """Derive TechnicalMetadata from an ffprobe JSON payload.

    Raises:
        ProbeError: If the payload has no audio stream.
    """
    streams = payload.get("streams") or []
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio is None:
        raise ProbeError(path, "no audio stream found")

    fmt = payload.get("format") or {}
    channels = _to_int(audio.get("channels")) or 1
    # format_name lists every matching demuxer, e.g. "mov,mp4,m4a,3gp,3g2,mj2"
    format_name = (fmt.get("format_name") or "").split(",")[0]

    return TechnicalMetadata(
        duration_seconds=_to_float(fmt.get("duration")),
        sample_rate_hz=_to_int(audio.get("sample_rate")),
        bitrate_bps=_to_int(fmt.get("bit_rate")),
        channel_count=channels,
        channel_layout=normalize_channel_layout(audio.get("channel_layout"), channels),
        codec=audio.get("codec_name") or "unknown",
        container_format=format_name or "unknown",
        bit_depth=(
            _to_int(audio.get("bits_per_sample")) or _to_int(audio.get("bits_per_raw_sample"))
        ),
    )


class MetadataProber:
    """Extracts TechnicalMetadata from local audio files."""

    def probe(self, path: str | Path) -> TechnicalMetadata:
        logger.info("Extracting metadata from %s", path)
        metadata = parse_probe_payload(run_ffprobe(path), str(path))
        logger.info(
            "Metadata extracted: %.2fs, %d Hz, %d ch (%s), codec=%s, format=%s",
            metadata.duration_seconds,
            metadata.sample_rate_hz,
            metadata.channel_count,
            metadata.channel_layout,
            metadata.codec,
            metadata.container_format,
        )
        return metadata


def _to_int(value: Any) -> int:
    """Parse a non-negative int from ffprobe's string fields; 0 when absent."""
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(parsed, 0)


def _to_float(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(parsed):
        return 0.0
    return max(parsed, 0.0)


__all__ = [
    "MetadataProber",
    "normalize_channel_layout",
    "parse_probe_payload",
    "run_ffprobe",
]

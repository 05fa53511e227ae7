"""Soundmap transcode pipeline - ffmpeg transcoder.

Encodes the staged input to the delivery format: MP3, constant bitrate at
TARGET_BITRATE. The call blocks until ffmpeg exits; downstream steps only see
the output once the whole file is written.

Dependencies:
- Requires ffmpeg installed and in PATH

Error codes:
- CODEC_UNSUPPORTED: ffmpeg cannot decode the input format
- TRANSCODE_FAILED: any other encoder failure (disk full, timeout, ...)
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from soundmap.config import FFMPEG_TIMEOUT_SECONDS, OUTPUT_FORMAT, TARGET_BITRATE
from soundmap.errors import TranscodeError, TranscodeErrorCode

logger = logging.getLogger(__name__)

# Keep the tail of ffmpeg's stderr in error messages
STDERR_TAIL_CHARS = 2000

# stderr fragments that mean ffmpeg could not read the input format
_UNSUPPORTED_INPUT = re.compile(
    r"decoder \([^)]*\) not found"
    r"|decoder not found"
    r"|could not find codec parameters"
    r"|codec not currently supported"
    r"|unsupported codec"
    r"|invalid data found when processing input"
    r"|unknown input format",
    re.IGNORECASE,
)


def build_ffmpeg_command(
    input_path: Path, output_path: Path, bitrate: str = TARGET_BITRATE
) -> list[str]:
    """ffmpeg argv for a CBR MP3 encode of the first audio stream."""
    return [
        "ffmpeg",
        "-nostdin",
        "-v",
        "error",
        "-y",
        "-i",
        str(input_path),
        "-vn",
        "-codec:a",
        "libmp3lame",
        "-b:a",
        bitrate,
        "-f",
        OUTPUT_FORMAT,
        str(output_path),
    ]


def _classify_stderr(stderr: str) -> TranscodeErrorCode:
    if _UNSUPPORTED_INPUT.search(stderr):
        return TranscodeErrorCode.CODEC_UNSUPPORTED
    return TranscodeErrorCode.TRANSCODE_FAILED


class Transcoder:
    """Blocking ffmpeg invocation. Stateless; safe to share across slots."""

    def __init__(self, bitrate: str = TARGET_BITRATE, timeout: int = FFMPEG_TIMEOUT_SECONDS):
        self.bitrate = bitrate
        self.timeout = timeout

    def transcode(self, input_path: Path, output_path: Path) -> None:
        """Encode ``input_path`` into ``output_path``.

        Raises:
            TranscodeError: On any ffmpeg failure, with its stderr attached.
        """
        cmd = build_ffmpeg_command(input_path, output_path, self.bitrate)
        logger.info("Transcoding %s to %s at %s", input_path, OUTPUT_FORMAT, self.bitrate)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TranscodeError(
                TranscodeErrorCode.TRANSCODE_FAILED, f"timed out after {self.timeout}s"
            ) from e
        except FileNotFoundError as e:
            raise TranscodeError(
                TranscodeErrorCode.TRANSCODE_FAILED, "ffmpeg not found in PATH"
            ) from e
        except OSError as e:
            raise TranscodeError(TranscodeErrorCode.TRANSCODE_FAILED, str(e)) from e

        stderr = result.stderr.decode("utf-8", errors="replace").strip()[-STDERR_TAIL_CHARS:]

        if result.returncode != 0:
            raise TranscodeError(
                _classify_stderr(stderr), f"exited with status {result.returncode}", stderr
            )

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise TranscodeError(TranscodeErrorCode.TRANSCODE_FAILED, "empty output", stderr)

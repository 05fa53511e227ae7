"""Soundmap transcode pipeline - Path and key utilities.

Staging paths are namespaced per job so concurrent attempts never collide on
disk. Does NOT create directories; StagingArea owns their lifecycle.
"""

import re
from pathlib import Path

from soundmap.config import OUTPUT_EXTENSION, STAGING_DIR

# Characters allowed in a staging directory name
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Trailing extension of the last key segment
_LAST_EXTENSION = re.compile(r"\.[^/.]+$")


def staging_job_dir(job_id: str, root: Path | None = None) -> Path:
    """Get the staging directory for one job.

    Args:
        job_id: Queue-assigned job identifier.
        root: Optional staging root override. Defaults to config.STAGING_DIR.

    Returns:
        Path: {root}/job-{job_id}
    """
    safe_id = _UNSAFE_CHARS.sub("_", job_id)
    return (root if root is not None else STAGING_DIR) / f"job-{safe_id}"


def staging_input_path(job_id: str, root: Path | None = None) -> Path:
    """Path the downloaded original is written to.

    Returns:
        Path: {root}/job-{job_id}/input
    """
    return staging_job_dir(job_id, root) / "input"


def staging_output_path(job_id: str, root: Path | None = None) -> Path:
    """Path the transcoder writes to.

    Returns:
        Path: {root}/job-{job_id}/output.mp3
    """
    return staging_job_dir(job_id, root) / f"output{OUTPUT_EXTENSION}"


def derive_output_key(source_key: str, extension: str = OUTPUT_EXTENSION) -> str:
    """Replace the file extension of an object key.

    The extension is the final ``.xxx`` run of the last path segment, so dots
    in directory names are left alone and a dot-file such as ``.wav`` counts
    as all extension. A key without extension gets one appended.

    Examples:
        user-id/1700-file.wav -> user-id/1700-file.mp3
        user-id/1700-file.mp3 -> user-id/1700-file.mp3
        user.v2/raw           -> user.v2/raw.mp3
        user-id/.wav          -> user-id/.mp3
    """
    return _LAST_EXTENSION.sub("", source_key) + extension

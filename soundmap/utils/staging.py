"""Soundmap transcode pipeline - Per-job local staging area.

Scoped acquisition of the two large local artifacts of an attempt (the
downloaded input and the transcoded output):

    with staging_area(job_id) as staged:
        download(..., staged.input_path)
        transcode(staged.input_path, staged.output_path)

Both files and the job directory are removed when the block exits, whether it
returns or raises. A hard crash bypasses that, so workers also call
cleanup_orphan_staging() on startup.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from soundmap.config import STAGING_DIR
from soundmap.utils.paths import staging_input_path, staging_job_dir, staging_output_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedPaths:
    """Local paths owned by one attempt."""

    job_dir: Path
    input_path: Path
    output_path: Path


@contextmanager
def staging_area(job_id: str, root: Path | None = None) -> Iterator[StagedPaths]:
    """Acquire the staging directory of ``job_id`` and release it on exit."""
    staged = StagedPaths(
        job_dir=staging_job_dir(job_id, root),
        input_path=staging_input_path(job_id, root),
        output_path=staging_output_path(job_id, root),
    )
    staged.job_dir.mkdir(parents=True, exist_ok=True)
    try:
        yield staged
    finally:
        release_staging(staged)


def release_staging(staged: StagedPaths) -> None:
    """Remove staged files and the job directory. Idempotent, never raises."""
    for path in (staged.input_path, staged.output_path):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove staged file %s: %s", path, e)

    # Anything else an encoder may have dropped in the job directory
    shutil.rmtree(staged.job_dir, ignore_errors=True)
    if staged.job_dir.exists():
        logger.warning("Staging directory %s could not be removed", staged.job_dir)
    else:
        logger.debug("Released staging %s", staged.job_dir)


def cleanup_orphan_staging(root: str | Path | None = None) -> int:
    """Remove job staging directories left behind by a crashed process.

    Only call this before any slot of this process starts an attempt; live
    attempts of the same process would lose their files.

    Args:
        root: Staging root to scan. Defaults to config.STAGING_DIR.

    Returns:
        Number of job directories removed.
    """
    root = Path(root) if root is not None else STAGING_DIR
    removed = 0

    if not root.exists():
        return 0

    for job_dir in root.glob("job-*"):
        if not job_dir.is_dir():
            continue
        shutil.rmtree(job_dir, ignore_errors=True)
        if not job_dir.exists():
            removed += 1

    return removed

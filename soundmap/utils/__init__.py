"""Soundmap transcode pipeline - Utility modules."""

from soundmap.utils.paths import (
    derive_output_key,
    staging_input_path,
    staging_job_dir,
    staging_output_path,
)
from soundmap.utils.staging import cleanup_orphan_staging, staging_area

__all__ = [
    # paths
    "derive_output_key",
    "staging_job_dir",
    "staging_input_path",
    "staging_output_path",
    # staging
    "staging_area",
    "cleanup_orphan_staging",
]

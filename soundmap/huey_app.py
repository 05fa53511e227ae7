"""Soundmap transcode pipeline - Huey maintenance tasks.

Huey setup with SQLite backend. The transcode jobs themselves live in the
SQL queue ledger (soundmap.queue); Huey runs the periodic housekeeping around
it:
- stall sweep: reclaim jobs whose lease expired (crashed or hung worker)
- dead-letter report: list exhausted jobs so operators can reconcile sounds
  that never received a callback

How to run:
1. Start the transcode worker:
   python -m services.worker_transcode.run

2. Start the Huey consumer (periodic tasks):
   huey_consumer soundmap.huey_app.huey
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from huey import SqliteHuey, crontab

from soundmap.config import HUEY_DB_PATH, QUEUE_DIR
from soundmap.models import JobStatus

logger = logging.getLogger(__name__)

# Upper bound of dead jobs listed per report
DEAD_LETTER_REPORT_LIMIT = 100


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before creating Huey instance
_ensure_queue_dir()

huey = SqliteHuey(
    name="soundmap_transcode",
    filename=str(HUEY_DB_PATH),
    immediate=False,
)


def _get_queue():
    # Import here to avoid opening the ledger at import time
    from soundmap.db import init_db
    from soundmap.queue import SqlJobQueue

    _, SessionFactory = init_db()
    return SqlJobQueue(SessionFactory)


def sweep_stalled_jobs(queue) -> int:
    """Reclaim expired leases on ``queue``. Returns the number reclaimed."""
    reclaimed = queue.requeue_stalled()
    if reclaimed:
        logger.warning("Stall sweep reclaimed %d job(s)", reclaimed)
    return reclaimed


def report_dead_letters(queue, limit: int = DEAD_LETTER_REPORT_LIMIT) -> list[dict]:
    """Summarize dead-lettered jobs for reconciliation.

    Returns:
        One dict per dead job: job_id, sound_id, attempts, error_code.
    """
    report = []
    for job in queue.list_jobs(status=JobStatus.DEAD, limit=limit):
        try:
            sound_id = json.loads(job.payload_json).get("soundId")
        except (ValueError, AttributeError):
            sound_id = None
        report.append(
            {
                "job_id": job.job_id,
                "sound_id": sound_id,
                "attempts": job.attempts,
                "error_code": job.error_code,
            }
        )
    if report:
        logger.warning(
            "%d dead-lettered job(s) awaiting reconciliation: %s",
            len(report),
            ", ".join(f"{r['job_id']} (sound {r['sound_id']})" for r in report),
        )
    return report


@huey.periodic_task(crontab(minute="*"))
def stall_sweep_task() -> int:
    """Huey periodic task: reclaim stalled jobs every minute."""
    return sweep_stalled_jobs(_get_queue())


@huey.periodic_task(crontab(minute="*/15"))
def dead_letter_report_task() -> int:
    """Huey periodic task: log the dead-letter backlog every 15 minutes."""
    return len(report_dead_letters(_get_queue()))

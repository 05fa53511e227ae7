"""Soundmap transcode pipeline - Transcode Worker.

Turns a user upload into the delivery MP3 and reports back.

Input: queue payload {soundId, sourceKey, webhookUrl?, secret?}
Output: object {sourceKey with extension replaced by .mp3}

Pipeline per attempt (each failure short-circuits to cleanup + failure report):
1. Validate the envelope (no I/O on failure, no notification)
2. Download the original into the job's staging directory
3. Probe technical metadata
4. Transcode to CBR MP3 at TARGET_BITRATE
5. Upload the result under the derived key
6. Delete the original, unless the derived key equals the source key.
   Failure is logged and swallowed.
7. Notify the callback target. Failure is logged and swallowed.
8. Release staging (always)
9. Report the outcome to the queue, exactly once

After any failure in steps 2-5 a best-effort "failed" callback is sent.

Run with:
    python -m services.worker_transcode.run
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import socket
import threading
from typing import TYPE_CHECKING

from pydantic import ValidationError

from services.worker_transcode.ffmpeg import Transcoder
from soundmap.config import OUTPUT_CONTENT_TYPE, POLL_INTERVAL_SECONDS, WORKER_CONCURRENCY
from soundmap.db import init_db
from soundmap.errors import JobValidationError, PipelineError, TranscodeErrorCode
from soundmap.notifier import CompletionNotifier
from soundmap.queue import Delivery, DurableQueue, SqlJobQueue
from soundmap.schemas import FailedOutcome, JobEnvelope, JobOutcome, ReadyOutcome
from soundmap.storage import ObjectStore
from soundmap.utils.audio_meta import MetadataProber
from soundmap.utils.paths import derive_output_key
from soundmap.utils.staging import StagedPaths, cleanup_orphan_staging, staging_area

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# Copy buffer for the download step
DOWNLOAD_CHUNK_BYTES = 1024 * 1024


# --- Validation ---


def parse_envelope(delivery: Delivery) -> JobEnvelope:
    """Build the job envelope from a delivered payload.

    Raises:
        JobValidationError: If soundId or sourceKey is missing or empty.
    """
    if not isinstance(delivery.payload, dict):
        raise JobValidationError("Job payload is not an object")
    try:
        return JobEnvelope.model_validate({**delivery.payload, "job_id": delivery.job_id})
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        raise JobValidationError(f"Invalid job payload: {', '.join(fields)}") from e


# --- Single attempt ---


class TranscodeWorker:
    """Runs one delivered attempt through the pipeline.

    Collaborators are injected so tests can substitute fakes. All of them must
    be safe for concurrent use by several slots.
    """

    def __init__(
        self,
        store: ObjectStore,
        prober: MetadataProber,
        transcoder: Transcoder,
        notifier: CompletionNotifier,
        staging_root: Path | None = None,
    ):
        self.store = store
        self.prober = prober
        self.transcoder = transcoder
        self.notifier = notifier
        self.staging_root = staging_root

    def run_attempt(self, delivery: Delivery) -> JobOutcome:
        """Execute the pipeline. Never raises; returns the terminal outcome."""
        logger.info("Job %s processing (attempt %d)", delivery.job_id, delivery.attempt)

        try:
            envelope = parse_envelope(delivery)
        except JobValidationError as e:
            logger.error("Job %s rejected: %s", delivery.job_id, e.message)
            return FailedOutcome(error_code=e.error_code, message=e.message)

        try:
            with staging_area(envelope.job_id, self.staging_root) as staged:
                return self._execute(envelope, staged)
        except PipelineError as e:
            outcome = FailedOutcome(error_code=e.error_code, message=e.message)
        except Exception as e:
            logger.exception("Unexpected error in job %s", envelope.job_id)
            outcome = FailedOutcome(error_code=TranscodeErrorCode.WORKER_ERROR, message=str(e))

        logger.error("Job %s failed: %s", envelope.job_id, outcome.reason)
        self._notify_safely(envelope, outcome)
        return outcome

    def _execute(self, envelope: JobEnvelope, staged: StagedPaths) -> ReadyOutcome:
        self._download(envelope.source_key, staged.input_path)
        metadata = self.prober.probe(staged.input_path)
        self.transcoder.transcode(staged.input_path, staged.output_path)

        output_key = derive_output_key(envelope.source_key)
        with open(staged.output_path, "rb") as f:
            output_url = self.store.put(output_key, f, OUTPUT_CONTENT_TYPE)
        logger.info("Job %s success, mp3: %s", envelope.job_id, output_url)

        self._delete_original(envelope, output_key)

        outcome = ReadyOutcome(output_url=output_url, output_key=output_key, metadata=metadata)
        self._notify_safely(envelope, outcome)
        return outcome

    def _download(self, key: str, local_path: Path) -> None:
        logger.info("Downloading %s to %s", key, local_path)
        with self.store.get(key) as body, open(local_path, "wb") as f:
            shutil.copyfileobj(body, f, DOWNLOAD_CHUNK_BYTES)

    def _delete_original(self, envelope: JobEnvelope, output_key: str) -> None:
        if output_key == envelope.source_key:
            logger.info("Source and output keys match, keeping %s", output_key)
            return
        try:
            self.store.delete(envelope.source_key)
            logger.info("Deleted original %s", envelope.source_key)
        except Exception as e:
            # The transcoded asset already exists; a leftover original only costs storage
            logger.warning("Failed to delete original %s: %s", envelope.source_key, e)

    def _notify_safely(self, envelope: JobEnvelope, outcome: JobOutcome) -> None:
        if not envelope.has_callback:
            return
        try:
            self.notifier.notify(envelope.webhook_url, envelope.secret, envelope.sound_id, outcome)
            logger.info("Webhook notified for job %s (%s)", envelope.job_id, outcome.status)
        except Exception as e:
            logger.warning("Failed to notify webhook for job %s: %s", envelope.job_id, e)


# --- Worker loop ---


class WorkerLoop:
    """Fixed pool of slots, each claiming and running one job at a time.

    Slots are threads; ffmpeg and network I/O release the GIL, and the pool
    size bounds concurrent transcodes on the host.
    """

    def __init__(
        self,
        queue: DurableQueue,
        worker: TranscodeWorker,
        concurrency: int = WORKER_CONCURRENCY,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        worker_id: str | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.worker = worker
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for slot in range(self.concurrency):
            thread = threading.Thread(
                target=self._slot_loop,
                args=(f"{self.worker_id}-{slot}",),
                name=f"transcode-slot-{slot}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Worker %s started with %d slots", self.worker_id, self.concurrency)

    def stop(self) -> None:
        """Stop claiming; in-flight attempts still finish and report."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def run(self) -> None:
        """Start the slots and block until stop() is called."""
        self.start()
        self._stop.wait()
        self.join()
        logger.info("Worker %s stopped", self.worker_id)

    def run_once(self, slot_id: str | None = None) -> JobOutcome | None:
        """Claim and process a single job if one is ready."""
        delivery = self.queue.dequeue(slot_id or self.worker_id)
        if delivery is None:
            return None
        return self.process(delivery)

    def process(self, delivery: Delivery) -> JobOutcome:
        outcome = self.worker.run_attempt(delivery)
        self._report(delivery, outcome)
        return outcome

    def _slot_loop(self, slot_id: str) -> None:
        while not self._stop.is_set():
            try:
                outcome = self.run_once(slot_id)
            except Exception:
                # Queue unreachable; the lease mechanism redelivers anything claimed
                logger.exception("Queue receive failed in slot %s", slot_id)
                outcome = None
            if outcome is None:
                self._stop.wait(self.poll_interval)

    def _report(self, delivery: Delivery, outcome: JobOutcome) -> None:
        try:
            if isinstance(outcome, ReadyOutcome):
                self.queue.ack(delivery, outcome)
            else:
                self.queue.fail(delivery, outcome)
        except Exception:
            logger.exception(
                "Failed to report %s for job %s; lease expiry will redeliver it",
                outcome.status,
                delivery.job_id,
            )


# --- Standalone Execution ---


def build_worker_loop(session_factory=None) -> WorkerLoop:
    """Wire production collaborators from configuration."""
    if session_factory is None:
        _, session_factory = init_db()
    worker = TranscodeWorker(
        store=ObjectStore.from_config(),
        prober=MetadataProber(),
        transcoder=Transcoder(),
        notifier=CompletionNotifier(),
    )
    return WorkerLoop(SqlJobQueue(session_factory), worker)


def run_transcode_worker() -> None:
    """Top-level entry point: purge orphans, then run until SIGINT/SIGTERM."""
    removed = cleanup_orphan_staging()
    if removed:
        logger.info("Startup cleanup: removed %d orphan staging directories", removed)

    loop = build_worker_loop()

    def _handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        loop.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        loop.run()
    finally:
        loop.worker.notifier.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_transcode_worker()

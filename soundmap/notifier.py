"""Soundmap transcode pipeline - Completion notifier.

POSTs the terminal outcome of a job to the originating application.
Authentication is a shared secret echoed in the JSON body; the receiver
compares it with its own copy.

Single attempt, no retry. Callers decide whether a NotifyError matters
(the worker logs and swallows it).
"""

from __future__ import annotations

import logging

import httpx

from soundmap.config import NOTIFY_TIMEOUT_SECONDS
from soundmap.errors import NotifyError
from soundmap.schemas import CompletionCallback, JobOutcome

logger = logging.getLogger(__name__)


class CompletionNotifier:
    """Posts completion callbacks over HTTP."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
    ):
        # httpx.Client is thread-safe; one instance serves every worker slot
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, callback_url: str, secret: str, sound_id: str, outcome: JobOutcome) -> None:
        """Send one callback.

        Raises:
            NotifyError: On transport failure or a non-2xx response.
        """
        body = CompletionCallback.from_outcome(sound_id, secret, outcome).to_json_body()
        logger.info(
            "Calling webhook %s (sound_id=%s, status=%s)", callback_url, sound_id, outcome.status
        )

        try:
            response = self._client.post(callback_url, json=body)
        except httpx.HTTPError as e:
            raise NotifyError(callback_url, str(e) or type(e).__name__) from e

        if not response.is_success:
            raise NotifyError(callback_url, f"HTTP {response.status_code}")

    def close(self) -> None:
        self._client.close()

"""Soundmap transcode pipeline - Queue admin API service.

FastAPI service to enqueue transcode jobs and inspect the queue ledger.
"""

__all__: list[str] = []

"""Soundmap transcode pipeline - Core application modules.

Provides:
- Durable job queue (SQL-backed ledger with leases, backoff and dead-letter)
- Object store client, completion notifier, metadata prober
- Per-job staging area utilities
"""

__version__ = "0.1.0"

"""Soundmap transcode pipeline - Transcode worker service."""

__all__: list[str] = []

"""Soundmap transcode pipeline - Error taxonomy.

Every pipeline step raises a PipelineError subclass carrying an error code.
The worker converts it into a FailedOutcome at the attempt boundary.
"""

from enum import StrEnum


class TranscodeErrorCode(StrEnum):
    """Error codes reported in failed outcomes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    FILE_CORRUPT = "FILE_CORRUPT"
    CODEC_UNSUPPORTED = "CODEC_UNSUPPORTED"
    TRANSCODE_FAILED = "TRANSCODE_FAILED"
    NOTIFY_FAILED = "NOTIFY_FAILED"
    WORKER_ERROR = "WORKER_ERROR"


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class JobValidationError(PipelineError):
    """Envelope is missing required fields. Raised before any I/O."""

    def __init__(self, message: str):
        super().__init__(TranscodeErrorCode.VALIDATION_ERROR, message)


class ObjectNotFoundError(PipelineError):
    """Key absent from the bucket."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(TranscodeErrorCode.INPUT_NOT_FOUND, f"Object not found: {key}")


class StorageUnavailableError(PipelineError):
    """Object store unreachable or rejected the credentials."""

    def __init__(self, operation: str, key: str, reason: str):
        self.operation = operation
        self.key = key
        super().__init__(
            TranscodeErrorCode.STORAGE_UNAVAILABLE,
            f"Object store {operation} failed for {key}: {reason}",
        )


class ProbeError(PipelineError):
    """File cannot be parsed as audio container data."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(TranscodeErrorCode.FILE_CORRUPT, f"Probe failed for {path}: {reason}")


class TranscodeError(PipelineError):
    """Encoder failed. ``stderr`` holds the encoder diagnostics."""

    def __init__(self, error_code: str, reason: str, stderr: str = ""):
        self.stderr = stderr
        message = f"ffmpeg error: {reason}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(error_code, message)


class NotifyError(PipelineError):
    """Completion callback could not be delivered."""

    def __init__(self, url: str, reason: str):
        self.url = url
        super().__init__(TranscodeErrorCode.NOTIFY_FAILED, f"Callback to {url} failed: {reason}")

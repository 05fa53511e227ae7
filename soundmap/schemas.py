"""Soundmap transcode pipeline - Pydantic models.

Pydantic models for the queue payload, derived technical metadata, job
outcomes and the completion callback body. The JSON shapes correspond to
schemas in /specs.
"""

from datetime import datetime  # noqa: I001
from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# --- Job Envelope ---


class JobEnvelope(BaseModel):
    """Immutable description of one transcoding request.

    Corresponds to specs/transcode_job.schema.json. ``s3Key`` is accepted as
    an alias of ``sourceKey`` for payloads produced by older enqueuers.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    job_id: str = Field(..., min_length=1, description="Queue-assigned job identifier")
    sound_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("soundId", "sound_id"),
        description="Identifier of the logical audio resource",
    )
    source_key: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("sourceKey", "s3Key", "source_key"),
        description="Object-store key of the original upload",
    )
    webhook_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("webhookUrl", "callbackUrl", "webhook_url"),
        description="Where to POST the completion callback",
    )
    secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("secret", "callbackSecret"),
        description="Shared secret echoed in the callback body",
    )

    @property
    def has_callback(self) -> bool:
        """True when both a callback target and a secret were supplied."""
        return bool(self.webhook_url and self.secret)


# --- Technical Metadata ---


class ChannelLayout(StrEnum):
    """Categorical speaker-channel arrangement."""

    MONO = "mono"
    STEREO = "stereo"
    SURROUND_5_1 = "5.1"
    SURROUND_7_1 = "7.1"
    OTHER = "other"


class TechnicalMetadata(BaseModel):
    """Audio characteristics extracted by probing. Computed once per attempt.

    Serialization aliases produce the callback's ``metadata`` object.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    duration_seconds: float = Field(default=0.0, ge=0, serialization_alias="duration")
    sample_rate_hz: int = Field(default=0, ge=0, serialization_alias="sampleRate")
    bitrate_bps: int = Field(default=0, ge=0, serialization_alias="bitrate")
    channel_count: int = Field(default=1, ge=1, serialization_alias="channels")
    channel_layout: ChannelLayout = Field(
        default=ChannelLayout.MONO, serialization_alias="channelLayout"
    )
    codec: str = Field(default="unknown", serialization_alias="codec")
    container_format: str = Field(default="unknown", serialization_alias="fileFormat")
    bit_depth: int = Field(default=0, ge=0, serialization_alias="bitDepth")

    def to_callback(self) -> dict[str, Any]:
        """Return the metadata object as sent in the completion callback."""
        return self.model_dump(mode="json", by_alias=True)


# --- Job Outcome ---


class ReadyOutcome(BaseModel):
    """Terminal success: the transcoded asset is published."""

    model_config = ConfigDict(frozen=True)

    status: Literal["ready"] = "ready"
    output_url: str
    output_key: str
    metadata: TechnicalMetadata


class FailedOutcome(BaseModel):
    """Terminal failure of one attempt."""

    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    error_code: str
    message: str

    @property
    def reason(self) -> str:
        return f"{self.error_code}: {self.message}"


JobOutcome = ReadyOutcome | FailedOutcome


# --- Completion Callback ---


class CompletionCallback(BaseModel):
    """Body POSTed to the originating application.

    Corresponds to specs/transcode_callback.schema.json.
    """

    model_config = ConfigDict(extra="forbid")

    sound_id: str = Field(..., serialization_alias="soundId")
    status: Literal["ready", "failed"]
    mp3_url: str | None = Field(default=None, serialization_alias="mp3Url")
    metadata: dict[str, Any] | None = None
    secret: str

    @classmethod
    def from_outcome(cls, sound_id: str, secret: str, outcome: JobOutcome) -> "CompletionCallback":
        """Build the callback body for a terminal outcome."""
        if isinstance(outcome, ReadyOutcome):
            return cls(
                sound_id=sound_id,
                status="ready",
                mp3_url=outcome.output_url,
                metadata=outcome.metadata.to_callback(),
                secret=secret,
            )
        return cls(sound_id=sound_id, status="failed", secret=secret)

    def to_json_body(self) -> dict[str, Any]:
        """Serialize with wire field names, omitting absent optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Queue API Models ---


class EnqueueResponse(BaseModel):
    """Response for a successful enqueue."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="queued", description="Job status after enqueue")
    job_id: str = Field(..., description="Queue-assigned job identifier")


class JobResponse(BaseModel):
    """Queue ledger view of one job."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: str
    attempts: int = Field(..., ge=0)
    payload: dict[str, Any]
    available_at: datetime
    lease_expires_at: datetime | None = None
    worker_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class ErrorResponse(BaseModel):
    """Response for failed API operations."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")


__all__ = [
    "JobEnvelope",
    "ChannelLayout",
    "TechnicalMetadata",
    "ReadyOutcome",
    "FailedOutcome",
    "JobOutcome",
    "CompletionCallback",
    "EnqueueResponse",
    "JobResponse",
    "ErrorResponse",
]

"""
Job payload models.

Every payload entering a queue is validated here, at the boundary. Handlers
receive typed models, never raw dictionaries.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from nuggets.exceptions import ValidationError


class QueueName(str, Enum):
    """Named queues served by the worker pool."""
    INGESTION = "ingestion"
    EMBEDDING = "embedding"
    AI_AUTHORING = "ai-authoring"
    NARRATIVE_PLANNING = "narrative-planning"


class JobKind(str, Enum):
    """Job kinds; each maps to exactly one queue."""
    INGESTION = "ingestion"
    EMBEDDING = "embedding"
    IMAGE_GENERATION = "image-generation"
    AUDIO_GENERATION = "audio-generation"
    SLIDE_GENERATION = "slide-generation"
    NARRATIVE_PLANNING = "narrative-planning"


KIND_TO_QUEUE: dict[JobKind, QueueName] = {
    JobKind.INGESTION: QueueName.INGESTION,
    JobKind.EMBEDDING: QueueName.EMBEDDING,
    JobKind.IMAGE_GENERATION: QueueName.AI_AUTHORING,
    JobKind.AUDIO_GENERATION: QueueName.AI_AUTHORING,
    JobKind.SLIDE_GENERATION: QueueName.AI_AUTHORING,
    JobKind.NARRATIVE_PLANNING: QueueName.NARRATIVE_PLANNING,
}


# ========================================
# Payload Models
# ========================================


class IngestionSourceMetadata(BaseModel):
    """Source details recorded by the watcher that produced the job."""

    model_config = ConfigDict(extra="forbid")

    folder_id: Optional[str] = None
    url_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)


class IngestionPayload(BaseModel):
    """Ingest one file or URL."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["file", "url"]
    source: str = Field(..., min_length=1, description="Absolute file path or URL")
    organization_id: str = Field(..., min_length=1)
    metadata: Optional[IngestionSourceMetadata] = None
    job_id: Optional[str] = Field(None, description="IngestionJob id, assigned on enqueue")


class EmbeddingPayload(BaseModel):
    """Embed the content of one nugget."""

    model_config = ConfigDict(extra="forbid")

    nugget_id: str = Field(..., min_length=1)
    content: str
    organization_id: str = Field(..., min_length=1)


class MediaGenerationPayload(BaseModel):
    """Generate an image, narration or slide deck for one nugget."""

    model_config = ConfigDict(extra="forbid")

    nugget_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)


class NarrativePlanningPayload(BaseModel):
    """Build graph nodes and choices for a batch of ready nuggets."""

    model_config = ConfigDict(extra="forbid")

    organization_id: str = Field(..., min_length=1)
    nugget_ids: list[str] = Field(..., min_length=1)


PAYLOAD_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.INGESTION: IngestionPayload,
    JobKind.EMBEDDING: EmbeddingPayload,
    JobKind.IMAGE_GENERATION: MediaGenerationPayload,
    JobKind.AUDIO_GENERATION: MediaGenerationPayload,
    JobKind.SLIDE_GENERATION: MediaGenerationPayload,
    JobKind.NARRATIVE_PLANNING: NarrativePlanningPayload,
}


def parse_kind(kind: JobKind | str) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError as e:
        raise ValidationError(f"Unknown job kind: {kind}") from e


def parse_payload(kind: JobKind | str, payload: BaseModel | dict[str, Any]) -> BaseModel:
    """
    Validate a payload for a job kind.

    Raises:
        ValidationError: unknown kind, missing field or wrong type.
    """
    job_kind = parse_kind(kind)
    model = PAYLOAD_MODELS[job_kind]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {job_kind.value} payload: {e.errors()}") from e


def queue_for(kind: JobKind | str) -> QueueName:
    return KIND_TO_QUEUE[parse_kind(kind)]

"""
Content models.

SQLAlchemy models for the ingestion side of the pipeline:
- Content units (nuggets) with metadata and embeddings
- Ingestion jobs tracking one source file or URL each
- Watched folders and monitored URLs (content sources)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Index, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id, utcnow


class NuggetStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class Nugget(Base):
    """
    Atomic learning content unit.

    ``metadata_`` holds the validated metadata document (topics, difficulty,
    prerequisites, estimated_time, related_concepts). ``embedding`` stores the
    vector as float32 bytes. Never deleted automatically.
    """

    __tablename__ = "nuggets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)
    status: Mapped[str] = mapped_column(String(16), default=NuggetStatus.PENDING, nullable=False)

    # Semantic embedding
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary)
    embedding_model: Mapped[str | None] = mapped_column(String(128))
    embedding_generated_at: Mapped[datetime | None] = mapped_column()

    # AI-authored media
    image_url: Mapped[str | None] = mapped_column(Text)
    audio_url: Mapped[str | None] = mapped_column(Text)

    # Provenance
    source_type: Mapped[str | None] = mapped_column(String(16))  # 'file' or 'url'
    source_path: Mapped[str | None] = mapped_column(Text)
    source_job_id: Mapped[str | None] = mapped_column(String(36), index=True)
    chunk_index: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("source_job_id", "chunk_index", name="uq_nugget_source_chunk"),
        Index("idx_nuggets_org_status", "organization_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Nugget {self.id} org={self.organization_id} status={self.status}>"


class IngestionJob(Base):
    """
    One ingestion of a single file or URL.

    ``started_at`` is set only on entry to processing; ``completed_at`` only
    on a terminal transition.
    """

    __tablename__ = "ingestion_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(8), nullable=False)  # 'file' or 'url'
    source: Mapped[str] = mapped_column(Text, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.PENDING, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    nugget_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (Index("idx_ingestion_jobs_status", "status"),)

    def __repr__(self) -> str:
        return f"<IngestionJob {self.id} {self.type}:{self.source} status={self.status}>"


class WatchedFolder(Base):
    """Filesystem folder that produces file ingestion jobs."""

    __tablename__ = "watched_folders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    file_types: Mapped[list[str]] = mapped_column(JSONType, default=list)
    recursive: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_process: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<WatchedFolder {self.id} path={self.path} enabled={self.enabled}>"


class MonitoredURL(Base):
    """Web page polled for content changes."""

    __tablename__ = "monitored_urls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    check_interval: Mapped[int] = mapped_column(Integer, default=3600)  # seconds
    content_selector: Mapped[str | None] = mapped_column(Text)  # CSS selector
    auto_process: Mapped[bool] = mapped_column(Boolean, default=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_content_hash: Mapped[str | None] = mapped_column(String(64))
    last_checked: Mapped[datetime | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<MonitoredURL {self.id} url={self.url} enabled={self.enabled}>"

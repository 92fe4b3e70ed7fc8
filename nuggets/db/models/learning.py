"""
Learner models.

SQLAlchemy models for adaptive delivery:
- Learners with their mastery map and stored knowledge gaps
- Progress records (one per piece of mastery evidence)
- Learning sessions and their visited nodes
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id, utcnow


class SessionStatus:
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"

    OPEN = (CREATED, ACTIVE)


class Learner(Base):
    """Learner with a per-concept mastery map (0-100)."""

    __tablename__ = "learners"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(Text)
    mastery_map: Mapped[dict[str, float]] = mapped_column(JSONType, default=dict)
    # Derived; recomputed only when evidence is recorded
    knowledge_gaps: Mapped[list[str]] = mapped_column(JSONType, default=list)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Learner {self.id} concepts={len(self.mastery_map or {})} gaps={len(self.knowledge_gaps or [])}>"


class ProgressRecord(Base):
    """One piece of mastery evidence and the mastery level it produced."""

    __tablename__ = "progress_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    learner_id: Mapped[str] = mapped_column(
        ForeignKey("learners.id", ondelete="CASCADE"), nullable=False
    )
    concept: Mapped[str] = mapped_column(Text, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    mastery_level: Mapped[float] = mapped_column(Float, nullable=False)
    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    session_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (Index("idx_progress_learner_created", "learner_id", "created_at"),)


class LearningSession(Base):
    """Learner traversal of the narrative graph: created -> active -> completed."""

    __tablename__ = "learning_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    learner_id: Mapped[str] = mapped_column(
        ForeignKey("learners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=SessionStatus.CREATED, nullable=False)
    current_node_id: Mapped[str | None] = mapped_column(String(36))
    path_history: Mapped[list[str]] = mapped_column(JSONType, default=list)

    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    last_activity: Mapped[datetime] = mapped_column(default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<LearningSession {self.id} learner={self.learner_id} status={self.status}>"


class SessionNode(Base):
    """One visit of a node during a session."""

    __tablename__ = "session_nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("learning_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    node_id: Mapped[str] = mapped_column(String(36), nullable=False)
    choice_id: Mapped[str | None] = mapped_column(String(36))
    visited_at: Mapped[datetime] = mapped_column(default=utcnow)

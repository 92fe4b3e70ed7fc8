"""Narrative graph models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id, utcnow


class NarrativeNode(Base):
    """
    Vertex of the adaptive knowledge graph, 1:1 with a nugget.

    ``choices`` is an ordered list of ``{id, target_node_id, label,
    reveals_gap, confirms_mastery}`` documents, replaced as a whole.
    """

    __tablename__ = "narrative_nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    nugget_id: Mapped[str] = mapped_column(
        ForeignKey("nuggets.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)  # layout slot within the org
    prerequisites: Mapped[list[str]] = mapped_column(JSONType, default=list)
    adapts_to: Mapped[list[str]] = mapped_column(JSONType, default=list)
    position: Mapped[dict[str, float]] = mapped_column(JSONType, nullable=False)
    choices: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("organization_id", "ordinal", name="uq_narrative_node_org_ordinal"),)

    def __repr__(self) -> str:
        return f"<NarrativeNode {self.id} nugget={self.nugget_id} choices={len(self.choices or [])}>"

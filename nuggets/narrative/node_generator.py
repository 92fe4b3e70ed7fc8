"""
Narrative node generation.

Each ready nugget gets exactly one graph node. Prerequisites and adapts-to
concepts come straight from the nugget metadata; the layout position is a
deterministic grid slot derived from the node's ordinal within its
organization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from nuggets.db.database import Database
from nuggets.db.models import NarrativeNode, Nugget
from nuggets.exceptions import ConflictError, NotFoundError
from nuggets.ingestion.metadata_extractor import NuggetMetadata

MAX_ADAPTS_TO = 5
MAX_CREATE_ATTEMPTS = 5


@dataclass
class NodeData:
    """Graph attributes derived from a nugget."""

    prerequisites: list[str] = field(default_factory=list)
    adapts_to: list[str] = field(default_factory=list)


def node_data_from_nugget(nugget: Nugget) -> NodeData:
    """Copy prerequisites and related concepts from metadata; empty when absent or malformed."""
    if not nugget.metadata_:
        return NodeData()
    try:
        metadata = NuggetMetadata.model_validate(nugget.metadata_)
    except PydanticValidationError:
        logger.warning("Nugget {} has malformed metadata, generating node without edges", nugget.id)
        return NodeData()
    return NodeData(
        prerequisites=list(metadata.prerequisites),
        adapts_to=list(metadata.related_concepts[:MAX_ADAPTS_TO]),
    )


class NodeGenerator:
    """Create narrative nodes from nuggets."""

    def __init__(self, db: Database, width: int = 1000, height: int = 1000, cell_size: int = 50):
        self.db = db
        self.width = width
        self.height = height
        self.cell_size = cell_size

    def compute_position(self, ordinal: int) -> dict[str, float]:
        """
        Grid slot for the ``ordinal``-th node of an organization.

        Slots fill the grid row by row. Once a grid is full the next layer
        reuses it shifted by a per-layer offset below one cell, so positions
        stay inside ``[0, width) x [0, height)`` and never coincide.
        """
        cols = max(1, self.width // self.cell_size)
        rows = max(1, self.height // self.cell_size)
        layer, slot = divmod(ordinal, cols * rows)
        row, col = divmod(slot, cols)
        offset = self.cell_size * (1 - 1 / (layer + 1))
        return {"x": col * self.cell_size + offset, "y": row * self.cell_size + offset}

    async def generate_node(self, nugget: Nugget) -> NarrativeNode:
        """
        Create the node for a nugget, or return the existing one.

        Safe to re-run: node creation is create-if-absent per nugget.
        """
        data = node_data_from_nugget(nugget)
        for _ in range(MAX_CREATE_ATTEMPTS):
            existing = await self.get_node_for_nugget(nugget.id)
            if existing is not None:
                logger.debug("Narrative node already exists for nugget {}", nugget.id)
                return existing
            try:
                async with self.db.session_scope() as session:
                    ordinal = (
                        await session.execute(
                            select(func.coalesce(func.max(NarrativeNode.ordinal) + 1, 0)).where(NarrativeNode.organization_id == nugget.organization_id)
                        )
                    ).scalar_one()
                    node = NarrativeNode(
                        nugget_id=nugget.id,
                        organization_id=nugget.organization_id,
                        ordinal=ordinal,
                        prerequisites=data.prerequisites,
                        adapts_to=data.adapts_to,
                        position=self.compute_position(ordinal),
                        choices=[],
                    )
                    session.add(node)
            except IntegrityError:
                # Lost a race for the nugget or the layout slot; re-check and retry
                logger.debug("Concurrent node creation for nugget {}, retrying", nugget.id)
                continue
            logger.info("Narrative node {} created for nugget {} at {}", node.id, nugget.id, node.position)
            return node

        raise ConflictError(f"Could not allocate a narrative node for nugget {nugget.id}")

    async def generate_nodes(self, nuggets: Sequence[Nugget]) -> list[NarrativeNode]:
        nodes = [await self.generate_node(nugget) for nugget in nuggets]
        logger.info("Narrative nodes generated: {}", len(nodes))
        return nodes

    async def get_node(self, node_id: str) -> NarrativeNode:
        async with self.db.session_scope() as session:
            node = await session.get(NarrativeNode, node_id)
            if node is None:
                raise NotFoundError("NarrativeNode", node_id)
            return node

    async def get_node_for_nugget(self, nugget_id: str) -> NarrativeNode | None:
        async with self.db.session_scope() as session:
            return (
                await session.execute(select(NarrativeNode).where(NarrativeNode.nugget_id == nugget_id))
            ).scalar_one_or_none()

    async def list_nodes(self, organization_id: str) -> list[NarrativeNode]:
        """All nodes of an organization in layout order."""
        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(NarrativeNode)
                .where(NarrativeNode.organization_id == organization_id)
                .order_by(NarrativeNode.ordinal)
            )
            return list(rows.scalars().all())

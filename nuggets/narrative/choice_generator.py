"""
Choice generation and adaptive path selection.

Ranks the other nodes of an organization as next steps from a node:
1. prerequisite satisfaction (share of the candidate's prerequisites that are
   mastered or covered by the source node)
2. overlap between the candidate's adapts-to concepts and unresolved gaps
3. embedding similarity, when available
4. graph proximity (concepts shared with the source node)
5. node id, for a stable order
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass

from loguru import logger
from sqlalchemy import update

from nuggets.db.database import Database
from nuggets.db.models import NarrativeNode
from nuggets.db.models.base import utcnow
from nuggets.exceptions import NotFoundError


@dataclass
class RankedCandidate:
    """Candidate node with its ranking signals."""

    node: NarrativeNode
    prerequisite_score: float
    gap_overlap: list[str]
    similarity: float
    proximity: int

    @property
    def sort_key(self) -> tuple:
        return (-self.prerequisite_score, -len(self.gap_overlap), -self.similarity, -self.proximity, self.node.id)


def node_concepts(node: NarrativeNode) -> set[str]:
    return set(node.adapts_to or []) | set(node.prerequisites or [])


class ChoiceGenerator:
    """Generate ordered learner choices for narrative nodes."""

    def __init__(self, db: Database, max_choices: int = 4):
        self.db = db
        self.max_choices = max_choices

    def rank_candidates(
        self,
        node: NarrativeNode,
        candidates: Sequence[NarrativeNode],
        gaps: Collection[str] = (),
        mastered: Collection[str] = (),
        similarity: Mapping[str, float] | None = None,
    ) -> list[RankedCandidate]:
        """Rank candidate next nodes; the source node is never included."""
        gap_set = set(gaps)
        source_concepts = node_concepts(node)
        known = set(mastered) | source_concepts
        similarity = similarity or {}

        ranked: list[RankedCandidate] = []
        seen: set[str] = {node.id}
        for candidate in candidates:
            if candidate.id in seen:
                continue
            seen.add(candidate.id)

            prerequisites = candidate.prerequisites or []
            if prerequisites:
                prerequisite_score = sum(1 for p in prerequisites if p in known) / len(prerequisites)
            else:
                prerequisite_score = 1.0

            ranked.append(
                RankedCandidate(
                    node=candidate,
                    prerequisite_score=prerequisite_score,
                    gap_overlap=sorted(set(candidate.adapts_to or []) & gap_set),
                    similarity=float(similarity.get(candidate.id, 0.0)),
                    proximity=len(node_concepts(candidate) & source_concepts),
                )
            )

        ranked.sort(key=lambda r: r.sort_key)
        return ranked

    def build_choices(
        self,
        ranked: Sequence[RankedCandidate],
        mastered: Collection[str] = (),
    ) -> list[dict]:
        """Turn the top-ranked candidates into choice documents with readable labels."""
        mastered_set = set(mastered)
        choices: list[dict] = []
        for index, candidate in enumerate(ranked[: self.max_choices], start=1):
            target = candidate.node
            if candidate.gap_overlap:
                label = f"Explore {candidate.gap_overlap[0]}"
            elif target.adapts_to:
                label = f"Continue with {target.adapts_to[0]}"
            else:
                label = f"Option {index}"
            choices.append(
                {
                    "id": f"choice-{index}",
                    "target_node_id": target.id,
                    "label": label,
                    "reveals_gap": list(candidate.gap_overlap),
                    "confirms_mastery": [p for p in (target.prerequisites or []) if p in mastered_set],
                }
            )
        return choices

    async def generate_choices(
        self,
        node: NarrativeNode,
        candidates: Sequence[NarrativeNode],
        gaps: Collection[str] | None = None,
        mastered: Collection[str] | None = None,
        similarity: Mapping[str, float] | None = None,
    ) -> list[dict]:
        """
        Regenerate the full choice set of a node.

        The new set replaces the old one in a single update.
        """
        ranked = self.rank_candidates(node, candidates, gaps or (), mastered or (), similarity)
        choices = self.build_choices(ranked, mastered or ())

        async with self.db.session_scope() as session:
            result = await session.execute(
                update(NarrativeNode)
                .where(NarrativeNode.id == node.id)
                .values(choices=choices, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("NarrativeNode", node.id)

        node.choices = choices
        logger.info("Generated {} choices for node {}", len(choices), node.id)
        return choices

    @staticmethod
    def select_adaptive_path(
        current_node: NarrativeNode,
        learner_gaps: Collection[str],
        candidates: Sequence[NarrativeNode],
    ) -> str | None:
        """First candidate addressing a learner gap, else the first candidate."""
        available = [c for c in candidates if c.id != current_node.id]
        if not available:
            return None
        gap_set = set(learner_gaps)
        for candidate in available:
            if gap_set & set(candidate.adapts_to or []):
                return candidate.id
        return available[0].id

"""
Learner mastery tracking.

Mastery (0-100 per concept) moves only through recorded evidence:
- first evidence for a concept sets mastery to the observed score
- later evidence moves mastery toward the score by ``learning_rate``

Knowledge gaps are the concepts of the learner's graph neighborhood that are
below ``gap_threshold`` or never evidenced. They are stored on the learner and
recomputed when the learner registers, records evidence or moves in a session,
so reads between updates always return the same list.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nuggets.db.database import Database
from nuggets.db.models import Learner, LearningSession, NarrativeNode, ProgressRecord, SessionStatus
from nuggets.exceptions import NotFoundError, ValidationError

RECENT_PROGRESS_LIMIT = 20


class MasteryEvidence(BaseModel):
    """One observation of learner performance on a concept."""

    concept: str = Field(..., min_length=1)
    score: float = Field(..., ge=0, le=100, description="Observed performance (0-100)")
    session_id: Optional[str] = None
    source: Optional[str] = Field(None, description="What produced the evidence (quiz, tutor, ...)")
    details: Optional[dict[str, Any]] = None


@dataclass
class MasteryUpdate:
    """Result of recording one piece of evidence."""

    learner_id: str
    concept: str
    old_mastery: float | None
    new_mastery: float
    knowledge_gaps: list[str] = field(default_factory=list)


@dataclass
class LearnerProgress:
    """Mastery snapshot for a learner."""

    learner_id: str
    mastery_map: dict[str, float]
    knowledge_gaps: list[str]
    recent_progress: list[ProgressRecord]


def clamp_mastery(value: float) -> float:
    return max(0.0, min(100.0, value))


def compute_knowledge_gaps(
    mastery_map: Mapping[str, float],
    concepts: Iterable[str],
    threshold: float = 50,
) -> list[str]:
    """Concepts below ``threshold`` or never evidenced, sorted."""
    return sorted({c for c in concepts if c and (c not in mastery_map or mastery_map[c] < threshold)})


class MasteryTracker:
    """Track learner mastery per concept."""

    def __init__(
        self,
        db: Database,
        gap_threshold: float = 50,
        learning_rate: float = 0.5,
        entry_threshold: float = 70,
    ):
        self.db = db
        self.gap_threshold = gap_threshold
        self.learning_rate = learning_rate
        self.entry_threshold = entry_threshold

    async def register_learner(
        self,
        organization_id: str,
        name: str | None = None,
        learner_id: str | None = None,
    ) -> Learner:
        async with self.db.session_scope() as session:
            learner = Learner(organization_id=organization_id, name=name, mastery_map={}, knowledge_gaps=[])
            if learner_id:
                learner.id = learner_id
            session.add(learner)
            await session.flush()
            await self.store_knowledge_gaps(session, learner)
        logger.info("Registered learner {} in organization {}", learner.id, organization_id)
        return learner

    async def get_learner(self, learner_id: str) -> Learner:
        async with self.db.session_scope() as session:
            learner = await session.get(Learner, learner_id)
            if learner is None:
                raise NotFoundError("Learner", learner_id)
            return learner

    async def record_evidence(self, learner_id: str, evidence: MasteryEvidence | dict[str, Any]) -> MasteryUpdate:
        """
        Apply one piece of evidence to the mastery map.

        Writes a progress record and recomputes the stored knowledge gaps.
        """
        if not isinstance(evidence, MasteryEvidence):
            try:
                evidence = MasteryEvidence.model_validate(evidence)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid mastery evidence: {e.errors()}") from e

        async with self.db.session_scope() as session:
            learner = await session.get(Learner, learner_id)
            if learner is None:
                raise NotFoundError("Learner", learner_id)

            mastery_map = dict(learner.mastery_map or {})
            old = mastery_map.get(evidence.concept)
            if old is None:
                new = clamp_mastery(evidence.score)
            else:
                new = clamp_mastery(old + self.learning_rate * (evidence.score - old))
            new = round(new, 2)
            mastery_map[evidence.concept] = new
            learner.mastery_map = mastery_map

            session.add(
                ProgressRecord(
                    learner_id=learner_id,
                    concept=evidence.concept,
                    score=evidence.score,
                    mastery_level=new,
                    evidence=evidence.model_dump(exclude={"concept", "score", "session_id"}, exclude_none=True),
                    session_id=evidence.session_id,
                )
            )

            gaps = await self.store_knowledge_gaps(session, learner)

        logger.info(
            "Mastery for learner {} on '{}': {} -> {} ({} gaps)",
            learner_id,
            evidence.concept,
            old,
            new,
            len(gaps),
        )
        return MasteryUpdate(
            learner_id=learner_id,
            concept=evidence.concept,
            old_mastery=old,
            new_mastery=new,
            knowledge_gaps=gaps,
        )

    async def refresh_knowledge_gaps(self, learner_id: str) -> list[str]:
        """Recompute and store the gap list without new evidence."""
        async with self.db.session_scope() as session:
            learner = await session.get(Learner, learner_id)
            if learner is None:
                raise NotFoundError("Learner", learner_id)
            return await self.store_knowledge_gaps(session, learner)

    async def store_knowledge_gaps(self, session: AsyncSession, learner: Learner) -> list[str]:
        """Recompute the gap list inside the caller's transaction and store it."""
        concepts = await self._neighborhood_concepts(session, learner)
        gaps = compute_knowledge_gaps(learner.mastery_map or {}, concepts, self.gap_threshold)
        learner.knowledge_gaps = gaps
        return list(gaps)

    async def get_knowledge_gaps(self, learner_id: str) -> list[str]:
        """Stored gap list (no recomputation)."""
        learner = await self.get_learner(learner_id)
        return list(learner.knowledge_gaps or [])

    async def get_progress(self, learner_id: str) -> LearnerProgress:
        async with self.db.session_scope() as session:
            learner = await session.get(Learner, learner_id)
            if learner is None:
                raise NotFoundError("Learner", learner_id)
            records = await session.execute(
                select(ProgressRecord)
                .where(ProgressRecord.learner_id == learner_id)
                .order_by(ProgressRecord.created_at.desc(), ProgressRecord.id)
                .limit(RECENT_PROGRESS_LIMIT)
            )
            return LearnerProgress(
                learner_id=learner_id,
                mastery_map=dict(learner.mastery_map or {}),
                knowledge_gaps=list(learner.knowledge_gaps or []),
                recent_progress=list(records.scalars().all()),
            )

    async def mastered_concepts(self, learner_id: str) -> set[str]:
        """Concepts at or above the entry threshold."""
        learner = await self.get_learner(learner_id)
        return {c for c, m in (learner.mastery_map or {}).items() if m >= self.entry_threshold}

    async def unresolved_gaps(self, organization_id: str) -> set[str]:
        """Union of stored knowledge gaps over the organization's learners."""
        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(Learner.knowledge_gaps).where(Learner.organization_id == organization_id)
            )
            gaps: set[str] = set()
            for learner_gaps in rows.scalars().all():
                gaps.update(learner_gaps or [])
            return gaps

    async def _neighborhood_concepts(self, session: AsyncSession, learner: Learner) -> set[str]:
        """
        Concepts reachable from the learner's position in the graph.

        The current node of the latest open session plus its choice targets;
        the whole organization graph when there is no open session.
        """
        open_session = (
            await session.execute(
                select(LearningSession)
                .where(
                    LearningSession.learner_id == learner.id,
                    LearningSession.status.in_(SessionStatus.OPEN),
                )
                .order_by(LearningSession.last_activity.desc(), LearningSession.id)
                .limit(1)
            )
        ).scalar_one_or_none()

        if open_session is not None and open_session.current_node_id:
            current = await session.get(NarrativeNode, open_session.current_node_id)
            if current is not None:
                node_ids = [current.id] + [c["target_node_id"] for c in (current.choices or []) if c.get("target_node_id")]
                nodes = (
                    await session.execute(select(NarrativeNode).where(NarrativeNode.id.in_(node_ids)))
                ).scalars().all()
                return _concepts_of(nodes)

        nodes = (
            await session.execute(select(NarrativeNode).where(NarrativeNode.organization_id == learner.organization_id))
        ).scalars().all()
        return _concepts_of(nodes)


def _concepts_of(nodes: Iterable[NarrativeNode]) -> set[str]:
    concepts: set[str] = set()
    for node in nodes:
        concepts.update(node.adapts_to or [])
        concepts.update(node.prerequisites or [])
    return concepts

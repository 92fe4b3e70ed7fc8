"""
Adaptive session delivery.

A session is one learner's traversal of an organization's narrative graph:

    created -> active -> completed

The first navigation activates a session; completion happens exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nuggets.db.database import Database
from nuggets.db.models import Learner, LearningSession, NarrativeNode, SessionNode, SessionStatus
from nuggets.db.models.base import utcnow
from nuggets.exceptions import ConflictError, NotFoundError, ValidationError
from nuggets.learning.mastery_tracker import MasteryEvidence, MasteryTracker, MasteryUpdate
from nuggets.narrative.choice_generator import ChoiceGenerator


@dataclass
class SessionProgress:
    """Progress summary for one session."""

    session_id: str
    status: str
    mastery_map: dict[str, float]
    knowledge_gaps: list[str]
    path_history: list[str]
    duration_seconds: int
    nodes_viewed: int


def session_duration(session: LearningSession, now: datetime | None = None) -> int:
    """Whole seconds from start to completion (or now), never negative."""
    end = session.completed_at or now or utcnow()
    return max(0, int((end - session.started_at).total_seconds()))


class SessionService:
    """Create and advance learning sessions."""

    def __init__(
        self,
        db: Database,
        mastery: MasteryTracker,
        choice_generator: ChoiceGenerator,
        entry_threshold: float = 70,
    ):
        self.db = db
        self.mastery = mastery
        self.choice_generator = choice_generator
        self.entry_threshold = entry_threshold

    async def create_session(
        self,
        learner_id: str,
        organization_id: str,
        start_node_id: str | None = None,
    ) -> LearningSession:
        """
        Start a session at an explicit node or at the organization's entry node.

        The entry node is the first node (by creation time, then id) whose
        prerequisites are all mastered; the first node overall when none
        qualifies. The start node is the first entry of the path history.
        """
        async with self.db.session_scope() as session:
            learner = await session.get(Learner, learner_id)
            if learner is None or learner.organization_id != organization_id:
                raise NotFoundError("Learner", learner_id)

            if start_node_id is not None:
                start = await self._get_org_node(session, start_node_id, organization_id)
            else:
                start = await self._find_entry_node(session, learner)

            now = utcnow()
            learning_session = LearningSession(
                learner_id=learner_id,
                organization_id=organization_id,
                status=SessionStatus.CREATED,
                current_node_id=start.id if start else None,
                path_history=[start.id] if start else [],
                started_at=now,
                last_activity=now,
            )
            session.add(learning_session)
            await session.flush()
            if start is not None:
                session.add(SessionNode(session_id=learning_session.id, node_id=start.id, visited_at=now))
            await self.mastery.store_knowledge_gaps(session, learner)

        logger.info(
            "Learning session {} created for learner {} at node {}",
            learning_session.id,
            learner_id,
            learning_session.current_node_id,
        )
        return learning_session

    async def get_session(self, session_id: str) -> LearningSession:
        async with self.db.session_scope() as session:
            learning_session = await session.get(LearningSession, session_id)
            if learning_session is None:
                raise NotFoundError("LearningSession", session_id)
            return learning_session

    async def update_current_node(
        self,
        session_id: str,
        node_id: str,
        choice_id: str | None = None,
    ) -> LearningSession:
        """
        Navigate to a node.

        The target must be in the session's organization. A supplied
        ``choice_id`` must be one of the current node's choices and lead to
        the target. The target is appended to the path history before the
        current node changes.
        """
        async with self.db.session_scope() as session:
            learning_session = await session.get(LearningSession, session_id)
            if learning_session is None:
                raise NotFoundError("LearningSession", session_id)
            if learning_session.status == SessionStatus.COMPLETED:
                raise ConflictError("Session already completed")

            target = await self._get_org_node(session, node_id, learning_session.organization_id)
            current = (
                await session.get(NarrativeNode, learning_session.current_node_id)
                if learning_session.current_node_id
                else None
            )
            choices = (current.choices or []) if current is not None else []

            if choice_id is not None:
                choice = next((c for c in choices if c.get("id") == choice_id), None)
                if choice is None:
                    raise ValidationError(f"Choice {choice_id} does not belong to the current node")
                if choice.get("target_node_id") != target.id:
                    raise ValidationError(f"Choice {choice_id} does not lead to node {target.id}")
            elif current is not None and target.id not in {c.get("target_node_id") for c in choices}:
                logger.warning("Session {} jumped off-graph from {} to {}", session_id, current.id, target.id)

            now = utcnow()
            learning_session.path_history = [*(learning_session.path_history or []), target.id]
            learning_session.current_node_id = target.id
            if learning_session.status == SessionStatus.CREATED:
                learning_session.status = SessionStatus.ACTIVE
            learning_session.last_activity = now
            session.add(SessionNode(session_id=session_id, node_id=target.id, choice_id=choice_id, visited_at=now))
            await session.flush()

            learner = await session.get(Learner, learning_session.learner_id)
            if learner is not None:
                await self.mastery.store_knowledge_gaps(session, learner)

        logger.info("Session {} moved to node {}", session_id, node_id)
        return learning_session

    async def complete_session(self, session_id: str) -> LearningSession:
        """
        Complete an active session.

        A session that was never navigated (still ``created``) or is already
        completed raises ConflictError.
        """
        async with self.db.session_scope() as session:
            now = utcnow()
            result = await session.execute(
                update(LearningSession)
                .where(LearningSession.id == session_id, LearningSession.status == SessionStatus.ACTIVE)
                .values(status=SessionStatus.COMPLETED, completed_at=now, last_activity=now)
                .execution_options(synchronize_session=False)
            )
            learning_session = await session.get(LearningSession, session_id, populate_existing=True)
            if learning_session is None:
                raise NotFoundError("LearningSession", session_id)
            if result.rowcount != 1:
                if learning_session.status == SessionStatus.CREATED:
                    raise ConflictError("Session has not started; navigate to a node before completing it")
                raise ConflictError("Session already completed")

        logger.info("Session {} completed after {}s", session_id, session_duration(learning_session))
        return learning_session

    async def record_evidence(self, session_id: str, evidence: MasteryEvidence | dict) -> MasteryUpdate:
        """Record mastery evidence observed during a session."""
        learning_session = await self.get_session(session_id)
        if learning_session.status == SessionStatus.COMPLETED:
            raise ConflictError("Session already completed")
        if not isinstance(evidence, MasteryEvidence):
            evidence = {**evidence, "session_id": session_id}
        else:
            evidence = evidence.model_copy(update={"session_id": session_id})
        return await self.mastery.record_evidence(learning_session.learner_id, evidence)

    async def select_next_node(self, session_id: str) -> NarrativeNode | None:
        """
        Recommend the next node.

        Ranks the current node's choice targets with the learner's gaps and
        mastered concepts, then prefers the first one addressing a gap.
        """
        async with self.db.session_scope() as session:
            learning_session = await session.get(LearningSession, session_id)
            if learning_session is None:
                raise NotFoundError("LearningSession", session_id)
            learner = await session.get(Learner, learning_session.learner_id)
            if learning_session.current_node_id is None:
                return await self._find_entry_node(session, learner)

            current = await session.get(NarrativeNode, learning_session.current_node_id)
            if current is None:
                raise NotFoundError("NarrativeNode", learning_session.current_node_id)
            target_ids = [c["target_node_id"] for c in (current.choices or []) if c.get("target_node_id")]
            if not target_ids:
                return None
            targets = (
                await session.execute(select(NarrativeNode).where(NarrativeNode.id.in_(target_ids)))
            ).scalars().all()

        gaps = list(learner.knowledge_gaps or [])
        mastered = {c for c, m in (learner.mastery_map or {}).items() if m >= self.entry_threshold}
        ranked = self.choice_generator.rank_candidates(current, targets, gaps=gaps, mastered=mastered)
        ordered = [r.node for r in ranked]
        next_id = self.choice_generator.select_adaptive_path(current, gaps, ordered)
        return next((n for n in ordered if n.id == next_id), None)

    async def get_progress(self, session_id: str) -> SessionProgress:
        async with self.db.session_scope() as session:
            learning_session = await session.get(LearningSession, session_id)
            if learning_session is None:
                raise NotFoundError("LearningSession", session_id)
            learner = await session.get(Learner, learning_session.learner_id)
            nodes_viewed = (
                await session.execute(
                    select(func.count()).select_from(SessionNode).where(SessionNode.session_id == session_id)
                )
            ).scalar_one()

        return SessionProgress(
            session_id=session_id,
            status=learning_session.status,
            mastery_map=dict(learner.mastery_map or {}) if learner else {},
            knowledge_gaps=list(learner.knowledge_gaps or []) if learner else [],
            path_history=list(learning_session.path_history or []),
            duration_seconds=session_duration(learning_session),
            nodes_viewed=nodes_viewed,
        )

    async def get_active_sessions(self, learner_id: str) -> list[LearningSession]:
        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(LearningSession)
                .where(
                    LearningSession.learner_id == learner_id,
                    LearningSession.status.in_(SessionStatus.OPEN),
                )
                .order_by(LearningSession.last_activity.desc())
            )
            return list(rows.scalars().all())

    # ========================================
    # Helpers
    # ========================================

    async def _get_org_node(self, session: AsyncSession, node_id: str, organization_id: str) -> NarrativeNode:
        node = await session.get(NarrativeNode, node_id)
        if node is None or node.organization_id != organization_id:
            raise NotFoundError("NarrativeNode", node_id)
        return node

    async def _find_entry_node(self, session: AsyncSession, learner: Learner) -> NarrativeNode | None:
        mastery_map = learner.mastery_map or {}
        nodes = (
            await session.execute(
                select(NarrativeNode)
                .where(NarrativeNode.organization_id == learner.organization_id)
                .order_by(NarrativeNode.created_at, NarrativeNode.ordinal, NarrativeNode.id)
            )
        ).scalars().all()
        for node in nodes:
            if all(mastery_map.get(p, 0) >= self.entry_threshold for p in (node.prerequisites or [])):
                return node
        return nodes[0] if nodes else None

"""
Unit tests for the MasteryTracker.
"""
import pytest

from nuggets.db.models import NarrativeNode, Nugget
from nuggets.exceptions import NotFoundError, ValidationError
from nuggets.learning.mastery_tracker import MasteryEvidence, MasteryTracker, compute_knowledge_gaps


async def add_node(db, node_id, org="org-1", ordinal=0, prerequisites=(), adapts_to=(), choices=()):
    async with db.session_scope() as session:
        session.add(Nugget(id=f"nugget-{node_id}", organization_id=org, content="x"))
        session.add(
            NarrativeNode(
                id=node_id,
                nugget_id=f"nugget-{node_id}",
                organization_id=org,
                ordinal=ordinal,
                prerequisites=list(prerequisites),
                adapts_to=list(adapts_to),
                position={"x": 0, "y": 0},
                choices=list(choices),
            )
        )


@pytest.fixture
def tracker(db):
    return MasteryTracker(db)


class TestComputeKnowledgeGaps:
    def test_below_threshold_or_unseen(self):
        gaps = compute_knowledge_gaps({"Routing": 80, "VLANs": 30}, ["VLANs", "Routing", "STP"], threshold=50)

        assert gaps == ["STP", "VLANs"]

    def test_threshold_is_exclusive(self):
        assert compute_knowledge_gaps({"Routing": 50}, ["Routing"], threshold=50) == []


class TestRecordEvidence:
    @pytest.mark.asyncio
    async def test_first_evidence_sets_score(self, tracker):
        learner = await tracker.register_learner("org-1", "Ada")

        update = await tracker.record_evidence(learner.id, MasteryEvidence(concept="Routing", score=80))

        assert update.old_mastery is None
        assert update.new_mastery == 80

    @pytest.mark.asyncio
    async def test_later_evidence_moves_toward_score(self, tracker):
        learner = await tracker.register_learner("org-1")
        await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 80})

        update = await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 40})

        assert update.old_mastery == 80
        assert update.new_mastery == 60

    @pytest.mark.asyncio
    async def test_progress_records(self, tracker):
        learner = await tracker.register_learner("org-1")
        await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 80, "source": "quiz"})

        progress = await tracker.get_progress(learner.id)

        assert progress.mastery_map == {"Routing": 80}
        assert len(progress.recent_progress) == 1
        record = progress.recent_progress[0]
        assert record.concept == "Routing"
        assert record.mastery_level == 80
        assert record.evidence == {"source": "quiz"}

    @pytest.mark.asyncio
    async def test_invalid_score(self, tracker):
        learner = await tracker.register_learner("org-1")

        with pytest.raises(ValidationError):
            await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 140})

    @pytest.mark.asyncio
    async def test_unknown_learner(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.record_evidence("missing", {"concept": "Routing", "score": 10})


class TestKnowledgeGaps:
    @pytest.mark.asyncio
    async def test_gaps_cover_organization_graph(self, db, tracker):
        await add_node(db, "a", adapts_to=["Routing"], prerequisites=["IP"])
        await add_node(db, "b", ordinal=1, adapts_to=["VLANs"])
        await add_node(db, "z", org="org-2", adapts_to=["Unrelated"])
        learner = await tracker.register_learner("org-1")

        update = await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 90})

        assert update.knowledge_gaps == ["IP", "VLANs"]
        assert await tracker.get_knowledge_gaps(learner.id) == ["IP", "VLANs"]

    @pytest.mark.asyncio
    async def test_stored_gaps_stable_between_updates(self, db, tracker):
        await add_node(db, "a", adapts_to=["Routing"])
        learner = await tracker.register_learner("org-1")
        await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 10})

        # New graph content does not change the stored list until the next update
        await add_node(db, "b", ordinal=1, adapts_to=["VLANs"])

        assert await tracker.get_knowledge_gaps(learner.id) == ["Routing"]
        assert await tracker.get_knowledge_gaps(learner.id) == ["Routing"]
        assert await tracker.refresh_knowledge_gaps(learner.id) == ["Routing", "VLANs"]

    @pytest.mark.asyncio
    async def test_unresolved_gaps_union(self, db, tracker):
        await add_node(db, "a", adapts_to=["Routing", "VLANs"])
        first = await tracker.register_learner("org-1")
        second = await tracker.register_learner("org-1")
        await tracker.record_evidence(first.id, {"concept": "Routing", "score": 90})
        await tracker.record_evidence(second.id, {"concept": "VLANs", "score": 90})

        assert await tracker.unresolved_gaps("org-1") == {"Routing", "VLANs"}

    @pytest.mark.asyncio
    async def test_mastered_concepts(self, tracker):
        learner = await tracker.register_learner("org-1")
        await tracker.record_evidence(learner.id, {"concept": "Routing", "score": 90})
        await tracker.record_evidence(learner.id, {"concept": "VLANs", "score": 60})

        assert await tracker.mastered_concepts(learner.id) == {"Routing"}

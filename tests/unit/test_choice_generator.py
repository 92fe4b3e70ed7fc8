"""
Unit tests for the ChoiceGenerator.

Ranking is tested on in-memory nodes; persistence on a real database.
"""
import pytest

from nuggets.db.models import NarrativeNode, Nugget
from nuggets.exceptions import NotFoundError
from nuggets.narrative.choice_generator import ChoiceGenerator


def node(node_id, prerequisites=(), adapts_to=()):
    return NarrativeNode(
        id=node_id,
        nugget_id=f"nugget-{node_id}",
        organization_id="org-1",
        ordinal=0,
        prerequisites=list(prerequisites),
        adapts_to=list(adapts_to),
        position={"x": 0, "y": 0},
        choices=[],
    )


@pytest.fixture
def generator():
    return ChoiceGenerator(db=None, max_choices=4)


class TestRankCandidates:
    def test_excludes_source_and_duplicates(self, generator):
        source = node("a")
        other = node("b")

        ranked = generator.rank_candidates(source, [source, other, other])

        assert [r.node.id for r in ranked] == ["b"]

    def test_prerequisite_satisfaction_comes_first(self, generator):
        source = node("a", adapts_to=["Routing"])
        ready = node("b", prerequisites=["Routing"])
        blocked = node("c", prerequisites=["Quantum Networking"], adapts_to=["Gap Topic"])

        ranked = generator.rank_candidates(source, [blocked, ready], gaps=["Gap Topic"])

        assert [r.node.id for r in ranked] == ["b", "c"]

    def test_gap_overlap_breaks_ties(self, generator):
        source = node("a")
        plain = node("b", adapts_to=["Switching"])
        gap = node("c", adapts_to=["Subnetting"])

        ranked = generator.rank_candidates(source, [plain, gap], gaps=["Subnetting"])

        assert [r.node.id for r in ranked] == ["c", "b"]
        assert ranked[0].gap_overlap == ["Subnetting"]

    def test_similarity_then_id(self, generator):
        source = node("a")
        candidates = [node("d"), node("c"), node("b")]

        ranked = generator.rank_candidates(source, candidates, similarity={"c": 0.9, "d": 0.4})

        assert [r.node.id for r in ranked] == ["c", "d", "b"]

    def test_mastered_concepts_satisfy_prerequisites(self, generator):
        source = node("a")
        candidate = node("b", prerequisites=["VLANs"])

        without = generator.rank_candidates(source, [candidate])
        with_mastery = generator.rank_candidates(source, [candidate], mastered=["VLANs"])

        assert without[0].prerequisite_score == 0.0
        assert with_mastery[0].prerequisite_score == 1.0


class TestBuildChoices:
    def test_labels_and_limit(self, generator):
        source = node("a")
        candidates = [
            node("b", adapts_to=["Subnetting"]),
            node("c", adapts_to=["Switching"]),
            node("d"),
            node("e"),
            node("f"),
        ]
        ranked = generator.rank_candidates(source, candidates, gaps=["Subnetting"])

        choices = generator.build_choices(ranked)

        assert len(choices) == 4
        assert [c["id"] for c in choices] == ["choice-1", "choice-2", "choice-3", "choice-4"]
        assert choices[0]["target_node_id"] == "b"
        assert choices[0]["label"] == "Explore Subnetting"
        assert choices[0]["reveals_gap"] == ["Subnetting"]
        assert choices[1]["label"] == "Continue with Switching"
        assert choices[2]["label"] == "Option 3"

    def test_confirms_mastery(self, generator):
        ranked = generator.rank_candidates(node("a"), [node("b", prerequisites=["VLANs", "STP"])], mastered=["VLANs"])

        choices = generator.build_choices(ranked, mastered=["VLANs"])

        assert choices[0]["confirms_mastery"] == ["VLANs"]


class TestSelectAdaptivePath:
    def test_prefers_gap(self):
        current = node("a")
        candidates = [node("b", adapts_to=["Switching"]), node("c", adapts_to=["Subnetting"])]

        assert ChoiceGenerator.select_adaptive_path(current, ["Subnetting"], candidates) == "c"

    def test_falls_back_to_first(self):
        current = node("a")

        assert ChoiceGenerator.select_adaptive_path(current, [], [current, node("b"), node("c")]) == "b"

    def test_no_candidates(self):
        current = node("a")

        assert ChoiceGenerator.select_adaptive_path(current, ["x"], [current]) is None


class TestGenerateChoices:
    async def _persist(self, db, *nodes):
        async with db.session_scope() as session:
            for i, n in enumerate(nodes):
                session.add(Nugget(id=n.nugget_id, organization_id="org-1", content="x"))
                n.ordinal = i
                session.add(n)

    @pytest.mark.asyncio
    async def test_replaces_choice_set(self, db):
        generator = ChoiceGenerator(db, max_choices=2)
        a, b, c = node("a"), node("b", adapts_to=["Routing"]), node("c")
        await self._persist(db, a, b, c)

        await generator.generate_choices(a, [b, c])
        choices = await generator.generate_choices(a, [c])

        async with db.session_scope() as session:
            stored = await session.get(NarrativeNode, "a")
        assert stored.choices == choices
        assert [ch["target_node_id"] for ch in stored.choices] == ["c"]

    @pytest.mark.asyncio
    async def test_unknown_node(self, db):
        generator = ChoiceGenerator(db)

        with pytest.raises(NotFoundError):
            await generator.generate_choices(node("ghost"), [node("b")])

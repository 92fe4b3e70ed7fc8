"""
Unit tests for the NodeGenerator.
"""
import pytest

from nuggets.db.models import Nugget, NuggetStatus
from nuggets.narrative.node_generator import NodeGenerator, node_data_from_nugget


async def add_nugget(db, org="org-1", metadata=None):
    async with db.session_scope() as session:
        nugget = Nugget(organization_id=org, content="content", metadata_=metadata, status=NuggetStatus.READY)
        session.add(nugget)
    return nugget


METADATA = {
    "topics": ["Routing", "Subnetting"],
    "difficulty": 4,
    "prerequisites": ["IP Addressing"],
    "estimated_time": 2,
    "related_concepts": ["Routing", "Subnetting", "Default Gateway", "Static Routes", "OSPF", "BGP"],
}


class TestNodeData:
    def test_copies_metadata(self):
        nugget = Nugget(id="n-1", organization_id="org-1", content="x", metadata_=METADATA)

        data = node_data_from_nugget(nugget)

        assert data.prerequisites == ["IP Addressing"]
        assert data.adapts_to == ["Routing", "Subnetting", "Default Gateway", "Static Routes", "OSPF"]

    def test_absent_metadata(self):
        data = node_data_from_nugget(Nugget(id="n-1", organization_id="org-1", content="x", metadata_=None))

        assert data.prerequisites == []
        assert data.adapts_to == []

    def test_malformed_metadata(self):
        nugget = Nugget(id="n-1", organization_id="org-1", content="x", metadata_={"difficulty": "very"})

        data = node_data_from_nugget(nugget)

        assert data.prerequisites == []
        assert data.adapts_to == []


class TestComputePosition:
    def test_positions_unique_and_in_bounds(self):
        generator = NodeGenerator(db=None, width=100, height=100, cell_size=50)

        positions = [generator.compute_position(i) for i in range(40)]

        assert len({(p["x"], p["y"]) for p in positions}) == 40
        assert all(0 <= p["x"] < 100 and 0 <= p["y"] < 100 for p in positions)

    def test_grid_fills_row_by_row(self):
        generator = NodeGenerator(db=None)

        assert generator.compute_position(0) == {"x": 0.0, "y": 0.0}
        assert generator.compute_position(1) == {"x": 50.0, "y": 0.0}
        assert generator.compute_position(20) == {"x": 0.0, "y": 50.0}


class TestGenerateNode:
    @pytest.mark.asyncio
    async def test_creates_node_from_metadata(self, db):
        generator = NodeGenerator(db)
        nugget = await add_nugget(db, metadata=METADATA)

        node = await generator.generate_node(nugget)

        assert node.nugget_id == nugget.id
        assert node.organization_id == "org-1"
        assert node.prerequisites == ["IP Addressing"]
        assert node.choices == []
        assert 0 <= node.position["x"] < 1000 and 0 <= node.position["y"] < 1000

    @pytest.mark.asyncio
    async def test_idempotent(self, db):
        generator = NodeGenerator(db)
        nugget = await add_nugget(db, metadata=METADATA)

        first = await generator.generate_node(nugget)
        second = await generator.generate_node(nugget)

        assert first.id == second.id
        assert len(await generator.list_nodes("org-1")) == 1

    @pytest.mark.asyncio
    async def test_ordinals_per_organization(self, db):
        generator = NodeGenerator(db)
        nuggets = [await add_nugget(db) for _ in range(3)]
        other = await add_nugget(db, org="org-2")

        nodes = await generator.generate_nodes(nuggets)
        other_node = await generator.generate_node(other)

        assert [n.ordinal for n in nodes] == [0, 1, 2]
        assert len({(n.position["x"], n.position["y"]) for n in nodes}) == 3
        assert other_node.ordinal == 0

    @pytest.mark.asyncio
    async def test_get_node_for_nugget(self, db):
        generator = NodeGenerator(db)
        nugget = await add_nugget(db)

        assert await generator.get_node_for_nugget(nugget.id) is None
        node = await generator.generate_node(nugget)
        assert (await generator.get_node_for_nugget(nugget.id)).id == node.id

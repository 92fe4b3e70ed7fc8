"""
Pipeline tests: ingestion through narrative planning with every queue drained
in-process.
"""
import fitz  # PyMuPDF
import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from nuggets.context import ServiceContainer
from nuggets.db.models import JobStatus, NarrativeNode, Nugget, NuggetStatus, QueueEntry
from nuggets.jobs.payloads import IngestionPayload, JobKind

SUBNETTING = """Subnetting

A subnet divides an IP network into smaller networks. The subnet mask
selects which bits of an address identify the network.
"""

VLANS = """Virtual LANs

A VLAN separates broadcast domains on one switch. Trunk ports carry
traffic for several VLANs between switches.
"""


def page_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text=f"<html><body><main><p>{VLANS}</p></main></body></html>")


@pytest_asyncio.fixture
async def services(settings, db, embedding_provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(page_handler))
    async with ServiceContainer(settings, db=db, embedding_provider=embedding_provider, http_client=client) as services:
        yield services
    await client.aclose()


@pytest.fixture
def incoming(tmp_path):
    folder = tmp_path / "incoming"
    folder.mkdir()
    return folder


def write_pdf(path, text):
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()


async def ingest_file(services, path, org="org-1"):
    payload = IngestionPayload(type="file", source=str(path), organization_id=org)
    return await services.orchestrator.enqueue(JobKind.INGESTION, payload)


async def nodes_of(db, org="org-1"):
    async with db.session_scope() as session:
        rows = await session.execute(select(NarrativeNode).where(NarrativeNode.organization_id == org))
        return list(rows.scalars().all())


class TestPipeline:
    @pytest.mark.asyncio
    async def test_pdf_becomes_ready_nugget_and_node(self, services, db, incoming, settings):
        path = incoming / "lesson1.pdf"
        write_pdf(path, SUBNETTING)
        handle = await ingest_file(services, path)

        processed = await services.worker_pool.drain()

        # ingestion, embedding, narrative planning
        assert processed == 3
        job = await services.orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.nugget_count == 1
        assert job.completed_at is not None

        async with db.session_scope() as session:
            nugget = (await session.execute(select(Nugget))).scalar_one()
        assert nugget.status == NuggetStatus.READY
        assert nugget.source_job_id == handle.job_id
        assert "subnet" in nugget.content.lower()
        assert nugget.metadata_["estimated_time"] >= 1

        nodes = await nodes_of(db)
        assert len(nodes) == 1
        assert nodes[0].nugget_id == nugget.id
        assert 0 <= nodes[0].position["x"] < settings.canvas_width
        assert 0 <= nodes[0].position["y"] < settings.canvas_height

    @pytest.mark.asyncio
    async def test_nodes_link_to_each_other(self, services, db, incoming):
        first = incoming / "subnets.md"
        first.write_text(SUBNETTING)
        second = incoming / "vlans.txt"
        second.write_text(VLANS)
        await ingest_file(services, first)
        await ingest_file(services, second)

        await services.worker_pool.drain()

        nodes = {n.id: n for n in await nodes_of(db)}
        assert len(nodes) == 2
        for node in nodes.values():
            targets = [c["target_node_id"] for c in node.choices]
            assert targets == [other for other in nodes if other != node.id]
            assert [c["id"] for c in node.choices] == ["choice-1"]

    @pytest.mark.asyncio
    async def test_url_ingestion(self, services, db):
        payload = IngestionPayload(type="url", source="https://example.com/vlans", organization_id="org-1")
        handle = await services.orchestrator.enqueue(JobKind.INGESTION, payload)

        await services.worker_pool.drain()

        job = await services.orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED
        async with db.session_scope() as session:
            nugget = (await session.execute(select(Nugget))).scalar_one()
        assert nugget.source_type == "url"
        assert nugget.source_path == "https://example.com/vlans"
        assert "VLAN" in nugget.content

    @pytest.mark.asyncio
    async def test_missing_file_fails_job_without_retry(self, services, db, incoming):
        handle = await ingest_file(services, incoming / "missing.md")

        await services.worker_pool.drain()

        job = await services.orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.FAILED
        assert "missing.md" in job.error_message
        async with db.session_scope() as session:
            entry = await session.get(QueueEntry, handle.entry_id)
        assert entry.attempts == 1
        assert entry.status == "failed"

    @pytest.mark.asyncio
    async def test_redelivered_ingestion_is_skipped(self, services, db, incoming):
        path = incoming / "subnets.md"
        path.write_text(SUBNETTING)
        handle = await ingest_file(services, path)
        await services.worker_pool.drain()

        # Same job id delivered again
        await services.orchestrator.enqueue(
            JobKind.INGESTION,
            IngestionPayload(type="file", source=str(path), organization_id="org-1", job_id=handle.job_id),
        )
        await services.worker_pool.drain()

        async with db.session_scope() as session:
            nuggets = (await session.execute(select(Nugget))).scalars().all()
        assert len(nuggets) == 1

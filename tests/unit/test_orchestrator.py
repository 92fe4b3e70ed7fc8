"""
Unit tests for the JobOrchestrator.

Covers enqueue validation, the ingestion job lifecycle and the guarded
administrative operations (cancel, retry, delete).
"""
import pytest
from sqlalchemy import func, select

from nuggets.db.models import IngestionJob, JobStatus, QueueEntry
from nuggets.exceptions import NotFoundError, PreconditionError, ValidationError
from nuggets.jobs.orchestrator import CANCEL_REASON
from nuggets.jobs.payloads import EmbeddingPayload, IngestionPayload, JobKind, QueueName


def file_payload(source="/incoming/lesson1.pdf", org="org-1"):
    return IngestionPayload(
        type="file",
        source=source,
        organization_id=org,
        metadata={"folder_id": "folder-1", "file_name": "lesson1.pdf", "file_size": 1024},
    )


async def count(db, model, *where):
    async with db.session_scope() as session:
        return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_ingestion_creates_one_job(self, db, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())

        assert handle.queue == QueueName.INGESTION.value
        assert handle.job_id is not None
        job = await orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.PENDING
        assert job.type == "file"
        assert job.metadata_ == {"folder_id": "folder-1", "file_name": "lesson1.pdf", "file_size": 1024}
        assert job.started_at is None
        assert job.completed_at is None
        assert await count(db, IngestionJob) == 1

        async with db.session_scope() as session:
            entry = await session.get(QueueEntry, handle.entry_id)
        assert entry.payload["job_id"] == handle.job_id
        assert entry.attempts == 0
        assert entry.max_attempts == 3

    @pytest.mark.asyncio
    async def test_non_ingestion_has_no_job(self, db, orchestrator):
        handle = await orchestrator.enqueue(
            "embedding", EmbeddingPayload(nugget_id="n-1", content="text", organization_id="org-1")
        )

        assert handle.job_id is None
        assert handle.queue == QueueName.EMBEDDING.value
        assert await count(db, IngestionJob) == 0

    @pytest.mark.asyncio
    async def test_invalid_payload_stores_nothing(self, db, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.enqueue(JobKind.INGESTION, {"type": "file", "organization_id": "org-1"})

        assert await count(db, IngestionJob) == 0
        assert await count(db, QueueEntry) == 0


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())

        job = await orchestrator.cancel(handle.job_id)

        assert job.status == JobStatus.FAILED
        assert job.error_message == CANCEL_REASON
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        await orchestrator.cancel(handle.job_id)

        with pytest.raises(PreconditionError, match="Only pending jobs can be cancelled"):
            await orchestrator.cancel(handle.job_id)

    @pytest.mark.asyncio
    async def test_cancel_processing_rejected(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        assert await orchestrator.begin_ingestion(handle.job_id) is True

        with pytest.raises(PreconditionError):
            await orchestrator.cancel(handle.job_id)

        job = await orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.cancel("missing")

    @pytest.mark.asyncio
    async def test_cancelled_job_is_skipped(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        await orchestrator.cancel(handle.job_id)

        assert await orchestrator.begin_ingestion(handle.job_id) is False


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_requires_failed(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())

        with pytest.raises(PreconditionError, match="Only failed jobs can be retried"):
            await orchestrator.retry(handle.job_id)

    @pytest.mark.asyncio
    async def test_retry_resets_and_requeues(self, db, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        await orchestrator.begin_ingestion(handle.job_id)
        await orchestrator.fail_ingestion(handle.job_id, "parse error")

        retried = await orchestrator.retry(handle.job_id)

        assert retried.job_id == handle.job_id
        assert retried.entry_id != handle.entry_id
        job = await orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.PENDING
        assert job.error_message is None
        assert job.started_at is None
        assert job.completed_at is None
        assert await count(db, IngestionJob) == 1
        assert await count(db, QueueEntry) == 2

        async with db.session_scope() as session:
            entry = await session.get(QueueEntry, retried.entry_id)
        assert entry.attempts == 0
        assert entry.payload["job_id"] == handle.job_id


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_pending_rejected(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())

        with pytest.raises(PreconditionError, match="Cannot delete pending or processing jobs"):
            await orchestrator.delete(handle.job_id)

    @pytest.mark.asyncio
    async def test_delete_finished(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        await orchestrator.begin_ingestion(handle.job_id)
        await orchestrator.finish_ingestion(handle.job_id, 2)

        await orchestrator.delete(handle.job_id)

        with pytest.raises(NotFoundError):
            await orchestrator.get_job(handle.job_id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_begin_sets_started_at_once(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())

        assert await orchestrator.begin_ingestion(handle.job_id) is True
        first = (await orchestrator.get_job(handle.job_id)).started_at
        assert await orchestrator.begin_ingestion(handle.job_id) is True
        job = await orchestrator.get_job(handle.job_id)

        assert job.status == JobStatus.PROCESSING
        assert job.started_at == first

    @pytest.mark.asyncio
    async def test_finish_records_count(self, orchestrator):
        handle = await orchestrator.enqueue(JobKind.INGESTION, file_payload())
        await orchestrator.begin_ingestion(handle.job_id)

        await orchestrator.finish_ingestion(handle.job_id, 3)

        job = await orchestrator.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.nugget_count == 3
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_list_jobs_filters(self, orchestrator):
        first = await orchestrator.enqueue(JobKind.INGESTION, file_payload("/a.txt"))
        await orchestrator.enqueue(JobKind.INGESTION, file_payload("/b.txt"))
        await orchestrator.enqueue(JobKind.INGESTION, file_payload("/c.txt", org="org-2"))
        await orchestrator.cancel(first.job_id)

        assert len(await orchestrator.list_jobs()) == 3
        assert len(await orchestrator.list_jobs(organization_id="org-1")) == 2
        failed = await orchestrator.list_jobs(status=JobStatus.FAILED)
        assert [j.id for j in failed] == [first.job_id]

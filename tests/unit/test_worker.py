"""
Unit tests for the WorkerPool and QueueManager.

Handlers are fakes; the queue is a real SQLite-backed QueueEntry table.
"""
import asyncio

import pytest

from nuggets.db.models import QueueEntry
from nuggets.exceptions import TransientError, ValidationError
from nuggets.jobs.payloads import EmbeddingPayload, JobKind, QueueName
from nuggets.jobs.queue_manager import QueueManager
from nuggets.jobs.worker import WorkerPool


class FakeHandler:
    """Fails the first ``failures`` calls with ``error``, then succeeds."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or TransientError("provider unavailable")
        self.calls = []
        self.failed = []

    async def handle(self, payload, context):
        self.calls.append((payload, context.attempt))
        if len(self.calls) <= self.failures:
            raise self.error
        return {"nugget_id": payload.nugget_id}

    async def on_failure(self, payload, error):
        self.failed.append((payload, error))


def embedding_payload():
    return EmbeddingPayload(nugget_id="n-1", content="What is TCP?", organization_id="org-1")


async def get_entry(db, entry_id):
    async with db.session_scope() as session:
        return await session.get(QueueEntry, entry_id)


def make_pool(db, handler):
    return WorkerPool(db, {JobKind.EMBEDDING: handler}, concurrency=1, poll_interval=0.01, queues=[QueueName.EMBEDDING])


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_success_completes_entry(self, db, orchestrator):
        handler = FakeHandler()
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        processed = await make_pool(db, handler).drain()

        assert processed == 1
        payload, attempt = handler.calls[0]
        assert isinstance(payload, EmbeddingPayload)
        assert attempt == 1
        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "completed"
        assert entry.result == {"nugget_id": "n-1"}

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, db, orchestrator):
        handler = FakeHandler(failures=2)
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        await make_pool(db, handler).drain()

        assert [attempt for _, attempt in handler.calls] == [1, 2, 3]
        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "completed"
        assert entry.attempts == 3
        assert handler.failed == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_permanently(self, db, orchestrator):
        handler = FakeHandler(failures=10)
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        pool = make_pool(db, handler)

        await pool.drain()

        assert len(handler.calls) == 3
        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "failed"
        assert entry.last_error == "provider unavailable"
        assert len(handler.failed) == 1
        assert pool.stats.retried == 2
        assert pool.stats.failed == 1

        # Never retried automatically afterwards
        assert await pool.drain() == 0

    @pytest.mark.asyncio
    async def test_validation_error_is_not_retried(self, db, orchestrator):
        handler = FakeHandler(failures=10, error=ValidationError("bad content"))
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        await make_pool(db, handler).drain()

        assert len(handler.calls) == 1
        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "failed"
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_missing_handler_fails_entry(self, db, orchestrator):
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        pool = WorkerPool(db, {}, queues=[QueueName.EMBEDDING])

        await pool.drain()

        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "failed"
        assert "No handler registered" in entry.last_error

    @pytest.mark.asyncio
    async def test_start_and_stop(self, db, orchestrator):
        handler = FakeHandler()
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        pool = make_pool(db, handler)

        pool.start()
        for _ in range(100):
            if (await get_entry(db, handle.entry_id)).status == "completed":
                break
            await asyncio.sleep(0.02)
        await pool.stop()

        assert pool.stats.is_running is False
        assert (await get_entry(db, handle.entry_id)).status == "completed"


class TestQueueManager:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, db, orchestrator):
        await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        async with db.session_scope() as session:
            first = await QueueManager(session).claim(QueueName.EMBEDDING.value)
        async with db.session_scope() as session:
            second = await QueueManager(session).claim(QueueName.EMBEDDING.value)

        assert first is not None
        assert first.attempts == 1
        assert second is None

    @pytest.mark.asyncio
    async def test_expired_lease_is_redelivered(self, db, orchestrator):
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        async with db.session_scope() as session:
            first = await QueueManager(session).claim(QueueName.EMBEDDING.value, lease_seconds=-1)
        async with db.session_scope() as session:
            again = await QueueManager(session).claim(QueueName.EMBEDDING.value)

        assert first.id == handle.entry_id
        assert again.id == handle.entry_id
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_expired_final_lease_is_failed(self, db):
        from nuggets.jobs.orchestrator import JobOrchestrator
        from nuggets.jobs.policy import RetryPolicy

        orchestrator = JobOrchestrator(db, RetryPolicy(max_attempts=2, backoff_seconds=0))
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        for _ in range(2):
            async with db.session_scope() as session:
                await QueueManager(session).claim(QueueName.EMBEDDING.value, lease_seconds=-1)

        async with db.session_scope() as session:
            manager = QueueManager(session)
            again = await manager.claim(QueueName.EMBEDDING.value)
            failed = await manager.fail_expired_leases(QueueName.EMBEDDING.value)

        assert again is None
        assert [job.id for job in failed] == [handle.entry_id]
        entry = await get_entry(db, handle.entry_id)
        assert entry.status == "failed"
        assert entry.attempts == 2
        assert entry.last_error == "Lease expired after final attempt"

    @pytest.mark.asyncio
    async def test_worker_runs_failure_hook_for_expired_lease(self, db):
        from nuggets.jobs.orchestrator import JobOrchestrator
        from nuggets.jobs.policy import RetryPolicy

        orchestrator = JobOrchestrator(db, RetryPolicy(max_attempts=1, backoff_seconds=0))
        handle = await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        async with db.session_scope() as session:
            await QueueManager(session).claim(QueueName.EMBEDDING.value, lease_seconds=-1)
        handler = FakeHandler()
        pool = make_pool(db, handler)

        assert await pool.run_once(QueueName.EMBEDDING) is False
        assert handler.calls == []
        assert len(handler.failed) == 1
        assert str(handler.failed[0][1]) == "Lease expired after final attempt"
        assert pool.stats.failed == 1
        assert (await get_entry(db, handle.entry_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_backoff_delays_redelivery(self, db):
        from nuggets.jobs.orchestrator import JobOrchestrator
        from nuggets.jobs.policy import RetryPolicy

        orchestrator = JobOrchestrator(db, RetryPolicy(max_attempts=3, backoff_seconds=60))
        await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        async with db.session_scope() as session:
            job = await QueueManager(session).claim(QueueName.EMBEDDING.value)
        async with db.session_scope() as session:
            requeued = await QueueManager(session).mark_failed(job.id, "timeout")
        async with db.session_scope() as session:
            claimed = await QueueManager(session).claim(QueueName.EMBEDDING.value)

        assert requeued is True
        assert claimed is None

    @pytest.mark.asyncio
    async def test_queue_stats(self, db, orchestrator):
        await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())
        await orchestrator.enqueue(JobKind.EMBEDDING, embedding_payload())

        async with db.session_scope() as session:
            await QueueManager(session).claim(QueueName.EMBEDDING.value)
        async with db.session_scope() as session:
            stats = await QueueManager(session).get_queue_stats()

        assert stats == {"embedding": {"pending": 1, "processing": 1}}

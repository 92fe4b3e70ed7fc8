"""
Job orchestrator.

Owns the job kinds, their queues and the ingestion job lifecycle:

    pending -> processing -> completed | failed

Administrative operations (cancel, retry, delete) are guarded by the current
status and use conditional updates so a job claimed by a worker can never be
cancelled underneath it.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nuggets.db.database import Database
from nuggets.db.models import IngestionJob, JobStatus
from nuggets.db.models.base import utcnow
from nuggets.exceptions import NotFoundError, PreconditionError
from nuggets.jobs.payloads import IngestionPayload, JobKind, parse_kind, parse_payload, queue_for
from nuggets.jobs.policy import RetryPolicy
from nuggets.jobs.queue_manager import QueueManager

CANCEL_REASON = "Cancelled by admin"


@dataclass
class JobHandle:
    """Reference to an enqueued job."""

    entry_id: str
    kind: JobKind
    queue: str
    job_id: str | None = None  # IngestionJob id for ingestion kinds


class JobOrchestrator:
    """Enqueue jobs and manage ingestion job state."""

    def __init__(self, db: Database, policy: RetryPolicy | None = None):
        self.db = db
        self.policy = policy or RetryPolicy()

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncGenerator[AsyncSession, None]:
        # Join the caller's transaction when one is supplied
        if session is not None:
            yield session
            return
        async with self.db.session_scope() as own:
            yield own

    # ========================================
    # Enqueue
    # ========================================

    async def enqueue(
        self,
        kind: JobKind | str,
        payload: BaseModel | dict[str, Any],
        session: AsyncSession | None = None,
    ) -> JobHandle:
        """
        Validate and enqueue a job.

        Ingestion jobs also create exactly one IngestionJob row in the same
        transaction; its id travels in the payload.

        Raises:
            ValidationError: unknown kind or malformed payload.
        """
        job_kind = parse_kind(kind)
        model = parse_payload(job_kind, payload)
        queue = queue_for(job_kind).value

        async with self._scope(session) as s:
            job_id = None
            if isinstance(model, IngestionPayload) and model.job_id is None:
                job = IngestionJob(
                    type=model.type,
                    source=model.source,
                    organization_id=model.organization_id,
                    metadata_=model.metadata.model_dump(exclude_none=True) if model.metadata else {},
                    status=JobStatus.PENDING,
                )
                s.add(job)
                await s.flush()
                model = model.model_copy(update={"job_id": job.id})
                job_id = job.id
            elif isinstance(model, IngestionPayload):
                job_id = model.job_id

            entry_id = await QueueManager(s).enqueue(
                queue, job_kind.value, model.model_dump(mode="json"), policy=self.policy
            )

        logger.info("Enqueued {} job {} on queue {}", job_kind.value, job_id or entry_id, queue)
        return JobHandle(entry_id=entry_id, kind=job_kind, queue=queue, job_id=job_id)

    # ========================================
    # Administrative operations
    # ========================================

    async def cancel(self, job_id: str) -> IngestionJob:
        """
        Cancel a pending ingestion job.

        The queued entry stays; its handler observes the terminal status and
        does nothing.
        """
        async with self.db.session_scope() as session:
            now = utcnow()
            result = await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.PENDING)
                .values(status=JobStatus.FAILED, error_message=CANCEL_REASON, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            job = await session.get(IngestionJob, job_id, populate_existing=True)
            if job is None:
                raise NotFoundError("IngestionJob", job_id)
            if result.rowcount != 1:
                raise PreconditionError("Only pending jobs can be cancelled")

        logger.info("Cancelled ingestion job {}", job_id)
        return job

    async def retry(self, job_id: str) -> JobHandle:
        """Reset a failed job to pending and enqueue a fresh delivery at attempt 1."""
        async with self.db.session_scope() as session:
            job = await session.get(IngestionJob, job_id)
            if job is None:
                raise NotFoundError("IngestionJob", job_id)
            if job.status != JobStatus.FAILED:
                raise PreconditionError("Only failed jobs can be retried")

            job.status = JobStatus.PENDING
            job.error_message = None
            job.started_at = None
            job.completed_at = None
            job.nugget_count = 0
            payload = IngestionPayload(
                type=job.type,
                source=job.source,
                organization_id=job.organization_id,
                metadata=job.metadata_ or None,
                job_id=job.id,
            )
            handle = await self.enqueue(JobKind.INGESTION, payload, session=session)

        logger.info("Retrying ingestion job {}", job_id)
        return handle

    async def delete(self, job_id: str) -> None:
        async with self.db.session_scope() as session:
            job = await session.get(IngestionJob, job_id)
            if job is None:
                raise NotFoundError("IngestionJob", job_id)
            if job.status not in JobStatus.TERMINAL:
                raise PreconditionError("Cannot delete pending or processing jobs")
            await session.execute(delete(IngestionJob).where(IngestionJob.id == job_id))
        logger.info("Deleted ingestion job {}", job_id)

    async def get_job(self, job_id: str) -> IngestionJob:
        async with self.db.session_scope() as session:
            job = await session.get(IngestionJob, job_id)
            if job is None:
                raise NotFoundError("IngestionJob", job_id)
            return job

    async def list_jobs(
        self,
        organization_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[IngestionJob]:
        """List ingestion jobs, newest first."""
        query = select(IngestionJob).order_by(IngestionJob.created_at.desc()).limit(limit)
        if organization_id:
            query = query.where(IngestionJob.organization_id == organization_id)
        if status:
            query = query.where(IngestionJob.status == status)
        async with self.db.session_scope() as session:
            return list((await session.execute(query)).scalars().all())

    # ========================================
    # Ingestion lifecycle (used by the ingestion handler)
    # ========================================

    async def begin_ingestion(self, job_id: str) -> bool:
        """
        Move a job from pending to processing before any work starts.

        Returns:
            True if the handler should proceed (job claimed now, or already
            processing on a redelivery/retry), False if the job is terminal.
        """
        async with self.db.session_scope() as session:
            result = await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.PENDING)
                .values(status=JobStatus.PROCESSING, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            job = await session.get(IngestionJob, job_id, populate_existing=True)
            if job is None:
                raise NotFoundError("IngestionJob", job_id)
            if job.status == JobStatus.PROCESSING:
                logger.info("Ingestion job {} already processing, resuming", job_id)
                return True
            logger.info("Ingestion job {} is {}, skipping", job_id, job.status)
            return False

    async def finish_ingestion(self, job_id: str, nugget_count: int) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.PROCESSING)
                .values(status=JobStatus.COMPLETED, nugget_count=nugget_count, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.info("Ingestion job {} completed with {} nuggets", job_id, nugget_count)

    async def fail_ingestion(self, job_id: str, error_message: str) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]))
                .values(status=JobStatus.FAILED, error_message=error_message, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.error("Ingestion job {} failed: {}", job_id, error_message)

"""Database-backed queue manager with lease-based claiming and retry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nuggets.db.models import QueueEntry
from nuggets.db.models.base import utcnow
from nuggets.jobs.policy import RetryPolicy

LEASE_EXPIRED_ERROR = "Lease expired after final attempt"


@dataclass
class QueuedJob:
    """Snapshot of a claimed queue entry."""

    id: str
    queue: str
    kind: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    backoff_seconds: float
    created_at: datetime
    started_at: datetime | None
    last_error: str | None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


class QueueManager:
    """Manage the durable job queues."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(
        self,
        queue: str,
        kind: str,
        payload: Mapping[str, Any],
        policy: RetryPolicy | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """
        Add a job to a queue.

        Returns:
            Queue entry ID
        """
        policy = policy or RetryPolicy()
        entry = QueueEntry(
            queue=queue,
            kind=kind,
            payload=dict(payload),
            status="pending",
            attempts=0,
            max_attempts=policy.max_attempts,
            backoff_seconds=policy.backoff_seconds,
            available_at=utcnow() + timedelta(seconds=delay_seconds),
        )
        self.session.add(entry)
        await self.session.flush()
        logger.debug("Enqueued {} job on {}: entry_id={}", kind, queue, entry.id)
        return entry.id

    async def claim(self, queue: str, lease_seconds: float = 300.0, scan: int = 10) -> QueuedJob | None:
        """
        Claim the next available entry on a queue.

        An entry is available when it is pending and its backoff has elapsed,
        or when it is processing, its lease expired and it has attempts left
        (redelivery). Expired entries without attempts left are handled by
        ``fail_expired_leases``.
        The conditional update guarantees a single winner per entry.
        """
        now = utcnow()
        available = and_(
            QueueEntry.queue == queue,
            or_(
                and_(QueueEntry.status == "pending", QueueEntry.available_at <= now),
                and_(
                    QueueEntry.status == "processing",
                    QueueEntry.locked_until < now,
                    QueueEntry.attempts < QueueEntry.max_attempts,
                ),
            ),
        )
        candidates = (
            await self.session.execute(
                select(QueueEntry.id)
                .where(available)
                .order_by(QueueEntry.available_at, QueueEntry.created_at)
                .limit(scan)
            )
        ).scalars().all()

        for entry_id in candidates:
            result = await self.session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id, available)
                .values(
                    status="processing",
                    attempts=QueueEntry.attempts + 1,
                    locked_until=now + timedelta(seconds=lease_seconds),
                    started_at=func.coalesce(QueueEntry.started_at, now),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            entry = await self.session.get(QueueEntry, entry_id, populate_existing=True)
            logger.debug("Claimed {} entry {} (attempt {}/{})", queue, entry_id, entry.attempts, entry.max_attempts)
            return self._to_queued_job(entry)
        return None

    async def fail_expired_leases(self, queue: str) -> list[QueuedJob]:
        """
        Permanently fail entries whose lease expired on their final attempt.

        Returns:
            The failed entries, so their handlers can run failure hooks.
        """
        now = utcnow()
        expired = and_(
            QueueEntry.queue == queue,
            QueueEntry.status == "processing",
            QueueEntry.locked_until < now,
            QueueEntry.attempts >= QueueEntry.max_attempts,
        )
        candidates = (await self.session.execute(select(QueueEntry.id).where(expired))).scalars().all()

        failed = []
        for entry_id in candidates:
            result = await self.session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id, expired)
                .values(
                    status="failed",
                    last_error=LEASE_EXPIRED_ERROR,
                    locked_until=None,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            entry = await self.session.get(QueueEntry, entry_id, populate_existing=True)
            logger.error(
                "Queue entry {} ({}) failed permanently: lease expired on attempt {}/{}",
                entry_id,
                entry.kind,
                entry.attempts,
                entry.max_attempts,
            )
            failed.append(self._to_queued_job(entry))
        return failed

    async def mark_complete(self, entry_id: str, result: Mapping[str, Any] | None = None) -> None:
        """Mark entry as complete with result."""
        await self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .values(
                status="completed",
                result=dict(result) if result is not None else None,
                locked_until=None,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.debug("Marked queue entry {} as completed", entry_id)

    async def mark_failed(self, entry_id: str, error_message: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the entry was re-queued with backoff, False if permanently failed.
        """
        entry = await self.session.get(QueueEntry, entry_id, populate_existing=True)
        if entry is None:
            logger.warning("Queue entry {} not found for failure update", entry_id)
            return False

        entry.last_error = error_message
        entry.locked_until = None
        policy = RetryPolicy(max_attempts=entry.max_attempts, backoff_seconds=entry.backoff_seconds)
        if retryable and policy.should_retry(entry.attempts):
            delay = policy.delay_for(entry.attempts)
            entry.status = "pending"
            entry.available_at = utcnow() + timedelta(seconds=delay)
            logger.warning(
                "Queue entry {} failed (attempt {}/{}), retrying in {}s: {}",
                entry_id,
                entry.attempts,
                entry.max_attempts,
                delay,
                error_message,
            )
            return True

        entry.status = "failed"
        entry.completed_at = utcnow()
        logger.error(
            "Queue entry {} ({}) failed permanently after {} attempts: {}",
            entry_id,
            entry.kind,
            entry.attempts,
            error_message,
        )
        return False

    async def get_queue_stats(self) -> dict[str, dict[str, int]]:
        """Count entries per queue and status."""
        rows = await self.session.execute(
            select(QueueEntry.queue, QueueEntry.status, func.count()).group_by(QueueEntry.queue, QueueEntry.status)
        )
        stats: dict[str, dict[str, int]] = {}
        for queue, status, count in rows.all():
            stats.setdefault(queue, {})[status] = count
        return stats

    def _to_queued_job(self, entry: QueueEntry) -> QueuedJob:
        return QueuedJob(
            id=entry.id,
            queue=entry.queue,
            kind=entry.kind,
            payload=dict(entry.payload),
            status=entry.status,
            attempts=entry.attempts,
            max_attempts=entry.max_attempts,
            backoff_seconds=entry.backoff_seconds,
            created_at=entry.created_at,
            started_at=entry.started_at,
            last_error=entry.last_error,
        )

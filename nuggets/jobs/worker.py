"""
Queue worker pool.

Runs ``concurrency`` asyncio worker tasks per queue. Each task claims one
entry at a time, dispatches it to the handler registered for its kind and
records the outcome through the retry policy.

Usage:
    pool = WorkerPool(db, handlers, concurrency=5)
    pool.start()
    # ... service runs ...
    await pool.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel

from nuggets.db.database import Database
from nuggets.exceptions import NON_RETRYABLE_ERRORS, TransientError, ValidationError
from nuggets.jobs.payloads import JobKind, QueueName, parse_payload
from nuggets.jobs.queue_manager import LEASE_EXPIRED_ERROR, QueueManager, QueuedJob


@dataclass
class JobContext:
    """Delivery details passed to handlers alongside the payload."""

    entry_id: str
    kind: JobKind
    queue: str
    attempt: int
    max_attempts: int

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class JobHandler(Protocol):
    async def handle(self, payload: Any, context: JobContext) -> dict[str, Any] | None: ...

    async def on_failure(self, payload: Any, error: Exception) -> None: ...


@dataclass
class WorkerStats:
    """Counters for a running pool."""

    is_running: bool = False
    processed: int = 0
    failed: int = 0
    retried: int = 0


class WorkerPool:
    """Per-queue asyncio worker tasks."""

    def __init__(
        self,
        db: Database,
        handlers: Mapping[JobKind, JobHandler],
        concurrency: int = 5,
        poll_interval: float = 1.0,
        lease_seconds: float = 300.0,
        queues: Iterable[QueueName | str] | None = None,
    ):
        self.db = db
        self.handlers = dict(handlers)
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.queues = [QueueName(q).value for q in (queues or list(QueueName))]
        self.stats = WorkerStats()
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    # ========================================
    # Lifecycle
    # ========================================

    def start(self) -> None:
        if self.stats.is_running:
            logger.warning("Worker pool already running")
            return
        self._stop_event.clear()
        for queue in self.queues:
            for index in range(self.concurrency):
                task = asyncio.create_task(self._worker_loop(queue, index), name=f"worker-{queue}-{index}")
                self._tasks.append(task)
        self.stats.is_running = True
        logger.info(
            "Worker pool started: {} queues x {} workers (poll: {}s)",
            len(self.queues),
            self.concurrency,
            self.poll_interval,
        )

    async def stop(self) -> None:
        """Stop workers after their current job."""
        if not self.stats.is_running:
            return
        logger.info("Stopping worker pool...")
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.stats.is_running = False
        logger.info(
            "Worker pool stopped (processed={}, failed={}, retried={})",
            self.stats.processed,
            self.stats.failed,
            self.stats.retried,
        )

    async def _worker_loop(self, queue: str, index: int) -> None:
        while not self._stop_event.is_set():
            try:
                worked = await self.run_once(queue)
            except Exception:  # Intentionally broad - keep the worker alive on infrastructure errors
                logger.exception("Worker {}-{} failed to process queue", queue, index)
                worked = False
            if not worked:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    # ========================================
    # Processing
    # ========================================

    async def run_once(self, queue: QueueName | str) -> bool:
        """
        Claim and process a single entry.

        Entries whose lease expired on their final attempt are failed first
        and their handlers' failure hooks run.

        Returns:
            True if an entry was processed (successfully or not), False if
            nothing was available.
        """
        name = QueueName(queue).value
        async with self.db.session_scope() as session:
            manager = QueueManager(session)
            expired = await manager.fail_expired_leases(name)
            job = await manager.claim(name, lease_seconds=self.lease_seconds)
        for lost in expired:
            self.stats.failed += 1
            await self._notify_failure(lost, TransientError(LEASE_EXPIRED_ERROR))
        if job is None:
            return False
        await self._process(job)
        return True

    async def drain(self, queues: Iterable[QueueName | str] | None = None, max_jobs: int = 1000) -> int:
        """Process entries until no queue has available work. Returns the count processed."""
        names = [QueueName(q).value for q in (queues or self.queues)]
        processed = 0
        while processed < max_jobs:
            progressed = False
            for name in names:
                while processed < max_jobs and await self.run_once(name):
                    processed += 1
                    progressed = True
            if not progressed:
                break
        return processed

    async def _process(self, job: QueuedJob) -> None:
        kind = JobKind(job.kind)
        context = JobContext(
            entry_id=job.id,
            kind=kind,
            queue=job.queue,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        handler = self.handlers.get(kind)
        payload: BaseModel | None = None
        try:
            if handler is None:
                raise ValidationError(f"No handler registered for job kind {kind.value}")
            payload = parse_payload(kind, job.payload)
            result = await handler.handle(payload, context)
        except Exception as e:  # Intentionally broad - every handler failure goes through the retry policy
            retryable = not isinstance(e, NON_RETRYABLE_ERRORS)
            message = str(e) or e.__class__.__name__
            async with self.db.session_scope() as session:
                requeued = await QueueManager(session).mark_failed(job.id, message, retryable=retryable)
            if requeued:
                self.stats.retried += 1
                return
            self.stats.failed += 1
            if handler is not None and payload is not None:
                await handler.on_failure(payload, e)
            return

        async with self.db.session_scope() as session:
            await QueueManager(session).mark_complete(job.id, result)
        self.stats.processed += 1
        logger.debug("Processed {} entry {} (attempt {})", kind.value, job.id, job.attempts)

    async def _notify_failure(self, job: QueuedJob, error: Exception) -> None:
        handler = self.handlers.get(JobKind(job.kind))
        if handler is None:
            return
        try:
            payload = parse_payload(job.kind, job.payload)
        except ValidationError as e:
            logger.error("Cannot run failure hook for entry {}: {}", job.id, e)
            return
        await handler.on_failure(payload, error)

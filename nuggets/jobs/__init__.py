"""
Durable job queue: payload validation, retry policy, orchestration and workers.
"""

from nuggets.jobs.orchestrator import JobHandle, JobOrchestrator
from nuggets.jobs.payloads import JobKind, QueueName, parse_payload, queue_for
from nuggets.jobs.policy import RetryPolicy
from nuggets.jobs.worker import JobContext, WorkerPool

__all__ = [
    "JobContext",
    "JobHandle",
    "JobKind",
    "JobOrchestrator",
    "QueueName",
    "RetryPolicy",
    "WorkerPool",
    "parse_payload",
    "queue_for",
]

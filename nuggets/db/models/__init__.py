# SQLAlchemy models
from .base import Base
from .content import (
    IngestionJob,
    JobStatus,
    MonitoredURL,
    Nugget,
    NuggetStatus,
    WatchedFolder,
)
from .learning import (
    Learner,
    LearningSession,
    ProgressRecord,
    SessionNode,
    SessionStatus,
)
from .narrative import NarrativeNode
from .queue import QueueEntry

__all__ = [
    "Base",
    "IngestionJob",
    "JobStatus",
    "Learner",
    "LearningSession",
    "MonitoredURL",
    "NarrativeNode",
    "Nugget",
    "NuggetStatus",
    "ProgressRecord",
    "QueueEntry",
    "SessionNode",
    "SessionStatus",
    "WatchedFolder",
]

"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
Each test that needs a database gets its own file-backed SQLite database.
"""
import hashlib
import re

import numpy as np
import pytest
import pytest_asyncio

from nuggets.config import Settings
from nuggets.db.database import Database
from nuggets.jobs.orchestrator import JobOrchestrator
from nuggets.jobs.policy import RetryPolicy


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require PostgreSQL)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


class FakeEmbeddingProvider:
    """Deterministic bag-of-words embeddings (stable across processes)."""

    def __init__(self, dimension: int = 16, model_name: str = "fake-bow"):
        self.dimension = dimension
        self.model_name = model_name
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in re.findall(r"[a-z]+", text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector.tolist()


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's .env."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        embedding_dimension=16,
        storage_path=str(tmp_path / "storage"),
        job_backoff_seconds=0,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Fresh database with all tables created."""
    database = Database(settings=settings)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def policy():
    """Three attempts without backoff delay so tests can drain retries immediately."""
    return RetryPolicy(max_attempts=3, backoff_seconds=0)


@pytest.fixture
def orchestrator(db, policy):
    return JobOrchestrator(db, policy)


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()

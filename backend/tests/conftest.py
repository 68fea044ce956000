"""Shared fixtures: a throwaway SQLite database per test and fast job services."""
import asyncio
import os
import tempfile
from datetime import timedelta
from pathlib import Path

# Must be set before anything imports taxqueue.config
_DB_DIR = Path(tempfile.mkdtemp(prefix="taxqueue-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'app.db'}"
os.environ["JOB_STEP_DELAY"] = "0"
os.environ["JOB_POLL_INTERVAL"] = "0.05"
os.environ["JOB_RETRY_POLICY"] = "fixed"
os.environ["JOB_RETRY_BASE_DELAY_MS"] = "10"
os.environ["RATE_LIMIT_MAX_REQUESTS"] = "10000"
os.environ["RATE_LIMIT_JOB_MAX"] = "10000"
os.environ["RATE_LIMIT_BURST_MAX"] = "10000"
os.environ["RATE_LIMIT_SENSITIVE_MAX"] = "10000"

import pytest
import pytest_asyncio

from taxqueue.database import build_engine, build_session_factory
from taxqueue.models import Base, Job
from taxqueue.models.base import utcnow
from taxqueue.models.job import default_metadata, default_progress, new_job_id
from taxqueue.services.job_events import JobEventBroker
from taxqueue.services.job_handlers import default_registry
from taxqueue.services.job_service import JobService
from taxqueue.services.job_store import SqlJobStore
from taxqueue.services.retry_policy import RetryPolicies, RetryPolicy


class FakeClock:
    """Manually advanced clock for cache and rate limiter tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> SqlJobStore:
    return SqlJobStore(session_factory, retry_delay=0)


@pytest.fixture
def registry():
    return default_registry.copy()


@pytest.fixture
def broker() -> JobEventBroker:
    return JobEventBroker()


@pytest.fixture
def make_job():
    """Build an unsaved Job row with sensible defaults."""
    created = [utcnow()]

    def factory(**fields) -> Job:
        # Strictly increasing creation times keep ordering assertions deterministic
        created[0] += timedelta(milliseconds=1)
        metadata = default_metadata()
        metadata.update(fields.pop("metadata", {}))
        values = {
            "job_id": new_job_id(),
            "session_id": "session-1",
            "job_type": "other",
            "status": "pending",
            "priority": 5,
            "data": {"input": {}, "output": None, "parameters": {}, "context": {}},
            "progress": default_progress(),
            "job_metadata": metadata,
            "errors": [],
            "logs": [],
            "created_at": created[0],
            "updated_at": created[0],
        }
        values.update(fields)
        return Job(**values)

    return factory


@pytest_asyncio.fixture
async def make_service(store, registry, broker):
    """Factory for JobServices with instant retries; stops them all afterwards."""
    services: list[JobService] = []

    def factory(**overrides) -> JobService:
        options = {
            "registry": registry,
            "broker": broker,
            "policies": RetryPolicies(RetryPolicy("fixed", base_delay_ms=0)),
            "max_concurrent_jobs": 5,
            "poll_interval": 0.02,
            "step_delay": 0,
        }
        options.update(overrides)
        service = JobService(store, **options)
        services.append(service)
        return service

    yield factory
    for service in services:
        await service.stop()


@pytest.fixture
def wait_for_status(store):
    """Poll the store until a job reaches one of `statuses`."""

    async def wait(job_id: str, *statuses: str, timeout: float = 5.0) -> Job:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = await store.get_job(job_id)
            if job is not None and job.status in statuses:
                return job
            if loop.time() > deadline:
                current = job.status if job else "missing"
                raise AssertionError(f"Job {job_id} is '{current}', expected one of {statuses}")
            await asyncio.sleep(0.01)

    return wait

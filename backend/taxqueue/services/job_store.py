"""Job record store - the durable source of truth for job state.

The scheduler only talks to the `JobStore` protocol. `SqlJobStore` is the
SQLAlchemy implementation used by the app and the tests (Postgres in
production, SQLite locally).

Every write goes through `modify_job`, which can be guarded
by the status the caller expects to find. A guarded write that finds a
different status changes nothing and returns None, so a late handler result
can never overwrite a cancel (or vice versa).
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxqueue.models.base import utcnow
from taxqueue.models.job import Job
from taxqueue.services.errors import JobPersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Patch = dict[str, Any]
Mutator = Callable[[Job], Patch | None]


class JobStore(Protocol):
    async def create_job(self, job: Job) -> Job: ...
    async def get_job(self, job_id: str) -> Job | None: ...
    async def get_statuses(self, job_ids: Iterable[str]) -> dict[str, str]: ...
    async def modify_job(
        self, job_id: str, mutator: Mutator, expected_status: str | Iterable[str] | None = None
    ) -> Job | None: ...
    async def delete_job(self, job_id: str) -> bool: ...
    async def query_jobs_by_session(
        self,
        session_id: str,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]: ...
    async def list_by_status(self, status: str) -> list[Job]: ...
    async def count_by_status(self) -> dict[str, int]: ...
    async def count_by_type(self) -> dict[str, int]: ...
    async def average_processing_ms(self) -> int: ...
    async def delete_finished_before(self, cutoff: datetime, statuses: Iterable[str]) -> int: ...


def _status_set(expected: str | Iterable[str] | None) -> tuple[str, ...] | None:
    if expected is None:
        return None
    if isinstance(expected, str):
        return (expected,)
    return tuple(expected)


class SqlJobStore:
    """Persist jobs through an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        # Serialises read-modify-write within this process; Postgres row locks cover the rest.
        self._write_lock = asyncio.Lock()

    async def _run(self, op: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `fn` in a fresh session, retrying transient connectivity errors."""
        for attempt in range(self._max_attempts):
            try:
                async with self._session_factory() as db:
                    return await fn(db)
            except OperationalError as e:
                if attempt == self._max_attempts - 1:
                    logger.error(f"Job store {op} failed after {self._max_attempts} attempts: {e}")
                    raise JobPersistenceError(f"Job store {op} failed: {e}") from e
                logger.warning(
                    f"Job store {op} failed (attempt {attempt + 1}/{self._max_attempts}), retrying: {e}"
                )
                await asyncio.sleep(self._retry_delay)
            except SQLAlchemyError as e:
                logger.error(f"Job store {op} failed: {e}")
                raise JobPersistenceError(f"Job store {op} failed: {e}") from e
        raise JobPersistenceError(f"Job store {op} failed")

    # ── Writes ───────────────────────────────────────────────────

    async def create_job(self, job: Job) -> Job:
        async def _create(db: AsyncSession) -> Job:
            db.add(job)
            await db.commit()
            await db.refresh(job)
            return job

        return await self._run("create", _create)

    async def modify_job(
        self, job_id: str, mutator: Mutator, expected_status: str | Iterable[str] | None = None
    ) -> Job | None:
        """Read-modify-write: `mutator(job)` returns the patch to apply (or None to skip)."""
        statuses = _status_set(expected_status)

        async def _modify(db: AsyncSession) -> Job | None:
            result = await db.execute(
                select(Job).where(Job.job_id == job_id).with_for_update()
            )
            job = result.scalar_one_or_none()
            if job is None or (statuses is not None and job.status not in statuses):
                await db.rollback()
                return None
            patch = mutator(job)
            if patch is None:
                await db.rollback()
                return job
            for key, value in patch.items():
                setattr(job, key, value)
            job.updated_at = utcnow()
            await db.commit()
            return job

        async with self._write_lock:
            return await self._run("modify", _modify)

    async def delete_job(self, job_id: str) -> bool:
        async def _delete(db: AsyncSession) -> bool:
            result = await db.execute(delete(Job).where(Job.job_id == job_id))
            await db.commit()
            return result.rowcount > 0

        async with self._write_lock:
            return await self._run("delete", _delete)

    async def delete_finished_before(self, cutoff: datetime, statuses: Iterable[str]) -> int:
        statuses = tuple(statuses)

        async def _delete(db: AsyncSession) -> int:
            result = await db.execute(
                delete(Job).where(Job.status.in_(statuses), Job.updated_at < cutoff)
            )
            await db.commit()
            return result.rowcount or 0

        async with self._write_lock:
            return await self._run("cleanup", _delete)

    # ── Reads ────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job | None:
        async def _get(db: AsyncSession) -> Job | None:
            return await db.get(Job, job_id)

        return await self._run("get", _get)

    async def get_statuses(self, job_ids: Iterable[str]) -> dict[str, str]:
        ids = list(set(job_ids))
        if not ids:
            return {}

        async def _statuses(db: AsyncSession) -> dict[str, str]:
            result = await db.execute(select(Job.job_id, Job.status).where(Job.job_id.in_(ids)))
            return {row.job_id: row.status for row in result}

        return await self._run("get_statuses", _statuses)

    async def query_jobs_by_session(
        self,
        session_id: str,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        query = (
            select(Job)
            .where(Job.session_id == session_id)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if status:
            query = query.where(Job.status == status)
        if job_type:
            query = query.where(Job.job_type == job_type)

        async def _query(db: AsyncSession) -> list[Job]:
            result = await db.execute(query)
            return list(result.scalars().all())

        return await self._run("query_by_session", _query)

    async def list_by_status(self, status: str) -> list[Job]:
        """Jobs in `status`, highest priority first, oldest first within a priority."""
        query = (
            select(Job)
            .where(Job.status == status)
            .order_by(Job.priority.desc(), Job.created_at.asc())
        )

        async def _list(db: AsyncSession) -> list[Job]:
            result = await db.execute(query)
            return list(result.scalars().all())

        return await self._run("list_by_status", _list)

    async def count_by_status(self) -> dict[str, int]:
        async def _count(db: AsyncSession) -> dict[str, int]:
            result = await db.execute(select(Job.status, func.count()).group_by(Job.status))
            return {status: count for status, count in result.all()}

        return await self._run("count_by_status", _count)

    async def count_by_type(self) -> dict[str, int]:
        async def _count(db: AsyncSession) -> dict[str, int]:
            result = await db.execute(select(Job.job_type, func.count()).group_by(Job.job_type))
            return {job_type: count for job_type, count in result.all()}

        return await self._run("count_by_type", _count)

    async def average_processing_ms(self) -> int:
        """Mean started->completed time of completed jobs, in milliseconds."""
        query = select(Job.started_at, Job.completed_at).where(
            Job.status == "completed",
            Job.started_at.is_not(None),
            Job.completed_at.is_not(None),
        )

        async def _average(db: AsyncSession) -> int:
            rows = (await db.execute(query)).all()
            if not rows:
                return 0
            total = sum((done - started).total_seconds() for started, done in rows)
            return round(total * 1000 / len(rows))

        return await self._run("average_processing_ms", _average)

"""Tests for the SQLAlchemy job store."""
from datetime import timedelta

import pytest
from sqlalchemy import update

from taxqueue.models import Job
from taxqueue.models.base import ensure_utc, utcnow


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store, make_job) -> None:
        job = await store.create_job(make_job(job_type="tax_calculation", priority=10))

        loaded = await store.get_job(job.job_id)
        assert loaded is not None
        assert loaded.job_type == "tax_calculation"
        assert loaded.priority == 10
        assert loaded.job_metadata["maxRetries"] == 3
        assert await store.get_job("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_write_guarded_by_status(self, store, make_job) -> None:
        """A guarded write against the wrong status changes nothing."""
        job = await store.create_job(make_job())

        refused = await store.modify_job(job.job_id, lambda j: {"status": "completed"}, expected_status="processing")
        assert refused is None
        assert (await store.get_job(job.job_id)).status == "pending"

        updated = await store.modify_job(job.job_id, lambda j: {"status": "processing"}, expected_status="pending")
        assert updated.status == "processing"

    @pytest.mark.asyncio
    async def test_write_accepts_several_expected_statuses(self, store, make_job) -> None:
        job = await store.create_job(make_job(status="processing"))

        updated = await store.modify_job(
            job.job_id, lambda j: {"status": "cancelled"}, expected_status=("pending", "processing")
        )
        assert updated.status == "cancelled"

    @pytest.mark.asyncio
    async def test_modify_job(self, store, make_job) -> None:
        job = await store.create_job(make_job())

        modified = await store.modify_job(
            job.job_id, lambda j: {"logs": [*j.logs, {"level": "info", "message": "hi"}]}
        )
        assert modified.logs[-1]["message"] == "hi"
        assert (await store.get_job(job.job_id)).logs[-1]["message"] == "hi"

    @pytest.mark.asyncio
    async def test_modify_missing_or_guarded(self, store, make_job) -> None:
        job = await store.create_job(make_job(status="completed"))
        calls = []

        def mutator(j: Job) -> dict:
            calls.append(j.job_id)
            return {"status": "pending"}

        assert await store.modify_job("nope", mutator) is None
        assert await store.modify_job(job.job_id, mutator, expected_status="failed") is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_modify_stamps_updated_at(self, store, make_job) -> None:
        job = await store.create_job(make_job())
        before = ensure_utc((await store.get_job(job.job_id)).updated_at)

        await store.modify_job(job.job_id, lambda j: {"priority": 7})
        after = ensure_utc((await store.get_job(job.job_id)).updated_at)
        assert after >= before

    @pytest.mark.asyncio
    async def test_delete(self, store, make_job) -> None:
        job = await store.create_job(make_job())

        assert await store.delete_job(job.job_id) is True
        assert await store.delete_job(job.job_id) is False
        assert await store.get_job(job.job_id) is None

    @pytest.mark.asyncio
    async def test_delete_finished_before(self, store, make_job, session_factory) -> None:
        old_done = await store.create_job(make_job(status="completed"))
        old_failed = await store.create_job(make_job(status="failed"))
        recent_done = await store.create_job(make_job(status="completed"))
        old_pending = await store.create_job(make_job(status="pending"))

        async with session_factory() as db:
            await db.execute(
                update(Job)
                .where(Job.job_id.in_([old_done.job_id, old_failed.job_id, old_pending.job_id]))
                .values(updated_at=utcnow() - timedelta(days=30))
            )
            await db.commit()

        deleted = await store.delete_finished_before(utcnow() - timedelta(days=7), ["completed", "cancelled"])
        assert deleted == 1
        assert await store.get_job(old_done.job_id) is None
        for kept in (old_failed, recent_done, old_pending):
            assert await store.get_job(kept.job_id) is not None


class TestReads:
    @pytest.mark.asyncio
    async def test_query_by_session(self, store, make_job) -> None:
        first = await store.create_job(make_job(session_id="s1", job_type="backup"))
        second = await store.create_job(make_job(session_id="s1", job_type="cleanup", status="completed"))
        await store.create_job(make_job(session_id="s2"))

        jobs = await store.query_jobs_by_session("s1")
        assert [j.job_id for j in jobs] == [second.job_id, first.job_id]

        completed = await store.query_jobs_by_session("s1", status="completed")
        assert [j.job_id for j in completed] == [second.job_id]

        backups = await store.query_jobs_by_session("s1", job_type="backup")
        assert [j.job_id for j in backups] == [first.job_id]

        page = await store.query_jobs_by_session("s1", limit=1, offset=1)
        assert [j.job_id for j in page] == [first.job_id]

    @pytest.mark.asyncio
    async def test_list_by_status_in_dispatch_order(self, store, make_job) -> None:
        low = await store.create_job(make_job(priority=1))
        high_old = await store.create_job(make_job(priority=10))
        high_new = await store.create_job(make_job(priority=10))
        await store.create_job(make_job(priority=10, status="completed"))

        pending = await store.list_by_status("pending")
        assert [j.job_id for j in pending] == [high_old.job_id, high_new.job_id, low.job_id]

    @pytest.mark.asyncio
    async def test_counts(self, store, make_job) -> None:
        await store.create_job(make_job(job_type="backup"))
        await store.create_job(make_job(job_type="backup", status="failed"))
        await store.create_job(make_job(job_type="notification", status="failed"))

        assert await store.count_by_status() == {"pending": 1, "failed": 2}
        assert await store.count_by_type() == {"backup": 2, "notification": 1}

    @pytest.mark.asyncio
    async def test_get_statuses(self, store, make_job) -> None:
        a = await store.create_job(make_job(status="completed"))
        b = await store.create_job(make_job(status="cancelled"))

        statuses = await store.get_statuses([a.job_id, b.job_id, "missing"])
        assert statuses == {a.job_id: "completed", b.job_id: "cancelled"}
        assert await store.get_statuses([]) == {}

    @pytest.mark.asyncio
    async def test_average_processing_time(self, store, make_job) -> None:
        assert await store.average_processing_ms() == 0

        start = utcnow()
        await store.create_job(
            make_job(status="completed", started_at=start, completed_at=start + timedelta(seconds=2))
        )
        await store.create_job(
            make_job(status="completed", started_at=start, completed_at=start + timedelta(seconds=4))
        )
        await store.create_job(make_job(status="failed", started_at=start, completed_at=start + timedelta(hours=1)))

        assert await store.average_processing_ms() == 3000

"""Tests for the queue management API on JobService."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from taxqueue.models import Job
from taxqueue.models.base import utcnow
from taxqueue.routes.events import format_sse
from taxqueue.services.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    NonRetryableJobError,
    RetryExhaustedError,
    UnsupportedJobTypeError,
)
from taxqueue.services.job_handlers import JobContext
from taxqueue.services.job_service import CancelOutcome, resolve_priority


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestResolvePriority:
    @pytest.mark.parametrize(
        "value, expected",
        [(None, 5), ("low", 1), ("normal", 5), ("medium", 5), ("HIGH", 10), (7, 7), ("3", 3)],
    )
    def test_accepted_values(self, value, expected) -> None:
        assert resolve_priority(value) == expected

    @pytest.mark.parametrize("value", [0, 11, "urgent", True])
    def test_rejected_values(self, value) -> None:
        with pytest.raises(ValueError):
            resolve_priority(value)


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_defaults(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "tax_calculation", {"formData": {}})

        assert job.status == "pending"
        assert job.priority == 5
        assert job.data["input"] == {"formData": {}}
        assert job.data["output"] is None
        assert job.progress["percentage"] == 0
        assert job.job_metadata["retryCount"] == 0
        assert job.job_metadata["maxRetries"] == 3
        assert job.job_metadata["timeoutMs"] == 300000
        assert job.errors == []
        assert [entry["message"] for entry in job.logs] == ["Job created"]
        assert job.job_id in service.queue

    @pytest.mark.asyncio
    async def test_options(self, make_service) -> None:
        service = make_service()
        job = await service.create_job(
            "s1",
            "notification",
            {"recipient": "a@example.com"},
            priority="high",
            max_retries=1,
            timeout_ms=5000,
            tags=["email"],
            created_by="user-7",
        )

        assert job.priority == 10
        assert job.max_retries == 1
        assert job.job_metadata["timeoutMs"] == 5000
        assert job.job_metadata["tags"] == ["email"]
        assert job.job_metadata["createdBy"] == "user-7"

    @pytest.mark.asyncio
    async def test_unsupported_type_is_rejected(self, make_service, store) -> None:
        service = make_service()

        with pytest.raises(UnsupportedJobTypeError):
            await service.create_job("s1", "mine_bitcoin")
        assert await store.query_jobs_by_session("s1") == []

    @pytest.mark.asyncio
    async def test_negative_retries_rejected(self, make_service) -> None:
        service = make_service()
        with pytest.raises(ValueError):
            await service.create_job("s1", "other", max_retries=-1)

    @pytest.mark.asyncio
    async def test_duplicate_dependencies_collapsed(self, make_service) -> None:
        service = make_service()
        dep = await service.create_job("s1", "other")

        job = await service.create_job("s1", "other", dependencies=[dep.job_id, dep.job_id])
        assert job.dependencies == [dep.job_id]

    @pytest.mark.asyncio
    async def test_child_is_linked_to_parent(self, make_service) -> None:
        service = make_service()
        parent = await service.create_job("s1", "backup")
        first = await service.create_job("s1", "other", parent_job_id=parent.job_id)
        second = await service.create_job("s1", "other", parent_job_id=parent.job_id)

        reloaded = await service.get_job(parent.job_id)
        assert reloaded.job_metadata["childJobIds"] == [first.job_id, second.job_id]
        assert first.job_metadata["parentJobId"] == parent.job_id

    @pytest.mark.asyncio
    async def test_get_missing_job(self, make_service) -> None:
        service = make_service()
        with pytest.raises(JobNotFoundError):
            await service.get_job("missing")

    @pytest.mark.asyncio
    async def test_list_by_session(self, make_service) -> None:
        service = make_service()
        await service.create_job("s1", "backup")
        await service.create_job("s1", "cleanup")
        await service.create_job("s2", "backup")

        jobs = await service.list_jobs_by_session("s1")
        assert sorted(j.job_type for j in jobs) == ["backup", "cleanup"]
        assert [j.job_type for j in await service.list_jobs_by_session("s1", job_type="backup")] == ["backup"]


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        result = await service.cancel_job(job.job_id, reason="user request")
        assert result.outcome is CancelOutcome.CANCELLED
        assert result.accepted
        assert result.job.status == "cancelled"
        assert result.job.completed_at is not None
        assert job.job_id not in service.queue
        assert result.job.logs[-1]["data"] == {"reason": "user request"}

    @pytest.mark.asyncio
    async def test_cancel_completed_job_is_refused_and_repeatable(self, make_service, store, make_job) -> None:
        """Cancelling a finished job changes nothing, however often it is asked."""
        service = make_service()
        done = await store.create_job(make_job(status="completed", data={"output": {"ok": True}}))

        for _ in range(2):
            result = await service.cancel_job(done.job_id)
            assert result.outcome is CancelOutcome.NOT_CANCELLABLE
            assert not result.accepted

        after = await service.get_job(done.job_id)
        assert after.status == "completed"
        assert after.data == {"output": {"ok": True}}
        assert after.logs == []

    @pytest.mark.asyncio
    async def test_cancel_processing_sets_flag(self, make_service, store, make_job) -> None:
        service = make_service()
        running = await store.create_job(make_job(status="processing"))

        result = await service.cancel_job(running.job_id)
        assert result.outcome is CancelOutcome.CANCEL_REQUESTED
        assert result.job.status == "processing"
        assert result.job.job_metadata["cancelRequested"] is True

    @pytest.mark.asyncio
    async def test_cancel_missing_job(self, make_service) -> None:
        service = make_service()
        with pytest.raises(JobNotFoundError):
            await service.cancel_job("missing")


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_mark_completed_with_output(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        done = await service.update_status(job.job_id, "completed", output={"manual": True})
        assert done.status == "completed"
        assert done.data["output"] == {"manual": True}
        assert done.progress["percentage"] == 100
        assert job.job_id not in service.queue

    @pytest.mark.asyncio
    async def test_mark_failed_records_error(self, make_service, store, make_job) -> None:
        service = make_service()
        running = await store.create_job(make_job(status="processing"))

        failed = await service.update_status(running.job_id, "failed", error="operator abort")
        assert failed.status == "failed"
        assert failed.errors[-1]["message"] == "operator abort"
        assert failed.errors[-1]["retryable"] is False

    @pytest.mark.asyncio
    async def test_terminal_jobs_stay_terminal(self, make_service, store, make_job) -> None:
        service = make_service()
        failed = await store.create_job(make_job(status="failed"))

        with pytest.raises(InvalidTransitionError):
            await service.update_status(failed.job_id, "completed")
        assert (await service.get_job(failed.job_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_cannot_set_processing_by_hand(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        with pytest.raises(InvalidTransitionError):
            await service.update_status(job.job_id, "processing")

    @pytest.mark.asyncio
    async def test_cancelled_goes_through_cancel(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        cancelled = await service.update_status(job.job_id, "cancelled")
        assert cancelled.status == "cancelled"


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_never_goes_backwards(self, make_service, store, make_job) -> None:
        service = make_service()
        running = await store.create_job(make_job(status="processing", started_at=utcnow()))

        await service.update_progress(running.job_id, percentage=60, current_step="Calculating")
        job = await service.update_progress(running.job_id, percentage=40, current_step="Rechecking")

        assert job.progress["percentage"] == 60
        assert job.progress["currentStep"] == "Rechecking"

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self, make_service, store, make_job) -> None:
        service = make_service()
        running = await store.create_job(make_job(status="processing"))

        job = await service.update_progress(running.job_id, percentage=250, total_steps=4, completed_steps=4)
        assert job.progress["percentage"] == 100
        assert job.progress["totalSteps"] == 4

    @pytest.mark.asyncio
    async def test_progress_requires_processing(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        with pytest.raises(InvalidTransitionError):
            await service.update_progress(job.job_id, percentage=10)


class TestRetryJob:
    @pytest.mark.asyncio
    async def test_manual_retry(self, make_service, store, make_job) -> None:
        service = make_service()
        failed = await store.create_job(
            make_job(
                status="failed",
                completed_at=utcnow(),
                progress={"percentage": 40, "currentStep": "x", "totalSteps": 3,
                          "completedSteps": 1, "estimatedTimeRemaining": None},
                metadata={"retryCount": 1, "maxRetries": 3},
            )
        )

        retried = await service.retry_job(failed.job_id, priority="high")
        assert retried.status == "pending"
        assert retried.retry_count == 2
        assert retried.priority == 10
        assert retried.completed_at is None
        assert retried.progress["percentage"] == 0
        assert failed.job_id in service.queue

    @pytest.mark.asyncio
    async def test_retry_limit_reached(self, make_service, store, make_job) -> None:
        service = make_service()
        failed = await store.create_job(make_job(status="failed", metadata={"retryCount": 2, "maxRetries": 2}))

        with pytest.raises(RetryExhaustedError):
            await service.retry_job(failed.job_id)
        assert (await service.get_job(failed.job_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_only_failed_jobs_retry(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        with pytest.raises(InvalidTransitionError):
            await service.retry_job(job.job_id)

    @pytest.mark.asyncio
    async def test_retried_job_runs_again(self, make_service, registry, wait_for_status) -> None:
        calls = 0

        @registry.register("second_time_lucky")
        async def second_time_lucky(ctx: JobContext) -> dict:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise NonRetryableJobError("bad input")
            return {"calls": calls}

        service = make_service()
        await service.start()
        job = await service.create_job("s1", "second_time_lucky", max_retries=1)
        failed = await wait_for_status(job.job_id, "failed")
        assert failed.retry_count == 0

        await service.retry_job(job.job_id)
        done = await wait_for_status(job.job_id, "completed")
        assert done.data["output"] == {"calls": 2}
        assert done.retry_count == 1


class TestLogs:
    @pytest.mark.asyncio
    async def test_add_and_filter(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        entry = await service.add_log(job.job_id, "warn", "Slow upstream", {"ms": 900})
        await service.add_log(job.job_id, "error", "Upstream failed")

        assert entry["level"] == "warn"
        assert entry["data"] == {"ms": 900}
        warnings = await service.get_logs(job.job_id, level="warn")
        assert [e["message"] for e in warnings] == ["Slow upstream"]
        latest = await service.get_logs(job.job_id, limit=1)
        assert [e["message"] for e in latest] == ["Upstream failed"]
        assert len(await service.get_logs(job.job_id)) == 3

    @pytest.mark.asyncio
    async def test_logs_are_capped(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        for i in range(105):
            await service.add_log(job.job_id, "debug", f"line {i}")

        logs = await service.get_logs(job.job_id)
        assert len(logs) == 100
        assert logs[0]["message"] == "line 5"
        assert logs[-1]["message"] == "line 104"

    @pytest.mark.asyncio
    async def test_invalid_level(self, make_service) -> None:
        service = make_service()
        job = await service.create_job("s1", "other")

        with pytest.raises(ValueError):
            await service.add_log(job.job_id, "fatal", "nope")
        with pytest.raises(ValueError):
            await service.get_logs(job.job_id, level="fatal")

    @pytest.mark.asyncio
    async def test_log_on_missing_job(self, make_service) -> None:
        service = make_service()
        with pytest.raises(JobNotFoundError):
            await service.add_log("missing", "info", "hello")


class TestStatsAndMaintenance:
    @pytest.mark.asyncio
    async def test_queue_stats(self, make_service, store, make_job) -> None:
        service = make_service(max_concurrent_jobs=3)
        await service.create_job("s1", "backup")
        await service.create_job("s1", "backup", dependencies=["missing-dep"])
        await store.create_job(make_job(job_type="notification", status="failed"))

        stats = await service.get_queue_stats()
        assert stats["total"] == 3
        assert stats["pending"] == 2
        assert stats["failed"] == 1
        assert stats["processing"] == 0
        assert stats["byType"] == {"backup": 2, "notification": 1}
        assert stats["inMemoryQueue"] == 2
        assert stats["queue"] == {"queued": 2, "withDependencies": 1, "free": 1}
        assert stats["activeWorkers"] == 0
        assert stats["maxConcurrentJobs"] == 3

    @pytest.mark.asyncio
    async def test_cleanup_completed(self, make_service, store, make_job, session_factory) -> None:
        service = make_service()
        old_done = await store.create_job(make_job(status="completed"))
        old_cancelled = await store.create_job(make_job(status="cancelled"))
        old_failed = await store.create_job(make_job(status="failed"))
        fresh_done = await store.create_job(make_job(status="completed"))

        async with session_factory() as db:
            await db.execute(
                update(Job)
                .where(Job.job_id.in_([old_done.job_id, old_cancelled.job_id, old_failed.job_id]))
                .values(updated_at=utcnow() - timedelta(days=10))
            )
            await db.commit()

        assert await service.cleanup_completed(older_than_days=7) == 2
        assert await store.get_job(old_failed.job_id) is not None
        assert await store.get_job(fresh_done.job_id) is not None

        assert await service.cleanup_completed(older_than_days=7, include_failed=True) == 1
        assert await store.get_job(old_failed.job_id) is None

    @pytest.mark.asyncio
    async def test_cleanup_rejects_negative_age(self, make_service) -> None:
        service = make_service()
        with pytest.raises(ValueError):
            await service.cleanup_completed(older_than_days=-1)

    @pytest.mark.asyncio
    async def test_delete_pending_job(self, make_service, broker) -> None:
        service = make_service()
        sub = broker.subscribe("s1")
        job = await service.create_job("s1", "other")

        assert await service.delete_job(job.job_id) is True
        assert job.job_id not in service.queue
        with pytest.raises(JobNotFoundError):
            await service.get_job(job.job_id)
        assert [e.type for e in _drain(sub.queue)] == ["job.created", "job.cancelled", "job.deleted"]

    @pytest.mark.asyncio
    async def test_delete_missing_job(self, make_service) -> None:
        service = make_service()
        with pytest.raises(JobNotFoundError):
            await service.delete_job("missing")


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_are_filtered_by_session(self, make_service, broker) -> None:
        service = make_service()
        mine = broker.subscribe("s1")
        everything = broker.subscribe()

        job = await service.create_job("s1", "other")
        await service.create_job("s2", "other")
        await service.add_log(job.job_id, "info", "hello")

        mine_events = _drain(mine.queue)
        assert [e.type for e in mine_events] == ["job.created", "job.log"]
        assert all(e.session_id == "s1" for e in mine_events)
        assert len(_drain(everything.queue)) == 3

    @pytest.mark.asyncio
    async def test_full_buffer_drops_instead_of_failing(self, make_service, broker) -> None:
        service = make_service()
        sub = broker.subscribe("s1")
        for _ in range(sub.queue.maxsize):
            sub.queue.put_nowait(object())

        job = await service.create_job("s1", "other")
        assert job.status == "pending"

    @pytest.mark.asyncio
    async def test_lifecycle_events_of_a_run(self, make_service, broker, wait_for_status) -> None:
        service = make_service()
        sub = broker.subscribe("s1")
        await service.start()

        job = await service.create_job("s1", "other", {"operation": "noop"})
        await wait_for_status(job.job_id, "completed")
        await asyncio.sleep(0.05)

        types = [e.type for e in _drain(sub.queue)]
        assert types[0] == "job.created"
        assert "job.started" in types
        assert "job.progress" in types
        assert types[-1] == "job.completed"

    def test_unsubscribe(self, broker) -> None:
        sub = broker.subscribe("s1")
        assert broker.subscriber_count == 1
        broker.unsubscribe(sub.id)
        broker.unsubscribe(sub.id)
        assert broker.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_format_sse(self, make_service, broker) -> None:
        service = make_service()
        sub = broker.subscribe("s1")
        job = await service.create_job("s1", "other")

        event = sub.queue.get_nowait()
        frame = format_sse(event.type, event.to_dict())
        assert frame.startswith("event: job.created\ndata: {")
        assert f'"jobId": "{job.job_id}"' in frame
        assert frame.endswith("\n\n")

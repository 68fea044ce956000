"""Queue management API.

`JobService` is the one object the HTTP layer talks to. It owns the
priority queue, the worker and the ledger, so tests can build as many
isolated services as they like against their own store.

Every state change is a compare-and-set on the store: if a job moved on
between the read and the write, the write is refused and the caller gets a
typed error instead of a lost update.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxqueue.config import settings
from taxqueue.models.base import utcnow
from taxqueue.models.job import Job, default_metadata, default_progress, new_job_id
from taxqueue.services.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobPersistenceError,
    RetryExhaustedError,
    UnsupportedJobTypeError,
)
from taxqueue.services.job_events import JobEventBroker
from taxqueue.services.job_handlers import JobHandlerRegistry, default_registry
from taxqueue.services.job_ledger import (
    LOG_LEVELS,
    JobLedger,
    append_capped,
    error_entry,
    log_entry,
    merged_metadata,
)
from taxqueue.services.job_store import JobStore, SqlJobStore
from taxqueue.services.job_worker import JobWorker
from taxqueue.services.priority_queue import PriorityJobQueue
from taxqueue.services.retry_policy import RetryPolicies, policies_from_settings

logger = logging.getLogger(__name__)

PRIORITY_LEVELS = {"low": 1, "normal": 5, "medium": 5, "high": 10}
MIN_PRIORITY, MAX_PRIORITY = 1, 10
MANUAL_STATUSES = ("completed", "failed", "cancelled")
CANCEL_ATTEMPTS = 3


def resolve_priority(value: int | str | None) -> int:
    """Map 'low'/'normal'/'medium'/'high' or a number in 1..10 to a numeric priority."""
    if value is None:
        return PRIORITY_LEVELS["normal"]
    if isinstance(value, str):
        key = value.strip().lower()
        if key in PRIORITY_LEVELS:
            return PRIORITY_LEVELS[key]
        if not key.lstrip("-").isdigit():
            raise ValueError(f"Unknown priority: {value}")
        value = int(key)
    if isinstance(value, bool) or not MIN_PRIORITY <= int(value) <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
    return int(value)


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    NOT_CANCELLABLE = "not_cancellable"


@dataclass
class CancelResult:
    outcome: CancelOutcome
    job: Job

    @property
    def accepted(self) -> bool:
        return self.outcome is not CancelOutcome.NOT_CANCELLABLE


class JobService:
    def __init__(
        self,
        store: JobStore,
        registry: JobHandlerRegistry | None = None,
        broker: JobEventBroker | None = None,
        policies: RetryPolicies | None = None,
        max_concurrent_jobs: int = 5,
        poll_interval: float = 1.0,
        step_delay: float = 0.0,
        default_max_retries: int = 3,
        default_timeout_ms: int = 300000,
    ):
        self.store = store
        self.registry = registry or default_registry
        self.broker = broker or JobEventBroker()
        self.queue = PriorityJobQueue()
        self.ledger = JobLedger(store, self.broker)
        self.worker = JobWorker(
            self.ledger,
            self.queue,
            self.registry,
            policies or RetryPolicies(),
            max_concurrent_jobs=max_concurrent_jobs,
            poll_interval=poll_interval,
            step_delay=step_delay,
        )
        self.default_max_retries = default_max_retries
        self.default_timeout_ms = default_timeout_ms

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self, retention_days: int | None = None) -> None:
        """Recover orphaned work, rebuild the queue, optionally purge old jobs, start dispatching."""
        await self.worker.recover()
        if retention_days is not None:
            await self.cleanup_completed(retention_days)
        self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop()

    # ── Create / read ────────────────────────────────────────────

    async def create_job(
        self,
        session_id: str,
        job_type: str,
        input: dict | None = None,
        *,
        priority: int | str | None = None,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
        retry_delay_ms: int | None = None,
        dependencies: list[str] | None = None,
        parent_job_id: str | None = None,
        tags: list[str] | None = None,
        created_by: str = "system",
        parameters: dict | None = None,
        context: dict | None = None,
    ) -> Job:
        if job_type not in self.registry:
            raise UnsupportedJobTypeError(job_type)
        max_retries = self.default_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        if timeout_ms < 0:
            raise ValueError("timeout_ms must be non-negative")

        job_priority = resolve_priority(priority)
        job_id = new_job_id()
        deps = [dep for dep in dict.fromkeys(dependencies or []) if dep != job_id]
        metadata = default_metadata()
        metadata.update(
            createdBy=created_by,
            maxRetries=max_retries,
            timeoutMs=timeout_ms,
            retryDelayMs=retry_delay_ms,
            tags=list(tags or []),
            dependencies=deps,
            parentJobId=parent_job_id,
        )
        now = utcnow()
        job = Job(
            job_id=job_id,
            session_id=session_id,
            job_type=job_type,
            status="pending",
            priority=job_priority,
            data={
                "input": input or {},
                "output": None,
                "parameters": parameters or {},
                "context": context or {},
            },
            progress=default_progress(),
            job_metadata=metadata,
            errors=[],
            logs=[log_entry("info", "Job created", {"type": job_type, "priority": job_priority})],
            created_at=now,
            updated_at=now,
        )
        job = await self.store.create_job(job)

        if parent_job_id:
            # The job row is already committed; a failed link must not keep it out of the queue
            try:
                linked = await self.store.modify_job(
                    parent_job_id,
                    lambda parent: {
                        "job_metadata": merged_metadata(
                            parent,
                            childJobIds=[*(parent.job_metadata or {}).get("childJobIds", []), job_id],
                        )
                    },
                )
            except JobPersistenceError as e:
                logger.error(f"Failed to link job {job_id} to parent {parent_job_id}: {e}")
            else:
                if linked is None:
                    logger.warning(f"Parent job {parent_job_id} of {job_id} not found")

        logger.info(f"Created job {job_id} (type={job_type}, priority={job.priority}, session={session_id})")
        self.ledger.publish(job, "job.created")
        self.worker.admit(job)
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs_by_session(
        self,
        session_id: str,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        return await self.store.query_jobs_by_session(
            session_id, status=status, job_type=job_type, limit=limit, offset=offset
        )

    # ── State changes ────────────────────────────────────────────

    async def update_status(
        self,
        job_id: str,
        status: str,
        output: dict | None = None,
        error: str | None = None,
        error_code: str = "EXECUTION_ERROR",
    ) -> Job:
        """Force a job into a terminal status from outside the worker."""
        if status not in MANUAL_STATUSES:
            job = await self.get_job(job_id)
            raise InvalidTransitionError(job_id, job.status, status)

        if status == "cancelled":
            result = await self.cancel_job(job_id)
            if not result.accepted:
                raise InvalidTransitionError(job_id, result.job.status, status)
            return result.job

        now = utcnow()

        def patch(job: Job) -> dict:
            changes: dict[str, Any] = {
                "status": status,
                "completed_at": now,
                "scheduled_for": None,
            }
            if status == "completed":
                changes["progress"] = {**(job.progress or default_progress()), "percentage": 100}
                if output is not None:
                    changes["data"] = {**(job.data or {}), "output": output}
            else:
                changes["errors"] = [
                    *(job.errors or []),
                    error_entry(error_code, error or "Marked as failed", job.retry_count + 1, False),
                ]
            return changes

        job = await self.ledger.transition(
            job_id,
            ("pending", "processing"),
            patch,
            f"job.{status}",
            logs=[("info", f"Status manually set to {status}")],
        )
        if job is None:
            current = await self.get_job(job_id)
            raise InvalidTransitionError(job_id, current.status, status)

        # A handler still running for this job has nothing left to write.
        self.worker.discard(job_id)
        self.worker.request_cancel(job_id)
        logger.info(f"Job {job_id} manually marked {status}")
        return job

    async def update_progress(
        self,
        job_id: str,
        percentage: float | None = None,
        current_step: str | None = None,
        total_steps: int | None = None,
        completed_steps: int | None = None,
        estimated_time_remaining: int | None = None,
    ) -> Job:
        job = await self.ledger.record_progress(
            job_id,
            percentage=percentage,
            current_step=current_step,
            total_steps=total_steps,
            completed_steps=completed_steps,
            estimated_time_remaining=estimated_time_remaining,
        )
        if job is None:
            current = await self.get_job(job_id)
            raise InvalidTransitionError(
                job_id,
                current.status,
                "processing",
                message=f"Progress can only be reported while processing (job {job_id} is '{current.status}')",
            )
        return job

    async def cancel_job(self, job_id: str, reason: str | None = None) -> CancelResult:
        """Cancel a pending job, or ask a processing one to stop.

        Terminal jobs are left untouched and reported as not cancellable, so
        repeating the call is always safe.
        """
        for _ in range(CANCEL_ATTEMPTS):
            job = await self.get_job(job_id)
            if job.is_terminal:
                return CancelResult(CancelOutcome.NOT_CANCELLABLE, job)

            if job.status == "pending":
                now = utcnow()
                cancelled = await self.ledger.transition(
                    job_id,
                    "pending",
                    lambda job: {
                        "status": "cancelled",
                        "completed_at": now,
                        "scheduled_for": None,
                        "job_metadata": merged_metadata(job, cancelRequested=True),
                    },
                    "job.cancelled",
                    logs=[("info", "Job cancelled", {"reason": reason} if reason else None)],
                )
                if cancelled is not None:
                    self.worker.discard(job_id)
                    logger.info(f"Cancelled pending job {job_id}")
                    return CancelResult(CancelOutcome.CANCELLED, cancelled)
                continue

            requested = await self.ledger.transition(
                job_id,
                "processing",
                lambda job: {"job_metadata": merged_metadata(job, cancelRequested=True)},
                logs=[("info", "Cancellation requested", {"reason": reason} if reason else None)],
            )
            if requested is not None:
                if not self.worker.request_cancel(job_id):
                    logger.warning(f"Job {job_id} is processing but not owned by this worker")
                logger.info(f"Cancellation requested for job {job_id}")
                return CancelResult(CancelOutcome.CANCEL_REQUESTED, requested)

        job = await self.get_job(job_id)
        raise InvalidTransitionError(
            job_id, job.status, "cancelled", message=f"Job {job_id} kept changing state during cancel"
        )

    async def retry_job(
        self,
        job_id: str,
        priority: int | str | None = None,
        reset_progress: bool = True,
    ) -> Job:
        """Re-admit a failed job immediately, counting it against maxRetries."""
        job = await self.get_job(job_id)
        if job.status != "failed":
            raise InvalidTransitionError(
                job_id, job.status, "pending", message=f"Only failed jobs can be retried (job is '{job.status}')"
            )
        if job.retry_count >= job.max_retries:
            raise RetryExhaustedError(job_id, job.retry_count, job.max_retries)
        new_priority = resolve_priority(priority) if priority is not None else None

        def patch(job: Job) -> dict:
            retry_count = job.retry_count + 1
            changes: dict[str, Any] = {
                "status": "pending",
                "completed_at": None,
                "scheduled_for": None,
                "job_metadata": merged_metadata(
                    job, retryCount=retry_count, assignedWorker=None, cancelRequested=False
                ),
            }
            if new_priority is not None:
                changes["priority"] = new_priority
            if reset_progress:
                changes["progress"] = default_progress()
            return changes

        retried = await self.ledger.transition(
            job_id,
            "failed",
            patch,
            "job.retrying",
            logs=[("info", "Manual retry requested")],
            payload={"manual": True},
        )
        if retried is None:
            current = await self.get_job(job_id)
            raise InvalidTransitionError(job_id, current.status, "pending")

        logger.info(f"Job {job_id} manually retried ({retried.retry_count}/{retried.max_retries})")
        self.worker.admit(retried)
        return retried

    async def delete_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if not job.is_terminal:
            result = await self.cancel_job(job_id, reason="deleted")
            job = result.job
        self.worker.discard(job_id)
        deleted = await self.store.delete_job(job_id)
        if deleted:
            logger.info(f"Deleted job {job_id}")
            self.ledger.publish(job, "job.deleted")
        return deleted

    # ── Logs ─────────────────────────────────────────────────────

    async def add_log(self, job_id: str, level: str, message: str, data: dict | None = None) -> dict:
        entry = log_entry(level, message, data)
        job = await self.store.modify_job(job_id, lambda job: {"logs": append_capped(job.logs, [entry])})
        if job is None:
            raise JobNotFoundError(job_id)
        self.ledger.publish(job, "job.log", {"log": entry})
        return entry

    async def get_logs(self, job_id: str, level: str | None = None, limit: int | None = None) -> list[dict]:
        if level is not None and level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {level}")
        job = await self.get_job(job_id)
        logs = [entry for entry in (job.logs or []) if level is None or entry.get("level") == level]
        if limit is not None:
            logs = logs[-limit:] if limit > 0 else []
        return logs

    # ── Stats / maintenance ──────────────────────────────────────

    async def get_queue_stats(self) -> dict[str, Any]:
        by_status = await self.store.count_by_status()
        by_type = await self.store.count_by_type()
        average_ms = await self.store.average_processing_ms()
        stats: dict[str, Any] = {"total": sum(by_status.values())}
        for status in ("pending", "processing", "completed", "failed", "cancelled"):
            stats[status] = by_status.get(status, 0)
        stats.update(
            byType=by_type,
            inMemoryQueue=self.queue.size(),
            queue=self.queue.peek_by_status(),
            activeWorkers=self.worker.active_count,
            delayedRetries=self.worker.delayed_count,
            maxConcurrentJobs=self.worker.max_concurrent_jobs,
            averageProcessingTimeMs=average_ms,
        )
        return stats

    async def cleanup_completed(self, older_than_days: int = 7, include_failed: bool = False) -> int:
        """Delete finished jobs whose last update is older than `older_than_days`."""
        if older_than_days < 0:
            raise ValueError("older_than_days must be non-negative")
        statuses = ["completed", "cancelled"]
        if include_failed:
            statuses.append("failed")
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await self.store.delete_finished_before(cutoff, statuses)
        if deleted:
            logger.info(f"Cleaned up {deleted} job(s) older than {older_than_days} day(s)")
        return deleted


def create_job_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    broker: JobEventBroker | None = None,
) -> JobService:
    """Build the app's JobService from settings."""
    if session_factory is None:
        from taxqueue.database import async_session
        session_factory = async_session
    return JobService(
        SqlJobStore(session_factory),
        broker=broker,
        policies=policies_from_settings(),
        max_concurrent_jobs=settings.JOB_MAX_CONCURRENT,
        poll_interval=settings.JOB_POLL_INTERVAL,
        step_delay=settings.JOB_STEP_DELAY,
        default_max_retries=settings.JOB_DEFAULT_MAX_RETRIES,
        default_timeout_ms=settings.JOB_DEFAULT_TIMEOUT_MS,
    )

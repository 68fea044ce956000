"""Guarded job state changes plus the log/event bookkeeping that goes with them.

Both the worker and the management API write through a `JobLedger` so that
every transition is a compare-and-set against the expected status, appends
its log lines in the same write, and publishes its event afterwards.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from taxqueue.models.base import ensure_utc, utcnow
from taxqueue.models.job import Job, default_progress
from taxqueue.services.job_events import JobEvent, JobEventBroker
from taxqueue.services.job_store import JobStore

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warn", "error")
MAX_LOG_ENTRIES = 100

LogLine = tuple[str, str] | tuple[str, str, dict | None]
PatchSource = dict[str, Any] | Callable[[Job], dict[str, Any]]


def log_entry(level: str, message: str, data: dict | None = None) -> dict:
    if level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}")
    return {"level": level, "message": message, "timestamp": utcnow().isoformat(), "data": data}


def error_entry(
    code: str,
    message: str,
    attempt: int,
    retryable: bool = True,
    details: dict | None = None,
) -> dict:
    return {
        "code": code,
        "message": message,
        "timestamp": utcnow().isoformat(),
        "retryable": retryable,
        "attempt": attempt,
        "details": details,
    }


def append_capped(items: list | None, new_items: Iterable[dict], limit: int = MAX_LOG_ENTRIES) -> list:
    merged = [*(items or []), *new_items]
    return merged[-limit:]


def merged_metadata(job: Job, **changes: Any) -> dict:
    return {**(job.job_metadata or {}), **changes}


def elapsed_ms(start: datetime | None, end: datetime) -> int:
    start = ensure_utc(start)
    if start is None:
        return 0
    return max(0, round((end - start).total_seconds() * 1000))


def estimate_remaining_ms(attempt_started: datetime | None, percentage: float, now: datetime) -> int | None:
    """Linear extrapolation from the current attempt's elapsed time."""
    if attempt_started is None or percentage <= 0:
        return None
    spent = elapsed_ms(attempt_started, now)
    projected = spent / (percentage / 100)
    return max(0, round(projected - spent))


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JobLedger:
    """Store writes with logging and event publication attached."""

    def __init__(self, store: JobStore, broker: JobEventBroker | None = None):
        self.store = store
        self.broker = broker

    async def transition(
        self,
        job_id: str,
        expected: str | Iterable[str] | None,
        patch: PatchSource,
        event: str | None = None,
        logs: list[LogLine] | None = None,
        payload: dict | None = None,
    ) -> Job | None:
        """Apply `patch` if the job is still in `expected`; None when it is not."""
        def mutator(job: Job) -> dict[str, Any]:
            changes = patch(job) if callable(patch) else dict(patch)
            if logs:
                base_logs = changes.get("logs", job.logs)
                changes["logs"] = append_capped(base_logs, (log_entry(*line) for line in logs))
            return changes

        job = await self.store.modify_job(job_id, mutator, expected_status=expected)
        if job is not None and event:
            self.publish(job, event, payload)
        return job

    async def append_log(self, job_id: str, level: str, message: str, data: dict | None = None) -> Job | None:
        entry = log_entry(level, message, data)
        return await self.store.modify_job(
            job_id, lambda job: {"logs": append_capped(job.logs, [entry])}
        )

    async def record_progress(
        self,
        job_id: str,
        percentage: float | None = None,
        current_step: str | None = None,
        total_steps: int | None = None,
        completed_steps: int | None = None,
        estimated_time_remaining: int | None = None,
    ) -> Job | None:
        """Merge a progress update into a processing job. Percentage never goes backwards."""
        now = utcnow()

        def mutator(job: Job) -> dict[str, Any]:
            progress = {**default_progress(), **(job.progress or {})}
            if percentage is not None:
                clamped = min(100.0, max(0.0, float(percentage)))
                progress["percentage"] = max(progress["percentage"] or 0, clamped)
            if current_step:
                progress["currentStep"] = current_step
            if total_steps is not None:
                progress["totalSteps"] = total_steps
            if completed_steps is not None:
                progress["completedSteps"] = completed_steps
            if estimated_time_remaining is not None:
                progress["estimatedTimeRemaining"] = estimated_time_remaining
            else:
                attempt_started = _parse_ts((job.job_metadata or {}).get("attemptStartedAt"))
                progress["estimatedTimeRemaining"] = estimate_remaining_ms(
                    attempt_started or job.started_at, progress["percentage"], now
                )
            return {"progress": progress}

        job = await self.store.modify_job(job_id, mutator, expected_status="processing")
        if job is not None:
            self.publish(job, "job.progress", {"progress": job.progress})
        return job

    def publish(self, job: Job, event_type: str, payload: dict | None = None) -> None:
        """Fire-and-forget; a broken broker never fails the job operation."""
        if self.broker is None:
            return
        body = {"status": job.status, "type": job.job_type, "priority": job.priority}
        if payload:
            body.update(payload)
        try:
            self.broker.publish(JobEvent(event_type, job.job_id, job.session_id, body))
        except Exception as e:
            logger.error(f"Failed to publish {event_type} for job {job.job_id}: {e}")

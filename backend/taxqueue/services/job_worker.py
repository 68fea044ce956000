"""Background job worker.

Pulls eligible job ids from the in-memory priority queue and runs their
handlers as asyncio tasks, never more than `max_concurrent_jobs` at once.
Runs as an asyncio task within the FastAPI process.

The loop sleeps until a slot frees up, a job is admitted, or the poll
interval elapses (dependency gating is re-evaluated on every pass). A
handler failure is contained in its own task and routed through the retry
policy; nothing a single job does can stop the loop.
"""
import asyncio
import logging
import os
import socket
import traceback
from datetime import datetime, timedelta
from functools import partial

from taxqueue.models.base import ensure_utc, utcnow
from taxqueue.models.job import Job, default_progress
from taxqueue.services.errors import (
    DependencyFailedError,
    JobCancelledError,
    JobQueueError,
    JobTimeoutError,
    NonRetryableJobError,
    UnsupportedJobTypeError,
    WorkerLostError,
    safe_error_message,
)
from taxqueue.services.job_handlers import JobContext, JobHandler, JobHandlerRegistry
from taxqueue.services.job_ledger import (
    JobLedger,
    append_capped,
    elapsed_ms,
    error_entry,
    log_entry,
    merged_metadata,
)
from taxqueue.services.priority_queue import PriorityJobQueue, QueueEntry
from taxqueue.services.retry_policy import RetryPolicies

logger = logging.getLogger(__name__)

NON_RETRYABLE = (NonRetryableJobError, UnsupportedJobTypeError)


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, (JobQueueError, NonRetryableJobError, JobTimeoutError, WorkerLostError)):
        return exc.code
    return "EXECUTION_ERROR"


class JobWorker:
    """Dispatch loop plus the retry/backoff decision for failed attempts."""

    def __init__(
        self,
        ledger: JobLedger,
        queue: PriorityJobQueue,
        registry: JobHandlerRegistry,
        policies: RetryPolicies,
        max_concurrent_jobs: int = 5,
        poll_interval: float = 1.0,
        step_delay: float = 0.0,
        name: str | None = None,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self._ledger = ledger
        self._store = ledger.store
        self._queue = queue
        self._registry = registry
        self._policies = policies
        self.max_concurrent_jobs = max_concurrent_jobs
        self._poll_interval = poll_interval
        self._step_delay = step_delay
        self.name = name or f"worker-{socket.gethostname()}-{os.getpid()}"

        self._active: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, asyncio.Event] = {}
        self._delayed: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._running = False
        self.peak_concurrency = 0

    # ── Lifecycle ────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._dispatch_loop())
        logger.info(f"Job worker {self.name} started (max {self.max_concurrent_jobs} concurrent jobs)")

    async def stop(self) -> None:
        """Stop dispatching. In-flight attempts are interrupted and returned to pending."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        for task in list(self._delayed.values()):
            task.cancel()
        in_flight = list(self._active.values()) + list(self._delayed.values())
        for task in self._active.values():
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        self._delayed.clear()
        logger.info(f"Job worker {self.name} stopped")

    async def recover(self) -> int:
        """Rebuild the queue from the store after a restart.

        Jobs a previous process left in 'processing' count as a failed attempt
        (WORKER_LOST) and go through the normal retry decision; then every
        pending record is re-admitted. Returns the number of admitted jobs.
        """
        for job in await self._store.list_by_status("processing"):
            if job.job_id in self._active:
                continue
            logger.warning(f"Recovering job {job.job_id} left in 'processing' (started at {job.started_at})")
            await self._handle_failure(
                job.job_id, WorkerLostError("Worker stopped before the job finished")
            )

        self._queue.clear()
        pending = await self._store.list_by_status("pending")
        for job in pending:
            self.admit(job)
        if pending:
            logger.info(f"Re-admitted {len(pending)} pending job(s)")
        return len(pending)

    # ── Admission ────────────────────────────────────────────────

    def wake(self) -> None:
        self._wakeup.set()

    def admit(self, job: Job) -> None:
        """Put a pending job in the queue, or on a timer if it is still backing off."""
        scheduled = ensure_utc(job.scheduled_for)
        delay = (scheduled - utcnow()).total_seconds() if scheduled else 0
        if delay > 0:
            self._schedule_admission(job, delay)
            return
        self._queue.enqueue(job.job_id, job.priority, job.created_at, job.dependencies)
        self.wake()

    def _schedule_admission(self, job: Job, delay: float) -> None:
        previous = self._delayed.pop(job.job_id, None)
        if previous:
            previous.cancel()
        self._delayed[job.job_id] = asyncio.create_task(
            self._admit_later(job.job_id, job.priority, job.created_at, job.dependencies, delay)
        )

    async def _admit_later(self, job_id, priority, created_at, dependencies, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self._queue.enqueue(job_id, priority, created_at, dependencies)
            self.wake()
        finally:
            if self._delayed.get(job_id) is asyncio.current_task():
                del self._delayed[job_id]

    async def _readmit_from_store(self, job_id: str) -> None:
        """Put a job back after a failed claim, once the store answers again."""
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    job = await self._store.get_job(job_id)
                except Exception as e:
                    logger.warning(f"Still cannot load job {job_id}: {e}")
                    continue
                if job is not None and job.status == "pending":
                    self._queue.enqueue(job_id, job.priority, job.created_at, job.dependencies)
                    self.wake()
                return
        finally:
            if self._delayed.get(job_id) is asyncio.current_task():
                del self._delayed[job_id]

    async def _handle_failure_later(self, job_id: str, exc: BaseException) -> None:
        """Record a failed attempt the store refused, after the next poll interval."""
        try:
            await asyncio.sleep(self._poll_interval)
            await self._handle_failure(job_id, exc)
        finally:
            if self._delayed.get(job_id) is asyncio.current_task():
                del self._delayed[job_id]

    def discard(self, job_id: str) -> None:
        """Forget a job that left 'pending' outside the worker (cancel, delete, manual fail)."""
        self._queue.remove(job_id)
        timer = self._delayed.pop(job_id, None)
        if timer:
            timer.cancel()

    def request_cancel(self, job_id: str) -> bool:
        """Signal an in-flight handler. False when this process is not running the job."""
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.set()
        return True

    # ── Dispatch ─────────────────────────────────────────────────

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            try:
                await self._dispatch_available()
            except Exception as e:
                logger.error(f"Dispatch loop error: {e}")
                logger.error(traceback.format_exc())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _dispatch_available(self) -> None:
        while len(self._active) < self.max_concurrent_jobs and self._queue.size():
            is_eligible = await self._eligibility()
            job_id = self._queue.dequeue(is_eligible)
            if job_id is None:
                return
            await self._claim(job_id)

    async def _eligibility(self):
        """Predicate for queue entries whose dependencies have all completed.

        Dependents of a job that can never complete (missing, cancelled, or
        failed with no retries left) are failed with DEPENDENCY_FAILED.
        """
        waiting_on = self._queue.pending_dependencies()
        if not waiting_on:
            return None
        statuses = await self._store.get_statuses(waiting_on)
        done = {job_id for job_id, status in statuses.items() if status == "completed"}
        dead = {job_id for job_id in waiting_on if statuses.get(job_id) in (None, "cancelled")}
        for job_id in sorted(job_id for job_id, status in statuses.items() if status == "failed"):
            if await self._retries_exhausted(job_id):
                dead.add(job_id)
        if dead:
            for entry in self._queue.entries():
                broken = entry.dependencies & dead
                if broken and self._queue.remove(entry.job_id):
                    await self._fail_pending(
                        entry.job_id,
                        DependencyFailedError(
                            f"Dependencies can never complete: {', '.join(sorted(broken))}"
                        ),
                    )

        def is_eligible(entry: QueueEntry) -> bool:
            return entry.dependencies <= done

        return is_eligible

    async def _retries_exhausted(self, job_id: str) -> bool:
        # A failed job can only come back through retry_job, which refuses once maxRetries is reached
        job = await self._store.get_job(job_id)
        if job is None:
            return True
        return job.status == "failed" and job.retry_count >= job.max_retries

    async def _claim(self, job_id: str) -> None:
        now = utcnow()

        def patch(job: Job) -> dict:
            meta = merged_metadata(
                job,
                assignedWorker=self.name,
                cancelRequested=False,
                attemptStartedAt=now.isoformat(),
                durations={
                    **(job.job_metadata or {}).get("durations", {}),
                    "queuedMs": elapsed_ms(job.created_at, now),
                },
            )
            return {
                "status": "processing",
                "started_at": job.started_at or now,
                "scheduled_for": None,
                "job_metadata": meta,
            }

        # Registered before the claim commits so a cancel can never miss it
        token = asyncio.Event()
        self._tokens[job_id] = token
        try:
            job = await self._ledger.transition(
                job_id, "pending", patch, "job.started",
                logs=[("info", "Job processing started", {"worker": self.name})],
            )
            handler = self._registry.get(job.job_type) if job is not None else None
        except UnsupportedJobTypeError as e:
            self._tokens.pop(job_id, None)
            await self._handle_failure(job_id, e)
            return
        except Exception as e:
            self._tokens.pop(job_id, None)
            logger.error(f"Failed to claim job {job_id}, will re-admit it: {e}")
            self._delayed[job_id] = asyncio.create_task(self._readmit_from_store(job_id))
            return
        if job is None:
            # Cancelled or deleted while queued.
            self._tokens.pop(job_id, None)
            return

        self._active[job_id] = asyncio.create_task(self._run_job(job, handler, token))
        self.peak_concurrency = max(self.peak_concurrency, len(self._active))
        logger.info(f"Processing job {job_id} (type={job.job_type}, priority={job.priority})")

    async def _run_job(self, job: Job, handler: JobHandler, token: asyncio.Event) -> None:
        job_id = job.job_id
        meta = job.job_metadata or {}
        ctx = JobContext(
            job_id=job_id,
            session_id=job.session_id,
            job_type=job.job_type,
            input=(job.data or {}).get("input") or {},
            parameters=(job.data or {}).get("parameters") or {},
            attempt=int(meta.get("retryCount", 0)) + 1,
            step_delay=self._step_delay,
            cancel_event=token,
            progress_callback=partial(self._ledger.record_progress, job_id),
            log_callback=partial(self._ledger.append_log, job_id),
        )
        timeout_ms = meta.get("timeoutMs") or 0
        try:
            try:
                output = await asyncio.wait_for(handler(ctx), timeout=timeout_ms / 1000 or None)
            except asyncio.TimeoutError as e:
                raise JobTimeoutError(f"Job exceeded its timeout of {timeout_ms} ms") from e
            await self._complete(job_id, output)
        except JobCancelledError:
            await self._finalize_cancelled(job_id)
        except asyncio.CancelledError:
            await self._requeue_interrupted(job_id)
            raise
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            logger.error(traceback.format_exc())
            await self._handle_failure(job_id, e)
        finally:
            self._active.pop(job_id, None)
            self._tokens.pop(job_id, None)
            self.wake()

    # ── Outcomes ─────────────────────────────────────────────────

    async def _complete(self, job_id: str, output) -> None:
        now = utcnow()

        def patch(job: Job) -> dict:
            meta = job.job_metadata or {}
            progress = {**default_progress(), **(job.progress or {})}
            progress.update(percentage=100, estimatedTimeRemaining=0)
            if progress.get("totalSteps"):
                progress["completedSteps"] = progress["totalSteps"]
            changes = {
                "status": "completed",
                "data": {**(job.data or {}), "output": output},
                "progress": progress,
                "completed_at": now,
                "job_metadata": merged_metadata(job, durations=self._durations(job, now)),
            }
            if meta.get("cancelRequested"):
                changes["logs"] = append_capped(
                    job.logs, [log_entry("warn", "Cancellation requested but not honored")]
                )
            return changes

        job = await self._ledger.transition(
            job_id, "processing", patch, "job.completed",
            logs=[("info", "Job completed successfully")],
        )
        if job is None:
            logger.info(f"Job {job_id} left 'processing' during execution, discarding its result")
            return
        if (job.job_metadata or {}).get("cancelRequested"):
            logger.warning(f"Job {job_id} completed although cancellation was requested")
        logger.info(f"Job {job_id} completed")

    async def _finalize_cancelled(self, job_id: str) -> None:
        now = utcnow()
        job = await self._ledger.transition(
            job_id,
            "processing",
            lambda job: {
                "status": "cancelled",
                "completed_at": now,
                "job_metadata": merged_metadata(job, durations=self._durations(job, now)),
            },
            "job.cancelled",
            logs=[("info", "Job stopped at a cancellation checkpoint")],
        )
        if job is not None:
            logger.info(f"Job {job_id} cancelled during execution")

    async def _requeue_interrupted(self, job_id: str) -> None:
        try:
            await self._ledger.transition(
                job_id,
                "processing",
                lambda job: {
                    "status": "pending",
                    "progress": default_progress(),
                    "job_metadata": merged_metadata(job, assignedWorker=None),
                },
                logs=[("warn", "Job interrupted by worker shutdown")],
            )
        except Exception as e:
            logger.error(f"Failed to return interrupted job {job_id} to pending: {e}")

    async def _handle_failure(self, job_id: str, exc: BaseException) -> None:
        """Record the error, then either schedule a retry or fail the job for good."""
        code = _error_code(exc)
        message = safe_error_message(exc)
        retryable = not isinstance(exc, NON_RETRYABLE)
        now = utcnow()
        outcome: dict = {}

        def patch(job: Job) -> dict:
            meta = job.job_metadata or {}
            retry_count = int(meta.get("retryCount", 0))
            max_retries = int(meta.get("maxRetries", 0))
            errors = [*(job.errors or []), error_entry(code, message, retry_count + 1, retryable)]
            new_logs = [log_entry("error", f"Job failed: {message}")]

            if meta.get("cancelRequested"):
                outcome["kind"] = "cancelled"
                return {
                    "status": "cancelled",
                    "errors": errors,
                    "logs": append_capped(job.logs, new_logs),
                    "completed_at": now,
                    "job_metadata": merged_metadata(job, durations=self._durations(job, now)),
                }

            if retryable and retry_count < max_retries:
                retry_count += 1
                policy = self._policies.for_type(job.job_type)
                delay = policy.delay_seconds(retry_count, meta.get("retryDelayMs"))
                outcome.update(kind="retry", delay=delay, retry_count=retry_count, max_retries=max_retries)
                new_logs.append(log_entry("info", f"Retry attempt {retry_count}/{max_retries} in {delay:.1f}s"))
                return {
                    "status": "pending",
                    "errors": errors,
                    "logs": append_capped(job.logs, new_logs),
                    "progress": default_progress(),
                    "scheduled_for": now + timedelta(seconds=delay),
                    "job_metadata": merged_metadata(job, retryCount=retry_count, assignedWorker=None),
                }

            outcome.update(kind="failed", retry_count=retry_count, max_retries=max_retries)
            return {
                "status": "failed",
                "errors": errors,
                "logs": append_capped(job.logs, new_logs),
                "completed_at": now,
                "job_metadata": merged_metadata(job, durations=self._durations(job, now)),
            }

        try:
            job = await self._ledger.transition(job_id, "processing", patch)
        except Exception as handling_error:
            logger.error(
                f"Failed to handle error for job {job_id}, will try again: {handling_error} (original: {message})"
            )
            self._delayed[job_id] = asyncio.create_task(self._handle_failure_later(job_id, exc))
            return
        if job is None:
            return

        kind = outcome.get("kind")
        if kind == "retry":
            logger.info(
                f"Job {job_id} will be retried ({outcome['retry_count']}/{outcome['max_retries']}) "
                f"in {outcome['delay']:.1f}s"
            )
            self._ledger.publish(job, "job.retrying", {"retryCount": outcome["retry_count"], "error": message})
            self.admit(job)
        elif kind == "cancelled":
            logger.info(f"Job {job_id} failed after cancellation was requested; marked cancelled")
            self._ledger.publish(job, "job.cancelled", {"error": message})
        else:
            logger.error(f"Job {job_id} failed permanently after {outcome.get('retry_count')} retries: {message}")
            self._ledger.publish(job, "job.failed", {"error": message, "code": code})

    async def _fail_pending(self, job_id: str, exc: NonRetryableJobError) -> None:
        now = utcnow()
        message = safe_error_message(exc)
        job = await self._ledger.transition(
            job_id,
            "pending",
            lambda job: {
                "status": "failed",
                "completed_at": now,
                "scheduled_for": None,
                "errors": [*(job.errors or []), error_entry(exc.code, message, job.retry_count + 1, False)],
            },
            "job.failed",
            logs=[("error", f"Job failed: {message}")],
            payload={"error": message, "code": exc.code},
        )
        if job is not None:
            logger.warning(f"Job {job_id} failed before dispatch: {message}")

    @staticmethod
    def _durations(job: Job, now) -> dict:
        meta = job.job_metadata or {}
        attempt_started = meta.get("attemptStartedAt")
        started = ensure_utc(job.started_at)
        if attempt_started:
            started = datetime.fromisoformat(attempt_started)
        return {
            **meta.get("durations", {}),
            "processingMs": elapsed_ms(started, now),
            "totalMs": elapsed_ms(job.created_at, now),
        }

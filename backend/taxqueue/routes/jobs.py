"""Jobs API - submit, inspect, steer and clean up background jobs."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from taxqueue.routes.deps import (
    check_session,
    get_job_service,
    rate_limit,
    session_header,
    to_http_error,
)
from taxqueue.schemas.job import (
    CancelRequest,
    CancelResponse,
    CleanupResponse,
    JobCreate,
    JobList,
    JobResponse,
    JobSummary,
    LogCreate,
    LogsResponse,
    ProgressUpdate,
    RetryRequest,
    StatusUpdate,
)
from taxqueue.services.errors import JobQueueError
from taxqueue.services.job_service import JobService

router = APIRouter(prefix="/api/jobs", tags=["jobs"], dependencies=[Depends(rate_limit("burst"))])
sessions_router = APIRouter(
    prefix="/api/sessions", tags=["jobs"], dependencies=[Depends(rate_limit("burst"))]
)


async def _load_job(service: JobService, job_id: str, session_id: Optional[str]):
    try:
        job = await service.get_job(job_id)
    except JobQueueError as e:
        raise to_http_error(e) from e
    check_session(job, session_id)
    return job


@router.post(
    "", response_model=JobResponse, status_code=201, dependencies=[Depends(rate_limit("job"))]
)
async def create_job(
    body: JobCreate,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Submit a new background job."""
    session_id = body.session_id or x_session_id
    if not session_id:
        raise HTTPException(400, "sessionId is required (body or X-Session-Id header)")
    if x_session_id and session_id != x_session_id:
        raise HTTPException(403, "Access denied to session")
    try:
        return await service.create_job(
            session_id,
            body.job_type,
            body.data,
            priority=body.priority,
            max_retries=body.max_retries,
            timeout_ms=body.timeout_ms,
            retry_delay_ms=body.retry_delay_ms,
            dependencies=body.dependencies,
            parent_job_id=body.parent_job_id,
            tags=body.tags,
            parameters=body.parameters,
            created_by=session_id,
        )
    except JobQueueError as e:
        raise to_http_error(e) from e
    except ValueError as e:
        raise HTTPException(422, str(e)) from e


@router.get("/stats")
async def queue_stats(service: JobService = Depends(get_job_service)):
    """Aggregate counts for the queue and its workers."""
    try:
        return await service.get_queue_stats()
    except JobQueueError as e:
        raise to_http_error(e) from e


@router.post(
    "/cleanup", response_model=CleanupResponse, dependencies=[Depends(rate_limit("sensitive"))]
)
async def cleanup_jobs(
    older_than_days: int = Query(7, alias="olderThanDays", ge=0, le=365),
    include_failed: bool = Query(False, alias="includeFailed"),
    service: JobService = Depends(get_job_service),
):
    """Delete finished jobs older than the retention window."""
    try:
        deleted = await service.cleanup_completed(older_than_days, include_failed=include_failed)
    except JobQueueError as e:
        raise to_http_error(e) from e
    return CleanupResponse(
        deleted_count=deleted, older_than_days=older_than_days, include_failed=include_failed
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    return await _load_job(service, job_id, x_session_id)


@router.patch("/{job_id}/status", response_model=JobResponse)
async def update_status(
    job_id: str,
    body: StatusUpdate,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Force a job into a terminal status."""
    await _load_job(service, job_id, x_session_id)
    try:
        return await service.update_status(job_id, body.status, output=body.output, error=body.error)
    except JobQueueError as e:
        raise to_http_error(e) from e


@router.patch("/{job_id}/progress", response_model=JobResponse)
async def update_progress(
    job_id: str,
    body: ProgressUpdate,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    await _load_job(service, job_id, x_session_id)
    try:
        return await service.update_progress(
            job_id,
            percentage=body.percentage,
            current_step=body.current_step,
            total_steps=body.total_steps,
            completed_steps=body.completed_steps,
            estimated_time_remaining=body.estimated_time_remaining,
        )
    except JobQueueError as e:
        raise to_http_error(e) from e


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    body: Optional[CancelRequest] = None,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Cancel a pending job, or ask a processing one to stop."""
    await _load_job(service, job_id, x_session_id)
    try:
        result = await service.cancel_job(job_id, reason=body.reason if body else None)
    except JobQueueError as e:
        raise to_http_error(e) from e
    if not result.accepted:
        raise HTTPException(
            400,
            {"code": "NOT_CANCELLABLE", "message": f"Cannot cancel job in '{result.job.status}' state"},
        )
    return CancelResponse(
        job_id=job_id,
        outcome=result.outcome.value,
        status=result.job.status,
        cancelled=result.job.status == "cancelled",
    )


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    job_id: str,
    body: Optional[RetryRequest] = None,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Re-queue a failed job right away."""
    await _load_job(service, job_id, x_session_id)
    body = body or RetryRequest()
    try:
        return await service.retry_job(job_id, priority=body.priority, reset_progress=body.reset_progress)
    except JobQueueError as e:
        raise to_http_error(e) from e
    except ValueError as e:
        raise HTTPException(422, str(e)) from e


@router.post("/{job_id}/logs", status_code=201)
async def add_log(
    job_id: str,
    body: LogCreate,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    await _load_job(service, job_id, x_session_id)
    try:
        return await service.add_log(job_id, body.level, body.message, body.data)
    except JobQueueError as e:
        raise to_http_error(e) from e


@router.get("/{job_id}/logs", response_model=LogsResponse)
async def get_logs(
    job_id: str,
    level: Optional[str] = Query(None, pattern="^(debug|info|warn|error)$"),
    limit: int = Query(50, ge=1, le=100),
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    await _load_job(service, job_id, x_session_id)
    try:
        logs = await service.get_logs(job_id, level=level, limit=limit)
    except JobQueueError as e:
        raise to_http_error(e) from e
    return LogsResponse(job_id=job_id, logs=logs, total=len(logs))


@router.delete("/{job_id}")
async def delete_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Delete a job, cancelling it first if it has not finished."""
    await _load_job(service, job_id, x_session_id)
    try:
        await service.delete_job(job_id)
    except JobQueueError as e:
        raise to_http_error(e) from e
    return {"deleted": True, "jobId": job_id}


@sessions_router.get("/{session_id}/jobs", response_model=JobList)
async def list_session_jobs(
    session_id: str,
    status: Optional[str] = Query(None, pattern="^(pending|processing|completed|failed|cancelled)$"),
    job_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """List a session's jobs, newest first."""
    if x_session_id is not None and x_session_id != session_id:
        raise HTTPException(403, "Access denied to session")
    try:
        jobs = await service.list_jobs_by_session(
            session_id, status=status, job_type=job_type, limit=limit, offset=offset
        )
    except JobQueueError as e:
        raise to_http_error(e) from e
    return JobList(
        session_id=session_id,
        jobs=[JobSummary.model_validate(job) for job in jobs],
        limit=limit,
        offset=offset,
    )

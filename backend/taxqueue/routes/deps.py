"""Shared route dependencies: service lookup, session checks, rate limits, error mapping."""
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, Response

from taxqueue.models.job import Job
from taxqueue.services.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobPersistenceError,
    JobQueueError,
    RetryExhaustedError,
    UnsupportedJobTypeError,
)
from taxqueue.services.job_service import JobService
from taxqueue.services.rate_limiter import RateLimitDecision, RateLimiters

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    JobNotFoundError: 404,
    InvalidTransitionError: 400,
    RetryExhaustedError: 400,
    UnsupportedJobTypeError: 422,
    JobPersistenceError: 503,
}


def get_job_service(request: Request) -> JobService:
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        raise HTTPException(503, "Job queue is not running")
    return service


def get_rate_limiters(request: Request) -> RateLimiters:
    return request.app.state.rate_limiters


def session_header(x_session_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_session_id


def check_session(job: Job, session_id: Optional[str]) -> None:
    """Callers that identify a session may only touch that session's jobs."""
    if session_id is not None and session_id != job.session_id:
        raise HTTPException(403, "Access denied to job")


def to_http_error(e: JobQueueError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(e, error_type):
            return HTTPException(status_code, {"code": e.code, "message": e.message})
    return HTTPException(500, {"code": e.code, "message": e.message})


# ── Rate limiting ────────────────────────────────────────────────

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limited(decision: RateLimitDecision, message: str) -> HTTPException:
    return HTTPException(
        429,
        {
            "code": "RATE_LIMIT_EXCEEDED",
            "message": message,
            "limit": decision.limit,
            "window": decision.window_ms,
            "retryAfter": decision.retry_after,
        },
        headers=decision.headers(),
    )


def rate_limit(name: str):
    """Dependency enforcing the named limiter for the caller."""

    async def dependency(request: Request, response: Response) -> None:
        named = get_rate_limiters(request)[name]
        decision = named.check(client_ip(request))
        if not decision.allowed:
            raise rate_limited(decision, named.message)
        response.headers.update(decision.headers())

    return dependency

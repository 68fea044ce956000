"""Server-Sent Events feed of job events for one session."""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from taxqueue.routes.deps import get_job_service, session_header
from taxqueue.services.job_service import JobService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["events"])

HEARTBEAT_SECONDS = 15.0


def format_sse(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


@router.get("/{session_id}/events")
async def stream_session_events(
    session_id: str,
    request: Request,
    heartbeat: float = Query(HEARTBEAT_SECONDS, gt=0, le=60),
    max_events: Optional[int] = Query(None, alias="maxEvents", ge=1),
    service: JobService = Depends(get_job_service),
    x_session_id: Optional[str] = Depends(session_header),
):
    """Push job events for `session_id` as they happen."""
    if x_session_id is not None and x_session_id != session_id:
        raise HTTPException(403, "Access denied to session")

    subscription = service.broker.subscribe(session_id)

    async def event_generator():
        sent = 0
        try:
            yield format_sse("connected", {"sessionId": session_id})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield format_sse(event.type, event.to_dict())
                sent += 1
                if max_events is not None and sent >= max_events:
                    break
        finally:
            service.broker.unsubscribe(subscription.id)
            logger.debug(f"SSE subscriber {subscription.id} for session {session_id} closed")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

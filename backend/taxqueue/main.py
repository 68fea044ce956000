"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from taxqueue.config import settings
from taxqueue.database import async_session, engine, get_db
from taxqueue.models import Base
from taxqueue.routes.deps import client_ip
from taxqueue.services.job_service import create_job_service
from taxqueue.services.rate_limiter import RateLimiters

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, rebuild the job queue from the store, start the worker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Recovers jobs orphaned by a previous crash before dispatching anything
    service = create_job_service(async_session)
    await service.start(retention_days=settings.JOB_RETENTION_DAYS)
    app.state.job_service = service

    yield

    # Cleanup
    await service.stop()
    app.state.job_service = None
    await engine.dispose()


app = FastAPI(
    title="Tax Filing Job Queue API",
    version="1.0.0",
    description="Background job queue for the tax-filing assistant.",
    lifespan=lifespan,
)
app.state.rate_limiters = RateLimiters.from_settings()


@app.middleware("http")
async def global_rate_limit(request: Request, call_next):
    """Adaptive per-IP limit across the whole API."""
    path = request.url.path
    if not path.startswith("/api") or path == "/api/health":
        return await call_next(request)

    named = request.app.state.rate_limiters["global"]
    decision = named.check(client_ip(request))
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "detail": {
                    "code": "RATE_LIMIT_EXCEEDED",
                    "message": named.message,
                    "retryAfter": decision.retry_after,
                }
            },
            headers=decision.headers(),
        )
    response = await call_next(request)
    for key, value in decision.headers().items():
        response.headers.setdefault(key, value)
    return response


# CORS (added last = outermost, so 429s carry CORS headers)
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check(request: Request):
    """Verify database connectivity and report the worker's state."""
    service = getattr(request.app.state, "job_service", None)
    queue = None
    if service is not None:
        queue = {
            "running": service.worker.running,
            "activeWorkers": service.worker.active_count,
            "inMemoryQueue": service.queue.size(),
        }
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected", "queue": queue}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "error", "database": str(e), "queue": queue}


# Register routers
from taxqueue.routes.jobs import router as jobs_router, sessions_router
from taxqueue.routes.events import router as events_router
app.include_router(jobs_router)
app.include_router(sessions_router)
app.include_router(events_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("taxqueue.main:app", host="0.0.0.0", port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())

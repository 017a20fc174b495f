"""
GO Leadership drip API: signup, tracking, provider webhooks and admin
endpoints, with the email queue and weekly scheduler running in-process.
"""

import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.drip_campaign import admin_router, drip_router, webhook_router
from app.features.drip_campaign.runtime import build_drip_runtime
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import health
from app.services.openai_service import openai_service
from app.services.redis_client import fast_redis
from app.services.resend_service import resend_service

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

Closer = tuple[str, Callable[[], Awaitable[None]]]


async def _close_all(closers: list[Closer]) -> list[str]:
    """Run closers newest first; one failing closer does not stop the rest."""
    errors = []
    for name, close in reversed(closers):
        try:
            await close()
        except Exception as e:
            logger.error("Error closing service", service=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


async def _close_http_clients() -> None:
    await resend_service.close()
    await openai_service.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    closers: list[Closer] = [("http_clients", _close_http_clients)]

    try:
        await db_pool.initialize()
        closers.append(("database_pool", db_pool.close))

        if settings.EMAIL_QUEUE_BACKEND == "redis":
            await fast_redis.initialize()
            closers.append(("redis", fast_redis.close))

        runtime = build_drip_runtime()
        await runtime.start(run_scheduler=settings.SCHEDULER_ENABLED)
        closers.append(("drip_runtime", runtime.stop))

    except Exception as e:
        logger.error(
            "Failed to initialize services",
            error=str(e),
            started=[name for name, _ in closers],
        )
        await _close_all(closers)
        raise

    app.state.drip = runtime
    logger.info(
        "All services initialized",
        services=[name for name, _ in closers],
        queue_backend=runtime.queue.backend_name,
        scheduler=settings.SCHEDULER_ENABLED,
    )

    yield

    logger.info("Application shutting down")
    errors = await _close_all(closers)
    if errors:
        logger.warning("Some services had shutdown errors", errors=errors)
    else:
        logger.info("All services closed")


app = FastAPI(
    title="GO Leadership Drip",
    description="Twelve-week leadership coaching email program",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(drip_router)
app.include_router(admin_router)
app.include_router(webhook_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

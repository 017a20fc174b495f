"""
Standalone drip worker.

Runs the email queue and the hourly weekly scheduler without the HTTP app,
for deployments that keep delivery off the API process. Stops on
SIGINT/SIGTERM, draining in-flight jobs before closing the store.
"""

import asyncio
import contextlib
import signal

from app.config import settings
from app.db.pool import db_pool
from app.features.drip_campaign.runtime import build_drip_runtime
from app.infrastructure.observability.logging import get_logger
from app.services.openai_service import openai_service
from app.services.redis_client import fast_redis
from app.services.resend_service import resend_service

logger = get_logger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops)
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


async def run_drip_worker(stop_event: asyncio.Event | None = None) -> None:
    """Entry point registered as the `drip_worker` job."""
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    use_redis = settings.EMAIL_QUEUE_BACKEND == "redis"
    runtime = None

    await db_pool.initialize()
    try:
        if use_redis:
            await fast_redis.initialize()

        runtime = build_drip_runtime(expect_scheduler=True)
        await runtime.start(run_scheduler=True)
        logger.info("Drip worker running", queue_backend=runtime.queue.backend_name)
        await stop_event.wait()
        logger.info("Drip worker stop requested")
    finally:
        if runtime is not None:
            await runtime.stop()
        await resend_service.close()
        await openai_service.close()
        if use_redis:
            await fast_redis.close()
        await db_pool.close()
        logger.info("Drip worker stopped")


if __name__ == "__main__":
    asyncio.run(run_drip_worker())

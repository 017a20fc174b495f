"""
Admin routes for operating the drip campaign.

Usage:
    1. GET  /api/admin/email-queue-status          - Queue counts, failed jobs, scheduler
    2. POST /api/admin/trigger-weekly-emails       - Run a weekly batch now
    3. POST /api/admin/users/{user_id}/resend      - Resend the current week's email
    4. POST /api/admin/users/{user_id}/deactivate  - Stop all future emails
    5. GET  /api/admin/health                      - healthy / degraded / unhealthy
    6. GET  /api/admin/stats                       - User and email totals
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from app.db.helpers import DatabaseError
from app.features.drip_campaign.queue import JobQueueError
from app.features.drip_campaign.runtime import DripRuntime
from app.features.drip_campaign.services import ResendNotAllowedError, UserNotFoundError
from app.infrastructure.observability.logging import get_logger

from .dependencies import get_runtime, require_admin
from .schemas import BatchTriggerResponse, QueueStatusResponse, ResendResponse

router = APIRouter(
    prefix="/api/admin", tags=["drip-admin"], dependencies=[Depends(require_admin)]
)
logger = get_logger(__name__)


@router.get("/email-queue-status", response_model=QueueStatusResponse)
async def email_queue_status(runtime: DripRuntime = Depends(get_runtime)):
    return QueueStatusResponse(
        status=await runtime.queue.get_status(),
        failed_jobs=await runtime.queue.get_failed_jobs(limit=20),
        scheduler=runtime.scheduler.get_status(),
    )


@router.post("/trigger-weekly-emails", response_model=BatchTriggerResponse)
async def trigger_weekly_emails(runtime: DripRuntime = Depends(get_runtime)):
    """Same batch as the hourly tick; returns a skipped result if one is already running."""
    result = await runtime.scheduler.trigger_now()

    if result.skipped:
        message = f"Weekly batch skipped: {result.reason}"
    else:
        message = f"Queued {result.queued} of {result.processed} due users"

    return BatchTriggerResponse(success=not result.skipped, message=message, result=result.to_dict())


@router.post("/users/{user_id}/resend", response_model=ResendResponse)
async def resend_to_user(user_id: int, runtime: DripRuntime = Depends(get_runtime)):
    """
    Enqueue a fresh email for the user's current week.

    Raises:
        404: User not found
        409: User inactive
        503: Queue or store unavailable
    """
    try:
        job_id = await runtime.scheduler.resend_to_user(user_id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ResendNotAllowedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (JobQueueError, DatabaseError) as e:
        logger.error("Manual resend failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Resend temporarily unavailable"
        )

    return ResendResponse(user_id=user_id, job_id=job_id)


@router.post("/users/{user_id}/deactivate")
async def deactivate_user(user_id: int, runtime: DripRuntime = Depends(get_runtime)):
    user = await runtime.users.deactivate(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    return {"success": True, "user_id": user.id, "is_active": user.is_active}


@router.get("/health")
async def drip_health(runtime: DripRuntime = Depends(get_runtime)):
    health = await runtime.monitoring.get_health_status()
    code = status.HTTP_503_SERVICE_UNAVAILABLE if health["status"] == "unhealthy" else 200
    return JSONResponse(content=health, status_code=code)


@router.get("/stats")
async def drip_stats(runtime: DripRuntime = Depends(get_runtime)):
    try:
        return await runtime.monitoring.get_stats()
    except DatabaseError as e:
        logger.error("Failed to load drip stats", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stats temporarily unavailable"
        )

"""
Public drip campaign routes: signup plus the open/click tracking endpoints
referenced from rendered emails.

Usage:
    1. POST /api/signup                      - Enroll and queue the welcome email
    2. GET  /api/email/track/{record_id}     - Open-tracking pixel
    3. GET  /api/email/click/{record_id}     - Click-tracking redirect
"""

import base64
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.drip_campaign.runtime import DripRuntime
from app.features.drip_campaign.services import UserAlreadyExistsError
from app.infrastructure.observability.logging import get_logger

from .dependencies import get_runtime
from .schemas import SignupRequest, SignupResponse

router = APIRouter(prefix="/api", tags=["drip-campaign"])
logger = get_logger(__name__)

# 1x1 transparent PNG
TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate, max-age=0"}


@router.post("/signup", response_model=SignupResponse, status_code=status.HTTP_201_CREATED)
async def signup(request: SignupRequest, runtime: DripRuntime = Depends(get_runtime)):
    """
    Enroll a user in the 12-week program.

    The welcome email is delivered in the background; a queue problem is
    reported through `welcome_email_queued` and never fails the signup.

    Raises:
        400: Email already enrolled
        503: Store unavailable
    """
    try:
        user, queued = await runtime.enrollment.signup(
            request.email, request.timezone, request.goals, request.context
        )
    except UserAlreadyExistsError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="User with this email already exists"
        )
    except DatabaseError as e:
        logger.error("Signup failed", error=str(e), operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signup temporarily unavailable",
        )

    return SignupResponse(
        user_id=user.id,
        message="Welcome email will arrive shortly",
        welcome_email_queued=queued,
    )


@router.get("/email/track/{record_id}")
async def track_open(record_id: int, runtime: DripRuntime = Depends(get_runtime)):
    """Record an open and return the pixel. Tracking failures never break the image."""
    try:
        await runtime.emails.track_open(record_id)
    except DatabaseError as e:
        logger.warning("Failed to record email open", record_id=record_id, error=str(e))
    return Response(content=TRACKING_PIXEL, media_type="image/png", headers=NO_CACHE_HEADERS)


def _is_allowed_redirect(url: str) -> bool:
    parsed = urlparse(url)
    if not parsed.scheme and not parsed.netloc:
        return url.startswith("/") and not url.startswith("//")
    own = urlparse(settings.PUBLIC_BASE_URL)
    return parsed.scheme in ("http", "https") and parsed.netloc == own.netloc


@router.get("/email/click/{record_id}")
async def track_click(
    record_id: int,
    url: str = Query(..., min_length=1),
    runtime: DripRuntime = Depends(get_runtime),
):
    """Record a click and redirect to our own pages only."""
    if not _is_allowed_redirect(url):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Redirect target not allowed")

    try:
        await runtime.emails.track_click(record_id)
    except DatabaseError as e:
        logger.warning("Failed to record email click", record_id=record_id, error=str(e))
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

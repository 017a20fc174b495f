"""
FastAPI dependencies shared by the drip campaign routers.
"""

import hmac

from fastapi import Header, HTTPException, Request, status

from app.config import settings
from app.features.drip_campaign.runtime import DripRuntime
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def get_runtime(request: Request) -> DripRuntime:
    runtime = getattr(request.app.state, "drip", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Drip campaign runtime not initialized",
        )
    return runtime


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Admin routes are open when no ADMIN_API_TOKEN is configured (local development)."""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")

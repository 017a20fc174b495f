"""
Weekly leadership drip campaign feature package.

This vertical slice keeps every layer of the drip program co-located
(domain models, repositories, queue, services, jobs and API routers).
"""

# Re-export the routers for the application factory.
from .api.admin import router as admin_router  # noqa: F401
from .api.router import router as drip_router  # noqa: F401
from .api.webhooks import router as webhook_router  # noqa: F401

"""API v1 router aggregator.

All v1 endpoint routers are included here and mounted at /api/v1.
"""

from fastapi import APIRouter

from app.api.v1 import credits, cron, me

router = APIRouter()

# =============================================================================
# Automation (HMAC-signed)
# =============================================================================

router.include_router(credits.router, prefix="/credits", tags=["credits"])

# =============================================================================
# Scheduled jobs (bearer token)
# =============================================================================

router.include_router(cron.router, prefix="/cron", tags=["cron"])

# =============================================================================
# Self-service (session auth)
# =============================================================================

router.include_router(me.router, prefix="/me", tags=["me"])

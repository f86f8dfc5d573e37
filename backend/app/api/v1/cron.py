"""Cron-triggered maintenance endpoints.

Authenticated with ``Authorization: Bearer <CRON_SECRET>`` and rate
limited per caller IP.
"""

import structlog
from fastapi import APIRouter, Request

from app.api.deps import CronAuth, Ledger
from app.core.config import settings
from app.core.rate_limiting import limiter
from app.schemas.credits import SweepResponse
from app.services.grant_service import sweep_expired_grants

router = APIRouter()

logger = structlog.get_logger()


@router.post("/expire-grants")
@limiter.limit(settings.rate_limit_cron)
async def expire_grants(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    _auth: CronAuth,
    ledger: Ledger,
) -> SweepResponse:
    """Forfeit the unused remainder of every expired grant.

    Safe to call repeatedly: grants already swept are skipped.
    """
    result = await sweep_expired_grants(ledger)
    logger.info(
        "Expired grants swept",
        expired_count=result.expired_count,
        forfeited_credits=result.forfeited_credits,
        failed_count=result.failed_count,
    )
    return SweepResponse(
        expired_count=result.expired_count,
        forfeited_credits=result.forfeited_credits,
        message=(
            f"Expired {result.expired_count} grant(s), "
            f"forfeited {result.forfeited_credits} credit(s)"
        ),
    )

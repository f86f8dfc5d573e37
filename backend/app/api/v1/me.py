"""Self-service credit endpoints for the signed-in user.

Balance, ledger history, grant breakdown, low-balance state and
auto-top-up settings. All endpoints require session auth.
"""

import uuid
from datetime import UTC, datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import CurrentUserId, DbSession, Ledger
from app.core.config import settings
from app.core.errors import InvalidInputError, NotFoundError
from app.core.pagination import PaginationParams, pagination_params
from app.core.rate_limiting import limiter
from app.core.responses import DataResponse, ListResponse, PaginationMeta
from app.models.user import User
from app.repositories.grant_repository import GrantRepository
from app.repositories.user_repository import UserRepository
from app.schemas.credits import (
    ActiveGrantResponse,
    AutoTopUpRequest,
    BalanceResponse,
    CreditsBreakdownResponse,
    EntryType,
    LedgerEntryResponse,
    LowBalanceResponse,
)
from app.services.grant_service import summarize_active_grants
from app.services.ledger_service import is_low_balance

router = APIRouter()

logger = structlog.get_logger()

# =============================================================================
# Shared types
# =============================================================================

Pagination = Annotated[PaginationParams, Depends(pagination_params)]

EntryTypeFilter = Annotated[
    EntryType | None,
    Query(alias="type", description="Filter: grant, deduction, refund, expiry"),
]


async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await UserRepository.get_by_id(db, user_id)
    if user is None:
        raise NotFoundError("User", code="USER_NOT_FOUND")
    return user


def _low_balance_view(user: User) -> LowBalanceResponse:
    return LowBalanceResponse(
        balance=user.credit_balance,
        threshold=user.low_balance_threshold,
        is_low=is_low_balance(user.credit_balance, user.low_balance_threshold),
        auto_top_up_enabled=user.auto_top_up_enabled,
        auto_top_up_amount=user.auto_top_up_amount,
    )


# =============================================================================
# GET /balance
# =============================================================================


@router.get("/balance")
@limiter.limit(settings.rate_limit_self_service)
async def get_balance(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    user_id: CurrentUserId,
    db: DbSession,
) -> DataResponse[BalanceResponse]:
    """Return the stored and spendable balance."""
    user = await _load_user(db, user_id)
    now = datetime.now(UTC)
    lapsed = await GrantRepository.sum_lapsed_remaining(db, user.id, now)
    return DataResponse(
        data=BalanceResponse(
            balance=user.credit_balance,
            available=max(0, user.credit_balance - lapsed),
            low_balance_threshold=user.low_balance_threshold,
            as_of=now,
        )
    )


# =============================================================================
# GET /ledger
# =============================================================================


@router.get("/ledger")
@limiter.limit(settings.rate_limit_self_service)
async def list_ledger(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    user_id: CurrentUserId,
    ledger: Ledger,
    pagination: Pagination,
    entry_type: EntryTypeFilter = None,
) -> ListResponse[LedgerEntryResponse]:
    """Return the user's ledger entries, newest first."""
    entries, total = await ledger.list_entries(
        user_id,
        offset=pagination.offset,
        limit=pagination.limit,
        entry_type=entry_type,
    )
    return ListResponse(
        data=[LedgerEntryResponse.from_entry(entry) for entry in entries],
        meta=PaginationMeta(
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
        ),
    )


# =============================================================================
# GET /credits-breakdown
# =============================================================================


@router.get("/credits-breakdown")
@limiter.limit(settings.rate_limit_self_service)
async def get_credits_breakdown(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    user_id: CurrentUserId,
    db: DbSession,
) -> DataResponse[CreditsBreakdownResponse]:
    """Split the balance into subscription, top-up and manual grants."""
    user = await _load_user(db, user_id)
    summary = await summarize_active_grants(db, user.id, datetime.now(UTC))
    return DataResponse(
        data=CreditsBreakdownResponse(
            balance=summary.balance,
            available=summary.available,
            subscription=summary.subscription,
            topup=summary.topup,
            manual=summary.manual,
            ungranted=summary.ungranted,
            lapsed=summary.lapsed,
            grants=[
                ActiveGrantResponse(
                    id=grant.grant_id,
                    source_type=grant.source_type,  # type: ignore[arg-type]
                    amount=grant.amount,
                    used_amount=grant.used_amount,
                    remaining=grant.remaining,
                    expires_at=grant.expires_at,
                )
                for grant in summary.grants
            ],
        )
    )


# =============================================================================
# Low balance & auto top-up
# =============================================================================


@router.get("/low-balance")
@limiter.limit(settings.rate_limit_self_service)
async def get_low_balance(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    user_id: CurrentUserId,
    db: DbSession,
) -> DataResponse[LowBalanceResponse]:
    """Report whether the balance is at or below the alert threshold."""
    user = await _load_user(db, user_id)
    return DataResponse(data=_low_balance_view(user))


@router.put("/auto-top-up")
@limiter.limit(settings.rate_limit_self_service)
async def update_auto_top_up(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: AutoTopUpRequest,
    user_id: CurrentUserId,
    db: DbSession,
) -> DataResponse[LowBalanceResponse]:
    """Enable or disable auto top-up and optionally move the threshold.

    Enabling requires a positive top-up amount, either in the request or
    already saved.
    """
    user = await _load_user(db, user_id)

    amount = body.amount if body.amount is not None else user.auto_top_up_amount
    if body.enabled and amount <= 0:
        raise InvalidInputError(
            "A positive amount is required to enable auto top-up",
            details=[{"field": "amount", "value": amount}],
        )

    updates: dict[str, object] = {
        "auto_top_up_enabled": body.enabled,
        "auto_top_up_amount": amount,
    }
    if body.low_balance_threshold is not None:
        updates["low_balance_threshold"] = body.low_balance_threshold

    updated = await UserRepository.update_settings(db, user.id, **updates)
    if updated is None:
        raise NotFoundError("User", code="USER_NOT_FOUND")

    logger.info(
        "Auto top-up settings updated",
        user_id=str(user.id),
        enabled=body.enabled,
        amount=amount,
    )
    return DataResponse(data=_low_balance_view(updated))

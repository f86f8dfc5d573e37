"""Credit grant consumption, summaries and the expiry sweep.

Grants are drawn down soonest-expiry first. Once a grant's expires_at has
passed its remainder can no longer be spent; the sweep then forfeits it
through LedgerService.expire_grant so the balance and ledger stay in step.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import APIError
from app.models.credit import (
    GRANT_SOURCE_MANUAL,
    GRANT_SOURCE_SUBSCRIPTION,
    GRANT_SOURCE_TOPUP,
)
from app.repositories.credit_repository import CreditRepository
from app.repositories.grant_repository import GrantRepository

if TYPE_CHECKING:
    from app.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_BATCH_SIZE = 500


class GrantConsumptionConflict(Exception):
    """A grant lost headroom between the read and the update."""


@dataclass(frozen=True)
class GrantConsumption:
    """Credits drawn from one grant by a deduction."""

    grant_id: uuid.UUID
    used: int


@dataclass(frozen=True)
class ActiveGrant:
    """Spendable grant as shown in the credits breakdown."""

    grant_id: uuid.UUID
    source_type: str
    amount: int
    used_amount: int
    remaining: int
    expires_at: datetime


@dataclass
class GrantSummary:
    """Balance split by where the credits came from.

    Attributes:
        balance: Stored credit_balance.
        available: Spendable credits (balance minus lapsed grant credits).
        subscription: Remaining credits on active subscription grants.
        topup: Remaining credits on active top-up grants.
        manual: Remaining credits on active manual grants.
        ungranted: Spendable credits not tied to any expiring grant.
        lapsed: Unused credits on expired grants awaiting the sweep.
        grants: Active grants in consumption order.
    """

    balance: int
    available: int
    subscription: int = 0
    topup: int = 0
    manual: int = 0
    ungranted: int = 0
    lapsed: int = 0
    grants: list[ActiveGrant] = field(default_factory=list)


@dataclass
class SweepResult:
    """Outcome of one expiry sweep.

    Attributes:
        expired_count: Grants swept that still had unused credits.
        forfeited_credits: Credits removed from balances.
        swept_count: All grants stamped expired, including fully used ones.
        failed_count: Grants that could not be swept this run.
    """

    expired_count: int = 0
    forfeited_credits: int = 0
    swept_count: int = 0
    failed_count: int = 0


async def consume_fifo(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    now: datetime,
) -> list[GrantConsumption]:
    """Draw a deduction from active grants, soonest expiry first.

    Whatever the grants cannot cover comes from the ungranted part of the
    balance and is not recorded here.

    Args:
        db: Session inside the deduction's transaction.
        user_id: Balance owner.
        amount: Credits being deducted (positive).
        now: Reference time for expiry.

    Returns:
        Per-grant consumption, in the order grants were used.

    Raises:
        GrantConsumptionConflict: A grant update matched no row.
    """
    consumed: list[GrantConsumption] = []
    outstanding = amount

    for grant in await GrantRepository.list_spendable(db, user_id, now):
        if outstanding <= 0:
            break
        take = min(grant.amount - grant.used_amount, outstanding)
        if take <= 0:
            continue
        if not await GrantRepository.consume(db, grant.id, take):
            msg = f"Grant {grant.id} changed while being consumed"
            raise GrantConsumptionConflict(msg)
        consumed.append(GrantConsumption(grant_id=grant.id, used=take))
        outstanding -= take

    if consumed:
        logger.debug(
            "Deduction of %d for user %s drew %d from %d grant(s)",
            amount,
            user_id,
            amount - outstanding,
            len(consumed),
        )
    return consumed


async def summarize_active_grants(
    db: AsyncSession,
    user_id: uuid.UUID,
    now: datetime,
) -> GrantSummary:
    """Break a user's balance down by grant source.

    Args:
        db: Async database session.
        user_id: Balance owner.
        now: Reference time for expiry.

    Returns:
        GrantSummary with per-source totals and the active grants.
    """
    balance = await CreditRepository.get_balance(db, user_id)
    lapsed = await GrantRepository.sum_lapsed_remaining(db, user_id, now)
    available = max(0, balance - lapsed)

    summary = GrantSummary(balance=balance, available=available, lapsed=lapsed)
    granted = 0
    for grant in await GrantRepository.list_active(db, user_id, now):
        remaining = grant.amount - grant.used_amount
        granted += remaining
        summary.grants.append(
            ActiveGrant(
                grant_id=grant.id,
                source_type=grant.source_type,
                amount=grant.amount,
                used_amount=grant.used_amount,
                remaining=remaining,
                expires_at=grant.expires_at,
            )
        )
        if grant.source_type == GRANT_SOURCE_SUBSCRIPTION:
            summary.subscription += remaining
        elif grant.source_type == GRANT_SOURCE_TOPUP:
            summary.topup += remaining
        elif grant.source_type == GRANT_SOURCE_MANUAL:
            summary.manual += remaining

    summary.ungranted = max(0, available - granted)
    return summary


async def sweep_expired_grants(
    ledger: "LedgerService",
    *,
    batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
) -> SweepResult:
    """Forfeit every grant whose expires_at has passed.

    Each grant is expired in its own ledger transaction. Grants already
    swept are skipped, so running the sweep again is a no-op. A grant that
    keeps failing is logged and left for the next run.

    Args:
        ledger: Ledger service that performs the forfeits.
        batch_size: Candidates fetched per query.

    Returns:
        SweepResult totals for this run.
    """
    result = SweepResult()
    failed: set[uuid.UUID] = set()
    now = ledger.now()

    while True:
        limit = batch_size + len(failed)
        async with ledger.session_factory() as db:
            candidates = await GrantRepository.list_unswept_expired(
                db, now, limit=limit
            )
        pending = [grant_id for grant_id, _ in candidates if grant_id not in failed]
        if not pending:
            break

        for grant_id in pending:
            try:
                outcome = await ledger.expire_grant(grant_id)
            except APIError as exc:
                logger.error("Failed to expire grant %s: %s", grant_id, exc.message)
                failed.add(grant_id)
                continue
            if outcome is None:
                continue
            result.swept_count += 1
            if outcome.unused > 0:
                result.expired_count += 1
                result.forfeited_credits += outcome.forfeited

        if len(candidates) < limit:
            break

    result.failed_count = len(failed)
    logger.info(
        "Grant sweep: %d expired, %d credits forfeited, %d swept, %d failed",
        result.expired_count,
        result.forfeited_credits,
        result.swept_count,
        result.failed_count,
    )
    return result

"""Repository for time-boxed credit grants."""

import uuid
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import CreditGrant


class GrantRepository:
    """Stateless repository for CreditGrant operations.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        source_type: str,
        amount: int,
        expires_at: datetime,
        ledger_entry_id: uuid.UUID | None = None,
        source_reference: str | None = None,
    ) -> CreditGrant:
        """Record a new grant.

        Args:
            db: Async database session.
            user_id: Grant owner.
            source_type: One of subscription, topup, manual.
            amount: Credits granted (positive).
            expires_at: When the remainder stops being spendable.
            ledger_entry_id: The grant's ledger entry.
            source_reference: Billing reference (plan, invoice, purchase).

        Returns:
            Created CreditGrant.
        """
        grant = CreditGrant(
            user_id=user_id,
            source_type=source_type,
            amount=amount,
            used_amount=0,
            expires_at=expires_at,
            ledger_entry_id=ledger_entry_id,
            source_reference=source_reference,
        )
        db.add(grant)
        await db.flush()
        await db.refresh(grant)
        return grant

    @staticmethod
    async def get(db: AsyncSession, grant_id: uuid.UUID) -> CreditGrant | None:
        """Fetch a grant by id."""
        return await db.get(CreditGrant, grant_id)

    @staticmethod
    async def list_spendable(
        db: AsyncSession, user_id: uuid.UUID, now: datetime
    ) -> list[CreditGrant]:
        """List unexpired grants with credits left, soonest expiry first.

        Ties on expires_at are broken by creation order. Rows are locked
        FOR UPDATE where the dialect supports it.

        Args:
            db: Async database session.
            user_id: Grant owner.
            now: Reference time for expiry.

        Returns:
            Grants in consumption (FIFO) order.
        """
        stmt = (
            select(CreditGrant)
            .where(
                CreditGrant.user_id == user_id,
                CreditGrant.expired_at.is_(None),
                CreditGrant.expires_at > now,
                CreditGrant.used_amount < CreditGrant.amount,
            )
            .order_by(
                CreditGrant.expires_at.asc(),
                CreditGrant.created_at.asc(),
                CreditGrant.id.asc(),
            )
            .with_for_update()
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def sum_lapsed_remaining(
        db: AsyncSession, user_id: uuid.UUID, now: datetime
    ) -> int:
        """Unused credits on grants past expiry that the sweep has not reached.

        These credits are still counted in credit_balance but must not be
        spent.

        Args:
            db: Async database session.
            user_id: Grant owner.
            now: Reference time for expiry.

        Returns:
            Total unused credits on lapsed, unswept grants.
        """
        stmt = select(
            func.coalesce(func.sum(CreditGrant.amount - CreditGrant.used_amount), 0)
        ).where(
            CreditGrant.user_id == user_id,
            CreditGrant.expired_at.is_(None),
            CreditGrant.expires_at <= now,
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    async def consume(db: AsyncSession, grant_id: uuid.UUID, amount: int) -> bool:
        """Add to a grant's used_amount without exceeding its total.

        Args:
            db: Async database session.
            grant_id: Grant to draw from.
            amount: Credits to mark as used (positive).

        Returns:
            True if updated, False if the grant lacked the headroom.
        """
        stmt = (
            update(CreditGrant)
            .where(
                CreditGrant.id == grant_id,
                CreditGrant.used_amount + amount <= CreditGrant.amount,
            )
            .values(used_amount=CreditGrant.used_amount + amount)
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        rows_updated: int = result.rowcount
        return rows_updated > 0

    @staticmethod
    async def list_unswept_expired(
        db: AsyncSession, now: datetime, *, limit: int = 500
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """List grants past expiry that have not been swept yet.

        Args:
            db: Async database session.
            now: Reference time for expiry.
            limit: Maximum grants per batch.

        Returns:
            List of (grant_id, user_id) tuples, oldest expiry first.
        """
        stmt = (
            select(CreditGrant.id, CreditGrant.user_id)
            .where(
                CreditGrant.expired_at.is_(None),
                CreditGrant.expires_at <= now,
            )
            .order_by(CreditGrant.expires_at.asc(), CreditGrant.id.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return [(row.id, row.user_id) for row in result.all()]

    @staticmethod
    async def mark_expired(
        db: AsyncSession, grant_id: uuid.UUID, now: datetime
    ) -> int | None:
        """Forfeit a grant's remainder and stamp expired_at.

        Only matches grants not yet swept, so concurrent sweeps cannot
        forfeit the same grant twice.

        Args:
            db: Async database session.
            grant_id: Grant to expire.
            now: Sweep timestamp.

        Returns:
            Credits that were unused before the sweep, or None if the grant
            was already swept or does not exist.
        """
        remaining_stmt = select(CreditGrant.amount - CreditGrant.used_amount).where(
            CreditGrant.id == grant_id,
            CreditGrant.expired_at.is_(None),
        )
        remaining = (await db.execute(remaining_stmt)).scalar_one_or_none()
        if remaining is None:
            return None

        stmt = (
            update(CreditGrant)
            .where(CreditGrant.id == grant_id, CreditGrant.expired_at.is_(None))
            .values(used_amount=CreditGrant.amount, expired_at=now)
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        if result.rowcount == 0:
            return None
        return int(remaining)

    @staticmethod
    async def list_active(
        db: AsyncSession, user_id: uuid.UUID, now: datetime
    ) -> list[CreditGrant]:
        """Unexpired grants with credits left, in consumption order.

        Same selection as list_spendable without row locks, for read-only
        summaries.
        """
        stmt = (
            select(CreditGrant)
            .where(
                CreditGrant.user_id == user_id,
                CreditGrant.expired_at.is_(None),
                CreditGrant.expires_at > now,
                CreditGrant.used_amount < CreditGrant.amount,
            )
            .order_by(
                CreditGrant.expires_at.asc(),
                CreditGrant.created_at.asc(),
                CreditGrant.id.asc(),
            )
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

"""Repository for credit ledger entries and versioned balance updates.

Provides database access for the credit_ledger table and the optimistic
compare-and-swap on users.credit_balance / users.credit_balance_version.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import ENTRY_TYPE_REFUND, CreditLedgerEntry
from app.models.user import User


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance owner state read at the start of a ledger transaction."""

    user_id: uuid.UUID
    external_id: str
    email: str
    is_active: bool
    balance: int
    version: int
    low_balance_threshold: int
    auto_top_up_enabled: bool
    auto_top_up_amount: int


class CreditRepository:
    """Stateless repository for CreditLedgerEntry and balance operations.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_balance_snapshot(
        db: AsyncSession, user_id: uuid.UUID
    ) -> BalanceSnapshot | None:
        """Read balance, version and notification settings for a user.

        Args:
            db: Async database session.
            user_id: Balance owner.

        Returns:
            BalanceSnapshot if the user exists, None otherwise.
        """
        stmt = select(
            User.id,
            User.external_id,
            User.email,
            User.is_active,
            User.credit_balance,
            User.credit_balance_version,
            User.low_balance_threshold,
            User.auto_top_up_enabled,
            User.auto_top_up_amount,
        ).where(User.id == user_id)
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            return None
        return BalanceSnapshot(
            user_id=row.id,
            external_id=row.external_id,
            email=row.email,
            is_active=row.is_active,
            balance=row.credit_balance,
            version=row.credit_balance_version,
            low_balance_threshold=row.low_balance_threshold,
            auto_top_up_enabled=row.auto_top_up_enabled,
            auto_top_up_amount=row.auto_top_up_amount,
        )

    @staticmethod
    async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
        """Read the user's current balance.

        Args:
            db: Async database session.
            user_id: User to query balance for.

        Returns:
            Current balance in credits.
        """
        stmt = select(User.credit_balance).where(User.id == user_id)
        result = await db.execute(stmt)
        return result.scalar_one()

    @staticmethod
    async def apply_balance_delta(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        delta: int,
        expected_version: int,
    ) -> bool:
        """Apply a signed delta if the balance version is still current.

        The UPDATE matches only when credit_balance_version equals
        expected_version and the resulting balance stays non-negative.
        On success the version is incremented by one.

        Args:
            db: Async database session.
            user_id: Balance owner.
            delta: Signed credit change.
            expected_version: Version observed when the balance was read.

        Returns:
            True if the row was updated, False on a version mismatch.
        """
        stmt = (
            update(User)
            .where(
                User.id == user_id,
                User.credit_balance_version == expected_version,
                User.credit_balance + delta >= 0,
            )
            .values(
                credit_balance=User.credit_balance + delta,
                credit_balance_version=User.credit_balance_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        rows_updated: int = result.rowcount
        return rows_updated > 0

    @staticmethod
    async def create_entry(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        entry_type: str,
        amount: int,
        idempotency_key: str,
        balance_after: int,
        reason: str | None = None,
        breakdown: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
        client_id: str | None = None,
        environment: str | None = None,
        external_job_id: str | None = None,
        original_entry_id: uuid.UUID | None = None,
        created_at: datetime | None = None,
    ) -> CreditLedgerEntry:
        """Append a ledger entry.

        Args:
            db: Async database session.
            user_id: Balance owner.
            entry_type: One of grant, deduction, refund, expiry.
            amount: Signed amount (+credit, -debit).
            idempotency_key: Unique caller-supplied key.
            balance_after: Owner balance after this entry.
            reason: Human-readable reason.
            breakdown: Optional cost itemization.
            metadata: Free-form JSON object.
            client_id: Requesting automation client.
            environment: production or sandbox.
            external_job_id: Caller's job reference.
            original_entry_id: Refunded deduction, for refunds.
            created_at: Entry timestamp. Defaults to the database clock.

        Returns:
            Created CreditLedgerEntry with database-generated fields.

        Raises:
            IntegrityError: On flush, if idempotency_key already exists.
        """
        entry = CreditLedgerEntry(
            user_id=user_id,
            entry_type=entry_type,
            amount=amount,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            reason=reason,
            breakdown=breakdown,
            entry_metadata=metadata,
            client_id=client_id,
            environment=environment,
            external_job_id=external_job_id,
            original_entry_id=original_entry_id,
        )
        if created_at is not None:
            entry.created_at = created_at
        db.add(entry)
        await db.flush()
        await db.refresh(entry)
        return entry

    @staticmethod
    async def get_entry(
        db: AsyncSession, entry_id: uuid.UUID
    ) -> CreditLedgerEntry | None:
        """Fetch a ledger entry by id."""
        return await db.get(CreditLedgerEntry, entry_id)

    @staticmethod
    async def get_by_idempotency_key(
        db: AsyncSession, idempotency_key: str
    ) -> CreditLedgerEntry | None:
        """Fetch the ledger entry recorded under an idempotency key.

        Args:
            db: Async database session.
            idempotency_key: Caller-supplied key.

        Returns:
            CreditLedgerEntry if found, None otherwise.
        """
        stmt = select(CreditLedgerEntry).where(
            CreditLedgerEntry.idempotency_key == idempotency_key
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def sum_refunded(db: AsyncSession, original_entry_id: uuid.UUID) -> int:
        """Total credits already refunded against a deduction.

        Args:
            db: Async database session.
            original_entry_id: The deduction entry.

        Returns:
            Sum of refund amounts (0 if none).
        """
        stmt = select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0)).where(
            CreditLedgerEntry.original_entry_id == original_entry_id,
            CreditLedgerEntry.entry_type == ENTRY_TYPE_REFUND,
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    async def list_by_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        entry_type: str | None = None,
    ) -> tuple[list[CreditLedgerEntry], int]:
        """List ledger entries for a user with pagination, newest first.

        Args:
            db: Async database session.
            user_id: User to query entries for.
            offset: Number of records to skip.
            limit: Maximum records to return.
            entry_type: Optional filter (grant, deduction, refund, expiry).

        Returns:
            Tuple of (entries list, total count).
        """
        conditions = [CreditLedgerEntry.user_id == user_id]
        if entry_type is not None:
            conditions.append(CreditLedgerEntry.entry_type == entry_type)

        count_stmt = (
            select(func.count()).select_from(CreditLedgerEntry).where(*conditions)
        )
        total_result = await db.execute(count_stmt)
        total = total_result.scalar_one()

        data_stmt = (
            select(CreditLedgerEntry)
            .where(*conditions)
            .order_by(
                CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc()
            )
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        entries = list(result.scalars().all())

        return entries, total

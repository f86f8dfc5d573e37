"""Repository for User lookups and balance-owner settings."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

# Fields that may be updated via UserRepository.update_settings().
# Security: credit_balance and credit_balance_version are only ever changed
# by CreditRepository.apply_balance_delta() inside a ledger transaction.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "low_balance_threshold",
        "auto_top_up_enabled",
        "auto_top_up_amount",
    }
)


class UserRepository:
    """Stateless repository for User table operations.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
        """Fetch a user by primary key.

        Args:
            db: Async database session.
            user_id: UUID primary key.

        Returns:
            User if found, None otherwise.
        """
        return await db.get(User, user_id)

    @staticmethod
    async def get_by_external_id(db: AsyncSession, external_id: str) -> User | None:
        """Fetch a user by identity-provider id.

        Args:
            db: Async database session.
            external_id: Id issued by the identity provider.

        Returns:
            User if found, None otherwise.
        """
        stmt = select(User).where(User.external_id == external_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """Fetch a user by email address (case-insensitive).

        Args:
            db: Async database session.
            email: Email address to look up.

        Returns:
            User if found, None otherwise.
        """
        stmt = select(User).where(User.email == email.strip().lower())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def update_settings(
        db: AsyncSession,
        user_id: uuid.UUID,
        **kwargs: object,
    ) -> User | None:
        """Update low-balance and auto-top-up settings.

        Args:
            db: Async database session.
            user_id: User to update.
            **kwargs: Fields to update (must be in _UPDATABLE_FIELDS).

        Returns:
            Updated User if found, None otherwise.

        Raises:
            ValueError: If any field is not updatable.
        """
        invalid = set(kwargs) - _UPDATABLE_FIELDS
        if invalid:
            msg = f"Cannot update fields: {', '.join(sorted(invalid))}"
            raise ValueError(msg)

        user = await db.get(User, user_id)
        if user is None:
            return None

        for key, value in kwargs.items():
            setattr(user, key, value)

        await db.flush()
        await db.refresh(user)
        return user

"""User model - the balance owner.

Holds the cached credit balance and the optimistic-concurrency version
that every ledger mutation must advance.
"""

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.credit import CreditGrant, CreditLedgerEntry


class User(Base, TimestampMixin):
    """User account and credit balance.

    Attributes:
        id: UUID primary key.
        external_id: Identity-provider user id (what automation sends as userId).
        email: Unique email address.
        is_active: Inactive users cannot be charged or credited.
        credit_balance: Current credits. Never negative.
        credit_balance_version: Incremented by every balance mutation.
        low_balance_threshold: Balance at or below which low-balance events fire.
        auto_top_up_enabled: Whether a top-up is requested when balance runs low.
        auto_top_up_amount: Credits to request per top-up.
        created_at: Account creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_nonneg"),
        CheckConstraint(
            "low_balance_threshold >= 0", name="ck_users_low_balance_threshold_nonneg"
        ),
        CheckConstraint(
            "auto_top_up_amount >= 0", name="ck_users_auto_top_up_amount_nonneg"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    external_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )
    credit_balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
        default=0,
    )
    credit_balance_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
        default=0,
    )
    low_balance_threshold: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("5"),
        default=5,
    )
    auto_top_up_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    auto_top_up_amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
        default=0,
    )

    # Relationships
    ledger_entries: Mapped[list["CreditLedgerEntry"]] = relationship(
        "CreditLedgerEntry",
        back_populates="user",
        passive_deletes=True,
    )
    credit_grants: Mapped[list["CreditGrant"]] = relationship(
        "CreditGrant",
        back_populates="user",
        passive_deletes=True,
    )

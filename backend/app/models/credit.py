"""Credit ledger ORM models.

CreditLedgerEntry is the append-only record of every balance change;
rows are never updated or deleted. CreditGrant tracks time-boxed credit
allotments and how much of each has been consumed.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType

if TYPE_CHECKING:
    from app.models.user import User

ENTRY_TYPE_GRANT = "grant"
ENTRY_TYPE_DEDUCTION = "deduction"
ENTRY_TYPE_REFUND = "refund"
ENTRY_TYPE_EXPIRY = "expiry"
ENTRY_TYPES: frozenset[str] = frozenset(
    {ENTRY_TYPE_GRANT, ENTRY_TYPE_DEDUCTION, ENTRY_TYPE_REFUND, ENTRY_TYPE_EXPIRY}
)

GRANT_SOURCE_SUBSCRIPTION = "subscription"
GRANT_SOURCE_TOPUP = "topup"
GRANT_SOURCE_MANUAL = "manual"
GRANT_SOURCES: frozenset[str] = frozenset(
    {GRANT_SOURCE_SUBSCRIPTION, GRANT_SOURCE_TOPUP, GRANT_SOURCE_MANUAL}
)

# Balances and amounts are stored in 32-bit integer columns
MAX_CREDIT_BALANCE = 2_147_483_647
MAX_CREDIT_AMOUNT = 1_000_000_000


class CreditLedgerEntry(Base):
    """Append-only ledger of all balance changes.

    Positive amounts = credits (grants, refunds).
    Negative amounts = debits (deductions, grant expiries).

    Attributes:
        id: UUID primary key.
        user_id: FK to users table (balance owner).
        entry_type: One of grant, deduction, refund, expiry.
        amount: Signed credit delta.
        reason: Human-readable reason.
        idempotency_key: Caller-supplied key, unique across the ledger.
        breakdown: Optional cost itemization (list of objects).
        entry_metadata: Free-form JSON object (column "metadata").
        balance_after: Owner balance right after this entry.
        client_id: Automation client that requested the change.
        environment: Request environment tag (production/sandbox).
        external_job_id: Caller's job reference, if any.
        original_entry_id: For refunds, the deduction being refunded.
        created_at: Entry timestamp.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('grant', 'deduction', 'refund', 'expiry')",
            name="ck_credit_ledger_entry_type_valid",
        ),
        CheckConstraint("amount <> 0", name="ck_credit_ledger_amount_nonzero"),
        CheckConstraint(
            "balance_after >= 0", name="ck_credit_ledger_balance_after_nonneg"
        ),
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
        Index("ix_credit_ledger_original_entry", "original_entry_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id"),
        nullable=False,
    )
    entry_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    breakdown: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType,
        nullable=True,
    )
    entry_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )
    balance_after: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    client_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    environment: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    external_job_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    original_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_ledger.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="ledger_entries")


class CreditGrant(Base):
    """Time-boxed credit allotment from a subscription cycle or purchase.

    used_amount grows as deductions consume the grant. Once expires_at has
    passed the remainder is unavailable; the expiry sweep then sets
    used_amount = amount and stamps expired_at. Grants are never deleted.

    Attributes:
        id: UUID primary key.
        user_id: FK to users table.
        source_type: One of subscription, topup, manual.
        amount: Credits granted.
        used_amount: Credits consumed so far (or forfeited at expiry).
        expires_at: When the remainder stops being spendable.
        expired_at: When the sweep forfeited the grant. NULL until swept.
        ledger_entry_id: The grant's ledger entry.
        source_reference: Plan / invoice / purchase id from billing.
        created_at: Grant timestamp.
    """

    __tablename__ = "credit_grants"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_grants_amount_positive"),
        CheckConstraint("used_amount >= 0", name="ck_credit_grants_used_nonneg"),
        CheckConstraint(
            "used_amount <= amount", name="ck_credit_grants_used_within_amount"
        ),
        CheckConstraint(
            "source_type IN ('subscription', 'topup', 'manual')",
            name="ck_credit_grants_source_type_valid",
        ),
        Index("ix_credit_grants_user_expires", "user_id", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id"),
        nullable=False,
    )
    source_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    used_amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ledger_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_ledger.id"),
        nullable=True,
    )
    source_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="credit_grants")

    @property
    def remaining(self) -> int:
        """Credits not yet consumed (ignores expiry)."""
        return self.amount - self.used_amount

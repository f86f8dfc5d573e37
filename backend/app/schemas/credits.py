"""Credit API request/response schemas.

Wire format is camelCase (userId, idempotencyKey, newBalance, ...).
Models accept snake_case field names too so services and tests can build
them directly. FastAPI serializes response models by alias.
"""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from app.models.credit import MAX_CREDIT_AMOUNT, CreditLedgerEntry

GrantSourceType = Literal["subscription", "topup", "manual"]
EntryType = Literal["grant", "deduction", "refund", "expiry"]

_MAX_BREAKDOWN_ITEMS = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


# =============================================================================
# Request bodies (HMAC-signed automation endpoints)
# =============================================================================


class BreakdownItem(_CamelModel):
    """One line of a cost itemization.

    Attributes:
        platform: Upstream platform the work ran on.
        action: What was done (e.g. "render", "transcribe").
        units: Quantity consumed.
        unit_type: Unit of measure (seconds, images, ...).
        unit_price: Credits per unit.
        subtotal: Credits for this line.
    """

    platform: str | None = Field(default=None, max_length=100)
    action: str | None = Field(default=None, max_length=100)
    units: float | None = Field(default=None, ge=0)
    unit_type: str | None = Field(default=None, max_length=50)
    unit_price: float | None = Field(default=None, ge=0)
    subtotal: float | None = Field(default=None, ge=0)


class _OwnerReference(_CamelModel):
    """Exactly one of userId (identity-provider id) or userEmail."""

    user_id: str | None = Field(default=None, min_length=1, max_length=255)
    user_email: str | None = Field(default=None, min_length=3, max_length=255)

    @model_validator(mode="after")
    def check_single_owner(self) -> "_OwnerReference":
        """Require exactly one owner identifier."""
        if (self.user_id is None) == (self.user_email is None):
            raise ValueError("Provide exactly one of userId or userEmail")
        if self.user_email is not None and "@" not in self.user_email:
            raise ValueError("userEmail must be an email address")
        return self


class DeductionRequest(_OwnerReference):
    """Body of POST /credits/deductions."""

    amount: int = Field(gt=0, le=MAX_CREDIT_AMOUNT, strict=True)
    reason: str | None = Field(default=None, max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)
    external_job_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None
    breakdown: list[BreakdownItem] | None = Field(
        default=None, max_length=_MAX_BREAKDOWN_ITEMS
    )


class RefundRequest(_CamelModel):
    """Body of POST /credits/refunds."""

    ledger_id: uuid.UUID
    amount: int | None = Field(default=None, gt=0, le=MAX_CREDIT_AMOUNT, strict=True)
    reason: str | None = Field(default=None, max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)
    metadata: dict[str, Any] | None = None


class GrantRequest(_OwnerReference):
    """Body of POST /credits/grants."""

    amount: int = Field(gt=0, le=MAX_CREDIT_AMOUNT, strict=True)
    source_type: GrantSourceType
    reason: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None
    source_reference: str | None = Field(default=None, max_length=255)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)
    metadata: dict[str, Any] | None = None


# =============================================================================
# Responses (HMAC-signed automation endpoints)
# =============================================================================


class DeductionResponse(_CamelModel):
    """Result of a deduction."""

    success: bool = True
    ledger_id: uuid.UUID | None
    user_id: str
    user_email: str | None
    deducted: int
    new_balance: int
    idempotent: bool
    sandbox: bool
    environment: str
    timestamp: datetime


class RefundResponse(_CamelModel):
    """Result of a refund."""

    success: bool = True
    ledger_id: uuid.UUID | None
    original_ledger_id: uuid.UUID
    user_id: str
    refunded: int
    new_balance: int
    idempotent: bool
    timestamp: datetime


class GrantResponse(_CamelModel):
    """Result of a grant."""

    success: bool = True
    ledger_id: uuid.UUID | None
    user_id: str
    user_email: str | None
    granted: int
    new_balance: int
    source_type: GrantSourceType
    expires_at: datetime | None
    idempotent: bool
    sandbox: bool
    environment: str
    timestamp: datetime


class LedgerEntryResponse(_CamelModel):
    """One ledger entry as returned by the API."""

    id: uuid.UUID
    user_id: uuid.UUID
    entry_type: EntryType
    amount: int
    reason: str | None
    balance_after: int
    idempotency_key: str
    breakdown: list[dict[str, Any]] | None
    metadata: dict[str, Any] | None
    client_id: str | None
    environment: str | None
    external_job_id: str | None
    original_ledger_id: uuid.UUID | None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: CreditLedgerEntry) -> "LedgerEntryResponse":
        """Build from an ORM ledger entry."""
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            entry_type=entry.entry_type,  # type: ignore[arg-type]
            amount=entry.amount,
            reason=entry.reason,
            balance_after=entry.balance_after,
            idempotency_key=entry.idempotency_key,
            breakdown=entry.breakdown,
            metadata=entry.entry_metadata,
            client_id=entry.client_id,
            environment=entry.environment,
            external_job_id=entry.external_job_id,
            original_ledger_id=entry.original_entry_id,
            created_at=entry.created_at,
        )


class SweepResponse(_CamelModel):
    """Result of POST /cron/expire-grants."""

    success: bool = True
    expired_count: int
    forfeited_credits: int
    message: str


# =============================================================================
# Self-service responses
# =============================================================================


class BalanceResponse(_CamelModel):
    """Response for GET /me/balance.

    Attributes:
        balance: Stored balance.
        available: Spendable balance (excludes lapsed grant credits).
        low_balance_threshold: Alert threshold.
        as_of: When the balance was read.
    """

    balance: int
    available: int
    low_balance_threshold: int
    as_of: datetime


class ActiveGrantResponse(_CamelModel):
    """One spendable grant in the credits breakdown."""

    id: uuid.UUID
    source_type: GrantSourceType
    amount: int
    used_amount: int
    remaining: int
    expires_at: datetime


class CreditsBreakdownResponse(_CamelModel):
    """Response for GET /me/credits-breakdown."""

    balance: int
    available: int
    subscription: int
    topup: int
    manual: int
    ungranted: int
    lapsed: int
    grants: list[ActiveGrantResponse]


class LowBalanceResponse(_CamelModel):
    """Response for GET /me/low-balance."""

    balance: int
    threshold: int
    is_low: bool
    auto_top_up_enabled: bool
    auto_top_up_amount: int


class AutoTopUpRequest(_CamelModel):
    """Body of PUT /me/auto-top-up.

    Attributes:
        enabled: Request a top-up when the balance runs low.
        amount: Credits per top-up. Required (> 0) when enabling unless
            already set.
        low_balance_threshold: Optional new alert threshold.
    """

    enabled: bool
    amount: int | None = Field(default=None, ge=0, le=1_000_000, strict=True)
    low_balance_threshold: int | None = Field(
        default=None, ge=0, le=1_000_000, strict=True
    )

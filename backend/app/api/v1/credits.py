"""Credit API router for external automation.

Every endpoint requires an HMAC-signed request (X-HMAC-Signature over the
raw body) and an X-Client-Id. Per-client fixed-window quotas apply after
the signature is verified. Requests tagged ``X-Environment: sandbox`` are
validated and priced against the real balance but deductions and grants
are not written, and no webhooks are sent.
"""

import uuid
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import DbSession, Ledger, SignedBody
from app.core.config import settings
from app.core.errors import ForbiddenError, InvalidInputError, NotFoundError
from app.core.hmac_gateway import SignedRequest
from app.core.rate_limiting import assert_rate_limit
from app.models.user import User
from app.repositories.user_repository import UserRepository
from app.schemas.credits import (
    DeductionRequest,
    DeductionResponse,
    GrantRequest,
    GrantResponse,
    LedgerEntryResponse,
    RefundRequest,
    RefundResponse,
)

router = APIRouter()

logger = structlog.get_logger()

_DEFAULT_DEDUCTION_REASON = "Credit deduction"

# =============================================================================
# Shared helpers
# =============================================================================


def _enforce_quota(key: str, max_requests: int) -> None:
    """Count this request against the caller's quota when limits are on."""
    if settings.rate_limit_enabled:
        assert_rate_limit(key, max_requests, settings.rate_limit_window_ms)


def _idempotency_key(body_key: str | None, signed: SignedRequest) -> str:
    """Pick the idempotency key from the body, else the header."""
    key = (body_key or "").strip() or signed.idempotency_key
    if not key:
        raise InvalidInputError(
            "Idempotency key is required (idempotencyKey or Idempotency-Key header)",
            code="IDEMPOTENCY_KEY_MISSING",
        )
    return key


async def _resolve_owner(
    db: AsyncSession, user_id: str | None, user_email: str | None
) -> User:
    """Look up the balance owner by identity-provider id or email.

    Raises:
        NotFoundError: USER_NOT_FOUND.
        ForbiddenError: USER_INACTIVE.
    """
    if user_id is not None:
        user = await UserRepository.get_by_external_id(db, user_id)
    else:
        user = await UserRepository.get_by_email(db, user_email or "")
    if user is None:
        raise NotFoundError("User", code="USER_NOT_FOUND")
    if not user.is_active:
        raise ForbiddenError("User account is inactive", code="USER_INACTIVE")
    return user


# =============================================================================
# POST /deductions
# =============================================================================


@router.post("/deductions")
async def create_deduction(
    signed: SignedBody,
    db: DbSession,
    ledger: Ledger,
) -> DeductionResponse:
    """Charge credits for work done by an automation client.

    Replays with the same idempotency key return the original result with
    ``idempotent: true`` and do not charge again.
    """
    _enforce_quota(f"credits:{signed.client_id}", settings.rate_limit_deductions)
    body = signed.parse(DeductionRequest)
    key = _idempotency_key(body.idempotency_key, signed)
    owner = await _resolve_owner(db, body.user_id, body.user_email)

    if signed.is_sandbox:
        result = await ledger.simulate(owner.id, -body.amount)
    else:
        breakdown = (
            [item.model_dump(by_alias=True, exclude_none=True) for item in body.breakdown]
            if body.breakdown
            else None
        )
        result = await ledger.deduct(
            owner.id,
            body.amount,
            idempotency_key=key,
            reason=body.reason or _DEFAULT_DEDUCTION_REASON,
            metadata=body.metadata,
            breakdown=breakdown,
            client_id=signed.client_id,
            environment=signed.environment,
            external_job_id=body.external_job_id,
        )

    logger.info(
        "Credits deducted",
        client_id=signed.client_id,
        user_id=str(owner.id),
        amount=body.amount,
        new_balance=result.new_balance,
        idempotent=result.idempotent,
        sandbox=result.sandbox,
    )
    return DeductionResponse(
        ledger_id=result.ledger_entry_id,
        user_id=owner.external_id,
        user_email=owner.email,
        deducted=body.amount,
        new_balance=result.new_balance,
        idempotent=result.idempotent,
        sandbox=result.sandbox,
        environment=signed.environment,
        timestamp=datetime.now(UTC),
    )


# =============================================================================
# POST /refunds
# =============================================================================


@router.post("/refunds")
async def create_refund(
    signed: SignedBody,
    db: DbSession,
    ledger: Ledger,
) -> RefundResponse:
    """Refund all or part of an earlier deduction.

    Without an amount, everything still refundable on the deduction is
    returned. Sandbox refunds are recorded (tagged sandbox) but do not
    notify webhook receivers.
    """
    _enforce_quota(f"credits:refund:{signed.client_id}", settings.rate_limit_refunds)
    body = signed.parse(RefundRequest)
    key = _idempotency_key(body.idempotency_key, signed)

    result = await ledger.refund(
        body.ledger_id,
        body.amount,
        idempotency_key=key,
        reason=body.reason,
        metadata=body.metadata,
        client_id=signed.client_id,
        environment=signed.environment,
    )
    owner = await UserRepository.get_by_id(db, result.user_id)

    logger.info(
        "Credits refunded",
        client_id=signed.client_id,
        user_id=str(result.user_id),
        original_ledger_id=str(body.ledger_id),
        amount=result.amount,
        idempotent=result.idempotent,
    )
    return RefundResponse(
        ledger_id=result.ledger_entry_id,
        original_ledger_id=body.ledger_id,
        user_id=owner.external_id if owner is not None else str(result.user_id),
        refunded=result.amount,
        new_balance=result.new_balance,
        idempotent=result.idempotent,
        timestamp=datetime.now(UTC),
    )


# =============================================================================
# POST /grants
# =============================================================================


@router.post("/grants")
async def create_grant(
    signed: SignedBody,
    db: DbSession,
    ledger: Ledger,
) -> GrantResponse:
    """Add credits from a subscription cycle, top-up purchase or manual grant.

    With ``expiresAt`` the credits are tracked as a grant and forfeited by
    the expiry sweep if still unused at that time.
    """
    _enforce_quota(f"credits:grant:{signed.client_id}", settings.rate_limit_grants)
    body = signed.parse(GrantRequest)
    key = _idempotency_key(body.idempotency_key, signed)
    owner = await _resolve_owner(db, body.user_id, body.user_email)

    if signed.is_sandbox:
        result = await ledger.simulate(owner.id, body.amount)
    else:
        result = await ledger.grant(
            owner.id,
            body.amount,
            idempotency_key=key,
            reason=body.reason,
            source_type=body.source_type,
            expires_at=body.expires_at,
            source_reference=body.source_reference,
            metadata=body.metadata,
            client_id=signed.client_id,
            environment=signed.environment,
        )

    logger.info(
        "Credits granted",
        client_id=signed.client_id,
        user_id=str(owner.id),
        amount=body.amount,
        source_type=body.source_type,
        idempotent=result.idempotent,
        sandbox=result.sandbox,
    )
    return GrantResponse(
        ledger_id=result.ledger_entry_id,
        user_id=owner.external_id,
        user_email=owner.email,
        granted=body.amount,
        new_balance=result.new_balance,
        source_type=body.source_type,
        expires_at=body.expires_at,
        idempotent=result.idempotent,
        sandbox=result.sandbox,
        environment=signed.environment,
        timestamp=datetime.now(UTC),
    )


# =============================================================================
# GET /ledger/{ledger_id}
# =============================================================================


@router.get("/ledger/{ledger_id}")
async def get_ledger_entry(
    ledger_id: uuid.UUID,
    signed: SignedBody,
    ledger: Ledger,
) -> LedgerEntryResponse:
    """Return one ledger entry (signature covers the empty body)."""
    _enforce_quota(
        f"credits:ledger:{signed.client_id}", settings.rate_limit_ledger_reads
    )
    entry = await ledger.get_entry(ledger_id)
    return LedgerEntryResponse.from_entry(entry)

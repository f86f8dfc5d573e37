"""Pydantic request/response schemas for API endpoints."""

from app.schemas.credits import (
    ActiveGrantResponse,
    AutoTopUpRequest,
    BalanceResponse,
    BreakdownItem,
    CreditsBreakdownResponse,
    DeductionRequest,
    DeductionResponse,
    GrantRequest,
    GrantResponse,
    LedgerEntryResponse,
    LowBalanceResponse,
    RefundRequest,
    RefundResponse,
    SweepResponse,
)

__all__ = [
    # Automation requests
    "BreakdownItem",
    "DeductionRequest",
    "GrantRequest",
    "RefundRequest",
    # Automation responses
    "DeductionResponse",
    "GrantResponse",
    "LedgerEntryResponse",
    "RefundResponse",
    "SweepResponse",
    # Self-service
    "ActiveGrantResponse",
    "AutoTopUpRequest",
    "BalanceResponse",
    "CreditsBreakdownResponse",
    "LowBalanceResponse",
]

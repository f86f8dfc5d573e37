"""SQLAlchemy ORM models for the credit ledger.

All models are exported from this module for convenient imports:
    from app.models import User, CreditLedgerEntry, CreditGrant

Models are organized by domain:
- user.py: User (balance owner, optimistic version column)
- credit.py: CreditLedgerEntry (append-only), CreditGrant (time-boxed credits)
"""

from app.models.base import Base, TimestampMixin
from app.models.credit import CreditGrant, CreditLedgerEntry
from app.models.user import User

__all__ = [
    "Base",
    "CreditGrant",
    "CreditLedgerEntry",
    "TimestampMixin",
    "User",
]

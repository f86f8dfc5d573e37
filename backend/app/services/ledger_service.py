"""Credit balance mutations.

Every change to a balance goes through LedgerService. One mutation runs in
one database transaction:

1. replay check on the idempotency key;
2. read balance and version;
3. funds check for debits (lapsed, unswept grant credits do not count);
4. conditional UPDATE guarded by credit_balance_version;
5. FIFO grant consumption for deductions;
6. ledger INSERT carrying balance_after.

A version mismatch or a concurrent insert of the same idempotency key
rolls the attempt back and retries the whole transaction with exponential
backoff. Webhooks are scheduled only after the transaction commits.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings
from app.core.errors import (
    BalanceVersionConflictError,
    DuplicateTransactionError,
    ForbiddenError,
    InsufficientCreditsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    UpstreamUnavailableError,
)
from app.core.hmac_gateway import ENVIRONMENT_SANDBOX
from app.core.retry import RetryPolicy, with_retries
from app.models.credit import (
    ENTRY_TYPE_DEDUCTION,
    ENTRY_TYPE_EXPIRY,
    ENTRY_TYPE_GRANT,
    ENTRY_TYPE_REFUND,
    ENTRY_TYPES,
    GRANT_SOURCE_MANUAL,
    GRANT_SOURCES,
    MAX_CREDIT_AMOUNT,
    MAX_CREDIT_BALANCE,
    CreditLedgerEntry,
)
from app.repositories.credit_repository import BalanceSnapshot, CreditRepository
from app.repositories.grant_repository import GrantRepository
from app.repositories.user_repository import UserRepository
from app.services.grant_service import (
    GrantConsumption,
    GrantConsumptionConflict,
    consume_fifo,
)
from app.services.webhook_dispatcher import (
    EVENT_AUTO_TOP_UP_REQUESTED,
    EVENT_DEDUCTION_FAILED,
    EVENT_DEDUCTION_SUCCEEDED,
    EVENT_GRANT_SUCCEEDED,
    EVENT_LOW_BALANCE,
    EVENT_REFUND_FAILED,
    EVENT_REFUND_SUCCEEDED,
    CreditWebhookDispatcher,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Entry types whose amount must be negative / positive.
_DEBIT_TYPES = frozenset({ENTRY_TYPE_DEDUCTION, ENTRY_TYPE_EXPIRY})
_CREDIT_TYPES = frozenset({ENTRY_TYPE_GRANT, ENTRY_TYPE_REFUND})

_MAX_IDEMPOTENCY_KEY_LENGTH = 255

REFUND_NOT_AVAILABLE = "REFUND_NOT_AVAILABLE"
REFUND_EXCEEDS_ORIGINAL = "REFUND_EXCEEDS_ORIGINAL"


class _BalanceVersionMismatch(Exception):
    """The conditional balance update matched no rows."""


class _StoreUnavailable(Exception):
    """The database connection failed mid-transaction."""


def is_low_balance(balance: int, threshold: int) -> bool:
    """Whether a balance is at or below the owner's alert threshold."""
    return balance <= threshold


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a balance mutation.

    Attributes:
        new_balance: Balance after the mutation (the stored balance_after
            for idempotent replays, the projected balance for sandbox).
        ledger_entry_id: Ledger row id. None for sandbox simulations.
        idempotent: True when the key had already been applied.
        user_id: Balance owner.
        amount: Signed delta recorded (or simulated).
        entry_type: Ledger entry type.
        sandbox: True when nothing was written.
        owner: Owner state read during the mutation. None on replays.
        consumed_grants: Grants drawn down by a deduction.
    """

    new_balance: int
    ledger_entry_id: uuid.UUID | None
    idempotent: bool
    user_id: uuid.UUID
    amount: int
    entry_type: str
    sandbox: bool = False
    owner: BalanceSnapshot | None = None
    consumed_grants: tuple[GrantConsumption, ...] = ()
    original_entry_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ExpiryOutcome:
    """Result of forfeiting one expired grant.

    Attributes:
        unused: Credits the grant still had when it was swept.
        forfeited: Credits actually removed from the balance
            (min(unused, balance)).
    """

    unused: int
    forfeited: int


@dataclass
class _Mutation:
    owner_id: uuid.UUID
    amount: int
    entry_type: str
    idempotency_key: str
    reason: str | None = None
    metadata: dict[str, Any] | None = None
    breakdown: list[dict[str, Any]] | None = None
    client_id: str | None = None
    environment: str | None = None
    external_job_id: str | None = None
    original_entry_id: uuid.UUID | None = None
    grant_source_type: str | None = None
    grant_expires_at: datetime | None = None
    grant_source_reference: str | None = None


def _validate_key(idempotency_key: str | None) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise InvalidInputError(
            "Idempotency key is required", code="IDEMPOTENCY_KEY_MISSING"
        )
    if len(key) > _MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidInputError(
            f"Idempotency key must be at most {_MAX_IDEMPOTENCY_KEY_LENGTH} characters"
        )
    return key


def _check_amount_bounds(amount: int) -> None:
    if abs(amount) > MAX_CREDIT_AMOUNT:
        raise InvalidInputError(
            f"Amount must be at most {MAX_CREDIT_AMOUNT} credits",
            details=[{"field": "amount", "max": MAX_CREDIT_AMOUNT}],
        )


def _check_balance_ceiling(balance: int, amount: int) -> None:
    if balance + amount > MAX_CREDIT_BALANCE:
        raise InvalidInputError(
            f"Balance cannot exceed {MAX_CREDIT_BALANCE} credits",
            code="BALANCE_LIMIT_EXCEEDED",
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class LedgerService:
    """Applies idempotent, version-checked balance mutations.

    Args:
        session_factory: Opens one session per transaction attempt.
        dispatcher: Webhook dispatcher. None disables notifications.
        retry_policy: Retry budget for version conflicts and store errors.
        clock: Returns the current UTC time (tests pin it).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        dispatcher: CreditWebhookDispatcher | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._policy = retry_policy or RetryPolicy(
            max_retries=3, base_delay_ms=25, max_delay_ms=500
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: CreditWebhookDispatcher | None = None,
        config: Settings = settings,
    ) -> "LedgerService":
        """Build a service using the configured retry budget."""
        return cls(
            session_factory,
            dispatcher=dispatcher,
            retry_policy=RetryPolicy(
                max_retries=config.ledger_max_retries,
                base_delay_ms=config.ledger_retry_base_delay_ms,
                max_delay_ms=config.ledger_retry_max_delay_ms,
            ),
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory used for ledger transactions."""
        return self._session_factory

    def now(self) -> datetime:
        """Current time according to the service clock."""
        return self._clock()

    # =========================================================================
    # Transaction plumbing
    # =========================================================================

    async def _run_transaction(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """Run operation in a fresh transaction, retrying on conflicts.

        Raises:
            BalanceVersionConflictError: Conflicts persisted past the budget.
            UpstreamUnavailableError: The store kept failing.
        """

        async def attempt() -> T:
            try:
                async with self._session_factory() as db, db.begin():
                    return await operation(db)
            except IntegrityError as exc:
                # Lost an idempotency-key race; the retry takes the replay path.
                raise _BalanceVersionMismatch(str(exc.orig)) from exc
            except (OperationalError, InterfaceError) as exc:
                raise _StoreUnavailable(str(exc.orig)) from exc

        try:
            return await with_retries(
                attempt,
                self._policy,
                (_BalanceVersionMismatch, _StoreUnavailable),
                operation=label,
            )
        except _BalanceVersionMismatch as exc:
            logger.warning("%s: balance version conflict persisted", label)
            raise BalanceVersionConflictError() from exc
        except _StoreUnavailable as exc:
            logger.error("%s: credit store unavailable", label)
            raise UpstreamUnavailableError() from exc

    @staticmethod
    def _replay(
        existing: CreditLedgerEntry, owner_id: uuid.UUID, key: str
    ) -> MutationResult:
        if existing.user_id != owner_id:
            raise DuplicateTransactionError(key)
        return MutationResult(
            new_balance=existing.balance_after,
            ledger_entry_id=existing.id,
            idempotent=True,
            user_id=existing.user_id,
            amount=existing.amount,
            entry_type=existing.entry_type,
            original_entry_id=existing.original_entry_id,
        )

    @staticmethod
    async def _load_owner(
        db: AsyncSession, owner_id: uuid.UUID, *, allow_inactive: bool = False
    ) -> BalanceSnapshot:
        snapshot = await CreditRepository.get_balance_snapshot(db, owner_id)
        if snapshot is None:
            raise NotFoundError("User", str(owner_id), code="USER_NOT_FOUND")
        if not snapshot.is_active and not allow_inactive:
            raise ForbiddenError("User account is inactive", code="USER_INACTIVE")
        return snapshot

    async def _available(
        self, db: AsyncSession, snapshot: BalanceSnapshot, now: datetime
    ) -> int:
        lapsed = await GrantRepository.sum_lapsed_remaining(db, snapshot.user_id, now)
        return max(0, snapshot.balance - lapsed)

    async def _apply(self, db: AsyncSession, m: _Mutation) -> MutationResult:
        """One attempt of a mutation inside an open transaction."""
        existing = await CreditRepository.get_by_idempotency_key(
            db, m.idempotency_key
        )
        if existing is not None:
            return self._replay(existing, m.owner_id, m.idempotency_key)

        snapshot = await self._load_owner(
            db, m.owner_id, allow_inactive=m.entry_type == ENTRY_TYPE_EXPIRY
        )
        now = self.now()

        if m.amount < 0 and m.entry_type != ENTRY_TYPE_EXPIRY:
            available = await self._available(db, snapshot, now)
            if available + m.amount < 0:
                raise InsufficientCreditsError(balance=available, required=-m.amount)
        elif snapshot.balance + m.amount < 0:
            raise InsufficientCreditsError(
                balance=snapshot.balance, required=-m.amount
            )
        _check_balance_ceiling(snapshot.balance, m.amount)

        updated = await CreditRepository.apply_balance_delta(
            db,
            user_id=m.owner_id,
            delta=m.amount,
            expected_version=snapshot.version,
        )
        if not updated:
            raise _BalanceVersionMismatch(
                f"user {m.owner_id} version {snapshot.version} is stale"
            )
        new_balance = snapshot.balance + m.amount

        consumed: list[GrantConsumption] = []
        if m.entry_type == ENTRY_TYPE_DEDUCTION:
            try:
                consumed = await consume_fifo(db, m.owner_id, -m.amount, now)
            except GrantConsumptionConflict as exc:
                raise _BalanceVersionMismatch(str(exc)) from exc

        entry = await CreditRepository.create_entry(
            db,
            user_id=m.owner_id,
            entry_type=m.entry_type,
            amount=m.amount,
            idempotency_key=m.idempotency_key,
            balance_after=new_balance,
            reason=m.reason,
            breakdown=m.breakdown,
            metadata=m.metadata,
            client_id=m.client_id,
            environment=m.environment,
            external_job_id=m.external_job_id,
            original_entry_id=m.original_entry_id,
            created_at=now,
        )

        if m.grant_expires_at is not None:
            await GrantRepository.create(
                db,
                user_id=m.owner_id,
                source_type=m.grant_source_type or GRANT_SOURCE_MANUAL,
                amount=m.amount,
                expires_at=m.grant_expires_at,
                ledger_entry_id=entry.id,
                source_reference=m.grant_source_reference,
            )

        logger.info(
            "Ledger %s %+d for user %s (balance %d -> %d, entry %s)",
            m.entry_type,
            m.amount,
            m.owner_id,
            snapshot.balance,
            new_balance,
            entry.id,
        )
        return MutationResult(
            new_balance=new_balance,
            ledger_entry_id=entry.id,
            idempotent=False,
            user_id=m.owner_id,
            amount=m.amount,
            entry_type=m.entry_type,
            owner=snapshot,
            consumed_grants=tuple(consumed),
            original_entry_id=m.original_entry_id,
        )

    # =========================================================================
    # Core mutation
    # =========================================================================

    async def apply_delta(
        self,
        owner_id: uuid.UUID,
        amount: int,
        reason: str | None,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
        *,
        entry_type: str | None = None,
        breakdown: list[dict[str, Any]] | None = None,
        client_id: str | None = None,
        environment: str | None = None,
        external_job_id: str | None = None,
        original_entry_id: uuid.UUID | None = None,
    ) -> MutationResult:
        """Atomically change a balance and append the ledger entry.

        Args:
            owner_id: Balance owner.
            amount: Signed delta. Must be non-zero.
            reason: Human-readable reason.
            idempotency_key: Unique key; replays return the prior result.
            metadata: Free-form JSON object stored on the entry.
            entry_type: Ledger type. Defaults to deduction for negative
                amounts and grant for positive ones.
            breakdown: Optional cost itemization.
            client_id: Requesting automation client.
            environment: production or sandbox tag stored on the entry.
            external_job_id: Caller's job reference.
            original_entry_id: Refunded deduction, for refunds.

        Returns:
            MutationResult with the new balance and ledger entry id.

        Raises:
            InvalidInputError: Zero amount, bad key, or sign/type mismatch.
            InsufficientCreditsError: A debit would overdraw the balance.
            DuplicateTransactionError: Key already used by another owner.
            NotFoundError: Unknown owner (USER_NOT_FOUND).
            ForbiddenError: Inactive owner (USER_INACTIVE).
            BalanceVersionConflictError: Retries exhausted.
            UpstreamUnavailableError: Store unavailable.
        """
        if amount == 0:
            raise InvalidInputError("Amount must be non-zero")
        _check_amount_bounds(amount)
        key = _validate_key(idempotency_key)

        resolved_type = entry_type or (
            ENTRY_TYPE_DEDUCTION if amount < 0 else ENTRY_TYPE_GRANT
        )
        if resolved_type not in ENTRY_TYPES:
            raise InvalidInputError(f"Unknown entry type: {resolved_type}")
        if (resolved_type in _DEBIT_TYPES and amount > 0) or (
            resolved_type in _CREDIT_TYPES and amount < 0
        ):
            raise InvalidInputError(
                f"Amount sign does not match entry type '{resolved_type}'"
            )

        mutation = _Mutation(
            owner_id=owner_id,
            amount=amount,
            entry_type=resolved_type,
            idempotency_key=key,
            reason=reason,
            metadata=metadata,
            breakdown=breakdown,
            client_id=client_id,
            environment=environment,
            external_job_id=external_job_id,
            original_entry_id=original_entry_id,
        )
        return await self._run_transaction(
            lambda db: self._apply(db, mutation),
            label=f"apply_delta[{resolved_type}]",
        )

    # =========================================================================
    # Convenience operations
    # =========================================================================

    async def deduct(
        self,
        owner_id: uuid.UUID,
        amount: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        breakdown: list[dict[str, Any]] | None = None,
        client_id: str | None = None,
        environment: str | None = None,
        external_job_id: str | None = None,
    ) -> MutationResult:
        """Charge credits, drawing down grants soonest-expiry first.

        Emits credits.deduction.succeeded (and credits.low_balance /
        credits.auto_top_up.requested when the balance runs low) or
        credits.deduction.failed on insufficient funds.

        Args:
            owner_id: Balance owner.
            amount: Credits to charge (positive).
            idempotency_key: Unique key for this charge.
            reason: Human-readable reason.
            metadata: Free-form JSON object.
            breakdown: Cost itemization.
            client_id: Requesting automation client.
            environment: production or sandbox tag.
            external_job_id: Caller's job reference.

        Returns:
            MutationResult for the deduction.
        """
        if amount <= 0:
            raise InvalidInputError("Deduction amount must be a positive integer")

        try:
            result = await self.apply_delta(
                owner_id,
                -amount,
                reason,
                idempotency_key,
                metadata,
                entry_type=ENTRY_TYPE_DEDUCTION,
                breakdown=breakdown,
                client_id=client_id,
                environment=environment,
                external_job_id=external_job_id,
            )
        except InsufficientCreditsError as exc:
            await self._notify(
                EVENT_DEDUCTION_FAILED,
                {
                    "reason": exc.code,
                    "message": exc.message,
                    "userId": await self._external_id(owner_id),
                    "clientId": client_id,
                    "environment": environment,
                    "amount": amount,
                    "externalJobId": external_job_id,
                    "timestamp": self.now().isoformat(),
                },
            )
            raise

        await self._notify(
            EVENT_DEDUCTION_SUCCEEDED,
            {
                "ledgerId": str(result.ledger_entry_id),
                "userId": await self._external_id(owner_id, result.owner),
                "clientId": client_id,
                "environment": environment,
                "amount": amount,
                "reason": reason,
                "breakdown": breakdown,
                "newBalance": result.new_balance,
                "externalJobId": external_job_id,
                "idempotent": result.idempotent,
                "timestamp": self.now().isoformat(),
            },
        )
        if (
            not result.idempotent
            and result.owner is not None
            and environment != ENVIRONMENT_SANDBOX
        ):
            await self._notify_low_balance(result, client_id)
        return result

    async def refund(
        self,
        original_entry_id: uuid.UUID,
        amount: int | None = None,
        *,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        client_id: str | None = None,
        environment: str | None = None,
    ) -> MutationResult:
        """Return credits from an earlier deduction.

        The refund copies the original's breakdown and external job id and
        records originalLedgerId in its metadata. Refunds against one
        deduction can never add up to more than it charged.

        Args:
            original_entry_id: The deduction being refunded.
            amount: Credits to refund. Defaults to everything still
                refundable.
            idempotency_key: Unique key for this refund.
            reason: Human-readable reason.
            metadata: Free-form JSON object.
            client_id: Requesting automation client.
            environment: production or sandbox tag.

        Returns:
            MutationResult for the refund entry.

        Raises:
            NotFoundError: Original entry does not exist (LEDGER_NOT_FOUND).
            InvalidStateError: Original is not a refundable deduction
                (REFUND_NOT_AVAILABLE) or amount is too large
                (REFUND_EXCEEDS_ORIGINAL).
        """
        key = _validate_key(idempotency_key)
        if amount is not None and amount <= 0:
            raise InvalidInputError("Refund amount must be a positive integer")

        async def operation(db: AsyncSession) -> MutationResult:
            original = await CreditRepository.get_entry(db, original_entry_id)
            if original is None:
                raise NotFoundError(
                    "Ledger entry", str(original_entry_id), code="LEDGER_NOT_FOUND"
                )

            existing = await CreditRepository.get_by_idempotency_key(db, key)
            if existing is not None:
                return self._replay(existing, original.user_id, key)

            if original.entry_type != ENTRY_TYPE_DEDUCTION:
                raise InvalidStateError(
                    "Only deductions can be refunded", code=REFUND_NOT_AVAILABLE
                )

            already_refunded = await CreditRepository.sum_refunded(db, original.id)
            refundable = -original.amount - already_refunded
            if refundable <= 0:
                raise InvalidStateError(
                    "Deduction has already been fully refunded",
                    code=REFUND_NOT_AVAILABLE,
                )

            refund_amount = refundable if amount is None else amount
            if refund_amount > refundable:
                raise InvalidStateError(
                    f"Refund of {refund_amount} exceeds refundable amount {refundable}",
                    code=REFUND_EXCEEDS_ORIGINAL,
                )

            return await self._apply(
                db,
                _Mutation(
                    owner_id=original.user_id,
                    amount=refund_amount,
                    entry_type=ENTRY_TYPE_REFUND,
                    idempotency_key=key,
                    reason=reason or f"Refund for ledger entry {original.id}",
                    metadata={**(metadata or {}), "originalLedgerId": str(original.id)},
                    breakdown=original.breakdown,
                    client_id=client_id,
                    environment=environment,
                    external_job_id=original.external_job_id,
                    original_entry_id=original.id,
                ),
            )

        try:
            result = await self._run_transaction(operation, label="refund")
        except (InvalidStateError, NotFoundError) as exc:
            await self._notify(
                EVENT_REFUND_FAILED,
                {
                    "reason": exc.code,
                    "message": exc.message,
                    "originalLedgerId": str(original_entry_id),
                    "clientId": client_id,
                    "environment": environment,
                    "timestamp": self.now().isoformat(),
                },
            )
            raise

        await self._notify(
            EVENT_REFUND_SUCCEEDED,
            {
                "ledgerId": str(result.ledger_entry_id),
                "originalLedgerId": str(original_entry_id),
                "userId": await self._external_id(result.user_id, result.owner),
                "clientId": client_id,
                "environment": environment,
                "amount": result.amount,
                "newBalance": result.new_balance,
                "idempotent": result.idempotent,
                "timestamp": self.now().isoformat(),
            },
        )
        return result

    async def grant(
        self,
        owner_id: uuid.UUID,
        amount: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
        source_type: str = GRANT_SOURCE_MANUAL,
        expires_at: datetime | None = None,
        source_reference: str | None = None,
        metadata: dict[str, Any] | None = None,
        client_id: str | None = None,
        environment: str | None = None,
    ) -> MutationResult:
        """Add credits, optionally as an expiring grant.

        Args:
            owner_id: Balance owner.
            amount: Credits to add (positive).
            idempotency_key: Unique key for this grant.
            reason: Human-readable reason.
            source_type: subscription, topup or manual.
            expires_at: When unused credits lapse. None grants permanent
                credits with no CreditGrant row.
            source_reference: Billing reference.
            metadata: Free-form JSON object.
            client_id: Requesting automation client.
            environment: production or sandbox tag.

        Returns:
            MutationResult for the grant entry.
        """
        if amount <= 0:
            raise InvalidInputError("Grant amount must be a positive integer")
        if source_type not in GRANT_SOURCES:
            raise InvalidInputError(
                f"Unknown grant source type: {source_type}",
                details=[{"field": "sourceType", "allowed": sorted(GRANT_SOURCES)}],
            )
        key = _validate_key(idempotency_key)

        grant_expires_at = None
        if expires_at is not None:
            grant_expires_at = _as_utc(expires_at)
            if grant_expires_at <= self.now():
                raise InvalidInputError("expiresAt must be in the future")

        grant_metadata = {**(metadata or {}), "sourceType": source_type}
        if source_reference:
            grant_metadata["sourceReference"] = source_reference

        mutation = _Mutation(
            owner_id=owner_id,
            amount=amount,
            entry_type=ENTRY_TYPE_GRANT,
            idempotency_key=key,
            reason=reason or f"{source_type.capitalize()} credit grant",
            metadata=grant_metadata,
            client_id=client_id,
            environment=environment,
            grant_source_type=source_type,
            grant_expires_at=grant_expires_at,
            grant_source_reference=source_reference,
        )
        result = await self._run_transaction(
            lambda db: self._apply(db, mutation), label="grant"
        )

        await self._notify(
            EVENT_GRANT_SUCCEEDED,
            {
                "ledgerId": str(result.ledger_entry_id),
                "userId": await self._external_id(owner_id, result.owner),
                "clientId": client_id,
                "environment": environment,
                "amount": amount,
                "sourceType": source_type,
                "expiresAt": grant_expires_at.isoformat() if grant_expires_at else None,
                "newBalance": result.new_balance,
                "idempotent": result.idempotent,
                "timestamp": self.now().isoformat(),
            },
        )
        return result

    async def simulate(self, owner_id: uuid.UUID, amount: int) -> MutationResult:
        """Project a mutation without writing anything (sandbox mode).

        Args:
            owner_id: Balance owner.
            amount: Signed delta to project.

        Returns:
            MutationResult with sandbox=True and no ledger entry.

        Raises:
            InsufficientCreditsError: A debit would overdraw the balance.
        """
        if amount == 0:
            raise InvalidInputError("Amount must be non-zero")
        _check_amount_bounds(amount)
        async with self._session_factory() as db:
            snapshot = await self._load_owner(db, owner_id)
            if amount < 0:
                available = await self._available(db, snapshot, self.now())
                if available + amount < 0:
                    raise InsufficientCreditsError(balance=available, required=-amount)
            _check_balance_ceiling(snapshot.balance, amount)
        return MutationResult(
            new_balance=snapshot.balance + amount,
            ledger_entry_id=None,
            idempotent=False,
            user_id=owner_id,
            amount=amount,
            entry_type=ENTRY_TYPE_DEDUCTION if amount < 0 else ENTRY_TYPE_GRANT,
            sandbox=True,
            owner=snapshot,
        )

    async def expire_grant(self, grant_id: uuid.UUID) -> ExpiryOutcome | None:
        """Forfeit the unused remainder of one expired grant.

        Marks the grant used and swept, removes min(remaining, balance)
        from the owner's balance and records an expiry entry keyed
        ``grant-expiry:<grant id>``.

        Args:
            grant_id: Grant past its expires_at.

        Returns:
            ExpiryOutcome, or None if the grant was already swept.
        """

        async def operation(db: AsyncSession) -> ExpiryOutcome | None:
            grant = await GrantRepository.get(db, grant_id)
            if grant is None or grant.expired_at is not None:
                return None
            owner_id = grant.user_id
            source_type = grant.source_type

            unused = await GrantRepository.mark_expired(db, grant_id, self.now())
            if unused is None:
                return None
            if unused == 0:
                return ExpiryOutcome(unused=0, forfeited=0)

            snapshot = await self._load_owner(db, owner_id, allow_inactive=True)
            forfeit = min(unused, snapshot.balance)
            if forfeit > 0:
                await self._apply(
                    db,
                    _Mutation(
                        owner_id=owner_id,
                        amount=-forfeit,
                        entry_type=ENTRY_TYPE_EXPIRY,
                        idempotency_key=f"grant-expiry:{grant_id}",
                        reason="Credit grant expired",
                        metadata={
                            "grantId": str(grant_id),
                            "sourceType": source_type,
                            "unused": unused,
                        },
                    ),
                )
            return ExpiryOutcome(unused=unused, forfeited=forfeit)

        return await self._run_transaction(operation, label="expire_grant")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_entry(self, entry_id: uuid.UUID) -> CreditLedgerEntry:
        """Fetch one ledger entry.

        Raises:
            NotFoundError: LEDGER_NOT_FOUND if it does not exist.
        """
        async with self._session_factory() as db:
            entry = await CreditRepository.get_entry(db, entry_id)
        if entry is None:
            raise NotFoundError("Ledger entry", str(entry_id), code="LEDGER_NOT_FOUND")
        return entry

    async def list_entries(
        self,
        owner_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        entry_type: str | None = None,
    ) -> tuple[list[CreditLedgerEntry], int]:
        """Page through an owner's ledger, newest first."""
        if entry_type is not None and entry_type not in ENTRY_TYPES:
            raise InvalidInputError(f"Unknown entry type: {entry_type}")
        async with self._session_factory() as db:
            return await CreditRepository.list_by_user(
                db, owner_id, offset=offset, limit=limit, entry_type=entry_type
            )

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _external_id(
        self, owner_id: uuid.UUID, owner: BalanceSnapshot | None = None
    ) -> str:
        if self._dispatcher is None or not self._dispatcher.enabled:
            return str(owner_id)
        if owner is not None:
            return owner.external_id
        async with self._session_factory() as db:
            user = await UserRepository.get_by_id(db, owner_id)
        return user.external_id if user is not None else str(owner_id)

    async def _notify(self, event_type: str, data: dict[str, Any]) -> None:
        # Sandbox traffic never reaches webhook receivers.
        if self._dispatcher is None or data.get("environment") == ENVIRONMENT_SANDBOX:
            return
        self._dispatcher.schedule(event_type, data)

    async def _notify_low_balance(
        self, result: MutationResult, client_id: str | None
    ) -> None:
        owner = result.owner
        if owner is None or not is_low_balance(
            result.new_balance, owner.low_balance_threshold
        ):
            return

        logger.info(
            "User %s balance %d at or below threshold %d",
            owner.user_id,
            result.new_balance,
            owner.low_balance_threshold,
        )
        await self._notify(
            EVENT_LOW_BALANCE,
            {
                "userId": owner.external_id,
                "clientId": client_id,
                "newBalance": result.new_balance,
                "threshold": owner.low_balance_threshold,
                "timestamp": self.now().isoformat(),
            },
        )
        if owner.auto_top_up_enabled and owner.auto_top_up_amount > 0:
            await self._notify(
                EVENT_AUTO_TOP_UP_REQUESTED,
                {
                    "userId": owner.external_id,
                    "userEmail": owner.email,
                    "amount": owner.auto_top_up_amount,
                    "balance": result.new_balance,
                    "threshold": owner.low_balance_threshold,
                    "timestamp": self.now().isoformat(),
                },
            )

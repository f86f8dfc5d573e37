"""Tests for grant consumption, the credits breakdown and the expiry sweep."""

import uuid
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import BalanceVersionConflictError
from app.models.credit import CreditGrant, CreditLedgerEntry
from app.models.user import User
from app.repositories.credit_repository import CreditRepository
from app.repositories.grant_repository import GrantRepository
from app.services.grant_service import (
    consume_fifo,
    summarize_active_grants,
    sweep_expired_grants,
)
from app.services.ledger_service import LedgerService
from tests.conftest import create_user, ledger_total, read_balance

# =============================================================================
# Helpers
# =============================================================================


async def _grant(
    ledger: LedgerService,
    user_id: uuid.UUID,
    amount: int,
    *,
    key: str,
    days: float = 30,
    source_type: str = "subscription",
) -> CreditGrant:
    """Create an expiring grant through the ledger and return its row."""
    result = await ledger.grant(
        user_id,
        amount,
        idempotency_key=key,
        source_type=source_type,
        expires_at=ledger.now() + timedelta(days=days),
    )
    async with ledger.session_factory() as session:
        stmt = select(CreditGrant).where(
            CreditGrant.ledger_entry_id == result.ledger_entry_id
        )
        return (await session.execute(stmt)).scalar_one()


async def _reload(
    session_factory: async_sessionmaker[AsyncSession], grant_id: uuid.UUID
) -> CreditGrant:
    async with session_factory() as session:
        grant = await GrantRepository.get(session, grant_id)
        assert grant is not None
        return grant


async def _expiry_entries(
    session_factory: async_sessionmaker[AsyncSession], user_id: uuid.UUID
) -> list[CreditLedgerEntry]:
    async with session_factory() as session:
        entries, _ = await CreditRepository.list_by_user(
            session, user_id, entry_type="expiry"
        )
        return entries


# =============================================================================
# consume_fifo
# =============================================================================


class TestConsumeFifo:
    """Tests for consume_fifo()."""

    async def test_spreads_across_grants_in_expiry_order(
        self, ledger: LedgerService, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="c1", email="c1@x.io")
        second = await _grant(ledger, user.id, 10, key="second", days=20)
        first = await _grant(ledger, user.id, 10, key="first", days=5)

        async with session_factory() as session, session.begin():
            consumed = await consume_fifo(session, user.id, 15, ledger.now())

        assert [(c.grant_id, c.used) for c in consumed] == [
            (first.id, 10),
            (second.id, 5),
        ]
        assert (await _reload(session_factory, first.id)).used_amount == 10
        assert (await _reload(session_factory, second.id)).used_amount == 5

    async def test_amount_beyond_grants_comes_from_ungranted_balance(
        self, ledger: LedgerService, session_factory
    ) -> None:
        user = await create_user(
            session_factory, external_id="c2", email="c2@x.io", balance=100
        )
        grant = await _grant(ledger, user.id, 10, key="small")

        async with session_factory() as session, session.begin():
            consumed = await consume_fifo(session, user.id, 40, ledger.now())

        assert [c.used for c in consumed] == [10]
        assert (await _reload(session_factory, grant.id)).used_amount == 10

    async def test_no_grants_consumes_nothing(
        self, ledger: LedgerService, test_user: User, session_factory
    ) -> None:
        async with session_factory() as session, session.begin():
            consumed = await consume_fifo(session, test_user.id, 5, ledger.now())

        assert consumed == []


# =============================================================================
# summarize_active_grants
# =============================================================================


class TestSummarizeActiveGrants:
    """Tests for summarize_active_grants()."""

    async def test_splits_balance_by_source(
        self, ledger: LedgerService, session_factory, test_user: User
    ) -> None:
        await _grant(ledger, test_user.id, 100, key="sub", days=30)
        await _grant(ledger, test_user.id, 40, key="top", days=60, source_type="topup")
        await ledger.grant(test_user.id, 10, idempotency_key="manual-perm")
        await ledger.deduct(test_user.id, 30, idempotency_key="use-some")

        async with session_factory() as session:
            summary = await summarize_active_grants(session, test_user.id, ledger.now())

        assert summary.balance == 220
        assert summary.available == 220
        assert summary.subscription == 70
        assert summary.topup == 40
        assert summary.manual == 0
        assert summary.ungranted == 110
        assert summary.lapsed == 0
        assert [g.source_type for g in summary.grants] == ["subscription", "topup"]
        assert summary.grants[0].remaining == 70

    async def test_lapsed_grants_reduce_available(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(
            session_factory, external_id="s2", email="s2@x.io", balance=20
        )
        await _grant(ledger, user.id, 50, key="lapsing", days=0.5)
        clock.advance(days=1)

        async with session_factory() as session:
            summary = await summarize_active_grants(session, user.id, ledger.now())

        assert summary.balance == 70
        assert summary.lapsed == 50
        assert summary.available == 20
        assert summary.grants == []


# =============================================================================
# sweep_expired_grants
# =============================================================================


class TestSweepExpiredGrants:
    """Tests for sweep_expired_grants()."""

    async def test_grant_expired_yesterday_is_forfeited(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        """A 50-credit grant, unused, that expired yesterday is fully used after the sweep."""
        user = await create_user(
            session_factory, external_id="sw1", email="sw1@x.io", balance=20
        )
        grant = await _grant(ledger, user.id, 50, key="yesterday", days=0.5)
        clock.advance(days=1, hours=12)

        result = await sweep_expired_grants(ledger)

        assert result.expired_count == 1
        assert result.forfeited_credits == 50
        assert result.failed_count == 0

        swept = await _reload(session_factory, grant.id)
        assert swept.used_amount == swept.amount
        assert swept.expired_at is not None
        assert await read_balance(session_factory, user.id) == 20

        async with session_factory() as session:
            summary = await summarize_active_grants(session, user.id, ledger.now())
        assert summary.available == 20
        assert summary.lapsed == 0
        # Opening balance of 20 had no ledger entry
        assert await ledger_total(session_factory, user.id) == 0

    async def test_sweep_appends_expiry_entry_without_touching_history(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw2", email="sw2@x.io")
        grant = await _grant(ledger, user.id, 30, key="g-sw2", days=1)
        await ledger.deduct(user.id, 10, idempotency_key="d-sw2")
        clock.advance(days=2)

        await sweep_expired_grants(ledger)

        entries = await _expiry_entries(session_factory, user.id)
        assert len(entries) == 1
        assert entries[0].amount == -20
        assert entries[0].balance_after == 0
        assert entries[0].idempotency_key == f"grant-expiry:{grant.id}"
        assert entries[0].entry_metadata["grantId"] == str(grant.id)

        async with session_factory() as session:
            all_entries, total = await CreditRepository.list_by_user(session, user.id)
        assert total == 3
        assert {e.entry_type for e in all_entries} == {"grant", "deduction", "expiry"}

    async def test_second_sweep_is_a_no_op(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw3", email="sw3@x.io")
        await _grant(ledger, user.id, 50, key="g-sw3", days=1)
        clock.advance(days=2)

        first = await sweep_expired_grants(ledger)
        second = await sweep_expired_grants(ledger)

        assert first.expired_count == 1
        assert second.expired_count == 0
        assert second.forfeited_credits == 0
        assert second.swept_count == 0
        assert len(await _expiry_entries(session_factory, user.id)) == 1

    async def test_fully_used_grant_is_stamped_but_not_counted(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw4", email="sw4@x.io")
        grant = await _grant(ledger, user.id, 10, key="g-sw4", days=1)
        await ledger.deduct(user.id, 10, idempotency_key="d-sw4")
        clock.advance(days=2)

        result = await sweep_expired_grants(ledger)

        assert result.expired_count == 0
        assert result.swept_count == 1
        assert (await _reload(session_factory, grant.id)).expired_at is not None
        assert await _expiry_entries(session_factory, user.id) == []

    async def test_forfeit_never_exceeds_balance(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw5", email="sw5@x.io")
        await _grant(ledger, user.id, 50, key="g-sw5", days=1)
        async with session_factory() as session, session.begin():
            await session.execute(
                update(User).where(User.id == user.id).values(credit_balance=15)
            )
        clock.advance(days=2)

        result = await sweep_expired_grants(ledger)

        assert result.expired_count == 1
        assert result.forfeited_credits == 15
        assert await read_balance(session_factory, user.id) == 0

    async def test_unexpired_grants_are_left_alone(
        self, ledger: LedgerService, session_factory, test_user: User
    ) -> None:
        grant = await _grant(ledger, test_user.id, 50, key="future", days=10)

        result = await sweep_expired_grants(ledger)

        assert result.swept_count == 0
        assert (await _reload(session_factory, grant.id)).expired_at is None

    async def test_failing_grant_is_skipped_and_reported(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw6", email="sw6@x.io")
        bad = await _grant(ledger, user.id, 10, key="g-bad", days=1)
        good = await _grant(ledger, user.id, 20, key="g-good", days=1.5)
        clock.advance(days=2)

        real_expire = ledger.expire_grant

        async def flaky_expire(grant_id: uuid.UUID):
            if grant_id == bad.id:
                raise BalanceVersionConflictError()
            return await real_expire(grant_id)

        with patch.object(ledger, "expire_grant", side_effect=flaky_expire):
            result = await sweep_expired_grants(ledger, batch_size=1)

        assert result.failed_count == 1
        assert result.expired_count == 1
        assert result.forfeited_credits == 20
        assert (await _reload(session_factory, bad.id)).expired_at is None
        assert (await _reload(session_factory, good.id)).expired_at is not None

    async def test_small_batches_cover_every_grant(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="sw7", email="sw7@x.io")
        for i in range(5):
            await _grant(ledger, user.id, 2, key=f"g-batch-{i}", days=1)
        clock.advance(days=2)

        result = await sweep_expired_grants(ledger, batch_size=2)

        assert result.expired_count == 5
        assert result.forfeited_credits == 10
        assert await read_balance(session_factory, user.id) == 0

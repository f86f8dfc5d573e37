"""Tests for POST /api/v1/cron/expire-grants."""

from datetime import UTC, datetime, timedelta

from httpx import AsyncClient
from sqlalchemy import update

from app.models.user import User
from app.repositories.grant_repository import GrantRepository
from tests.conftest import TEST_CRON_SECRET, read_balance

_URL = "/api/v1/cron/expire-grants"
_AUTH = {"Authorization": f"Bearer {TEST_CRON_SECRET}"}


async def _expired_grant(session_factory, user: User, amount: int) -> None:
    """Add an already expired grant whose credits are still in the balance."""
    async with session_factory() as session, session.begin():
        await GrantRepository.create(
            session,
            user_id=user.id,
            source_type="subscription",
            amount=amount,
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )
        await session.execute(
            update(User)
            .where(User.id == user.id)
            .values(credit_balance=User.credit_balance + amount)
        )


class TestCronAuth:
    """Bearer token checks."""

    async def test_missing_token_is_401(self, client: AsyncClient) -> None:
        response = await client.post(_URL)

        assert response.status_code == 401

    async def test_wrong_token_is_401(self, client: AsyncClient) -> None:
        response = await client.post(
            _URL, headers={"Authorization": "Bearer not-the-secret"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"


class TestExpireGrants:
    """Sweep results reported by the endpoint."""

    async def test_sweeps_and_reports_totals(
        self, client: AsyncClient, session_factory, test_user: User
    ) -> None:
        await _expired_grant(session_factory, test_user, 50)

        response = await client.post(_URL, headers=_AUTH)

        data = response.json()
        assert response.status_code == 200
        assert data == {
            "success": True,
            "expiredCount": 1,
            "forfeitedCredits": 50,
            "message": "Expired 1 grant(s), forfeited 50 credit(s)",
        }
        assert await read_balance(session_factory, test_user.id) == 100

    async def test_repeat_call_is_a_no_op(
        self, client: AsyncClient, session_factory, test_user: User
    ) -> None:
        await _expired_grant(session_factory, test_user, 20)

        await client.post(_URL, headers=_AUTH)
        second = await client.post(_URL, headers=_AUTH)

        assert second.json()["expiredCount"] == 0
        assert second.json()["forfeitedCredits"] == 0
        async with session_factory() as session:
            unswept = await GrantRepository.list_unswept_expired(
                session, datetime.now(UTC)
            )
        assert unswept == []

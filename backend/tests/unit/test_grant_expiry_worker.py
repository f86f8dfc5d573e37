"""Tests for grant expiry worker lifecycle.

asyncio background task lifecycle (start/stop/run_once).
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services.grant_expiry_worker import GrantExpiryWorker
from app.services.grant_service import SweepResult
from app.services.ledger_service import LedgerService
from tests.conftest import create_user, read_balance

_PATCH_SWEEP = "app.services.grant_expiry_worker.sweep_expired_grants"


class TestWorkerConstruction:
    """Tests for GrantExpiryWorker arguments."""

    @pytest.mark.parametrize("interval", [0, -5])
    def test_rejects_non_positive_interval(self, interval) -> None:
        with pytest.raises(ValueError, match="interval_seconds"):
            GrantExpiryWorker(MagicMock(), interval_seconds=interval)


class TestWorkerLifecycle:
    """Tests for GrantExpiryWorker start/stop."""

    async def test_start_sets_running(self) -> None:
        worker = GrantExpiryWorker(MagicMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock):
            worker.start()
            assert worker.is_running is True
            await worker.stop()

    async def test_stop_clears_running(self) -> None:
        worker = GrantExpiryWorker(MagicMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock):
            worker.start()
            await worker.stop()
            assert worker.is_running is False

    async def test_start_is_idempotent(self) -> None:
        worker = GrantExpiryWorker(MagicMock(), interval_seconds=60)

        with patch.object(worker, "_run_loop", new_callable=AsyncMock) as loop:
            worker.start()
            worker.start()  # Second call should be no-op
            assert worker.is_running is True
            await worker.stop()

        loop.assert_called_once()

    async def test_stop_without_start_is_safe(self) -> None:
        worker = GrantExpiryWorker(MagicMock(), interval_seconds=60)

        await worker.stop()

        assert worker.is_running is False


class TestRunLoop:
    """Tests for the sweep loop."""

    async def test_loop_survives_sweep_errors(self) -> None:
        worker = GrantExpiryWorker(MagicMock(), interval_seconds=1)
        calls = 0

        async def sweep(_ledger):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db down")
            worker._running = False
            return SweepResult(expired_count=1)

        real_sleep = asyncio.sleep

        async def no_wait(_seconds):
            await real_sleep(0)

        with (
            patch(_PATCH_SWEEP, side_effect=sweep),
            patch("app.services.grant_expiry_worker.asyncio.sleep", side_effect=no_wait),
        ):
            worker._running = True
            await asyncio.wait_for(worker._run_loop(), timeout=5)

        assert calls == 2
        assert worker.last_result == SweepResult(expired_count=1)


class TestRunOnce:
    """Tests for GrantExpiryWorker.run_once() against a real ledger."""

    async def test_forfeits_expired_grant_and_records_result(
        self, ledger: LedgerService, clock, session_factory
    ) -> None:
        user = await create_user(session_factory, external_id="w1", email="w1@x.io")
        await ledger.grant(
            user.id,
            40,
            idempotency_key="w1-grant",
            source_type="subscription",
            expires_at=clock() + timedelta(hours=1),
        )
        clock.advance(hours=2)
        worker = GrantExpiryWorker(ledger, interval_seconds=60)

        result = await worker.run_once()

        assert result.expired_count == 1
        assert result.forfeited_credits == 40
        assert worker.last_result == result
        assert worker.last_run_at == clock()
        assert await read_balance(session_factory, user.id) == 0

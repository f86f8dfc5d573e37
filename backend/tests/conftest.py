import json
import uuid
from collections.abc import AsyncGenerator, Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings
from app.core.hmac_gateway import (
    CLIENT_ID_HEADER,
    ENVIRONMENT_HEADER,
    HMAC_HEADER,
    IDEMPOTENCY_KEY_HEADER,
    sign_payload,
)
from app.core.retry import RetryPolicy
from app.models.base import Base
from app.models.credit import CreditLedgerEntry
from app.models.user import User
from app.repositories.credit_repository import CreditRepository
from app.services.ledger_service import LedgerService
from app.services.webhook_dispatcher import CreditWebhookDispatcher

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
TEST_EXTERNAL_ID = "user_test_0001"
TEST_EMAIL = "test@example.com"

OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000099")
OTHER_EXTERNAL_ID = "user_test_0099"
OTHER_EMAIL = "other@example.com"

# Security: test-only secrets. Production reads real values from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105
TEST_HMAC_SECRET = "test-hmac-secret-that-is-at-least-32-characters"  # nosec B105
TEST_CRON_SECRET = "test-cron-secret-that-is-at-least-32-characters"  # nosec B105
TEST_CLIENT_ID = "n8n-test"
TEST_WEBHOOK_URL = "https://hooks.test/credits"

# Fast, jitter-free retries so conflict tests stay quick and deterministic
FAST_RETRY_POLICY = RetryPolicy(
    max_retries=8, base_delay_ms=1, max_delay_ms=10, jitter=0.0
)


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session JWT for test authentication."""
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def signed_headers(
    body: bytes | str,
    *,
    client_id: str | None = TEST_CLIENT_ID,
    environment: str | None = None,
    idempotency_key: str | None = None,
    secret: str = TEST_HMAC_SECRET,
) -> dict[str, str]:
    """Headers for an HMAC-signed automation request."""
    headers = {
        "Content-Type": "application/json",
        HMAC_HEADER: sign_payload(body, secret),
    }
    if client_id is not None:
        headers[CLIENT_ID_HEADER] = client_id
    if environment is not None:
        headers[ENVIRONMENT_HEADER] = environment
    if idempotency_key is not None:
        headers[IDEMPOTENCY_KEY_HEADER] = idempotency_key
    return headers


def encode_body(payload: dict[str, Any]) -> bytes:
    """Serialize a request body exactly once so the signature matches."""
    return json.dumps(payload).encode("utf-8")


class MutableClock:
    """Clock the ledger service reads; tests move it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@dataclass
class WebhookRecorder:
    """Collects requests sent through a mocked httpx transport."""

    status_code: int = 200
    requests: list[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def events(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def event_types(self) -> list[str]:
        return [event["type"] for event in self.events]


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so concurrent connections see one database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup and direct repository calls."""
    async with session_factory() as session:
        yield session
        await session.rollback()


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: uuid.UUID | None = None,
    external_id: str,
    email: str,
    balance: int = 0,
    **extra: Any,
) -> User:
    """Insert a committed user (no ledger entry for the opening balance)."""
    async with session_factory() as session:
        user = User(
            id=user_id or uuid.uuid4(),
            external_id=external_id,
            email=email,
            credit_balance=balance,
            **extra,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def read_balance(
    session_factory: async_sessionmaker[AsyncSession], user_id: uuid.UUID
) -> int:
    """Read the committed balance through a fresh session."""
    async with session_factory() as session:
        return await CreditRepository.get_balance(session, user_id)


async def ledger_total(
    session_factory: async_sessionmaker[AsyncSession], user_id: uuid.UUID
) -> int:
    """Sum of every committed ledger amount for a user."""
    async with session_factory() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0)).where(
                CreditLedgerEntry.user_id == user_id
            )
        )
        return int(result.scalar_one())


@pytest_asyncio.fixture
async def test_user(session_factory: async_sessionmaker[AsyncSession]) -> User:
    """Active user holding 100 credits."""
    return await create_user(
        session_factory,
        user_id=TEST_USER_ID,
        external_id=TEST_EXTERNAL_ID,
        email=TEST_EMAIL,
        balance=100,
    )


@pytest_asyncio.fixture
async def other_user(session_factory: async_sessionmaker[AsyncSession]) -> User:
    """Second user for cross-owner tests."""
    return await create_user(
        session_factory,
        user_id=OTHER_USER_ID,
        external_id=OTHER_EXTERNAL_ID,
        email=OTHER_EMAIL,
        balance=50,
    )


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def webhook_recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def dispatcher(webhook_recorder: WebhookRecorder) -> CreditWebhookDispatcher:
    """Dispatcher posting to one mocked receiver."""
    return CreditWebhookDispatcher(
        [TEST_WEBHOOK_URL],
        secret=TEST_HMAC_SECRET,
        retry_policy=RetryPolicy(
            max_retries=0, base_delay_ms=1, max_delay_ms=1, jitter=0.0
        ),
        transport=httpx.MockTransport(webhook_recorder.handler),
    )


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    clock: MutableClock,
) -> LedgerService:
    """Ledger service without webhooks."""
    return LedgerService(session_factory, retry_policy=FAST_RETRY_POLICY, clock=clock)


@pytest.fixture
def notifying_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    clock: MutableClock,
    dispatcher: CreditWebhookDispatcher,
) -> LedgerService:
    """Ledger service wired to the mocked webhook receiver."""
    return LedgerService(
        session_factory,
        dispatcher=dispatcher,
        retry_policy=FAST_RETRY_POLICY,
        clock=clock,
    )


# =============================================================================
# API clients
# =============================================================================


@pytest.fixture
def gateway_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configure HMAC, cron and session secrets for API tests."""
    monkeypatch.setattr(settings, "shared_hmac_secret", SecretStr(TEST_HMAC_SECRET))
    monkeypatch.setattr(settings, "cron_secret", SecretStr(TEST_CRON_SECRET))
    monkeypatch.setattr(settings, "auth_enabled", True)
    monkeypatch.setattr(settings, "auth_secret", SecretStr(TEST_AUTH_SECRET))


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway_secrets: None,  # noqa: ARG001 - configures secrets
    test_user: User,  # noqa: ARG001 - ensures user exists
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for API tests.

    Overrides the database dependencies with the test engine, carries a
    session cookie for TEST_USER_ID and installs a dispatcher with no
    receivers (tests that assert on webhooks replace it).
    """
    from app.core.database import get_db, get_session_factory
    from app.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    original_dispatcher = app.state.webhook_dispatcher
    app.state.webhook_dispatcher = CreditWebhookDispatcher([])

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(TEST_USER_ID)},
    ) as ac:
        yield ac

    app.state.webhook_dispatcher = original_dispatcher
    app.dependency_overrides.clear()


@pytest.fixture
def signed_post(
    client: AsyncClient,
) -> Callable[..., Any]:
    """POST a JSON body with a valid HMAC signature."""

    async def _post(path: str, payload: dict[str, Any], **header_kwargs: Any):
        body = encode_body(payload)
        return await client.post(
            path, content=body, headers=signed_headers(body, **header_kwargs)
        )

    return _post


# =============================================================================
# Autouse Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_rate_limits() -> Iterator[None]:
    """Start every test with empty quota counters."""
    from app.core.rate_limiting import reset_rate_limits as _reset

    _reset()
    yield
    _reset()

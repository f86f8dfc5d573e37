"""Shared dependencies for API endpoints.

Three ways in:
- Session auth for /me endpoints: JWT from an httpOnly cookie in hosted
  mode, DEFAULT_USER_ID in local-first mode.
- HMAC-signed requests for automation (see app.core.hmac_gateway).
- Bearer token for cron triggers.
"""

import hmac
import uuid
from typing import Annotated

import jwt
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_db, get_session_factory
from app.core.errors import UnauthorizedError
from app.core.hmac_gateway import SignedRequest, verify_hmac_request
from app.services.ledger_service import LedgerService
from app.services.webhook_dispatcher import CreditWebhookDispatcher

_BEARER_PREFIX = "bearer "


async def get_current_user_id(request: Request) -> uuid.UUID:
    """Get current user ID from auth context.

    Validates the JWT from the session cookie when auth is enabled and
    falls back to DEFAULT_USER_ID when it is not.

    Validation steps (hosted mode):
    1. Read JWT from cookie
    2. Decode + verify signature (HS256)
    3. Verify exp, aud, iss claims
    4. Extract sub as UUID

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        UUID of the current authenticated user.

    Raises:
        UnauthorizedError: 401 for any auth failure.
    """
    if not settings.auth_enabled:
        # Local-first mode: use DEFAULT_USER_ID from environment
        if settings.default_user_id is None:
            raise UnauthorizedError()
        return settings.default_user_id

    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise UnauthorizedError()

    # Security: never say WHY a token was rejected (expired, bad sig, etc.).
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        return uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise UnauthorizedError() from exc


def require_cron_token(request: Request) -> None:
    """Check ``Authorization: Bearer <CRON_SECRET>`` in constant time.

    Raises:
        UnauthorizedError: Secret not configured, header missing or wrong.
    """
    secret = settings.cron_secret.get_secret_value()
    header = request.headers.get("Authorization") or ""
    if not secret or not header.lower().startswith(_BEARER_PREFIX):
        raise UnauthorizedError()

    token = header[len(_BEARER_PREFIX) :].strip()
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise UnauthorizedError()


def get_webhook_dispatcher(request: Request) -> CreditWebhookDispatcher | None:
    """Dispatcher created by the app factory, if any."""
    return getattr(request.app.state, "webhook_dispatcher", None)


def get_ledger_service(
    session_factory: Annotated[
        async_sessionmaker[AsyncSession], Depends(get_session_factory)
    ],
    dispatcher: Annotated[
        CreditWebhookDispatcher | None, Depends(get_webhook_dispatcher)
    ],
) -> LedgerService:
    """Ledger service bound to the app's session factory and dispatcher."""
    return LedgerService.from_settings(session_factory, dispatcher)


# Reusable type aliases for dependency injection
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Ledger = Annotated[LedgerService, Depends(get_ledger_service)]
SignedBody = Annotated[SignedRequest, Depends(verify_hmac_request)]
CronAuth = Annotated[None, Depends(require_cron_token)]

"""HMAC request verification for external automation callers.

Callers sign the raw request body with the shared secret:

    X-HMAC-Signature: hex(HMAC-SHA256(SHARED_HMAC_SECRET, raw_body))

The body is only parsed after the signature matches. Alongside the
signature, callers identify themselves and their request:

    X-Client-Id:      caller identity, used for rate limiting and audit
    Idempotency-Key:  optional here; the body may carry idempotencyKey instead
    X-Environment:    "production" (default) or "sandbox"
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import TypeVar

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.errors import InvalidInputError, UnauthorizedError

logger = logging.getLogger(__name__)

HMAC_HEADER = "X-HMAC-Signature"
CLIENT_ID_HEADER = "X-Client-Id"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
ENVIRONMENT_HEADER = "X-Environment"

ENVIRONMENT_PRODUCTION = "production"
ENVIRONMENT_SANDBOX = "sandbox"
_VALID_ENVIRONMENTS = frozenset({ENVIRONMENT_PRODUCTION, ENVIRONMENT_SANDBOX})

_MAX_CLIENT_ID_LENGTH = 100

ModelT = TypeVar("ModelT", bound=BaseModel)


def sign_payload(payload: bytes | str, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a payload.

    Args:
        payload: Raw body bytes (str is encoded as UTF-8).
        secret: Shared secret.

    Returns:
        Lowercase hex digest.

    Raises:
        ValueError: If secret is empty.
    """
    if not secret:
        raise ValueError("HMAC secret not configured")
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes | str, signature: str | None, secret: str) -> bool:
    """Check a signature against the payload in constant time.

    Args:
        payload: Raw body exactly as received.
        signature: Value of the signature header (hex).
        secret: Shared secret. Empty means nothing can verify.

    Returns:
        True only if both secret and signature are present and match.
    """
    if not secret or not signature:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(
        expected.encode("utf-8"), signature.strip().lower().encode("utf-8")
    )


@dataclass(frozen=True)
class SignedRequest:
    """A request whose body passed HMAC verification.

    Attributes:
        raw_body: Body bytes exactly as signed.
        client_id: Caller identity from X-Client-Id.
        idempotency_key: Idempotency-Key header, if sent.
        environment: "production" or "sandbox".
    """

    raw_body: bytes
    client_id: str
    idempotency_key: str | None
    environment: str

    @property
    def is_sandbox(self) -> bool:
        return self.environment == ENVIRONMENT_SANDBOX

    def parse(self, model: type[ModelT]) -> ModelT:
        """Validate the verified body against a request schema.

        Raises:
            InvalidInputError: If the body is not valid JSON for the schema.
        """
        try:
            return model.model_validate_json(self.raw_body or b"{}")
        except PydanticValidationError as exc:
            raise InvalidInputError(
                "Request validation failed",
                details=[
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            ) from exc


async def verify_hmac_request(request: Request) -> SignedRequest:
    """FastAPI dependency that authenticates an automation request.

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        SignedRequest with the verified body and caller headers.

    Raises:
        UnauthorizedError: Signature header missing or not matching.
        InvalidInputError: X-Client-Id missing/too long or unknown environment.
    """
    raw_body = await request.body()
    signature = request.headers.get(HMAC_HEADER)

    if not signature:
        raise UnauthorizedError("Missing HMAC signature header")

    if not verify_signature(
        raw_body, signature, settings.shared_hmac_secret.get_secret_value()
    ):
        logger.warning("Rejected request with invalid HMAC signature: %s", request.url.path)
        raise UnauthorizedError("Invalid HMAC signature")

    client_id = (request.headers.get(CLIENT_ID_HEADER) or "").strip()
    if not client_id:
        raise InvalidInputError("Missing client identifier", code="CLIENT_ID_MISSING")
    if len(client_id) > _MAX_CLIENT_ID_LENGTH:
        raise InvalidInputError("Client identifier too long", code="CLIENT_ID_INVALID")

    environment = (
        request.headers.get(ENVIRONMENT_HEADER) or ENVIRONMENT_PRODUCTION
    ).strip().lower()
    if environment not in _VALID_ENVIRONMENTS:
        raise InvalidInputError(
            f"Unknown environment '{environment}'", code="INVALID_ENVIRONMENT"
        )

    idempotency_key = (request.headers.get(IDEMPOTENCY_KEY_HEADER) or "").strip() or None

    return SignedRequest(
        raw_body=raw_body,
        client_id=client_id,
        idempotency_key=idempotency_key,
        environment=environment,
    )

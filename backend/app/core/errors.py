"""API error classes.

Every failure the credit subsystem can surface has a stable machine-readable
code. Services raise these; the exception handler in main.py maps them to
the standard error envelope and HTTP status.
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
        headers: Optional extra response headers (e.g., Retry-After).
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(message)


class InvalidInputError(APIError):
    """Malformed request body or parameter (400).

    Accepts a custom code for specific input problems
    (e.g., CLIENT_ID_MISSING, INVALID_AMOUNT).
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
        code: str = "INVALID_INPUT",
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Authentication required (401).

    Use when no valid session, bearer token, or HMAC signature is provided.
    The message never says which check failed.
    """

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class ForbiddenError(APIError):
    """Not allowed to act on the resource (403)."""

    def __init__(self, message: str = "Access denied", code: str = "FORBIDDEN") -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404).

    Accepts a custom code so callers can distinguish USER_NOT_FOUND from
    LEDGER_NOT_FOUND without parsing the message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        code: str = "NOT_FOUND",
    ) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=404,
        )


class InvalidStateError(APIError):
    """Business rule violation (422).

    Use when the request is well-formed but the ledger state forbids it,
    e.g. refunding a grant or refunding more than was deducted.
    """

    def __init__(self, message: str, code: str = "INVALID_STATE") -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=422,
        )


class InsufficientCreditsError(APIError):
    """Deduction would take the balance below zero (402).

    Args:
        balance: Balance at the time of the attempt.
        required: Credits the deduction asked for.
    """

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            code="INSUFFICIENT_CREDITS",
            message="User does not have enough credits.",
            status_code=402,
            details=[{"available": balance, "required": required}],
        )


class DuplicateTransactionError(APIError):
    """Idempotency key already used by a different balance owner (409)."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            code="DUPLICATE_TRANSACTION",
            message=f"Idempotency key '{idempotency_key}' was already used",
            status_code=409,
        )


class BalanceVersionConflictError(APIError):
    """Concurrent writers kept changing the balance (409).

    Transient. Raised only after the mutation service exhausted its retries;
    callers should retry with backoff.
    """

    def __init__(self) -> None:
        super().__init__(
            code="BALANCE_VERSION_CONFLICT",
            message="Balance version conflict. Retry with backoff.",
            status_code=409,
        )


class RateLimitedError(APIError):
    """Caller exhausted its request quota for the current window (429).

    Args:
        retry_after_seconds: Seconds until the window resets (>= 1).
    """

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            code="RATE_LIMITED",
            message="Too many requests",
            status_code=429,
            headers={"Retry-After": str(retry_after_seconds)},
        )


class UpstreamUnavailableError(APIError):
    """Database unreachable after retries (503)."""

    def __init__(self, message: str = "Credit store is temporarily unavailable") -> None:
        super().__init__(
            code="UPSTREAM_UNAVAILABLE",
            message=message,
            status_code=503,
        )


class InternalError(APIError):
    """Unexpected server error (500).

    Use for unhandled exceptions. Never expose stack traces to clients.
    """

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=500,
        )

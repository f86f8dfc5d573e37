"""Outbound credit webhooks.

Every event is wrapped in the envelope ``{id, type, createdAt, data}`` and
POSTed to each configured URL. When a signing secret is configured the
request carries

    X-Webhook-Signature: hex(HMAC-SHA256(secret, "<type>\\n<timestamp>\\n<body>"))

so receivers can authenticate the event and reject replays by timestamp.
Delivery is best effort: failures are logged and never propagate to the
ledger mutation that triggered them.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from app.core.config import Settings, settings
from app.core.retry import RetryPolicy, with_retries

logger = logging.getLogger(__name__)

EVENT_DEDUCTION_SUCCEEDED = "credits.deduction.succeeded"
EVENT_DEDUCTION_FAILED = "credits.deduction.failed"
EVENT_REFUND_SUCCEEDED = "credits.refund.succeeded"
EVENT_REFUND_FAILED = "credits.refund.failed"
EVENT_GRANT_SUCCEEDED = "credits.grant.succeeded"
EVENT_LOW_BALANCE = "credits.low_balance"
EVENT_AUTO_TOP_UP_REQUESTED = "credits.auto_top_up.requested"

WEBHOOK_EVENTS: frozenset[str] = frozenset(
    {
        EVENT_DEDUCTION_SUCCEEDED,
        EVENT_DEDUCTION_FAILED,
        EVENT_REFUND_SUCCEEDED,
        EVENT_REFUND_FAILED,
        EVENT_GRANT_SUCCEEDED,
        EVENT_LOW_BALANCE,
        EVENT_AUTO_TOP_UP_REQUESTED,
    }
)

EVENT_HEADER = "X-Webhook-Event"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
ID_HEADER = "X-Webhook-Id"
SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookDeliveryError(Exception):
    """A receiver answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(f"Webhook receiver {url} returned HTTP {status_code}")


def sign_webhook(event_type: str, timestamp: str, body: str, secret: str) -> str:
    """Compute the hex signature receivers verify.

    Args:
        event_type: Event name, e.g. ``credits.low_balance``.
        timestamp: Value sent in X-Webhook-Timestamp.
        body: Exact JSON body sent.
        secret: Signing secret.

    Returns:
        Lowercase hex HMAC-SHA256 digest.
    """
    content = f"{event_type}\n{timestamp}\n{body}"
    return hmac.new(
        secret.encode("utf-8"), content.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def _utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and Z suffix."""
    return (
        datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    )


class CreditWebhookDispatcher:
    """Posts credit events to the configured receivers.

    Args:
        urls: Receiver URLs. Empty disables dispatch entirely.
        secret: Signing secret. Empty sends unsigned events.
        timeout_seconds: Per-request timeout.
        retry_policy: Retries per URL and backoff bounds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        secret: str = "",
        timeout_seconds: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._urls = [url.strip() for url in urls if url and url.strip()]
        self._secret = secret
        self._timeout = timeout_seconds
        self._policy = retry_policy or RetryPolicy(
            max_retries=0, base_delay_ms=1000, max_delay_ms=10000, jitter=0.0
        )
        self._transport = transport
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "CreditWebhookDispatcher":
        """Build a dispatcher from application settings."""
        return cls(
            config.credit_webhook_urls,
            secret=config.webhook_signing_secret,
            timeout_seconds=config.webhook_timeout_seconds,
            retry_policy=RetryPolicy(
                max_retries=config.webhook_max_retries,
                base_delay_ms=config.webhook_retry_base_delay_ms,
                max_delay_ms=config.webhook_retry_max_delay_ms,
                jitter=0.0,
            ),
        )

    @property
    def enabled(self) -> bool:
        """True when at least one receiver URL is configured."""
        return bool(self._urls)

    @property
    def pending(self) -> int:
        """Number of scheduled dispatches still in flight."""
        return len(self._tasks)

    def build_request(
        self, event_type: str, data: Mapping[str, Any]
    ) -> tuple[dict[str, str], str]:
        """Serialize an event and compute its headers.

        Args:
            event_type: One of WEBHOOK_EVENTS.
            data: JSON-serializable event payload.

        Returns:
            Tuple of (headers, body).

        Raises:
            ValueError: If event_type is unknown.
        """
        if event_type not in WEBHOOK_EVENTS:
            msg = f"Unknown webhook event type: {event_type}"
            raise ValueError(msg)

        event_id = str(uuid.uuid4())
        timestamp = _utc_timestamp()
        body = json.dumps(
            {"id": event_id, "type": event_type, "createdAt": timestamp, "data": data},
            default=str,
            separators=(",", ":"),
        )
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event_type,
            TIMESTAMP_HEADER: timestamp,
            ID_HEADER: event_id,
        }
        if self._secret:
            headers[SIGNATURE_HEADER] = sign_webhook(
                event_type, timestamp, body, self._secret
            )
        return headers, body

    async def dispatch(self, event_type: str, data: Mapping[str, Any]) -> int:
        """Deliver one event to every receiver.

        All receivers get the same id, timestamp and body. Never raises
        for delivery failures.

        Args:
            event_type: One of WEBHOOK_EVENTS.
            data: JSON-serializable event payload.

        Returns:
            Number of receivers that acknowledged with a 2xx status.
        """
        if not self._urls:
            return 0

        headers, body = self.build_request(event_type, data)
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            results = await asyncio.gather(
                *(
                    self._deliver(client, url, event_type, headers, body)
                    for url in self._urls
                )
            )
        return sum(1 for delivered in results if delivered)

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        url: str,
        event_type: str,
        headers: dict[str, str],
        body: str,
    ) -> bool:
        async def post() -> None:
            response = await client.post(url, headers=headers, content=body)
            if not response.is_success:
                raise WebhookDeliveryError(url, response.status_code)

        try:
            await with_retries(
                post,
                self._policy,
                (httpx.HTTPError, WebhookDeliveryError),
                operation=f"Webhook {event_type} to {url}",
            )
        except (httpx.HTTPError, WebhookDeliveryError):
            logger.error(
                "Failed to dispatch %s to %s", event_type, url, exc_info=True
            )
            return False
        return True

    def schedule(
        self, event_type: str, data: Mapping[str, Any]
    ) -> asyncio.Task[None] | None:
        """Fire dispatch as a tracked background task.

        Args:
            event_type: One of WEBHOOK_EVENTS.
            data: JSON-serializable event payload.

        Returns:
            The task, or None when no receivers are configured.
        """
        if not self._urls:
            return None

        async def run() -> None:
            try:
                await self.dispatch(event_type, data)
            except Exception:
                logger.exception("Webhook dispatch for %s crashed", event_type)

        task = asyncio.create_task(run(), name=f"webhook:{event_type}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

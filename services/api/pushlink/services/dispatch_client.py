"""Push-delivery provider adapter (Expo push API).

Expo relays to FCM/APNs. A send request is a JSON list of messages and the
response carries one ticket per message, in request order.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

import httpx

from pushlink.config import Settings
from pushlink.errors import PermanentDeliveryError, TransientDeliveryError
from pushlink.metrics import push_batches_total, push_dispatch_duration_seconds, push_receipts_total
from pushlink.services.token_store import mask_address

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}

# Expo ticket/receipt error codes
_INVALID_ADDRESS_ERRORS = {"DeviceNotRegistered"}
_RATE_LIMIT_ERRORS = {"MessageRateExceeded"}


class DeliveryOutcome(str, Enum):
    OK = "ok"
    INVALID_ADDRESS = "invalid-address"
    RATE_LIMITED = "rate-limited"
    TRANSIENT_ERROR = "transient-error"


@dataclass
class NotificationRequest:
    """What to tell a user. Built per send, never persisted."""

    recipient_user_id: str
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PushMessage:
    """A NotificationRequest bound to one device address."""

    address: str
    request: NotificationRequest
    sound: str | None = "default"
    priority: str = "high"

    def to_provider(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "to": self.address,
            "title": self.request.title,
            "body": self.request.body,
            "data": self.request.payload,
            "priority": self.priority,
        }
        if self.sound:
            message["sound"] = self.sound
        return message


@dataclass
class DeliveryReceipt:
    """Provider's per-message outcome, positionally matched to the request."""

    address: str
    outcome: DeliveryOutcome
    provider_message_id: str | None = None
    error: str | None = None


@dataclass
class TicketReceipt:
    """Late receipt for a previously accepted message, keyed by ticket id."""

    ticket_id: str
    outcome: DeliveryOutcome
    error: str | None = None


def outcome_for_error(error_code: str | None) -> DeliveryOutcome:
    if error_code in _INVALID_ADDRESS_ERRORS:
        return DeliveryOutcome.INVALID_ADDRESS
    if error_code in _RATE_LIMIT_ERRORS:
        return DeliveryOutcome.RATE_LIMITED
    return DeliveryOutcome.TRANSIENT_ERROR


class DispatchClient:
    """Submit notification batches and interpret per-message tickets.

    Never raises from ``send``: whole-batch failures end up as
    ``transient-error`` receipts once the bounded retries are spent.
    """

    def __init__(self, settings: Settings) -> None:
        self._push_url = settings.push_api_url
        self._receipts_url = settings.push_receipts_url
        self._access_token = settings.push_access_token.get_secret_value()
        self._batch_size = settings.push_batch_size
        self._receipt_batch_size = settings.push_receipt_batch_size
        self._max_concurrent = settings.push_max_concurrent_batches
        self._max_attempts = settings.push_max_attempts
        self._backoff_base = settings.push_backoff_base_seconds
        self._timeout = settings.push_timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return self._backoff_base * (2 ** (attempt - 1))

    async def send(self, messages: Iterable[PushMessage]) -> list[DeliveryReceipt]:
        """Send messages, returning one receipt per message in input order."""
        messages = list(messages)
        if not messages:
            return []

        batches = [
            messages[i : i + self._batch_size]
            for i in range(0, len(messages), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._max_concurrent)
        started = time.monotonic()

        async with httpx.AsyncClient(timeout=self._timeout, headers=self._headers()) as client:

            async def run(batch: list[PushMessage]) -> list[DeliveryReceipt]:
                async with semaphore:
                    return await self._send_batch(client, batch)

            # gather preserves batch order, so receipts stay aligned with messages
            results = await asyncio.gather(*(run(batch) for batch in batches))

        push_dispatch_duration_seconds.observe(time.monotonic() - started)
        receipts = [receipt for batch_receipts in results for receipt in batch_receipts]
        for receipt in receipts:
            push_receipts_total.labels(outcome=receipt.outcome.value).inc()
        return receipts

    async def fetch_receipts(self, ticket_ids: Iterable[str]) -> dict[str, TicketReceipt]:
        """Look up late receipts for accepted tickets.

        Tickets whose receipt is not ready yet are absent from the result.
        Failed lookups are logged and yield no receipts for that chunk.
        """
        ticket_ids = [t for t in ticket_ids if t]
        receipts: dict[str, TicketReceipt] = {}
        if not ticket_ids:
            return receipts

        async with httpx.AsyncClient(timeout=self._timeout, headers=self._headers()) as client:
            for i in range(0, len(ticket_ids), self._receipt_batch_size):
                chunk = ticket_ids[i : i + self._receipt_batch_size]
                try:
                    body = await self._post_with_retry(client, self._receipts_url, {"ids": chunk})
                except (TransientDeliveryError, PermanentDeliveryError) as e:
                    logger.warning("Receipt lookup failed for %d tickets: %s", len(chunk), e)
                    continue

                data = body.get("data") if isinstance(body, dict) else None
                if not isinstance(data, dict):
                    logger.warning("Unexpected receipts response shape; skipping chunk")
                    continue
                for ticket_id, entry in data.items():
                    receipts[ticket_id] = self._interpret_receipt(ticket_id, entry)
        return receipts

    # --- internals ---

    async def _send_batch(
        self,
        client: httpx.AsyncClient,
        batch: list[PushMessage],
    ) -> list[DeliveryReceipt]:
        try:
            body = await self._post_with_retry(
                client, self._push_url, [m.to_provider() for m in batch]
            )
        except (TransientDeliveryError, PermanentDeliveryError) as e:
            push_batches_total.labels(result="failed").inc()
            logger.warning("Push batch of %d failed: %s", len(batch), e)
            return self._all_transient(batch, str(e))
        except Exception as e:
            push_batches_total.labels(result="failed").inc()
            logger.error("Push batch of %d failed unexpectedly: %s", len(batch), e)
            return self._all_transient(batch, f"unexpected error: {type(e).__name__}")

        tickets = body.get("data") if isinstance(body, dict) else None
        if not isinstance(tickets, list) or len(tickets) != len(batch):
            push_batches_total.labels(result="uncorrelated").inc()
            logger.error(
                "Push response has %s tickets for %d messages; cannot correlate",
                len(tickets) if isinstance(tickets, list) else "no",
                len(batch),
            )
            return self._all_transient(batch, "uncorrelated provider response")

        push_batches_total.labels(result="ok").inc()
        return [self._interpret_ticket(m.address, t) for m, t in zip(batch, tickets)]

    async def _post_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Any,
    ) -> Any:
        """POST with bounded exponential backoff.

        Raises TransientDeliveryError once attempts are exhausted and
        PermanentDeliveryError for non-retryable HTTP responses.
        """
        last_error: TransientDeliveryError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await client.post(url, json=payload)
            except httpx.TimeoutException as e:
                last_error = TransientDeliveryError(f"timed out: {e}")
            except httpx.HTTPError as e:
                last_error = TransientDeliveryError(f"transport error: {e}")
            else:
                if response.status_code == 200:
                    try:
                        return response.json()
                    except ValueError:
                        last_error = TransientDeliveryError("provider returned invalid JSON", 200)
                elif response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
                    last_error = TransientDeliveryError(
                        f"provider returned {response.status_code}", response.status_code
                    )
                else:
                    raise PermanentDeliveryError(
                        f"provider returned {response.status_code}: {response.text[:200]}",
                        response.status_code,
                    )

            if attempt < self._max_attempts:
                delay = self.backoff_delay(attempt)
                logger.info(
                    "Push request attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt,
                    self._max_attempts,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise last_error

    @staticmethod
    def _all_transient(batch: list[PushMessage], error: str) -> list[DeliveryReceipt]:
        return [
            DeliveryReceipt(address=m.address, outcome=DeliveryOutcome.TRANSIENT_ERROR, error=error)
            for m in batch
        ]

    @staticmethod
    def _interpret_ticket(address: str, ticket: Any) -> DeliveryReceipt:
        if not isinstance(ticket, dict):
            return DeliveryReceipt(address, DeliveryOutcome.TRANSIENT_ERROR, error="malformed ticket")

        if ticket.get("status") == "ok":
            return DeliveryReceipt(address, DeliveryOutcome.OK, provider_message_id=ticket.get("id"))

        error_code = (ticket.get("details") or {}).get("error")
        outcome = outcome_for_error(error_code)
        if outcome == DeliveryOutcome.INVALID_ADDRESS:
            logger.info("Provider reports address=%s unregistered", mask_address(address))
        return DeliveryReceipt(
            address,
            outcome,
            provider_message_id=ticket.get("id"),
            error=error_code or ticket.get("message") or "unknown provider error",
        )

    @staticmethod
    def _interpret_receipt(ticket_id: str, entry: Any) -> TicketReceipt:
        if not isinstance(entry, dict):
            return TicketReceipt(ticket_id, DeliveryOutcome.TRANSIENT_ERROR, error="malformed receipt")
        if entry.get("status") == "ok":
            return TicketReceipt(ticket_id, DeliveryOutcome.OK)
        error_code = (entry.get("details") or {}).get("error")
        return TicketReceipt(
            ticket_id,
            outcome_for_error(error_code),
            error=error_code or entry.get("message") or "unknown provider error",
        )


def get_dispatch_client(settings: Settings) -> DispatchClient:
    return DispatchClient(settings)

"""
x402 Distributor - Distribution Webhook Dispatcher

Forwards payment notifications to the distribution webhook
(X402_DISTRIBUTION_WEBHOOK_URL) from a background worker, so the payment
path never waits on distribution.

Every notification gets a DispatchTicket that moves
pending -> delivered | dead_lettered. Delivery is an HMAC-signed POST
retried with exponential backoff; 4xx answers other than 408/429 are final.
Dead-lettered tickets stay in memory, are appended to a JSON-lines file
when one is configured, and can be re-driven. Re-delivery is safe because
the receiving side deduplicates on the funding reference.
"""

import json
import logging
import queue
import secrets
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import requests

from config import __version__
from monitoring.metrics import metrics
from retry import (
    CircuitBreaker,
    NonRetryableError,
    RetryableError,
    RetryConfig,
    get_circuit_breaker,
    retry_call,
)
from webhook_auth import SIGNATURE_HEADER, compute_signature

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_QUEUE_SIZE = 1000
MAX_TRACKED_TICKETS = 10000
RETRYABLE_CLIENT_STATUSES = (408, 429)


class DispatchState(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class DeliveryError(RetryableError):
    """Transient delivery failure (network error, 5xx, 408, 429)."""


class DeliveryRejected(NonRetryableError):
    """The receiver refused the notification with a final 4xx."""


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _retry_after(response) -> float | None:
    # Only the delta-seconds form; HTTP-date hints fall back to the backoff
    value = response.headers.get("Retry-After")
    if isinstance(value, str) and value.strip().isdigit():
        return float(value)
    return None


@dataclass
class DispatchTicket:
    """Tracks one notification through delivery."""

    payload: dict[str, Any]
    ticket_id: str = field(default_factory=lambda: f"dispatch_{secrets.token_hex(8)}")
    state: DispatchState = DispatchState.PENDING
    attempts: int = 0
    last_error: str | None = None
    status_code: int | None = None
    created_at: str = field(default_factory=_utc_now)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "statusCode": self.status_code,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "payload": self.payload,
        }


class DistributionWebhookDispatcher:
    """
    Queue-backed, retrying sender of payment notifications.

    Usage:
        dispatcher = DistributionWebhookDispatcher(url, secret=secret)
        dispatcher.start()
        ticket = dispatcher.dispatch({"streamId": mint, "amount": "0.5", ...})
    """

    def __init__(
        self,
        webhook_url: str,
        secret: str | None = None,
        retry_config: RetryConfig | None = None,
        circuit: CircuitBreaker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        dead_letter_file: str | None = None,
        session: requests.Session | None = None,
    ):
        self.webhook_url = webhook_url
        self.secret = secret
        self.retry_config = retry_config or RetryConfig.from_env()
        self.circuit = circuit or get_circuit_breaker(f"webhook:{webhook_url}")
        self.timeout = timeout
        self.dead_letter_file = dead_letter_file

        self._queue: queue.Queue[DispatchTicket] = queue.Queue(maxsize=max_queue_size)
        self._tickets: dict[str, DispatchTicket] = {}
        self._dead_letters: dict[str, DispatchTicket] = {}
        self._lock = threading.Lock()

        self._running = False
        self._worker_thread: threading.Thread | None = None

        self._session = session or requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = f"x402-distributor/{__version__}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the background delivery worker."""
        if self._running:
            return
        self._running = True
        self._worker_thread = threading.Thread(
            target=self._worker_loop, name="x402-dispatcher", daemon=True
        )
        self._worker_thread.start()
        logger.info("Webhook dispatcher started", extra={"webhook_url": self.webhook_url})

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker; tickets still queued stay pending."""
        self._running = False
        if self._worker_thread:
            self._worker_thread.join(timeout=timeout)
            self._worker_thread = None
        self._session.close()
        logger.info("Webhook dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._running

    def queue_depth(self) -> int:
        return self._queue.qsize()

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, payload: dict[str, Any]) -> DispatchTicket:
        """
        Queue a notification for delivery.

        A full queue dead-letters the ticket immediately rather than
        dropping it.
        """
        ticket = DispatchTicket(payload=payload)
        self._track(ticket)
        self._enqueue(ticket)
        return ticket

    def _enqueue(self, ticket: DispatchTicket) -> None:
        try:
            self._queue.put_nowait(ticket)
        except queue.Full:
            self._dead_letter(ticket, "Dispatch queue full")
            return
        metrics.set_gauge("webhook_dispatch_queue_depth", self._queue.qsize())

    def _track(self, ticket: DispatchTicket) -> None:
        with self._lock:
            self._tickets[ticket.ticket_id] = ticket
            # Forget the oldest finished tickets once the table is full
            if len(self._tickets) > MAX_TRACKED_TICKETS:
                for ticket_id, tracked in list(self._tickets.items()):
                    if tracked.state == DispatchState.DELIVERED:
                        del self._tickets[ticket_id]
                    if len(self._tickets) <= MAX_TRACKED_TICKETS:
                        break

    def get_ticket(self, ticket_id: str) -> DispatchTicket | None:
        with self._lock:
            return self._tickets.get(ticket_id) or self._dead_letters.get(ticket_id)

    def dead_letters(self) -> list[DispatchTicket]:
        with self._lock:
            return list(self._dead_letters.values())

    def redrive(self, ticket_id: str) -> DispatchTicket:
        """
        Re-queue a dead-lettered ticket.

        Raises:
            KeyError: If no dead-lettered ticket has this id
        """
        with self._lock:
            ticket = self._dead_letters.pop(ticket_id)
            ticket.state = DispatchState.PENDING
            ticket.completed_at = None
            self._tickets[ticket_id] = ticket
        logger.info("Re-driving dead-lettered dispatch", extra={"ticket_id": ticket_id})
        metrics.increment("webhook_dispatch_total", labels={"outcome": "redriven"})
        self._enqueue(ticket)
        return ticket

    # =========================================================================
    # Delivery
    # =========================================================================

    def _worker_loop(self) -> None:
        while self._running:
            try:
                ticket = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            metrics.set_gauge("webhook_dispatch_queue_depth", self._queue.qsize())
            try:
                self.deliver(ticket)
            except Exception as e:
                logger.exception("Dispatcher worker error")
                self._dead_letter(ticket, f"{type(e).__name__}: {e}")
            finally:
                self._queue.task_done()

    def deliver(self, ticket: DispatchTicket) -> DispatchTicket:
        """Deliver one ticket synchronously, with retries."""
        body = json.dumps(ticket.payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            ticket.last_error = str(error)
            metrics.increment("webhook_dispatch_retries_total")

        try:
            retry_call(
                self._post,
                args=(ticket, body),
                config=self.retry_config,
                circuit=self.circuit,
                on_retry=on_retry,
            )
        except (RetryableError, NonRetryableError, ConnectionError, TimeoutError) as e:
            self._dead_letter(ticket, str(e))
            return ticket

        ticket.state = DispatchState.DELIVERED
        ticket.last_error = None
        ticket.completed_at = _utc_now()
        metrics.increment("webhook_dispatch_total", labels={"outcome": "delivered"})
        logger.info(
            "Dispatch delivered",
            extra={"ticket_id": ticket.ticket_id, "attempts": ticket.attempts},
        )
        return ticket

    def _post(self, ticket: DispatchTicket, body: bytes) -> None:
        ticket.attempts += 1
        headers = {"X-X402-Dispatch-Id": ticket.ticket_id}
        if self.secret:
            headers[SIGNATURE_HEADER] = compute_signature(self.secret, body)

        try:
            response = self._session.post(
                self.webhook_url, data=body, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        ticket.status_code = response.status_code
        if 200 <= response.status_code < 300:
            return
        if response.status_code >= 500 or response.status_code in RETRYABLE_CLIENT_STATUSES:
            raise DeliveryError(
                f"Webhook answered {response.status_code}", retry_after=_retry_after(response)
            )
        raise DeliveryRejected(f"Webhook rejected notification with {response.status_code}")

    def _dead_letter(self, ticket: DispatchTicket, reason: str) -> None:
        ticket.state = DispatchState.DEAD_LETTERED
        ticket.last_error = reason
        ticket.completed_at = _utc_now()
        with self._lock:
            self._tickets.pop(ticket.ticket_id, None)
            self._dead_letters[ticket.ticket_id] = ticket

        metrics.increment("webhook_dispatch_total", labels={"outcome": "dead_lettered"})
        logger.error(
            f"Dispatch dead-lettered: {reason}",
            extra={"ticket_id": ticket.ticket_id, "attempts": ticket.attempts},
        )

        if self.dead_letter_file:
            try:
                with open(self.dead_letter_file, "a") as f:
                    f.write(json.dumps(ticket.to_dict(), default=str) + "\n")
            except OSError:
                logger.exception(
                    "Could not append to dead-letter file",
                    extra={"dead_letter_file": self.dead_letter_file},
                )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            states: dict[str, int] = {}
            for ticket in self._tickets.values():
                states[ticket.state.value] = states.get(ticket.state.value, 0) + 1
            dead = len(self._dead_letters)
        return {
            "running": self._running,
            "queueDepth": self._queue.qsize(),
            "tickets": states,
            "deadLettered": dead,
            "circuit": self.circuit.state.value,
        }

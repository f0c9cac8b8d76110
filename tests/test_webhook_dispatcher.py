"""
Tests for the distribution webhook dispatcher.

Tests:
- Signed delivery and response classification
- Retries on transient failures
- Dead-lettering (final rejections, exhausted retries, full queue, open circuit)
- Re-drive of dead-lettered tickets
- Background worker lifecycle
"""

import json
import os
import sys
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from monitoring.metrics import metrics
from retry import CircuitBreaker, RetryConfig
from webhook_auth import SIGNATURE_HEADER, compute_signature
from webhook_dispatcher import DispatchState, DistributionWebhookDispatcher

WEBHOOK_URL = "https://distributor.example/api/x402/webhook"
SECRET = "dispatch-secret"
PAYLOAD = {"streamId": "mint", "amount": "0.5", "fundingReference": "sig-1"}


def response(status_code):
    resp = MagicMock()
    resp.status_code = status_code
    return resp


def make_dispatcher(*responses, max_retries=2, **kwargs):
    session = MagicMock()
    session.post.side_effect = list(responses)
    dispatcher = DistributionWebhookDispatcher(
        WEBHOOK_URL,
        secret=SECRET,
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0, jitter=0),
        circuit=CircuitBreaker("test", failure_threshold=100),
        session=session,
        **kwargs,
    )
    return dispatcher, session


class TestDelivery:
    """Tests for synchronous delivery."""

    def test_delivered(self):
        """Test a 2xx answer delivers the ticket."""
        dispatcher, session = make_dispatcher(response(200))
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        assert ticket.state == DispatchState.DELIVERED
        assert ticket.attempts == 1
        assert ticket.status_code == 200
        assert ticket.completed_at is not None
        assert metrics.get_counter("webhook_dispatch_total", labels={"outcome": "delivered"}) == 1

    def test_signed_canonical_body(self):
        """Test the body is canonical JSON signed with the shared secret."""
        dispatcher, session = make_dispatcher(response(202))
        ticket = dispatcher.dispatch(PAYLOAD)
        dispatcher.deliver(ticket)

        kwargs = session.post.call_args.kwargs
        body = kwargs["data"]
        assert body == json.dumps(PAYLOAD, sort_keys=True, separators=(",", ":")).encode()
        assert kwargs["headers"][SIGNATURE_HEADER] == compute_signature(SECRET, body)
        assert kwargs["headers"]["X-X402-Dispatch-Id"] == ticket.ticket_id

    def test_unsigned_without_secret(self):
        """Test no signature header is sent without a secret."""
        session = MagicMock()
        session.post.return_value = response(200)
        dispatcher = DistributionWebhookDispatcher(
            WEBHOOK_URL, circuit=CircuitBreaker("test"), session=session
        )

        dispatcher.deliver(dispatcher.dispatch(PAYLOAD))

        assert SIGNATURE_HEADER not in session.post.call_args.kwargs["headers"]

    def test_retries_server_errors(self):
        """Test 5xx and 429 answers are retried."""
        dispatcher, session = make_dispatcher(response(503), response(429), response(200))
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        assert ticket.state == DispatchState.DELIVERED
        assert ticket.attempts == 3
        assert metrics.get_counter("webhook_dispatch_retries_total") == 2

    def test_retry_after_header(self):
        """Test a Retry-After header sets the wait before the next attempt."""
        throttled = response(429)
        throttled.headers = {"Retry-After": "3"}
        dispatcher, _ = make_dispatcher(throttled, response(200))
        ticket = dispatcher.dispatch(PAYLOAD)

        with patch("retry.time.sleep") as mock_sleep:
            dispatcher.deliver(ticket)

        mock_sleep.assert_called_once_with(3.0)
        assert ticket.state == DispatchState.DELIVERED

    def test_final_rejection(self):
        """Test a 4xx answer dead-letters without retrying."""
        dispatcher, session = make_dispatcher(response(400), response(200))
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        assert ticket.state == DispatchState.DEAD_LETTERED
        assert ticket.attempts == 1
        assert ticket.status_code == 400
        assert dispatcher.dead_letters() == [ticket]

    def test_exhausted_retries(self):
        """Test persistent network errors dead-letter after the last retry."""
        dispatcher, session = make_dispatcher(max_retries=1)
        session.post.side_effect = requests.ConnectionError("refused")
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        assert ticket.state == DispatchState.DEAD_LETTERED
        assert ticket.attempts == 2
        assert "refused" in ticket.last_error

    def test_open_circuit(self):
        """Test an open circuit dead-letters without calling the webhook."""
        dispatcher, session = make_dispatcher(response(200))
        dispatcher.circuit = CircuitBreaker("open", failure_threshold=1)
        dispatcher.circuit.record_failure()
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        assert ticket.state == DispatchState.DEAD_LETTERED
        session.post.assert_not_called()


class TestDeadLetters:
    """Tests for dead-letter handling and re-drive."""

    def test_full_queue(self):
        """Test a full queue dead-letters instead of dropping."""
        dispatcher, _ = make_dispatcher(max_queue_size=1)

        first = dispatcher.dispatch(PAYLOAD)
        second = dispatcher.dispatch(PAYLOAD)

        assert first.state == DispatchState.PENDING
        assert second.state == DispatchState.DEAD_LETTERED
        assert second.last_error == "Dispatch queue full"
        assert dispatcher.queue_depth() == 1

    def test_dead_letter_file(self, tmp_path):
        """Test dead-lettered tickets are appended as JSON lines."""
        path = tmp_path / "dead.jsonl"
        dispatcher, _ = make_dispatcher(response(410), dead_letter_file=str(path))
        ticket = dispatcher.dispatch(PAYLOAD)

        dispatcher.deliver(ticket)

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["ticketId"] == ticket.ticket_id
        assert entry["state"] == "dead_lettered"
        assert entry["payload"] == PAYLOAD

    def test_redrive(self):
        """Test a dead-lettered ticket can be re-queued and delivered."""
        dispatcher, _ = make_dispatcher(response(400), response(200))
        ticket = dispatcher.dispatch(PAYLOAD)
        dispatcher._queue.get_nowait()
        dispatcher.deliver(ticket)

        redriven = dispatcher.redrive(ticket.ticket_id)

        assert redriven is ticket
        assert ticket.state == DispatchState.PENDING
        assert dispatcher.dead_letters() == []
        assert dispatcher.queue_depth() == 1
        dispatcher.deliver(dispatcher._queue.get_nowait())
        assert ticket.state == DispatchState.DELIVERED
        assert ticket.attempts == 2

    def test_redrive_unknown(self):
        """Test re-driving an unknown ticket raises KeyError."""
        dispatcher, _ = make_dispatcher()

        with pytest.raises(KeyError):
            dispatcher.redrive("dispatch_missing")

    def test_get_ticket(self):
        """Test tickets are found while pending and after dead-lettering."""
        dispatcher, _ = make_dispatcher(response(400))
        ticket = dispatcher.dispatch(PAYLOAD)
        assert dispatcher.get_ticket(ticket.ticket_id) is ticket

        dispatcher.deliver(ticket)

        assert dispatcher.get_ticket(ticket.ticket_id) is ticket
        assert dispatcher.get_ticket("dispatch_missing") is None

    def test_stats(self):
        """Test stats report queue depth and dead letters."""
        dispatcher, _ = make_dispatcher(response(400))
        dispatcher.deliver(dispatcher.dispatch(PAYLOAD))
        dispatcher.dispatch(PAYLOAD)

        stats = dispatcher.get_stats()

        assert stats["running"] is False
        assert stats["deadLettered"] == 1
        assert stats["tickets"] == {"pending": 1}
        assert stats["circuit"] == "closed"


class TestWorker:
    """Tests for the background worker."""

    def test_worker_delivers(self):
        """Test queued tickets are delivered by the worker thread."""
        dispatcher, session = make_dispatcher(response(200))
        dispatcher.start()
        try:
            ticket = dispatcher.dispatch(PAYLOAD)
            deadline = time.monotonic() + 5
            while ticket.state == DispatchState.PENDING and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            dispatcher.stop(timeout=2)

        assert ticket.state == DispatchState.DELIVERED
        assert not dispatcher.running

    def test_start_is_idempotent(self):
        """Test starting twice keeps one worker."""
        dispatcher, _ = make_dispatcher()
        dispatcher.start()
        worker = dispatcher._worker_thread
        dispatcher.start()

        assert dispatcher._worker_thread is worker
        dispatcher.stop(timeout=2)

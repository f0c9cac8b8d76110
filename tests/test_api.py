"""
Tests for the x402 distributor HTTP API.

Tests:
- Payment webhook (signatures, validation, error envelope)
- Manual distribution and its production guard
- Stream registration and configuration endpoints
- History and stats endpoints
- Notification dispatch endpoints
- Operator API key enforcement
- Health and metrics endpoints
"""

import json
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from api import create_app
from api.utils import API_KEY_HEADER
from conftest import API_KEY, STREAM_ID, TREASURY, WEBHOOK_SECRET
from config import DistributorSettings
from distribution_errors import NoHoldersFound
from holder_directory import mock_holder_address
from retry import CircuitBreaker, RetryConfig
from webhook_auth import SIGNATURE_HEADER, compute_signature
from webhook_dispatcher import DistributionWebhookDispatcher

PAYMENT = {"streamId": STREAM_ID, "amount": "1", "fundingReference": "pay-1"}


def post_json(client, url, data, headers=None):
    return client.post(
        url, data=json.dumps(data), content_type="application/json", headers=headers or {}
    )


@pytest.fixture
def signed_client(service):
    settings = DistributorSettings(
        environment="test", storage_backend="memory", webhook_secret=WEBHOOK_SECRET
    )
    app = create_app(service=service, settings=settings)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def production_client(service):
    settings = DistributorSettings(
        environment="production", storage_backend="memory", api_key=API_KEY
    )
    app = create_app(service=service, settings=settings)
    app.config["TESTING"] = True
    client = app.test_client()
    client.environ_base["HTTP_X_API_KEY"] = API_KEY
    return client


@pytest.fixture
def dispatcher():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=400)
    return DistributionWebhookDispatcher(
        "https://distributor.example/api/x402/webhook",
        retry_config=RetryConfig(max_retries=0, base_delay=0),
        circuit=CircuitBreaker("api-test"),
        session=session,
    )


@pytest.fixture
def dispatch_client(service, settings, dispatcher):
    app = create_app(
        service=service, settings=settings, dispatcher=dispatcher, start_dispatcher=False
    )
    app.config["TESTING"] = True
    client = app.test_client()
    client.environ_base["HTTP_X_API_KEY"] = API_KEY
    return client


class TestPaymentWebhook:
    """Tests for POST /api/x402/webhook."""

    def test_distributes_payment(self, client):
        """Test a valid payment returns the distribution result."""
        response = post_json(client, "/api/x402/webhook", PAYMENT)

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["status"] == "mock"
        assert data["recipients"] == 3
        assert data["amountPerHolder"] == 292_500_000
        assert data["totalDistributed"] == 1_000_000_000
        assert data["unit"] == "lamports"

    def test_replay(self, client):
        """Test a repeated reference replays the first result."""
        first = post_json(client, "/api/x402/webhook", PAYMENT).get_json()
        second = post_json(client, "/api/x402/webhook", PAYMENT).get_json()

        assert second["replayed"] is True
        assert second["recordId"] == first["recordId"]

    def test_unknown_stream(self, client):
        """Test an unregistered stream is a 404."""
        payment = dict(PAYMENT, streamId=mock_holder_address("stream", 42))

        response = post_json(client, "/api/x402/webhook", payment)

        assert response.status_code == 404
        assert response.get_json()["error"]["code"] == "stream_not_registered"

    def test_invalid_amount(self, client):
        """Test a non-positive amount is a 400."""
        response = post_json(client, "/api/x402/webhook", dict(PAYMENT, amount="-1"))

        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "invalid_amount"

    def test_not_json(self, client):
        """Test a non-JSON body is a 400."""
        response = client.post("/api/x402/webhook", data="amount=1")

        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "invalid_payment_event"

    def test_unknown_field(self, client):
        """Test unknown payload fields are refused."""
        response = post_json(client, "/api/x402/webhook", dict(PAYMENT, recipients=[]))

        assert response.status_code == 400

    def test_failed_distribution(self, client, holder_directory):
        """Test a resolution failure carries the failed record id."""
        holder_directory.error = NoHoldersFound("No holders")

        response = post_json(client, "/api/x402/webhook", PAYMENT)

        assert response.status_code == 422
        error = response.get_json()["error"]
        assert error["code"] == "no_holders_found"
        assert error["stage"] == "split_computed"
        assert error["recordId"].startswith("dist_")


class TestWebhookSignatures:
    """Tests for webhook signature enforcement."""

    def test_missing_signature(self, signed_client):
        """Test unsigned requests are refused when a secret is set."""
        response = post_json(signed_client, "/api/x402/webhook", PAYMENT)

        assert response.status_code == 401
        assert response.get_json()["error"]["code"] == "unauthorized"

    def test_valid_signature(self, signed_client):
        """Test a correctly signed body is accepted."""
        body = json.dumps(PAYMENT)
        response = signed_client.post(
            "/api/x402/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: compute_signature(WEBHOOK_SECRET, body.encode())},
        )

        assert response.status_code == 200

    def test_wrong_signature(self, signed_client):
        """Test a signature under another secret is refused."""
        body = json.dumps(PAYMENT)
        response = signed_client.post(
            "/api/x402/webhook",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: compute_signature("other", body.encode())},
        )

        assert response.status_code == 401

    def test_production_requires_secret(self, production_client):
        """Test production refuses webhooks when no secret is configured."""
        response = post_json(production_client, "/api/x402/webhook", PAYMENT)

        assert response.status_code == 401


class TestManualDistribute:
    """Tests for POST /api/x402/distribute."""

    def test_manual_distribution(self, client):
        """Test manual distribution outside production."""
        response = post_json(client, "/api/x402/distribute", {"streamId": STREAM_ID, "amount": 2})

        assert response.status_code == 200
        assert response.get_json()["totalDistributed"] == 2_000_000_000

    def test_forbidden_in_production(self, production_client):
        """Test manual distribution is disabled in production."""
        response = post_json(
            production_client, "/api/x402/distribute", {"streamId": STREAM_ID, "amount": 2}
        )

        assert response.status_code == 403


class TestStreamEndpoints:
    """Tests for stream registration and configuration."""

    def test_register(self, client):
        """Test registering a new stream."""
        stream = mock_holder_address("stream", 1)
        response = post_json(
            client,
            "/api/x402/register",
            {
                "streamId": stream,
                "treasuryWallet": TREASURY,
                "distributionModel": "creator-split",
                "distributionPercentage": 80,
                "creatorSplitPercentage": "10",
                "paymentEndpoint": "https://pay.example/x402",
            },
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data["stream"]["distribution_model"] == "creator-split"
        assert data["stream"]["creator_split_percentage"] == "10"
        assert data["paymentUrl"] == f"https://pay.example/x402?nft={stream}"

    def test_register_mint_alias(self, client):
        """Test nftMintAddress is accepted as the stream id."""
        stream = mock_holder_address("stream", 2)
        response = post_json(
            client, "/api/x402/register", {"nftMintAddress": stream, "treasuryWallet": TREASURY}
        )

        assert response.status_code == 201
        assert response.get_json()["stream"]["stream_id"] == stream

    def test_register_duplicate(self, client):
        """Test re-registering is a conflict."""
        response = post_json(
            client, "/api/x402/register", {"streamId": STREAM_ID, "treasuryWallet": TREASURY}
        )

        assert response.status_code == 409

    def test_register_bad_types(self, client):
        """Test wrongly typed fields are refused."""
        response = post_json(
            client,
            "/api/x402/register",
            {
                "streamId": mock_holder_address("stream", 3),
                "treasuryWallet": TREASURY,
                "distributionPercentage": True,
            },
        )

        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "invalid_stream_config"

    def test_register_missing_treasury(self, client):
        """Test the treasury wallet is required."""
        response = post_json(
            client, "/api/x402/register", {"streamId": mock_holder_address("stream", 3)}
        )

        assert response.status_code == 400

    def test_list_and_get(self, client):
        """Test listing and fetching streams."""
        listing = client.get("/api/x402/streams").get_json()
        single = client.get(f"/api/x402/streams/{STREAM_ID}")

        assert listing["count"] == 1
        assert single.status_code == 200
        assert single.get_json()["stream"]["distribution_percentage"] == 90

    def test_get_unknown(self, client):
        """Test fetching an unknown stream is a 404."""
        response = client.get(f"/api/x402/streams/{mock_holder_address('stream', 9)}")

        assert response.status_code == 404

    def test_reconfigure(self, client):
        """Test PATCH applies configuration changes."""
        response = client.patch(
            f"/api/x402/streams/{STREAM_ID}",
            data=json.dumps({"distributionPercentage": 70}),
            content_type="application/json",
        )

        assert response.status_code == 200
        assert response.get_json()["stream"]["distribution_percentage"] == 70

    def test_reconfigure_unknown_field(self, client):
        """Test PATCH refuses unknown fields."""
        response = client.patch(
            f"/api/x402/streams/{STREAM_ID}",
            data=json.dumps({"streamId": "other"}),
            content_type="application/json",
        )

        assert response.status_code == 400

    def test_reconfigure_empty(self, client):
        """Test PATCH needs at least one field."""
        response = client.patch(
            f"/api/x402/streams/{STREAM_ID}", data="{}", content_type="application/json"
        )

        assert response.status_code == 400

    def test_disable(self, client):
        """Test a disabled stream stops accepting payments."""
        response = client.post(f"/api/x402/streams/{STREAM_ID}/disable")

        assert response.status_code == 200
        assert response.get_json()["stream"]["enabled"] is False
        assert post_json(client, "/api/x402/webhook", PAYMENT).status_code == 404


class TestReportingEndpoints:
    """Tests for history and stats."""

    def test_history(self, client):
        """Test history lists recorded distributions."""
        post_json(client, "/api/x402/webhook", PAYMENT)

        data = client.get(f"/api/x402/history/{STREAM_ID}?limit=5").get_json()

        assert data["count"] == 1
        assert data["limit"] == 5
        assert data["records"][0]["funding_reference"] == "pay-1"

    def test_history_limit_is_bounded(self, client):
        """Test oversized limits are clamped."""
        data = client.get(f"/api/x402/history/{STREAM_ID}?limit=500").get_json()

        assert data["limit"] == 100

    def test_stats(self, client):
        """Test stats report mock distributions separately."""
        post_json(client, "/api/x402/webhook", PAYMENT)

        data = client.get(f"/api/x402/stats/{STREAM_ID}").get_json()

        assert data["totalDistributed"] == 0
        assert data["mockCount"] == 1
        assert data["holderCount"] == 3
        assert data["unit"] == "lamports"


class TestDispatchEndpoints:
    """Tests for notification dispatch."""

    def test_disabled_without_webhook_url(self, client):
        """Test notify is unavailable without a dispatcher."""
        response = post_json(client, "/api/x402/payments/notify", PAYMENT)

        assert response.status_code == 503
        assert response.get_json()["error"]["code"] == "dispatcher_disabled"

    def test_notify_queues_ticket(self, dispatch_client, dispatcher):
        """Test a valid payment is queued for delivery."""
        response = post_json(dispatch_client, "/api/x402/payments/notify", PAYMENT)

        assert response.status_code == 202
        ticket = response.get_json()["ticket"]
        assert ticket["state"] == "pending"
        assert ticket["payload"] == PAYMENT
        assert dispatcher.queue_depth() == 1

        found = dispatch_client.get(f"/api/x402/dispatches/{ticket['ticketId']}")
        assert found.status_code == 200

    def test_notify_validates_payload(self, dispatch_client, dispatcher):
        """Test malformed payments are not queued."""
        response = post_json(
            dispatch_client, "/api/x402/payments/notify", {"streamId": STREAM_ID}
        )

        assert response.status_code == 400
        assert dispatcher.queue_depth() == 0

    def test_unknown_ticket(self, dispatch_client):
        """Test an unknown ticket is a 404."""
        response = dispatch_client.get("/api/x402/dispatches/dispatch_missing")

        assert response.status_code == 404

    def test_dead_letter_and_redrive(self, dispatch_client, dispatcher):
        """Test dead-lettered tickets are listed and can be re-driven."""
        ticket = dispatcher.dispatch(PAYMENT)
        dispatcher._queue.get_nowait()
        dispatcher.deliver(ticket)

        listing = dispatch_client.get("/api/x402/dispatches/dead-letter").get_json()
        assert listing["count"] == 1

        response = dispatch_client.post(f"/api/x402/dispatches/{ticket.ticket_id}/redrive")
        assert response.status_code == 202
        assert response.get_json()["ticket"]["state"] == "pending"

        missing = dispatch_client.post("/api/x402/dispatches/dispatch_missing/redrive")
        assert missing.status_code == 404


class TestOperatorAuth:
    """Tests for API key enforcement on operator routes."""

    @pytest.mark.parametrize(
        "method, url",
        [
            ("post", "/api/x402/register"),
            ("patch", f"/api/x402/streams/{STREAM_ID}"),
            ("post", f"/api/x402/streams/{STREAM_ID}/disable"),
            ("post", "/api/x402/distribute"),
            ("post", "/api/x402/payments/notify"),
            ("post", "/api/x402/dispatches/dispatch_missing/redrive"),
        ],
    )
    def test_missing_key(self, anonymous_client, method, url):
        """Test operator routes refuse requests without a key."""
        response = getattr(anonymous_client, method)(
            url, data=json.dumps({}), content_type="application/json"
        )

        assert response.status_code == 401
        assert response.get_json()["error"]["code"] == "unauthorized"

    def test_unauthenticated_patch_leaves_stream(self, anonymous_client, service):
        """Test an unauthenticated PATCH cannot redirect the treasury."""
        attacker = mock_holder_address("treasury", 66)
        response = anonymous_client.patch(
            f"/api/x402/streams/{STREAM_ID}",
            data=json.dumps({"treasuryWallet": attacker}),
            content_type="application/json",
        )

        assert response.status_code == 401
        assert service.get_stream(STREAM_ID).treasury_wallet == TREASURY

    def test_unauthenticated_disable_leaves_stream(self, anonymous_client, service):
        """Test an unauthenticated disable keeps the stream enabled."""
        response = anonymous_client.post(f"/api/x402/streams/{STREAM_ID}/disable")

        assert response.status_code == 401
        assert service.get_stream(STREAM_ID).enabled

    def test_wrong_key(self, anonymous_client, service):
        """Test a key that does not match is forbidden."""
        response = anonymous_client.patch(
            f"/api/x402/streams/{STREAM_ID}",
            data=json.dumps({"distributionPercentage": 10}),
            content_type="application/json",
            headers={API_KEY_HEADER: "not-the-key"},
        )

        assert response.status_code == 403
        assert service.get_stream(STREAM_ID).distribution_percentage == 90

    def test_valid_key(self, anonymous_client):
        """Test the configured key unlocks the route."""
        response = anonymous_client.patch(
            f"/api/x402/streams/{STREAM_ID}",
            data=json.dumps({"distributionPercentage": 70}),
            content_type="application/json",
            headers={API_KEY_HEADER: API_KEY},
        )

        assert response.status_code == 200

    def test_server_without_key(self, service):
        """Test a server with no configured key refuses operator routes."""
        settings = DistributorSettings(environment="test", storage_backend="memory")
        app = create_app(service=service, settings=settings)
        app.config["TESTING"] = True

        response = app.test_client().post(
            f"/api/x402/streams/{STREAM_ID}/disable", headers={API_KEY_HEADER: "guess"}
        )

        assert response.status_code == 503
        assert service.get_stream(STREAM_ID).enabled

    def test_auth_disabled(self, service):
        """Test X402_REQUIRE_AUTH=false opens operator routes outside production."""
        settings = DistributorSettings(
            environment="test", storage_backend="memory", require_auth=False
        )
        app = create_app(service=service, settings=settings)
        app.config["TESTING"] = True

        response = app.test_client().post(f"/api/x402/streams/{STREAM_ID}/disable")

        assert response.status_code == 200

    def test_read_routes_stay_open(self, anonymous_client):
        """Test stream, history and stats reads need no key."""
        assert anonymous_client.get(f"/api/x402/streams/{STREAM_ID}").status_code == 200
        assert anonymous_client.get(f"/api/x402/history/{STREAM_ID}").status_code == 200
        assert anonymous_client.get(f"/api/x402/stats/{STREAM_ID}").status_code == 200


class TestMonitoringEndpoints:
    """Tests for health and metrics endpoints."""

    def test_health(self, client):
        """Test the health report covers each dependency."""
        data = client.get("/health").get_json()

        assert data["status"] == "healthy"
        assert data["checks"]["storage"]["available"] is True
        assert data["checks"]["holders"]["strategy"] == "fake"
        assert data["checks"]["signer"]["configured"] is False
        assert data["checks"]["dispatcher"] is None

    def test_liveness_and_readiness(self, client):
        """Test the liveness and readiness endpoints."""
        assert client.get("/health/live").status_code == 200
        assert client.get("/health/ready").status_code == 200

    def test_not_ready_without_storage(self, client, storage, monkeypatch):
        """Test readiness fails when the ledger store is down."""
        monkeypatch.setattr(storage, "is_available", lambda: False)

        assert client.get("/health/ready").status_code == 503

    def test_prometheus_metrics(self, client):
        """Test distributions show up in the Prometheus export."""
        post_json(client, "/api/x402/webhook", PAYMENT)

        text = client.get("/metrics").get_data(as_text=True)

        assert 'x402_distributions_total{status="mock"} 1' in text
        assert "x402_storage_available 1" in text

    def test_json_metrics(self, client):
        """Test the JSON metrics export."""
        data = client.get("/metrics/json").get_json()

        assert "counters" in data
        assert "uptime_seconds" in data

    def test_request_id_header(self, client):
        """Test request ids are echoed back."""
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

"""
x402 Distributor - Payment Distribution API Blueprint

REST endpoints under /api/x402:
- Signed payment webhook that triggers a distribution
- Revenue stream registration and configuration
- Per-stream history and statistics
- Outbound notification dispatch tickets and dead letters

All amounts in responses are integer lamports.
Operator routes (registration, reconfiguration, manual distribution,
notification dispatch) require the X-API-Key header.
"""

import logging

from flask import Blueprint, jsonify, request

from api.state import get_dispatcher, get_service, get_settings, get_state
from api.utils import (
    distribution_error_response,
    error_response,
    require_api_key,
    validate_json_schema,
    validate_pagination_params,
)
from distribution_errors import DistributionError, InvalidPaymentEvent
from distribution_types import MAX_STREAM_ID_LENGTH, PaymentEvent
from monitoring.metrics import metrics
from storage import StorageError
from webhook_auth import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

x402_bp = Blueprint("x402", __name__)

# Wire names accepted on stream configuration requests
CONFIG_FIELDS = {
    "treasuryWallet": "treasury_wallet",
    "enabled": "enabled",
    "distributionModel": "distribution_model",
    "distributionPercentage": "distribution_percentage",
    "creatorSplitPercentage": "creator_split_percentage",
    "paymentEndpoint": "payment_endpoint",
    "metadata": "metadata",
}


@x402_bp.errorhandler(DistributionError)
def handle_distribution_error(error: DistributionError):
    return distribution_error_response(error)


@x402_bp.errorhandler(StorageError)
def handle_storage_error(error: StorageError):
    logger.error(f"Storage failure: {error}")
    return error_response("storage_error", "Ledger storage is unavailable", 500)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidPaymentEvent("Request body must be a JSON object")
    return data


def _verify_signature():
    """Return an error response if the request signature is not acceptable."""
    ok, reason = get_state().verifier.verify(
        request.get_data(cache=True), request.headers.get(SIGNATURE_HEADER)
    )
    if not ok:
        metrics.increment("webhook_rejected_total")
        logger.warning(f"Rejected webhook: {reason}")
        return error_response("unauthorized", reason, 401)
    return None


# =============================================================================
# Payment Webhook
# =============================================================================


@x402_bp.route("/webhook", methods=["POST"])
def payment_webhook():
    """
    Distribute a settled x402 payment.

    Headers:
        X-X402-Signature: hex HMAC-SHA256 of the raw body

    Request body:
        {
            "streamId": "<mint address>",        // or nftMintAddress
            "amount": "0.5",
            "currency": "SOL",                   // SOL (default) or LAMPORTS
            "fundingReference": "<payment tx>",  // or signature; enables dedup
            "sourceOperation": "x402_payment",
            "metadata": {...}
        }

    Returns:
        Distribution result (200), replayed results included
    """
    rejected = _verify_signature()
    if rejected:
        return rejected

    metrics.increment("webhooks_received_total")
    event = PaymentEvent.from_payload(_json_body())
    result = get_service().distribute(event)
    return jsonify(result.to_dict())


@x402_bp.route("/distribute", methods=["POST"])
@require_api_key
def manual_distribute():
    """
    Trigger a distribution by hand (same body as the webhook).

    Disabled when X402_ENVIRONMENT=production.
    """
    if get_settings().is_production:
        return error_response(
            "forbidden", "Manual distribution is disabled in production", 403
        )
    event = PaymentEvent.from_payload(_json_body())
    result = get_service().distribute(event)
    return jsonify(result.to_dict())


# =============================================================================
# Stream Configuration
# =============================================================================


@x402_bp.route("/register", methods=["POST"])
@require_api_key
def register_stream():
    """
    Register a revenue stream.

    Request body:
        {
            "streamId": "<mint address>",
            "treasuryWallet": "<wallet address>",
            "distributionModel": "equal",        // equal, weighted, creator-split
            "distributionPercentage": 80,        // 0-100, default 100
            "creatorSplitPercentage": "10",      // creator-split only
            "paymentEndpoint": "https://...",
            "metadata": {...}
        }

    Returns:
        Stream configuration and payment URL (201)
    """
    data = _json_body()
    if "streamId" not in data and "nftMintAddress" in data:
        data["streamId"] = data.pop("nftMintAddress")

    is_valid, error = validate_json_schema(
        data,
        required_fields={"streamId": str, "treasuryWallet": str},
        optional_fields={
            "distributionModel": str,
            "distributionPercentage": int,
            "creatorSplitPercentage": (str, int, float),
            "paymentEndpoint": str,
            "metadata": dict,
        },
        max_lengths={"streamId": MAX_STREAM_ID_LENGTH, "paymentEndpoint": 2048},
    )
    if not is_valid:
        return error_response("invalid_stream_config", error, 400)

    kwargs = {
        CONFIG_FIELDS[k]: v
        for k, v in data.items()
        if k in CONFIG_FIELDS and k != "enabled" and v is not None
    }
    config = get_service().register_stream(data["streamId"], **kwargs)
    return jsonify({
        "success": True,
        "stream": config.to_dict(),
        "paymentUrl": config.payment_url,
    }), 201


@x402_bp.route("/streams", methods=["GET"])
def list_streams():
    """List registered streams (?enabled=true for enabled only)."""
    enabled_only = request.args.get("enabled", "").lower() == "true"
    configs = get_service().list_streams(enabled_only=enabled_only)
    return jsonify({"streams": [c.to_dict() for c in configs], "count": len(configs)})


@x402_bp.route("/streams/<stream_id>", methods=["GET"])
def get_stream(stream_id):
    config = get_service().get_stream(stream_id)
    return jsonify({"stream": config.to_dict()})


@x402_bp.route("/streams/<stream_id>", methods=["PATCH"])
@require_api_key
def reconfigure_stream(stream_id):
    """
    Change a stream's configuration.

    Request body: any subset of the registration fields plus "enabled".
    """
    data = _json_body()
    unknown = sorted(set(data) - set(CONFIG_FIELDS))
    if unknown:
        return error_response(
            "invalid_stream_config", f"Unknown configuration fields: {unknown}", 400
        )
    if not data:
        return error_response("invalid_stream_config", "No configuration fields given", 400)

    changes = {CONFIG_FIELDS[k]: v for k, v in data.items()}
    config = get_service().reconfigure_stream(stream_id, **changes)
    return jsonify({"success": True, "stream": config.to_dict()})


@x402_bp.route("/streams/<stream_id>/disable", methods=["POST"])
@require_api_key
def disable_stream(stream_id):
    config = get_service().disable_stream(stream_id)
    return jsonify({"success": True, "stream": config.to_dict()})


# =============================================================================
# Reporting
# =============================================================================


@x402_bp.route("/stats/<stream_id>", methods=["GET"])
def stream_stats(stream_id):
    """Aggregate distribution statistics for a stream."""
    return jsonify(get_service().get_stats(stream_id))


@x402_bp.route("/history/<stream_id>", methods=["GET"])
def stream_history(stream_id):
    """
    Ledger page for a stream, newest first.

    Query params:
        limit: Page size (1-100, default 10)
        offset: Records to skip (default 0)
    """
    limit, offset = validate_pagination_params(
        request.args.get("limit", 10, type=int),
        request.args.get("offset", 0, type=int),
    )
    return jsonify(get_service().get_history(stream_id, limit=limit, offset=offset))


# =============================================================================
# Notification Dispatch
# =============================================================================


def _require_dispatcher():
    dispatcher = get_dispatcher()
    if dispatcher is None:
        return None, error_response(
            "dispatcher_disabled", "X402_DISTRIBUTION_WEBHOOK_URL is not configured", 503
        )
    return dispatcher, None


@x402_bp.route("/payments/notify", methods=["POST"])
@require_api_key
def notify_payment():
    """
    Queue a settled payment for delivery to the distribution webhook.

    Same body and signature as /webhook. Returns the dispatch ticket (202).
    """
    rejected = _verify_signature()
    if rejected:
        return rejected
    dispatcher, unavailable = _require_dispatcher()
    if unavailable:
        return unavailable

    data = _json_body()
    PaymentEvent.from_payload(data)
    ticket = dispatcher.dispatch(data)
    return jsonify({"success": True, "ticket": ticket.to_dict()}), 202


@x402_bp.route("/dispatches/dead-letter", methods=["GET"])
def dead_letters():
    dispatcher, unavailable = _require_dispatcher()
    if unavailable:
        return unavailable
    tickets = dispatcher.dead_letters()
    return jsonify({"tickets": [t.to_dict() for t in tickets], "count": len(tickets)})


@x402_bp.route("/dispatches/<ticket_id>", methods=["GET"])
def get_dispatch(ticket_id):
    dispatcher, unavailable = _require_dispatcher()
    if unavailable:
        return unavailable
    ticket = dispatcher.get_ticket(ticket_id)
    if ticket is None:
        return error_response("ticket_not_found", f"No dispatch ticket {ticket_id}", 404)
    return jsonify({"ticket": ticket.to_dict()})


@x402_bp.route("/dispatches/<ticket_id>/redrive", methods=["POST"])
@require_api_key
def redrive_dispatch(ticket_id):
    dispatcher, unavailable = _require_dispatcher()
    if unavailable:
        return unavailable
    try:
        ticket = dispatcher.redrive(ticket_id)
    except KeyError:
        return error_response(
            "ticket_not_found", f"No dead-lettered dispatch ticket {ticket_id}", 404
        )
    return jsonify({"success": True, "ticket": ticket.to_dict()}), 202

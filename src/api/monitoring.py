"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness check
- /health/ready: Kubernetes readiness check
"""

import time

from flask import Blueprint, Response, jsonify

from api.state import get_state
from config import __version__
from monitoring import metrics
from storage import StorageError

monitoring_bp = Blueprint('monitoring', __name__)

# Track startup time
_startup_time = time.time()


@monitoring_bp.route('/metrics', methods=['GET'])
def prometheus_metrics():
    """
    Prometheus-compatible metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype='text/plain; charset=utf-8')


@monitoring_bp.route('/metrics/json', methods=['GET'])
def json_metrics():
    """JSON format metrics endpoint."""
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route('/health', methods=['GET'])
def health():
    """
    Basic health check endpoint.

    Returns service status and the state of each dependency.
    """
    state = get_state()
    service = state.service
    storage = _check_storage()

    return jsonify({
        "status": "healthy" if storage["available"] else "degraded",
        "service": "x402 distributor",
        "version": __version__,
        "environment": state.settings.environment,
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "storage": storage,
            "holders": {"strategy": service.holder_directory.strategy},
            "signer": {
                "configured": service.funds_distributor.has_signer,
                "address": service.funds_distributor.signer_address,
            },
            "webhook_signature": {"enabled": state.verifier.enabled},
            "dispatcher": state.dispatcher.get_stats() if state.dispatcher else None,
        },
    })


@monitoring_bp.route('/health/live', methods=['GET'])
def liveness():
    """
    Kubernetes liveness check.

    Returns 200 if the application is running.
    """
    return jsonify({"status": "alive"})


@monitoring_bp.route('/health/ready', methods=['GET'])
def readiness():
    """
    Kubernetes readiness check.

    Returns 200 once the ledger store answers.
    """
    storage = _check_storage()
    if not storage["available"]:
        return jsonify({
            "status": "not_ready",
            "issues": [f"storage: {storage.get('error', 'not available')}"],
        }), 503
    return jsonify({"status": "ready"})


def _check_storage() -> dict:
    """Check storage backend status."""
    storage = get_state().service.storage
    try:
        available = storage.is_available()
    except StorageError as e:
        return {"status": "error", "available": False, "error": str(e)}
    return {
        "status": "ok" if available else "degraded",
        "available": available,
        "backend": storage.__class__.__name__,
    }


def _update_dynamic_metrics():
    """Update gauges before export."""
    state = get_state()
    storage = _check_storage()
    metrics.set_gauge("storage_available", 1 if storage["available"] else 0)
    if state.dispatcher:
        metrics.set_gauge("webhook_dispatch_queue_depth", state.dispatcher.queue_depth())
        metrics.set_gauge("webhook_dead_letters", len(state.dispatcher.dead_letters()))

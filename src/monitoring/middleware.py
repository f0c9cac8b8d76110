"""
Flask middleware for request logging and metrics.

Provides:
- Request ID tracking (X-Request-ID in and out)
- Request timing and structured request logs
- Stream ID in the logging context for /api/x402/<...>/<stream_id> routes
"""

import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, get_logger, set_request_context
from monitoring.metrics import metrics

logger = get_logger("x402.request")

# Base58 public keys (mint addresses, wallets) are 32-44 characters
_BASE58_KEY = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def setup_request_logging(app: Flask) -> None:
    """
    Set up request logging middleware for a Flask app.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.start_time = time.perf_counter()

        context = {
            "request_id": g.request_id,
            "method": request.method,
            "path": request.path,
        }
        stream_id = (request.view_args or {}).get("stream_id")
        if stream_id:
            context["stream_id"] = stream_id
        set_request_context(**context)

        metrics.adjust_gauge("http_requests_active", 1)

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request_metrics(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_request_context()
        metrics.adjust_gauge("http_requests_active", -1)

        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={
                    "request_id": getattr(g, "request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )


def _record_request_metrics(status_code: int) -> None:
    """Record metrics and a log line for a completed request."""
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000

    path = normalize_path(request.path)
    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing(
        "http_request_duration_ms",
        duration_ms,
        labels={"method": request.method, "path": path},
    )

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info
    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "request_id": getattr(g, "request_id", "unknown"),
        },
    )


def normalize_path(path: str) -> str:
    """
    Normalize a path for metrics labels.

    Replaces stream ids, record ids and numbers with placeholders to keep
    label cardinality bounded.
    """
    normalized = []
    for part in path.strip("/").split("/"):
        if not part:
            continue
        if part.isdigit():
            normalized.append(":id")
        elif _BASE58_KEY.match(part):
            normalized.append(":stream")
        elif part.startswith(("dist_", "dispatch_")):
            normalized.append(":record")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)

"""
Monitoring and metrics infrastructure for the x402 distributor.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and secret redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("distributions_total", labels={"status": "completed"})
    metrics.timing("holder_query_duration_ms", 42.5)

    logger = get_logger(__name__)
    logger.info("Distribution completed", extra={"record_id": record_id})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "get_logger",
    "metrics",
    "setup_request_logging",
]

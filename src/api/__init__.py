"""
x402 Distributor API Package.

Blueprints:
- x402: payment webhook, stream configuration, reporting, dispatches
        (mounted under /api/x402)
- monitoring: health checks and metrics (mounted at root)

Usage:
    from api import create_app

    app = create_app()              # settings and service from the environment
    app = create_app(service=svc)   # injected service, e.g. in tests
"""

import logging

from flask import Flask

from api.monitoring import monitoring_bp
from api.state import AppState, init_state
from api.x402 import x402_bp
from config import DistributorSettings
from distribution_service import DistributionService, create_distribution_service
from monitoring import configure_logging, setup_request_logging
from webhook_auth import WebhookVerifier
from webhook_dispatcher import DistributionWebhookDispatcher

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (x402_bp, "/api/x402"),
    (monitoring_bp, ""),
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def build_dispatcher(settings: DistributorSettings) -> DistributionWebhookDispatcher | None:
    """Dispatcher for payment notifications, if a distribution webhook is configured."""
    if not settings.distribution_webhook_url:
        return None
    return DistributionWebhookDispatcher(
        settings.distribution_webhook_url,
        secret=settings.webhook_secret,
        dead_letter_file=settings.dead_letter_file,
    )


def create_app(
    service: DistributionService | None = None,
    settings: DistributorSettings | None = None,
    dispatcher: DistributionWebhookDispatcher | None = None,
    start_dispatcher: bool = True,
) -> Flask:
    """
    Build the Flask application.

    Args:
        service: Distribution service (built from settings if None)
        settings: Process settings (read from the environment if None)
        dispatcher: Notification dispatcher (built from settings if None)
        start_dispatcher: Start the dispatcher's worker thread

    Raises:
        ConfigurationError: If the settings are inconsistent
    """
    settings = settings or DistributorSettings.from_env()
    settings.validate()
    if settings.require_auth and not settings.api_key:
        logger.warning("X402_API_KEY is not set; operator routes will answer 503")

    if service is None:
        service = create_distribution_service(settings)
    if dispatcher is None:
        dispatcher = build_dispatcher(settings)
    if dispatcher is not None and start_dispatcher:
        dispatcher.start()

    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False

    init_state(
        app,
        AppState(
            service=service,
            settings=settings,
            verifier=WebhookVerifier(
                settings.webhook_secret, require_signature=settings.is_production
            ),
            dispatcher=dispatcher,
        ),
    )
    setup_request_logging(app)
    register_blueprints(app)
    return app


def run_server(host: str | None = None, port: int | None = None, debug: bool = False):
    """Run the Flask development server."""
    settings = DistributorSettings.from_env()
    configure_logging(settings.log_level, json_output=settings.log_format == "json")
    app = create_app(settings=settings)

    host = host or settings.host
    port = port or settings.port

    print(f"\n{'='*60}")
    print("x402 Distributor API Server")
    print(f"{'='*60}")
    print(f"Listening on: http://{host}:{port}")
    print(f"Environment: {settings.environment}")
    print(f"Storage: {settings.storage_backend}")
    print(f"Holders: {'mock' if settings.use_mock_data else settings.rpc_url}")
    print(f"Operator auth: {'required' if settings.require_auth else 'disabled'}")
    print(f"{'='*60}\n")

    app.run(host=host, port=port, debug=debug)

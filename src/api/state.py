"""
Shared state for the x402 distributor API.

The app factory stores one AppState in ``app.extensions["x402"]``;
blueprints reach it through the accessors below instead of module
globals, so tests can build isolated apps.
"""

from dataclasses import dataclass

from flask import current_app

from config import DistributorSettings
from distribution_service import DistributionService
from webhook_auth import WebhookVerifier
from webhook_dispatcher import DistributionWebhookDispatcher

EXTENSION_KEY = "x402"


@dataclass
class AppState:
    """Objects shared by all request handlers of one app."""

    service: DistributionService
    settings: DistributorSettings
    verifier: WebhookVerifier
    dispatcher: DistributionWebhookDispatcher | None = None


def init_state(app, state: AppState) -> None:
    app.extensions[EXTENSION_KEY] = state


def get_state() -> AppState:
    return current_app.extensions[EXTENSION_KEY]


def get_service() -> DistributionService:
    return get_state().service


def get_settings() -> DistributorSettings:
    return get_state().settings


def get_dispatcher() -> DistributionWebhookDispatcher | None:
    return get_state().dispatcher

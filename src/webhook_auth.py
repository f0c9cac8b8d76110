"""
x402 Distributor - Webhook Authentication

HMAC-SHA256 signatures over raw request bodies, shared by the inbound
payment webhook and the outbound distribution dispatcher.

Header format:
    X-X402-Signature: <hex digest>          (a "sha256=" prefix is accepted)
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-X402-Signature"
SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookVerifier:
    """
    Verifies inbound webhook signatures.

    With no secret configured, requests are accepted (with a warning) unless
    ``require_signature`` is set, in which case every request is refused.
    """

    def __init__(self, secret: str | None, require_signature: bool = False):
        self.secret = secret
        self.require_signature = require_signature
        self._warned = False

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def verify(self, body: bytes, signature: str | None) -> tuple[bool, str | None]:
        """
        Check a request body against its signature header.

        Returns:
            (True, None) when accepted, (False, reason) otherwise
        """
        if not self.secret:
            if self.require_signature:
                return False, "Webhook secret is not configured"
            if not self._warned:
                logger.warning("X402_WEBHOOK_SECRET not set, accepting unsigned webhooks")
                self._warned = True
            return True, None

        if not signature:
            return False, f"Missing {SIGNATURE_HEADER} header"

        provided = signature.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]

        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(expected, provided.lower()):
            return False, "Invalid webhook signature"
        return True, None

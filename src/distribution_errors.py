"""
x402 Distributor - Distribution Error Hierarchy

Every failure the distribution engine can surface is a typed exception
carrying enough context (stream, stage reached, computed amounts) to
replay the attempt. The HTTP layer serializes them with ``to_dict()``.

Categories:
- validation:  rejected before any side effect
- resolution:  holder lookup failed, no funds moved
- execution:   funds may or may not have moved
- arithmetic:  the split would round a holder payout down to zero
"""

from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Broad failure classes used for routing and metrics."""
    VALIDATION = "validation"
    RESOLUTION = "resolution"
    EXECUTION = "execution"
    ARITHMETIC = "arithmetic"
    CONFIGURATION = "configuration"


class DistributionError(Exception):
    """
    Base exception for the distribution engine.

    Attributes:
        code: Stable machine-readable error code
        category: ErrorCategory of the failure
        http_status: Status code used at the HTTP boundary
        stream_id: Revenue stream the attempt belonged to
        stage: Last DistributionStage value reached before the failure
        details: Computed amounts and other replay context
        record_id: Ledger record written for the failed attempt, if any
    """

    code = "distribution_error"
    category = ErrorCategory.EXECUTION
    http_status = 500

    def __init__(
        self,
        message: str,
        stream_id: str | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.stream_id = stream_id
        self.stage = stage
        self.details = details or {}
        self.cause = cause
        self.record_id: str | None = None

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and JSON responses."""
        result = {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "streamId": self.stream_id,
            "stage": self.stage,
            "details": self.details,
        }
        if self.record_id:
            result["recordId"] = self.record_id
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result

    def __str__(self) -> str:
        base = self.message
        if self.stream_id:
            base = f"[{self.stream_id}] {base}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(DistributionError):
    """Input rejected before any side effect."""

    code = "validation_error"
    category = ErrorCategory.VALIDATION
    http_status = 400


class InvalidAmount(ValidationError):
    """Amount is non-positive, malformed, or not representable in lamports."""

    code = "invalid_amount"


class InvalidPaymentEvent(ValidationError):
    """Payment payload has an unknown or malformed shape."""

    code = "invalid_payment_event"


class InvalidStreamConfig(ValidationError):
    """Stream configuration violates its constraints."""

    code = "invalid_stream_config"


class StreamNotRegistered(ValidationError):
    """No enabled configuration exists for the stream."""

    code = "stream_not_registered"
    http_status = 404


class StreamAlreadyRegistered(ValidationError):
    """Registration attempted for a stream that already has a configuration."""

    code = "stream_already_registered"
    http_status = 409


class DistributionInProgress(ValidationError):
    """Another attempt holds the guard for the same funding reference."""

    code = "distribution_in_progress"
    http_status = 409


# =============================================================================
# Resolution Errors
# =============================================================================


class ResolutionError(DistributionError):
    """Holder resolution failed; no funds moved."""

    code = "resolution_error"
    category = ErrorCategory.RESOLUTION
    http_status = 502


class NoHoldersFound(ResolutionError):
    """The stream currently has no holders with a positive balance."""

    code = "no_holders_found"
    http_status = 422


class UpstreamUnavailable(ResolutionError):
    """The on-chain query errored or timed out."""

    code = "upstream_unavailable"
    http_status = 503


# =============================================================================
# Execution Errors
# =============================================================================


class ExecutionError(DistributionError):
    """Transfer execution failed; funds may or may not have moved."""

    code = "execution_error"
    category = ErrorCategory.EXECUTION
    http_status = 500

    def __init__(
        self,
        message: str,
        transaction_reference: str | None = None,
        submission: Any = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.transaction_reference = transaction_reference
        # SignedBatch that may still land; the ledger keeps it for a safe resend
        self.submission = submission
        if transaction_reference:
            self.details.setdefault("transactionReference", transaction_reference)


class SignerUnavailable(ExecutionError):
    """No funding authority is configured; the attempt is recorded as mock."""

    code = "signer_unavailable"

    def __init__(self, message: str, mock_reference: str, **kwargs):
        super().__init__(message, **kwargs)
        self.mock_reference = mock_reference


class TransferBatchFailed(ExecutionError):
    """Submission or on-chain execution of the transfer batch failed."""

    code = "transfer_batch_failed"
    http_status = 502


class ConfirmationTimeout(ExecutionError):
    """The batch was submitted but not confirmed within the deadline."""

    code = "confirmation_timeout"
    http_status = 504


# =============================================================================
# Arithmetic Errors
# =============================================================================


class SplitArithmeticError(DistributionError):
    """The split cannot be computed without losing funds."""

    code = "split_arithmetic_error"
    category = ErrorCategory.ARITHMETIC
    http_status = 422


class AmountTooSmall(SplitArithmeticError):
    """A holder payout would round down to zero."""

    code = "amount_too_small"


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(DistributionError):
    """Process settings are missing or inconsistent."""

    code = "configuration_error"
    category = ErrorCategory.CONFIGURATION
    http_status = 500

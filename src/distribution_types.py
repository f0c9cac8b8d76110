"""
x402 Distributor - Distribution Data Model

Typed records for the payment-split distribution engine:

- RevenueStreamConfig: how a stream's incoming payments are split
- PaymentEvent: an inbound payment, validated at the boundary
- Holder: a current beneficiary of a stream
- Payout: one transfer of the batch
- SignedBatch: the signed transaction of an attempt, in wire form
- DistributionRecord: the immutable ledger unit
- DistributionResult: what callers receive

All money amounts are integer lamports. Percentages are Decimals and
are only ever combined with amounts through exact rational arithmetic.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from distribution_errors import (
    InvalidAmount,
    InvalidPaymentEvent,
    InvalidStreamConfig,
)

# =============================================================================
# Constants
# =============================================================================

LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9

DEFAULT_DISTRIBUTION_PERCENTAGE = 100
MAX_STREAM_ID_LENGTH = 128
MAX_OPERATION_LENGTH = 256
MAX_REFERENCE_LENGTH = 128


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Enums
# =============================================================================


class DistributionModel(Enum):
    """How the holder pool is divided among holders."""

    EQUAL = "equal"
    WEIGHTED = "weighted"  # Proportional to token balance
    CREATOR_SPLIT = "creator-split"  # Fixed share to the creator, rest equal

    @classmethod
    def parse(cls, value: "str | DistributionModel") -> "DistributionModel":
        """Parse a model name, accepting underscore spelling."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid distribution model: {value!r}")
        normalized = value.strip().lower().replace("_", "-")
        for model in cls:
            if model.value == normalized:
                return model
        raise ValueError(f"Invalid distribution model: {value!r}")


class Currency(Enum):
    """Unit an inbound amount is expressed in."""

    SOL = "SOL"  # Base unit
    LAMPORTS = "LAMPORTS"  # Smallest unit

    @classmethod
    def parse(cls, value: "str | Currency | None") -> "Currency":
        if value is None:
            return cls.SOL
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized in ("SOL", "BASE_UNIT"):
                return cls.SOL
            if normalized in ("LAMPORT", "LAMPORTS", "SMALLEST_UNIT"):
                return cls.LAMPORTS
        raise ValueError(f"Unsupported currency: {value!r}")


class DistributionStatus(Enum):
    """Outcome recorded for a distribution attempt."""

    COMPLETED = "completed"
    MOCK = "mock"  # No signer configured; nothing moved on-chain
    FAILED = "failed"


class DistributionStage(Enum):
    """Steps of a single distribution attempt."""

    RECEIVED = "received"
    VALIDATED = "validated"
    SPLIT_COMPUTED = "split_computed"
    HOLDERS_RESOLVED = "holders_resolved"
    FUNDS_DISTRIBUTED = "funds_distributed"
    RECORDED = "recorded"
    FAILED = "failed"


# =============================================================================
# Amount Normalization
# =============================================================================


def parse_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Parse a JSON-ish number into a Decimal without going through binary floats.

    Raises:
        InvalidAmount: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"Field '{field_name}' must be a number")
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float, str)):
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise InvalidAmount(f"Field '{field_name}' is not a number: {value!r}") from e
    else:
        raise InvalidAmount(f"Field '{field_name}' must be a number")

    if not parsed.is_finite():
        raise InvalidAmount(f"Field '{field_name}' must be finite")
    return parsed


def normalize_to_lamports(amount: Any, currency: Currency) -> int:
    """
    Convert an amount to integer lamports.

    SOL amounts may carry at most 9 fractional digits and lamport amounts
    must be integral; anything else is rejected rather than rounded.

    Raises:
        InvalidAmount: If the result is not a positive whole number of lamports
    """
    value = parse_decimal(amount)
    if currency == Currency.SOL:
        value = value * LAMPORTS_PER_SOL

    if value != value.to_integral_value():
        if currency == Currency.SOL:
            raise InvalidAmount(
                f"SOL amount {amount} has more than {SOL_DECIMALS} decimal places"
            )
        raise InvalidAmount(f"Lamport amount {amount} must be a whole number")

    lamports = int(value)
    if lamports <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount} {currency.value}")
    return lamports


def parse_percentage(value: Any, field_name: str) -> Decimal:
    """Parse a 0-100 percentage into a Decimal."""
    try:
        parsed = parse_decimal(value, field_name)
    except InvalidAmount as e:
        raise InvalidStreamConfig(e.message) from e
    if parsed < 0 or parsed > 100:
        raise InvalidStreamConfig(f"Field '{field_name}' must be between 0 and 100")
    return parsed


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class RevenueStreamConfig:
    """Distribution configuration for one revenue stream (an NFT collection)."""

    stream_id: str
    treasury_wallet: str
    enabled: bool = True
    distribution_model: DistributionModel = DistributionModel.EQUAL
    # Share of the post-fee amount routed to holders; the rest goes to treasury
    distribution_percentage: int = DEFAULT_DISTRIBUTION_PERCENTAGE
    # Share of the holder pool paid to the creator (creator-split only)
    creator_split_percentage: Decimal | None = None
    payment_endpoint: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def payment_url(self) -> str | None:
        """Payment URL handed to buyers, as registered with the x402 gateway."""
        if not self.payment_endpoint:
            return None
        return f"{self.payment_endpoint.rstrip('/')}?nft={self.stream_id}"

    def validate(self) -> None:
        """
        Check the configuration's invariants.

        Raises:
            InvalidStreamConfig: On the first violated constraint
        """
        if not isinstance(self.stream_id, str) or not self.stream_id.strip():
            raise InvalidStreamConfig("streamId is required")
        if len(self.stream_id) > MAX_STREAM_ID_LENGTH:
            raise InvalidStreamConfig(
                f"streamId exceeds maximum length of {MAX_STREAM_ID_LENGTH}",
                stream_id=self.stream_id,
            )
        if not isinstance(self.treasury_wallet, str) or not self.treasury_wallet.strip():
            raise InvalidStreamConfig("treasuryWallet is required", stream_id=self.stream_id)
        if not isinstance(self.enabled, bool):
            raise InvalidStreamConfig("enabled must be a boolean", stream_id=self.stream_id)
        if isinstance(self.distribution_percentage, bool) or not isinstance(
            self.distribution_percentage, int
        ):
            raise InvalidStreamConfig(
                "distributionPercentage must be an integer", stream_id=self.stream_id
            )
        if not 0 <= self.distribution_percentage <= 100:
            raise InvalidStreamConfig(
                "distributionPercentage must be between 0 and 100", stream_id=self.stream_id
            )
        if self.distribution_model == DistributionModel.CREATOR_SPLIT:
            if self.creator_split_percentage is None:
                raise InvalidStreamConfig(
                    "creatorSplitPercentage is required for the creator-split model",
                    stream_id=self.stream_id,
                )
            if not 0 <= self.creator_split_percentage < 100:
                raise InvalidStreamConfig(
                    "creatorSplitPercentage must be at least 0 and below 100",
                    stream_id=self.stream_id,
                )
        elif self.creator_split_percentage is not None:
            raise InvalidStreamConfig(
                "creatorSplitPercentage only applies to the creator-split model",
                stream_id=self.stream_id,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "treasury_wallet": self.treasury_wallet,
            "enabled": self.enabled,
            "distribution_model": self.distribution_model.value,
            "distribution_percentage": self.distribution_percentage,
            "creator_split_percentage": (
                str(self.creator_split_percentage)
                if self.creator_split_percentage is not None
                else None
            ),
            "payment_endpoint": self.payment_endpoint,
            "payment_url": self.payment_url,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RevenueStreamConfig":
        creator_pct = data.get("creator_split_percentage")
        return cls(
            stream_id=data["stream_id"],
            treasury_wallet=data["treasury_wallet"],
            enabled=data.get("enabled", True),
            distribution_model=DistributionModel.parse(data.get("distribution_model", "equal")),
            distribution_percentage=data.get(
                "distribution_percentage", DEFAULT_DISTRIBUTION_PERCENTAGE
            ),
            creator_split_percentage=Decimal(creator_pct) if creator_pct is not None else None,
            payment_endpoint=data.get("payment_endpoint"),
            metadata=data.get("metadata") or {},
            created_at=data.get("created_at") or _utc_now(),
            updated_at=data.get("updated_at") or _utc_now(),
        )


# Wire keys accepted on an inbound payment. Aliases cover the payloads the
# x402 payment gateway sends (nftMintAddress, signature, operation).
_STREAM_KEYS = ("streamId", "stream_id", "nftMintAddress")
_REFERENCE_KEYS = ("fundingReference", "funding_reference", "signature")
_OPERATION_KEYS = ("sourceOperation", "source_operation", "operation")
_ENVELOPE_KEYS = (
    "blockchain",
    "timestamp",
    "treasury",
    "distributionPercentage",
    "nftCollection",
    "endpoint",
    "payer",
)
_KNOWN_KEYS = frozenset(
    _STREAM_KEYS + _REFERENCE_KEYS + _OPERATION_KEYS + _ENVELOPE_KEYS
    + ("amount", "currency", "metadata")
)


def _first_present(payload: dict[str, Any], keys: tuple[str, ...], field_name: str) -> Any:
    present = [k for k in keys if payload.get(k) is not None]
    values = {repr(payload[k]) for k in present}
    if len(values) > 1:
        raise InvalidPaymentEvent(f"Conflicting values for {field_name}: {sorted(present)}")
    return payload[present[0]] if present else None


def _optional_str(value: Any, field_name: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidPaymentEvent(f"Field '{field_name}' must be a non-empty string")
    if len(value) > max_length:
        raise InvalidPaymentEvent(f"Field '{field_name}' exceeds maximum length of {max_length}")
    return value.strip()


@dataclass(frozen=True)
class PaymentEvent:
    """
    An inbound payment to be distributed.

    ``amount`` is kept exactly as received (as a Decimal) alongside its
    currency; ``amount_in_lamports()`` performs the normalization.
    """

    stream_id: str
    amount: Decimal
    currency: Currency = Currency.SOL
    source_operation: str = "x402_payment"
    funding_reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def amount_in_lamports(self) -> int:
        """
        Raises:
            InvalidAmount: If the amount is not a positive whole lamport count
        """
        try:
            return normalize_to_lamports(self.amount, self.currency)
        except InvalidAmount as e:
            e.stream_id = self.stream_id
            raise

    @classmethod
    def from_payload(cls, payload: Any) -> "PaymentEvent":
        """
        Build an event from a JSON payload, rejecting unknown or malformed shapes.

        Raises:
            InvalidPaymentEvent: On unknown keys or wrong field types
            InvalidAmount: If the amount is not a finite number
        """
        if not isinstance(payload, dict):
            raise InvalidPaymentEvent("Payment payload must be a JSON object")

        unknown = sorted(set(payload) - _KNOWN_KEYS)
        if unknown:
            raise InvalidPaymentEvent(f"Unknown fields in payment payload: {unknown}")

        metadata = payload.get("metadata")
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise InvalidPaymentEvent("Field 'metadata' must be an object")
        metadata = dict(metadata)

        stream_id = _first_present(payload, _STREAM_KEYS, "streamId")
        if stream_id is None:
            stream_id = metadata.get("nftMintAddress")
        stream_id = _optional_str(stream_id, "streamId", MAX_STREAM_ID_LENGTH)
        if stream_id is None:
            raise InvalidPaymentEvent("Missing required field: streamId")

        if "amount" not in payload:
            raise InvalidPaymentEvent("Missing required field: amount", stream_id=stream_id)
        try:
            amount = parse_decimal(payload["amount"])
        except InvalidAmount as e:
            e.stream_id = stream_id
            raise

        try:
            currency = Currency.parse(payload.get("currency"))
        except ValueError as e:
            raise InvalidPaymentEvent(str(e), stream_id=stream_id) from e

        operation = _optional_str(
            _first_present(payload, _OPERATION_KEYS, "sourceOperation"),
            "sourceOperation",
            MAX_OPERATION_LENGTH,
        )
        reference = _optional_str(
            _first_present(payload, _REFERENCE_KEYS, "fundingReference"),
            "fundingReference",
            MAX_REFERENCE_LENGTH,
        )

        envelope = {k: payload[k] for k in _ENVELOPE_KEYS if k in payload}
        if envelope:
            metadata.setdefault("envelope", envelope)

        return cls(
            stream_id=stream_id,
            amount=amount,
            currency=currency,
            source_operation=operation or "x402_payment",
            funding_reference=reference,
            metadata=metadata,
        )


@dataclass
class Holder:
    """A current beneficiary of a stream. Re-fetched for every distribution."""

    account_address: str
    weight: float = 1.0
    balance: float = 0.0
    token_accounts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_address": self.account_address,
            "weight": self.weight,
            "balance": self.balance,
            "token_accounts": list(self.token_accounts),
        }


@dataclass(frozen=True)
class Payout:
    """One holder transfer of a distribution batch."""

    account: str
    amount: int

    def to_dict(self) -> dict[str, Any]:
        return {"account": self.account, "amount": self.amount}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payout":
        return cls(account=data["account"], amount=int(data["amount"]))


@dataclass(frozen=True)
class SignedBatch:
    """
    A signed transfer transaction in wire form.

    Resending the same bytes can never pay twice: the cluster executes a
    signature at most once. A batch that was never seen can be replaced
    once the finalized block height passes ``last_valid_block_height``.
    """

    signature: str
    blockhash: str
    encoded: str
    last_valid_block_height: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "blockhash": self.blockhash,
            "encoded": self.encoded,
            "last_valid_block_height": self.last_valid_block_height,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignedBatch":
        height = data.get("last_valid_block_height")
        return cls(
            signature=data["signature"],
            blockhash=data["blockhash"],
            encoded=data["encoded"],
            last_valid_block_height=int(height) if height is not None else None,
        )


def new_record_id() -> str:
    return f"dist_{secrets.token_hex(12)}"


@dataclass(frozen=True)
class DistributionRecord:
    """
    Immutable ledger entry for one distribution attempt.

    Once the split is computed, ``total_amount`` equals
    ``platform_fee + sum(payouts) + treasury_amount`` exactly.
    Corrections are new records that name the old one in ``supersedes``.
    """

    stream_id: str
    total_amount: int
    status: DistributionStatus
    record_id: str = field(default_factory=new_record_id)
    recipient_count: int = 0
    # Uniform per-holder amount; None when payouts differ (weighted model)
    amount_per_holder: int | None = None
    platform_fee: int = 0
    holder_pool: int = 0
    treasury_amount: int = 0
    treasury_wallet: str | None = None
    payouts: tuple[Payout, ...] = ()
    transaction_reference: str | None = None
    # Signed bytes of the batch, kept so a failed attempt can be resent unchanged
    submission: SignedBatch | None = None
    funding_reference: str | None = None
    stage: DistributionStage = DistributionStage.RECORDED
    error: dict[str, Any] | None = None
    attempt: int = 1
    supersedes: str | None = None
    timestamp_ms: int = field(default_factory=_now_ms)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def distributed_to_holders(self) -> int:
        return sum(p.amount for p in self.payouts)

    def is_balanced(self) -> bool:
        """True when every lamport of the total is accounted for."""
        return (
            self.platform_fee + self.distributed_to_holders + self.treasury_amount
            == self.total_amount
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "stream_id": self.stream_id,
            "total_amount": self.total_amount,
            "recipient_count": self.recipient_count,
            "amount_per_holder": self.amount_per_holder,
            "platform_fee": self.platform_fee,
            "holder_pool": self.holder_pool,
            "treasury_amount": self.treasury_amount,
            "treasury_wallet": self.treasury_wallet,
            "payouts": [p.to_dict() for p in self.payouts],
            "transaction_reference": self.transaction_reference,
            "submission": self.submission.to_dict() if self.submission else None,
            "funding_reference": self.funding_reference,
            "status": self.status.value,
            "stage": self.stage.value,
            "error": self.error,
            "attempt": self.attempt,
            "supersedes": self.supersedes,
            "timestamp_ms": self.timestamp_ms,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DistributionRecord":
        return cls(
            record_id=data["record_id"],
            stream_id=data["stream_id"],
            total_amount=int(data["total_amount"]),
            recipient_count=int(data.get("recipient_count", 0)),
            amount_per_holder=data.get("amount_per_holder"),
            platform_fee=int(data.get("platform_fee", 0)),
            holder_pool=int(data.get("holder_pool", 0)),
            treasury_amount=int(data.get("treasury_amount", 0)),
            treasury_wallet=data.get("treasury_wallet"),
            payouts=tuple(Payout.from_dict(p) for p in data.get("payouts", [])),
            transaction_reference=data.get("transaction_reference"),
            submission=(
                SignedBatch.from_dict(data["submission"]) if data.get("submission") else None
            ),
            funding_reference=data.get("funding_reference"),
            status=DistributionStatus(data["status"]),
            stage=DistributionStage(data.get("stage", DistributionStage.RECORDED.value)),
            error=data.get("error"),
            attempt=int(data.get("attempt", 1)),
            supersedes=data.get("supersedes"),
            timestamp_ms=int(data["timestamp_ms"]),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class DistributionResult:
    """Structured outcome returned to callers of ``distribute``."""

    record: DistributionRecord
    replayed: bool = False

    @property
    def success(self) -> bool:
        return self.record.status != DistributionStatus.FAILED

    @property
    def status(self) -> DistributionStatus:
        return self.record.status

    def to_dict(self) -> dict[str, Any]:
        """Wire shape; every amount is in lamports."""
        record = self.record
        return {
            "success": self.success,
            "distributionTx": record.transaction_reference,
            "recipients": record.recipient_count,
            "amountPerHolder": record.amount_per_holder,
            "totalDistributed": record.total_amount,
            "holderPool": record.holder_pool,
            "treasuryAmount": record.treasury_amount,
            "platformFee": record.platform_fee,
            "status": record.status.value,
            "recordId": record.record_id,
            "streamId": record.stream_id,
            "fundingReference": record.funding_reference,
            "attempt": record.attempt,
            "replayed": self.replayed,
            "unit": "lamports",
        }

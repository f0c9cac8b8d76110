"""
x402 Distributor - Split Calculator

Pure arithmetic for dividing a payment between the platform fee, the
holders and the treasury wallet. Amounts are integer lamports and every
percentage or weight is turned into an exact Fraction before it touches
an amount, so each result is a floor of an exact rational.

The split runs in two phases so the orchestrator can compute and record
the pool split before holders are resolved:

    pool = compute_pool_split(total, fee_percent, distribution_percent)
    split = allocate_holder_pool(pool, holder_count, model, weights)

Every lamport lands somewhere:

    total == platform_fee + sum(per_holder) + remainder_to_treasury
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Any

from distribution_errors import (
    AmountTooSmall,
    InvalidAmount,
    InvalidStreamConfig,
    NoHoldersFound,
)
from distribution_types import DistributionModel, Holder, RevenueStreamConfig

DEFAULT_PLATFORM_FEE_PERCENT = Decimal("2.5")


def _as_fraction(value: Any, field_name: str) -> Fraction:
    if isinstance(value, bool):
        raise InvalidStreamConfig(f"{field_name} must be a number")
    if isinstance(value, (int, Fraction)):
        return Fraction(value)
    if isinstance(value, (float, Decimal)):
        if not math.isfinite(value):
            raise InvalidStreamConfig(f"{field_name} must be finite")
        return Fraction(value)
    if isinstance(value, str):
        try:
            return Fraction(value.strip())
        except ValueError as e:
            raise InvalidStreamConfig(f"{field_name} is not a number: {value!r}") from e
    raise InvalidStreamConfig(f"{field_name} must be a number")


def _percent(value: Any, field_name: str) -> Fraction:
    pct = _as_fraction(value, field_name)
    if pct < 0 or pct > 100:
        raise InvalidStreamConfig(f"{field_name} must be between 0 and 100, got {value}")
    return pct / 100


@dataclass(frozen=True)
class PoolSplit:
    """Fee and pool amounts, computed before holders are known."""

    total: int
    platform_fee: int
    distributable: int
    holder_pool: int
    treasury_base: int


@dataclass(frozen=True)
class SplitResult:
    """Complete allocation of one payment."""

    total: int
    platform_fee: int
    distributable: int
    holder_pool: int
    treasury_base: int
    model: DistributionModel
    per_holder: tuple[int, ...]
    creator_share: int = 0
    holder_remainder: int = 0

    @property
    def remainder_to_treasury(self) -> int:
        return self.treasury_base + self.creator_share + self.holder_remainder

    @property
    def distributed_to_holders(self) -> int:
        return sum(self.per_holder)

    @property
    def amount_per_holder(self) -> int | None:
        """The uniform payout, or None when payouts are weighted."""
        if self.model == DistributionModel.WEIGHTED:
            return None
        return self.per_holder[0] if self.per_holder else None

    def is_conserved(self) -> bool:
        return (
            self.platform_fee + self.distributed_to_holders + self.remainder_to_treasury
            == self.total
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "platform_fee": self.platform_fee,
            "distributable": self.distributable,
            "holder_pool": self.holder_pool,
            "treasury_base": self.treasury_base,
            "model": self.model.value,
            "per_holder": list(self.per_holder),
            "creator_share": self.creator_share,
            "holder_remainder": self.holder_remainder,
            "remainder_to_treasury": self.remainder_to_treasury,
        }


def compute_pool_split(
    total: int,
    fee_percent: Any,
    distribution_percent: Any,
) -> PoolSplit:
    """
    Split a total into platform fee, holder pool and treasury base.

    Args:
        total: Gross amount in lamports
        fee_percent: Platform fee percentage (0-100, may be fractional)
        distribution_percent: Share of the post-fee amount for holders (0-100)

    Raises:
        InvalidAmount: If total is not a positive integer
        InvalidStreamConfig: If a percentage is out of range
    """
    if isinstance(total, bool) or not isinstance(total, int) or total <= 0:
        raise InvalidAmount(f"Total must be a positive integer amount of lamports, got {total!r}")

    fee_rate = _percent(fee_percent, "feePercent")
    pool_rate = _percent(distribution_percent, "distributionPercent")

    platform_fee = math.floor(total * fee_rate)
    distributable = total - platform_fee
    holder_pool = math.floor(distributable * pool_rate)

    return PoolSplit(
        total=total,
        platform_fee=platform_fee,
        distributable=distributable,
        holder_pool=holder_pool,
        treasury_base=distributable - holder_pool,
    )


def _equal_shares(pool: int, holder_count: int) -> tuple[tuple[int, ...], int]:
    per_holder = pool // holder_count
    if per_holder == 0:
        raise AmountTooSmall(
            f"Holder pool of {pool} lamports cannot pay {holder_count} holders",
            details={"holderPool": pool, "holderCount": holder_count},
        )
    return (per_holder,) * holder_count, pool - per_holder * holder_count


def _weighted_shares(pool: int, weights: Sequence[Any]) -> tuple[tuple[int, ...], int]:
    exact = [_as_fraction(w, "weight") for w in weights]
    if any(w <= 0 for w in exact):
        raise InvalidStreamConfig("Holder weights must be positive")
    weight_sum = sum(exact)

    shares = tuple(math.floor(pool * w / weight_sum) for w in exact)
    if any(share == 0 for share in shares):
        raise AmountTooSmall(
            f"Holder pool of {pool} lamports rounds a weighted payout to zero",
            details={"holderPool": pool, "holderCount": len(shares)},
        )
    return shares, pool - sum(shares)


def allocate_holder_pool(
    pool: PoolSplit,
    holder_count: int,
    model: DistributionModel = DistributionModel.EQUAL,
    weights: Sequence[Any] | None = None,
    creator_split_percent: Any = None,
) -> SplitResult:
    """
    Divide the holder pool among holders.

    Raises:
        NoHoldersFound: If holder_count is below 1
        AmountTooSmall: If any holder payout would be zero
        InvalidStreamConfig: On missing or malformed weights/percentages
    """
    if holder_count < 1:
        raise NoHoldersFound("Cannot split a payment among zero holders")

    creator_share = 0
    if model == DistributionModel.EQUAL:
        per_holder, remainder = _equal_shares(pool.holder_pool, holder_count)

    elif model == DistributionModel.WEIGHTED:
        if weights is None or len(weights) != holder_count:
            raise InvalidStreamConfig("Weighted split needs exactly one weight per holder")
        per_holder, remainder = _weighted_shares(pool.holder_pool, weights)

    elif model == DistributionModel.CREATOR_SPLIT:
        if creator_split_percent is None:
            raise InvalidStreamConfig("creatorSplitPercentage is required for creator-split")
        creator_share = math.floor(
            pool.holder_pool * _percent(creator_split_percent, "creatorSplitPercentage")
        )
        per_holder, remainder = _equal_shares(pool.holder_pool - creator_share, holder_count)

    else:
        raise InvalidStreamConfig(f"Unsupported distribution model: {model}")

    return SplitResult(
        total=pool.total,
        platform_fee=pool.platform_fee,
        distributable=pool.distributable,
        holder_pool=pool.holder_pool,
        treasury_base=pool.treasury_base,
        model=model,
        per_holder=per_holder,
        creator_share=creator_share,
        holder_remainder=remainder,
    )


def compute_split(
    total: int,
    fee_percent: Any,
    distribution_percent: Any,
    holder_count: int,
    model: DistributionModel = DistributionModel.EQUAL,
    weights: Sequence[Any] | None = None,
    creator_split_percent: Any = None,
) -> SplitResult:
    """Compute the full split of a payment in one call."""
    if holder_count < 1:
        raise NoHoldersFound("Cannot split a payment among zero holders")
    pool = compute_pool_split(total, fee_percent, distribution_percent)
    return allocate_holder_pool(pool, holder_count, model, weights, creator_split_percent)


class SplitCalculator:
    """Applies the platform fee and a stream's configuration to payments."""

    def __init__(self, platform_fee_percent: Any = DEFAULT_PLATFORM_FEE_PERCENT):
        _percent(platform_fee_percent, "platformFeePercent")
        self.platform_fee_percent = platform_fee_percent

    def split_pool(self, total: int, config: RevenueStreamConfig) -> PoolSplit:
        return compute_pool_split(
            total, self.platform_fee_percent, config.distribution_percentage
        )

    def allocate(
        self,
        pool: PoolSplit,
        holders: Sequence[Holder],
        config: RevenueStreamConfig,
    ) -> SplitResult:
        weights = None
        if config.distribution_model == DistributionModel.WEIGHTED:
            weights = [h.weight for h in holders]
        return allocate_holder_pool(
            pool,
            len(holders),
            config.distribution_model,
            weights=weights,
            creator_split_percent=config.creator_split_percentage,
        )

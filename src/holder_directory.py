"""
x402 Distributor - Holder Directory

Resolves the current beneficiaries of a revenue stream. Holders are
fetched fresh for every distribution; nothing is cached between calls.

Two strategies:
- OnChainHolderDirectory: SPL token accounts of the stream's mint
- MockHolderDirectory: deterministic synthetic holders for development

The strategy is chosen once per process by ``build_holder_directory``.
A failing on-chain lookup surfaces as UpstreamUnavailable; it never
falls back to mock data.
"""

import hashlib
import logging
from abc import ABC, abstractmethod

from solders.pubkey import Pubkey

from config import DistributorSettings
from distribution_errors import ConfigurationError, NoHoldersFound, UpstreamUnavailable
from distribution_types import Holder
from monitoring.metrics import metrics
from solana_rpc import SolanaRPCClient, SolanaRPCError

logger = logging.getLogger(__name__)

DEFAULT_MOCK_HOLDER_COUNT = 250


class HolderDirectory(ABC):
    """Source of the current holder set for a stream."""

    strategy = "abstract"

    @abstractmethod
    def get_holders(self, stream_id: str) -> list[Holder]:
        """
        Return the stream's holders with a positive balance.

        Raises:
            NoHoldersFound: If the holder set is empty
            UpstreamUnavailable: If the lookup errored or timed out
        """


class OnChainHolderDirectory(HolderDirectory):
    """Holders of the stream's mint, read through ``getProgramAccounts``."""

    strategy = "onchain"

    def __init__(self, rpc: SolanaRPCClient, timeout: float = 15.0):
        self.rpc = rpc
        self.timeout = timeout

    def get_holders(self, stream_id: str) -> list[Holder]:
        try:
            with metrics.timer("holder_query_duration_ms"):
                holdings = self.rpc.get_token_holders(stream_id, timeout=self.timeout)
        except TimeoutError as e:
            metrics.increment("holder_query_failures_total", labels={"reason": "timeout"})
            raise UpstreamUnavailable(
                f"Holder query timed out after {self.timeout}s", stream_id=stream_id, cause=e
            ) from e
        except SolanaRPCError as e:
            metrics.increment("holder_query_failures_total", labels={"reason": "rpc"})
            raise UpstreamUnavailable(
                "Holder query failed", stream_id=stream_id, cause=e
            ) from e

        # One holder per owner; weight is the owner's summed raw balance
        by_owner: dict[str, Holder] = {}
        for holding in holdings:
            holder = by_owner.get(holding.owner)
            if holder is None:
                holder = Holder(account_address=holding.owner, weight=0, balance=0.0)
                by_owner[holding.owner] = holder
            holder.weight += holding.amount
            holder.balance += holding.ui_amount
            holder.token_accounts.append(holding.token_account)

        holders = [h for h in by_owner.values() if h.weight > 0]
        if not holders:
            raise NoHoldersFound("No holders with a positive balance", stream_id=stream_id)

        logger.info(
            "Resolved holders",
            extra={
                "stream_id": stream_id,
                "holder_count": len(holders),
                "token_accounts": len(holdings),
            },
        )
        return holders


def mock_holder_address(stream_id: str, index: int) -> str:
    """Deterministic, valid base58 public key for a synthetic holder."""
    digest = hashlib.sha256(f"{stream_id}:{index}".encode()).digest()
    return str(Pubkey(digest))


class MockHolderDirectory(HolderDirectory):
    """Synthetic holders for development and tests."""

    strategy = "mock"

    def __init__(self, holder_count: int = DEFAULT_MOCK_HOLDER_COUNT):
        self.holder_count = holder_count

    def get_holders(self, stream_id: str) -> list[Holder]:
        if self.holder_count < 1:
            raise NoHoldersFound("Mock holder directory is empty", stream_id=stream_id)
        return [
            Holder(account_address=mock_holder_address(stream_id, i), weight=1, balance=1.0)
            for i in range(self.holder_count)
        ]


def build_holder_directory(
    settings: DistributorSettings,
    rpc: SolanaRPCClient | None = None,
) -> HolderDirectory:
    """
    Pick the holder strategy for this process.

    Raises:
        ConfigurationError: If mock data is requested in production
    """
    if settings.use_mock_data:
        if settings.is_production:
            raise ConfigurationError("Mock holder data is not allowed in production")
        logger.warning(
            "Using mock holder data",
            extra={"mock_holder_count": settings.mock_holder_count},
        )
        return MockHolderDirectory(settings.mock_holder_count)

    if rpc is None:
        rpc = SolanaRPCClient(
            settings.rpc_url, commitment=settings.commitment, timeout=settings.holder_timeout
        )
    return OnChainHolderDirectory(rpc, timeout=settings.holder_timeout)

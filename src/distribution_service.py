"""
x402 Distributor - Distribution Service

Orchestrates one payment from receipt to ledger record:

    Received -> Validated -> SplitComputed -> HoldersResolved
             -> FundsDistributed -> Recorded          (or -> Failed)

Validation failures (unknown or disabled stream, bad amount) have no side
effects. Every later failure is written to the ledger as a ``failed``
record carrying the stage reached and the computed split, and the typed
error is re-raised with that record's id attached.

Payments carrying a funding reference are idempotent: the attempt runs
under a lock keyed by (stream, reference), a completed or mock record is
replayed instead of re-sent, and a failed record is re-driven as a new
attempt that supersedes it.

Also manages revenue stream registration and reporting (history, stats).
"""

import dataclasses
import logging
import time
from datetime import UTC, datetime
from typing import Any

from solders.pubkey import Pubkey

from config import DistributorSettings
from distribution_errors import (
    DistributionError,
    DistributionInProgress,
    InvalidPaymentEvent,
    InvalidStreamConfig,
    NoHoldersFound,
    SignerUnavailable,
    StreamAlreadyRegistered,
    StreamNotRegistered,
    UpstreamUnavailable,
    ValidationError,
)
from distribution_types import (
    DEFAULT_DISTRIBUTION_PERCENTAGE,
    DistributionModel,
    DistributionRecord,
    DistributionResult,
    DistributionStage,
    DistributionStatus,
    Payout,
    PaymentEvent,
    RevenueStreamConfig,
    SignedBatch,
    parse_percentage,
)
from funds_distributor import FundsDistributor, SubmissionState, build_funds_distributor
from holder_directory import HolderDirectory, build_holder_directory
from monitoring.logging import LoggingContext
from monitoring.metrics import AMOUNT_BUCKETS, metrics
from scaling import LockManager, build_lock_manager
from solana_rpc import SolanaRPCError
from split_calculator import PoolSplit, SplitCalculator
from storage import StorageBackend, StorageError, get_storage_backend

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100
RECENT_DISTRIBUTIONS = 10

RECONFIGURABLE_FIELDS = frozenset(
    {
        "treasury_wallet",
        "enabled",
        "distribution_model",
        "distribution_percentage",
        "creator_split_percentage",
        "payment_endpoint",
        "metadata",
    }
)


def _validate_wallet(address: Any, field_name: str, stream_id: str | None = None) -> str:
    if not isinstance(address, str) or not address.strip():
        raise InvalidStreamConfig(f"{field_name} is required", stream_id=stream_id)
    try:
        Pubkey.from_string(address.strip())
    except ValueError as e:
        raise InvalidStreamConfig(
            f"{field_name} is not a valid Solana address", stream_id=stream_id
        ) from e
    return address.strip()


def _validate_distribution_percentage(value: Any, stream_id: str | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidStreamConfig("distributionPercentage must be an integer", stream_id=stream_id)
    return value


class DistributionService:
    """Entry point for payment distribution and stream management."""

    def __init__(
        self,
        storage: StorageBackend,
        holder_directory: HolderDirectory,
        funds_distributor: FundsDistributor,
        calculator: SplitCalculator | None = None,
        lock_manager: LockManager | None = None,
        lock_timeout: float = 30.0,
        payment_endpoint: str | None = None,
        environment: str = "development",
    ):
        self.storage = storage
        self.holder_directory = holder_directory
        self.funds_distributor = funds_distributor
        self.calculator = calculator or SplitCalculator()
        self.lock_manager = lock_manager or funds_distributor.lock_manager
        self.lock_timeout = lock_timeout
        self.payment_endpoint = payment_endpoint
        self.environment = environment

    # =========================================================================
    # Distribution
    # =========================================================================

    def distribute(self, event: PaymentEvent) -> DistributionResult:
        """
        Distribute one payment to the stream's current holders.

        Raises:
            StreamNotRegistered: Stream unknown or disabled (nothing recorded)
            InvalidAmount: Amount not a positive lamport count (nothing recorded)
            DistributionInProgress: Another attempt holds the reference's lock
            DistributionError: Any later failure, after a failed record is written
        """
        with LoggingContext(
            stream_id=event.stream_id, funding_reference=event.funding_reference
        ):
            config = self._require_enabled_stream(event.stream_id)
            total = event.amount_in_lamports()

            if event.funding_reference is None:
                return self._attempt(event, config, total, prior=None)

            lock_name = f"distribution:{event.stream_id}:{event.funding_reference}"
            ttl = self.lock_timeout + self.funds_distributor.confirmation_timeout + 60
            if not self.lock_manager.acquire(lock_name, timeout=self.lock_timeout, ttl=ttl):
                raise DistributionInProgress(
                    "Another distribution for this funding reference is in progress",
                    stream_id=event.stream_id,
                    details={"fundingReference": event.funding_reference},
                )
            try:
                prior = self.storage.find_by_funding_reference(
                    event.stream_id, event.funding_reference
                )
                if prior is not None and prior.status != DistributionStatus.FAILED:
                    logger.info(
                        "Replaying recorded distribution",
                        extra={"record_id": prior.record_id, "status": prior.status.value},
                    )
                    metrics.increment("distributions_replayed_total")
                    return DistributionResult(prior, replayed=True)
                if prior is not None and prior.total_amount != total:
                    raise InvalidPaymentEvent(
                        "Amount differs from the failed attempt for this funding reference",
                        stream_id=event.stream_id,
                        details={"previousTotal": prior.total_amount, "total": total},
                    )
                return self._attempt(event, config, total, prior=prior)
            finally:
                self.lock_manager.release(lock_name)

    def _attempt(
        self,
        event: PaymentEvent,
        config: RevenueStreamConfig,
        total: int,
        prior: DistributionRecord | None,
    ) -> DistributionResult:
        started = time.perf_counter()
        attempt = prior.attempt + 1 if prior else 1
        supersedes = prior.record_id if prior else None
        base = {
            "stream_id": event.stream_id,
            "total_amount": total,
            "treasury_wallet": config.treasury_wallet,
            "funding_reference": event.funding_reference,
            "attempt": attempt,
            "supersedes": supersedes,
            "metadata": self._record_metadata(event, config),
        }

        stage = DistributionStage.VALIDATED
        # Amounts and payouts known so far; a failed record keeps them
        computed: dict[str, Any] = {}
        # Prior batch that may still land; carried forward until it is resolved
        pending = (prior.transaction_reference, prior.submission) if prior else (None, None)
        resume = None
        if prior is not None and prior.payouts:
            computed = self._preserved(prior)

        try:
            if prior is not None and prior.transaction_reference:
                state = self._prior_state(prior)
                if state is SubmissionState.LANDED:
                    return self._finish(self._landed(prior, base), started)
                if state is SubmissionState.PENDING:
                    # Same bytes, same signature: at most one of them executes
                    resume = prior.submission
                    base["treasury_wallet"] = prior.treasury_wallet
                else:
                    pending = (None, None)

            if prior is not None and prior.payouts:
                stage = DistributionStage.HOLDERS_RESOLVED
                logger.info(
                    "Re-driving with preserved payouts",
                    extra={
                        "supersedes": prior.record_id,
                        "recipients": prior.recipient_count,
                        "resend": resume is not None,
                    },
                )
            else:
                pool = self.calculator.split_pool(total, config)
                stage = DistributionStage.SPLIT_COMPUTED
                # Pool amounts stay on the failed record if holder resolution fails
                computed = {
                    "platform_fee": pool.platform_fee,
                    "holder_pool": pool.holder_pool,
                    "treasury_amount": pool.treasury_base,
                }
                computed.update(self._allocate(event.stream_id, pool, config))
                stage = DistributionStage.HOLDERS_RESOLVED

            try:
                receipt = self.funds_distributor.execute(
                    computed["payouts"],
                    computed["treasury_amount"],
                    base["treasury_wallet"],
                    resume=resume,
                )
                status = DistributionStatus.COMPLETED
                reference = receipt.transaction_reference
            except SignerUnavailable as e:
                status = DistributionStatus.MOCK
                reference = e.mock_reference
            stage = DistributionStage.FUNDS_DISTRIBUTED

        except Exception as e:
            self._record_failure(base, stage, computed, pending, e)
            raise

        record = DistributionRecord(
            status=status,
            transaction_reference=reference,
            stage=DistributionStage.RECORDED,
            **computed,
            **base,
        )
        return self._finish(record, started)

    def _allocate(
        self, stream_id: str, pool: PoolSplit, config: RevenueStreamConfig
    ) -> dict[str, Any]:
        holders = self.holder_directory.get_holders(stream_id)
        split = self.calculator.allocate(pool, holders, config)
        payouts = tuple(
            Payout(account=holder.account_address, amount=amount)
            for holder, amount in zip(holders, split.per_holder)
        )
        return {
            "platform_fee": split.platform_fee,
            "holder_pool": split.holder_pool,
            "treasury_amount": split.remainder_to_treasury,
            "amount_per_holder": split.amount_per_holder,
            "recipient_count": len(payouts),
            "payouts": payouts,
        }

    @staticmethod
    def _preserved(prior: DistributionRecord) -> dict[str, Any]:
        return {
            "platform_fee": prior.platform_fee,
            "holder_pool": prior.holder_pool,
            "treasury_amount": prior.treasury_amount,
            "amount_per_holder": prior.amount_per_holder,
            "recipient_count": prior.recipient_count,
            "payouts": prior.payouts,
        }

    def _prior_state(self, prior: DistributionRecord) -> SubmissionState:
        """
        On-chain state of the failed attempt's batch.

        Raises:
            UpstreamUnavailable: If the chain cannot be queried
            DistributionInProgress: If the batch may still land and its
                signed bytes were not kept, so it cannot be resent
        """
        reference = prior.transaction_reference
        try:
            state = self.funds_distributor.submission_state(reference, prior.submission)
        except (SolanaRPCError, TimeoutError) as e:
            raise UpstreamUnavailable(
                "Could not check the status of the previous transaction",
                stream_id=prior.stream_id,
                details={"transactionReference": reference},
                cause=e,
            ) from e

        if state is SubmissionState.PENDING and prior.submission is None:
            raise DistributionInProgress(
                "Previous transaction may still land and cannot be resent",
                stream_id=prior.stream_id,
                details={"transactionReference": reference},
            )
        logger.info(
            "Checked previous transaction",
            extra={"transaction_reference": reference, "state": state.value},
        )
        return state

    def _landed(self, prior: DistributionRecord, base: dict[str, Any]) -> DistributionRecord:
        """Completed record for a failed attempt whose transaction landed after all."""
        logger.warning(
            "Previous attempt landed on-chain, recording it as completed",
            extra={
                "supersedes": prior.record_id,
                "transaction_reference": prior.transaction_reference,
            },
        )
        return DistributionRecord(
            status=DistributionStatus.COMPLETED,
            transaction_reference=prior.transaction_reference,
            stage=DistributionStage.RECORDED,
            **self._preserved(prior),
            **{**base, "treasury_wallet": prior.treasury_wallet},
        )

    def _finish(self, record: DistributionRecord, started: float) -> DistributionResult:
        try:
            self.storage.append(record)
        except StorageError:
            if record.status == DistributionStatus.COMPLETED:
                logger.critical(
                    "Funds moved but the distribution record could not be written",
                    extra={"record": record.to_dict()},
                )
            raise

        metrics.increment("distributions_total", labels={"status": record.status.value})
        metrics.observe(
            "distribution_amount_lamports", record.total_amount, bounds=AMOUNT_BUCKETS
        )
        metrics.timing("distribution_duration_ms", (time.perf_counter() - started) * 1000)
        logger.info(
            "Distribution recorded",
            extra={
                "record_id": record.record_id,
                "status": record.status.value,
                "recipients": record.recipient_count,
                "total_amount": record.total_amount,
                "attempt": record.attempt,
            },
        )
        return DistributionResult(record)

    def _record_failure(
        self,
        base: dict[str, Any],
        stage: DistributionStage,
        computed: dict[str, Any],
        pending: tuple[str | None, SignedBatch | None],
        error: Exception,
    ) -> None:
        reference, submission = pending
        if isinstance(error, DistributionError):
            error.stream_id = error.stream_id or base["stream_id"]
            error.stage = stage.value
            error_info = error.to_dict()
            code = error.code
            if getattr(error, "transaction_reference", None):
                reference = error.transaction_reference
                submission = getattr(error, "submission", None)
        else:
            error_info = {"code": "internal_error", "message": str(error), "stage": stage.value}
            code = "internal_error"

        record = DistributionRecord(
            status=DistributionStatus.FAILED,
            stage=stage,
            error=error_info,
            transaction_reference=reference,
            submission=submission,
            **computed,
            **base,
        )
        metrics.increment("distributions_total", labels={"status": "failed"})
        metrics.increment("distribution_failures_total", labels={"code": code})

        try:
            self.storage.append(record)
        except StorageError:
            logger.exception(
                "Could not record failed distribution",
                extra={"record": record.to_dict()},
            )
            return

        if isinstance(error, DistributionError):
            error.record_id = record.record_id
        logger.error(
            f"Distribution failed at {stage.value}: {error}",
            extra={"record_id": record.record_id, "code": code},
        )

    def _record_metadata(
        self, event: PaymentEvent, config: RevenueStreamConfig
    ) -> dict[str, Any]:
        metadata = {
            "source_operation": event.source_operation,
            "currency": event.currency.value,
            "distribution_model": config.distribution_model.value,
            "distribution_percentage": config.distribution_percentage,
            "holder_strategy": self.holder_directory.strategy,
        }
        if event.metadata:
            metadata["event"] = event.metadata
        return metadata

    # =========================================================================
    # Stream Management
    # =========================================================================

    def _require_enabled_stream(self, stream_id: str) -> RevenueStreamConfig:
        config = self.storage.get_stream_config(stream_id)
        if config is None or not config.enabled:
            raise StreamNotRegistered(
                "Revenue stream is not registered or is disabled", stream_id=stream_id
            )
        return config

    def get_stream(self, stream_id: str) -> RevenueStreamConfig:
        """
        Raises:
            StreamNotRegistered: If no configuration exists
        """
        config = self.storage.get_stream_config(stream_id)
        if config is None:
            raise StreamNotRegistered("Revenue stream is not registered", stream_id=stream_id)
        return config

    def list_streams(self, enabled_only: bool = False) -> list[RevenueStreamConfig]:
        configs = self.storage.list_stream_configs()
        if enabled_only:
            configs = [c for c in configs if c.enabled]
        return configs

    def register_stream(
        self,
        stream_id: str,
        treasury_wallet: str,
        distribution_model: Any = DistributionModel.EQUAL,
        distribution_percentage: Any = DEFAULT_DISTRIBUTION_PERCENTAGE,
        creator_split_percentage: Any = None,
        payment_endpoint: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RevenueStreamConfig:
        """
        Register a new revenue stream.

        Raises:
            InvalidStreamConfig: If the configuration is invalid
            StreamAlreadyRegistered: If the stream already has a configuration
        """
        if not isinstance(stream_id, str) or not stream_id.strip():
            raise InvalidStreamConfig("streamId is required")
        stream_id = stream_id.strip()

        config = RevenueStreamConfig(
            stream_id=stream_id,
            treasury_wallet=_validate_wallet(treasury_wallet, "treasuryWallet", stream_id),
            distribution_model=self._parse_model(distribution_model, stream_id),
            distribution_percentage=_validate_distribution_percentage(
                distribution_percentage, stream_id
            ),
            creator_split_percentage=(
                parse_percentage(creator_split_percentage, "creatorSplitPercentage")
                if creator_split_percentage is not None
                else None
            ),
            payment_endpoint=payment_endpoint or self.payment_endpoint,
            metadata=dict(metadata or {}),
        )
        config.validate()

        with self.lock_manager.lock(f"stream:{stream_id}", timeout=self.lock_timeout):
            if self.storage.get_stream_config(stream_id) is not None:
                raise StreamAlreadyRegistered(
                    "Revenue stream is already registered", stream_id=stream_id
                )
            self.storage.save_stream_config(config)

        logger.info(
            "Registered revenue stream",
            extra={
                "stream_id": stream_id,
                "distribution_model": config.distribution_model.value,
                "distribution_percentage": config.distribution_percentage,
            },
        )
        metrics.increment("streams_registered_total")
        return config

    def reconfigure_stream(self, stream_id: str, **changes: Any) -> RevenueStreamConfig:
        """
        Apply changes to an existing stream's configuration.

        Raises:
            StreamNotRegistered: If the stream does not exist
            InvalidStreamConfig: If a field is unknown or the result is invalid
        """
        unknown = sorted(set(changes) - RECONFIGURABLE_FIELDS)
        if unknown:
            raise InvalidStreamConfig(f"Unknown configuration fields: {unknown}", stream_id=stream_id)

        with self.lock_manager.lock(f"stream:{stream_id}", timeout=self.lock_timeout):
            current = self.get_stream(stream_id)
            updates = dict(changes)

            if "treasury_wallet" in updates:
                updates["treasury_wallet"] = _validate_wallet(
                    updates["treasury_wallet"], "treasuryWallet", stream_id
                )
            if "distribution_model" in updates:
                updates["distribution_model"] = self._parse_model(
                    updates["distribution_model"], stream_id
                )
                if (
                    updates["distribution_model"] != DistributionModel.CREATOR_SPLIT
                    and "creator_split_percentage" not in updates
                ):
                    updates["creator_split_percentage"] = None
            if "distribution_percentage" in updates:
                updates["distribution_percentage"] = _validate_distribution_percentage(
                    updates["distribution_percentage"], stream_id
                )
            if updates.get("creator_split_percentage") is not None:
                updates["creator_split_percentage"] = parse_percentage(
                    updates["creator_split_percentage"], "creatorSplitPercentage"
                )
            if "metadata" in updates and not isinstance(updates["metadata"], dict):
                raise InvalidStreamConfig("metadata must be an object", stream_id=stream_id)

            updates["updated_at"] = datetime.now(UTC).isoformat()
            config = dataclasses.replace(current, **updates)
            config.validate()
            self.storage.save_stream_config(config)

        logger.info(
            "Reconfigured revenue stream",
            extra={"stream_id": stream_id, "fields": sorted(changes)},
        )
        return config

    def disable_stream(self, stream_id: str) -> RevenueStreamConfig:
        """Stop accepting payments for a stream; its ledger is kept."""
        return self.reconfigure_stream(stream_id, enabled=False)

    @staticmethod
    def _parse_model(value: Any, stream_id: str) -> DistributionModel:
        try:
            return DistributionModel.parse(value)
        except ValueError as e:
            raise InvalidStreamConfig(str(e), stream_id=stream_id) from e

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_history(self, stream_id: str, limit: int = 10, offset: int = 0) -> dict[str, Any]:
        """
        A page of a stream's ledger, newest first.

        Raises:
            StreamNotRegistered: If the stream does not exist
            ValidationError: If limit or offset are out of range
        """
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        if offset < 0:
            raise ValidationError("offset cannot be negative")
        self.get_stream(stream_id)

        records = self.storage.list_records(stream_id, limit=limit, offset=offset)
        return {
            "streamId": stream_id,
            "records": [r.to_dict() for r in records],
            "count": len(records),
            "total": self.storage.count(stream_id),
            "limit": limit,
            "offset": offset,
        }

    def get_stats(self, stream_id: str) -> dict[str, Any]:
        """
        Aggregate distribution statistics for a stream.

        ``totalDistributed`` and the averages count completed records only;
        mock and failed attempts are reported separately.

        Raises:
            StreamNotRegistered: If the stream does not exist
        """
        self.get_stream(stream_id)
        summary = self.storage.summarize(stream_id)

        try:
            holder_count = len(self.holder_directory.get_holders(stream_id))
        except NoHoldersFound:
            holder_count = 0
        except UpstreamUnavailable as e:
            logger.warning(f"Holder count unavailable: {e}", extra={"stream_id": stream_id})
            holder_count = None

        average = (
            summary.completed_total // summary.completed_count if summary.completed_count else 0
        )
        recent = self.storage.list_records(stream_id, limit=RECENT_DISTRIBUTIONS)
        return {
            "streamId": stream_id,
            "totalDistributed": summary.completed_total,
            "distributionCount": summary.completed_count,
            "holderCount": holder_count,
            "averagePerDistribution": average,
            "mockCount": summary.mock_count,
            "mockDistributed": summary.mock_total,
            "failedCount": summary.failed_count,
            "lastDistribution": summary.last_timestamp_ms,
            "recentDistributions": [r.to_dict() for r in recent],
            "unit": "lamports",
        }


def create_distribution_service(
    settings: DistributorSettings | None = None,
) -> DistributionService:
    """
    Wire a DistributionService from settings.

    Raises:
        ConfigurationError: If the settings are inconsistent
    """
    settings = settings or DistributorSettings.from_env()
    settings.validate()

    storage = get_storage_backend(
        settings.storage_backend,
        data_dir=settings.data_dir,
        database_url=settings.database_url,
    )
    lock_manager = build_lock_manager(settings.redis_url)

    return DistributionService(
        storage=storage,
        holder_directory=build_holder_directory(settings),
        funds_distributor=build_funds_distributor(settings, lock_manager),
        calculator=SplitCalculator(settings.platform_fee_percent),
        lock_manager=lock_manager,
        lock_timeout=settings.lock_timeout,
        payment_endpoint=settings.payment_endpoint,
        environment=settings.environment,
    )

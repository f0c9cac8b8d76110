"""
x402 Distributor - Funds Distributor

Turns a computed split into one atomic Solana transaction: a system
transfer per holder plus one for the treasury remainder, signed by the
configured funding authority.

Submission and confirmation for a given signer are serialized through the
lock manager, so two batches from the same authority never interleave.
When no signer is configured the distributor raises SignerUnavailable
with a synthetic reference instead of moving funds.

Batches are signed before they are sent. A batch whose outcome is unknown
is only ever resent byte for byte; a new batch replaces it once the chain
shows it failed or can no longer land.
"""

import json
import logging
import re
import secrets
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from distribution_errors import (
    ConfigurationError,
    ConfirmationTimeout,
    SignerUnavailable,
    TransferBatchFailed,
)
from distribution_types import Payout, SignedBatch
from monitoring.metrics import metrics
from scaling.locking import LocalLockManager, LockManager
from solana_rpc import SolanaRPCClient, SolanaRPCError

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 60.0
DEFAULT_LOCK_TIMEOUT = 30.0

# 64 bytes encode to 86-88 base58 characters
_BASE58_SECRET = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{86,88}$")


# =============================================================================
# Signer Loading
# =============================================================================


def parse_secret_key(secret: str) -> Keypair:
    """
    Parse a signer secret given as a JSON byte array or a base58 string.

    Raises:
        ConfigurationError: If the secret is not a valid 64-byte keypair
    """
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        if not _BASE58_SECRET.match(secret):
            raise ValueError("not a base58-encoded 64-byte secret")
        return Keypair.from_base58_string(secret)
    except (ValueError, TypeError) as e:
        # Never include the secret itself in the message
        raise ConfigurationError("Signer secret is not a valid Solana keypair") from e


def load_signer(secret: str | None = None, keypair_path: str | None = None) -> Keypair | None:
    """
    Load the funding authority from an inline secret or a keypair file.

    Returns None when neither is configured.

    Raises:
        ConfigurationError: If the configured secret or file is unusable
    """
    if secret:
        return parse_secret_key(secret)
    if keypair_path:
        path = Path(keypair_path).expanduser()
        try:
            contents = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read signer keypair file {path}") from e
        return parse_secret_key(contents)
    return None


# =============================================================================
# Distributor
# =============================================================================


@dataclass
class BatchReceipt:
    """Outcome of a confirmed transfer batch."""

    transaction_reference: str
    instruction_count: int
    holder_total: int
    treasury_amount: int
    status: dict[str, Any] = field(default_factory=dict)


class SubmissionState(Enum):
    """On-chain standing of a batch submitted by an earlier attempt."""

    LANDED = "landed"
    FAILED = "failed"
    PENDING = "pending"
    EXPIRED = "expired"


def mock_reference() -> str:
    return f"mock_distribution_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class FundsDistributor:
    """Executes transfer batches from a single funding authority."""

    def __init__(
        self,
        rpc: SolanaRPCClient | None,
        signer: Keypair | None = None,
        lock_manager: LockManager | None = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.rpc = rpc
        self.signer = signer
        self.lock_manager = lock_manager or LocalLockManager()
        self.confirmation_timeout = confirmation_timeout
        self.lock_timeout = lock_timeout

    @property
    def signer_address(self) -> str | None:
        return str(self.signer.pubkey()) if self.signer else None

    @property
    def has_signer(self) -> bool:
        return self.signer is not None and self.rpc is not None

    def build_instructions(
        self,
        payouts: Sequence[Payout],
        remainder_to_treasury: int,
        treasury_account: str | None,
    ) -> list[Instruction]:
        """
        One system transfer per non-zero payout, then the treasury transfer.

        The treasury transfer is omitted when there is no remainder, no
        treasury account, or the treasury is the signer itself.
        """
        source = self.signer.pubkey()
        instructions = [
            transfer(
                TransferParams(
                    from_pubkey=source,
                    to_pubkey=Pubkey.from_string(p.account),
                    lamports=p.amount,
                )
            )
            for p in payouts
            if p.amount > 0
        ]
        if (
            remainder_to_treasury > 0
            and treasury_account
            and treasury_account != str(source)
        ):
            instructions.append(
                transfer(
                    TransferParams(
                        from_pubkey=source,
                        to_pubkey=Pubkey.from_string(treasury_account),
                        lamports=remainder_to_treasury,
                    )
                )
            )
        return instructions

    def execute(
        self,
        payouts: Sequence[Payout],
        remainder_to_treasury: int,
        treasury_account: str | None,
        resume: SignedBatch | None = None,
    ) -> BatchReceipt:
        """
        Submit and confirm the batch.

        With ``resume`` the previously signed bytes are sent again instead
        of signing a new transaction, so the batch keeps its signature.

        Raises:
            SignerUnavailable: No signer configured; carries a mock reference
            TransferBatchFailed: Build, submission or execution failed
            ConfirmationTimeout: Submitted but not confirmed in time
        """
        if not self.has_signer:
            reference = mock_reference()
            logger.warning(
                "No signer configured, skipping on-chain transfer",
                extra={"mock_reference": reference, "payouts": len(payouts)},
            )
            raise SignerUnavailable(
                "No funding authority configured", mock_reference=reference
            )

        try:
            instructions = self.build_instructions(payouts, remainder_to_treasury, treasury_account)
        except ValueError as e:
            raise TransferBatchFailed("Invalid recipient address in batch", cause=e) from e

        lock_name = f"signer:{self.signer_address}"
        ttl = self.confirmation_timeout + self.lock_timeout + 30
        try:
            with self.lock_manager.lock(lock_name, timeout=self.lock_timeout, ttl=ttl):
                batch = resume or self._sign(instructions)
                return self._submit_and_confirm(
                    batch,
                    instruction_count=len(instructions),
                    holder_total=sum(p.amount for p in payouts),
                    treasury_amount=remainder_to_treasury,
                    resending=resume is not None,
                )
        except TimeoutError as e:
            raise TransferBatchFailed(
                f"Could not acquire signer lock within {self.lock_timeout}s", cause=e
            ) from e

    def _sign(self, instructions: list[Instruction]) -> SignedBatch:
        # Nothing has been sent yet, so failures here carry no reference
        try:
            return self.rpc.sign_batch(instructions, self.signer)
        except TimeoutError as e:
            raise TransferBatchFailed("Timed out fetching a recent blockhash", cause=e) from e
        except SolanaRPCError as e:
            raise TransferBatchFailed(f"Could not build the transfer batch: {e}", cause=e) from e

    def _submit_and_confirm(
        self,
        batch: SignedBatch,
        instruction_count: int,
        holder_total: int,
        treasury_amount: int,
        resending: bool = False,
    ) -> BatchReceipt:
        signature = batch.signature
        try:
            with metrics.timer("transfer_submit_duration_ms"):
                self._send(batch, resending)
            with metrics.timer("transfer_confirm_duration_ms"):
                status = self.rpc.confirm(signature, timeout=self.confirmation_timeout)
        except TimeoutError as e:
            raise ConfirmationTimeout(
                f"Transaction not confirmed within {self.confirmation_timeout}s",
                transaction_reference=signature,
                submission=batch,
                cause=e,
            ) from e
        except SolanaRPCError as e:
            raise TransferBatchFailed(
                f"Transfer batch failed: {e}",
                transaction_reference=signature,
                submission=batch,
                cause=e,
            ) from e

        logger.info(
            "Transfer batch confirmed",
            extra={"signature": signature, "instructions": instruction_count, "resent": resending},
        )
        return BatchReceipt(
            transaction_reference=signature,
            instruction_count=instruction_count,
            holder_total=holder_total,
            treasury_amount=treasury_amount,
            status=status,
        )

    def _send(self, batch: SignedBatch, resending: bool) -> None:
        try:
            self.rpc.send_transaction(batch.encoded)
        except SolanaRPCError as e:
            if not resending:
                raise
            # Nodes reject bytes they already processed; confirmation decides
            logger.warning(
                "Resend rejected, confirming the original signature",
                extra={"signature": batch.signature, "error": str(e)},
            )
            return
        if resending:
            metrics.increment("transfer_resends_total")

    def submission_state(
        self, reference: str | None, submission: SignedBatch | None = None
    ) -> SubmissionState:
        """
        Where a previously submitted batch stands on chain.

        An unseen signature only counts as expired when ``submission``
        carries a last valid block height that the finalized chain has
        passed; otherwise it may still land and is reported pending.

        Raises:
            SolanaRPCError: If the chain cannot be queried
            TimeoutError: If a query times out
        """
        if not self.has_signer or not reference or reference.startswith("mock_"):
            return SubmissionState.EXPIRED

        # Height first: once it is past the limit, any inclusion is already final
        expired = False
        if submission is not None and submission.last_valid_block_height is not None:
            expired = self.rpc.get_block_height() > submission.last_valid_block_height

        status = self.rpc.get_signature_status(reference)
        if status and status.get("err"):
            return SubmissionState.FAILED
        if self.rpc.is_confirmed(status):
            return SubmissionState.LANDED
        if status is None and expired:
            return SubmissionState.EXPIRED
        return SubmissionState.PENDING


def build_funds_distributor(settings, lock_manager: LockManager | None = None) -> FundsDistributor:
    """Create the distributor from settings; the signer is optional."""
    signer = load_signer(settings.signer_secret, settings.signer_keypair_path)
    rpc = None
    if signer is not None:
        rpc = SolanaRPCClient(settings.rpc_url, commitment=settings.commitment)
        logger.info("Funding authority loaded", extra={"signer": str(signer.pubkey())})
    else:
        logger.warning("No signer configured; distributions will be recorded as mock")
    return FundsDistributor(
        rpc,
        signer=signer,
        lock_manager=lock_manager,
        confirmation_timeout=settings.confirmation_timeout,
        lock_timeout=settings.lock_timeout,
    )

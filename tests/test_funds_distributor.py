"""
Tests for the funds distributor.

Tests:
- Signer parsing from JSON arrays, base58 strings and keypair files
- Transfer instruction building
- Mock references when no signer is configured
- Submission / confirmation error mapping
- Resending signed batches and their on-chain state
"""

import json
import os
import sys

import pytest
from solders.keypair import Keypair

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import TREASURY, FakeRPC, make_holders
from config import DistributorSettings
from distribution_errors import (
    ConfigurationError,
    ConfirmationTimeout,
    SignerUnavailable,
    TransferBatchFailed,
)
from distribution_types import Payout
from funds_distributor import (
    FundsDistributor,
    SubmissionState,
    build_funds_distributor,
    load_signer,
    parse_secret_key,
)
from monitoring.metrics import metrics
from scaling import LocalLockManager
from solana_rpc import SolanaRPCError, TransactionFailedError


def payouts(count=3, amount=1000):
    return [Payout(h.account_address, amount) for h in make_holders(count)]


class TestSignerLoading:
    """Tests for parse_secret_key and load_signer."""

    def test_json_array(self):
        """Test a Solana CLI style byte array."""
        keypair = Keypair()
        parsed = parse_secret_key(json.dumps(list(bytes(keypair))))

        assert parsed.pubkey() == keypair.pubkey()

    def test_base58(self):
        """Test a base58-encoded secret."""
        keypair = Keypair()

        assert parse_secret_key(str(keypair)).pubkey() == keypair.pubkey()

    def test_invalid_secret(self):
        """Test malformed secrets are configuration errors."""
        for secret in ("not-a-key", "[1, 2, 3]", "[\"a\"]"):
            with pytest.raises(ConfigurationError) as exc_info:
                parse_secret_key(secret)
            assert secret not in exc_info.value.message

    def test_keypair_file(self, tmp_path):
        """Test a keypair file is read."""
        keypair = Keypair()
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(keypair))))

        assert load_signer(keypair_path=str(path)).pubkey() == keypair.pubkey()

    def test_missing_keypair_file(self, tmp_path):
        """Test an unreadable keypair file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_signer(keypair_path=str(tmp_path / "missing.json"))

    def test_nothing_configured(self):
        """Test no secret and no file means no signer."""
        assert load_signer(None, None) is None


class TestBuildInstructions:
    """Tests for transfer instruction building."""

    def test_holder_and_treasury_transfers(self, live_distributor):
        """Test one transfer per payout plus the treasury remainder."""
        instructions = live_distributor.build_instructions(payouts(3), 500, TREASURY)

        assert len(instructions) == 4

    def test_skips_zero_amounts(self, live_distributor):
        """Test zero payouts and a zero remainder produce no transfers."""
        batch = payouts(2) + [Payout(make_holders(3)[2].account_address, 0)]

        assert len(live_distributor.build_instructions(batch, 0, TREASURY)) == 2

    def test_treasury_is_signer(self, live_distributor, signer):
        """Test the remainder stays put when the treasury is the signer."""
        instructions = live_distributor.build_instructions(
            payouts(2), 500, str(signer.pubkey())
        )

        assert len(instructions) == 2

    def test_invalid_address(self, live_distributor):
        """Test an invalid recipient fails the batch before submission."""
        with pytest.raises(TransferBatchFailed):
            live_distributor.execute([Payout("bogus", 10)], 0, TREASURY)
        assert live_distributor.rpc.submitted == []


class TestExecute:
    """Tests for FundsDistributor.execute."""

    def test_mock_without_signer(self, mock_distributor):
        """Test a missing signer raises SignerUnavailable with a mock reference."""
        assert not mock_distributor.has_signer

        with pytest.raises(SignerUnavailable) as exc_info:
            mock_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.mock_reference.startswith("mock_distribution_")

    def test_confirmed_batch(self, live_distributor, fake_rpc):
        """Test a confirmed batch returns a receipt."""
        receipt = live_distributor.execute(payouts(3, 1000), 250, TREASURY)

        assert receipt.transaction_reference == "sig1"
        assert receipt.instruction_count == 4
        assert receipt.holder_total == 3000
        assert receipt.treasury_amount == 250
        assert len(fake_rpc.submitted) == 1

    def test_blockhash_failure(self, live_distributor, fake_rpc):
        """Test a failure before signing fails the batch without a reference."""
        fake_rpc.sign_error = SolanaRPCError("Node is behind")

        with pytest.raises(TransferBatchFailed) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.transaction_reference is None
        assert exc_info.value.submission is None
        assert fake_rpc.sent == []

    def test_submission_rejected(self, live_distributor, fake_rpc):
        """Test a rejected send keeps the signed batch for a later status check."""
        fake_rpc.submit_error = SolanaRPCError("Blockhash not found")

        with pytest.raises(TransferBatchFailed) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.transaction_reference == "sig1"
        assert exc_info.value.submission.signature == "sig1"

    def test_submission_timeout(self, live_distributor, fake_rpc):
        """Test a send that times out is unconfirmed, not failed, and keeps its signature."""
        fake_rpc.submit_error = TimeoutError("slow")

        with pytest.raises(ConfirmationTimeout) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.transaction_reference == "sig1"
        assert exc_info.value.submission.encoded == "tx:sig1"

    def test_execution_failure(self, live_distributor, fake_rpc):
        """Test an on-chain execution error keeps the signature."""
        fake_rpc.confirm_error = TransactionFailedError("insufficient funds")

        with pytest.raises(TransferBatchFailed) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.transaction_reference == "sig1"

    def test_confirmation_timeout(self, live_distributor, fake_rpc):
        """Test a submitted but unconfirmed batch raises ConfirmationTimeout."""
        fake_rpc.confirm_error = TimeoutError("slow")

        with pytest.raises(ConfirmationTimeout) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY)
        assert exc_info.value.transaction_reference == "sig1"
        assert exc_info.value.details["transactionReference"] == "sig1"

    def test_signer_lock_released(self, live_distributor, lock_manager):
        """Test the signer lock is released after the batch."""
        live_distributor.execute(payouts(), 0, TREASURY)

        assert not lock_manager.is_locked(f"signer:{live_distributor.signer_address}")

    def test_signer_lock_contended(self, fake_rpc, signer):
        """Test a held signer lock fails the batch after the lock timeout."""
        lock_manager = LocalLockManager()
        distributor = FundsDistributor(
            fake_rpc, signer=signer, lock_manager=lock_manager, lock_timeout=0.05
        )

        def refuse(name, timeout=30.0, ttl=60.0):
            return False

        lock_manager.acquire = refuse

        with pytest.raises(TransferBatchFailed):
            distributor.execute(payouts(), 0, TREASURY)
        assert fake_rpc.submitted == []


class TestResend:
    """Tests for resending the signed batch of an earlier attempt."""

    def timed_out_batch(self, distributor, fake_rpc):
        fake_rpc.confirm_error = TimeoutError("slow")
        with pytest.raises(ConfirmationTimeout) as exc_info:
            distributor.execute(payouts(), 0, TREASURY)
        fake_rpc.confirm_error = None
        return exc_info.value.submission

    def test_resend_keeps_signature(self, live_distributor, fake_rpc):
        """Test a resend submits the same bytes instead of signing again."""
        batch = self.timed_out_batch(live_distributor, fake_rpc)

        receipt = live_distributor.execute(payouts(), 0, TREASURY, resume=batch)

        assert receipt.transaction_reference == "sig1"
        assert fake_rpc.sent == ["sig1", "sig1"]
        assert len(fake_rpc.submitted) == 1
        assert metrics.get_counter("transfer_resends_total") == 1

    def test_rejected_resend_still_confirms(self, live_distributor, fake_rpc):
        """Test a node refusing already-processed bytes does not fail the resend."""
        batch = self.timed_out_batch(live_distributor, fake_rpc)
        fake_rpc.submit_error = SolanaRPCError("This transaction has already been processed")

        receipt = live_distributor.execute(payouts(), 0, TREASURY, resume=batch)

        assert receipt.transaction_reference == "sig1"
        assert len(fake_rpc.submitted) == 1

    def test_resend_timeout_keeps_batch(self, live_distributor, fake_rpc):
        """Test a resend that is still unconfirmed carries the same batch."""
        batch = self.timed_out_batch(live_distributor, fake_rpc)
        fake_rpc.confirm_error = TimeoutError("slow")

        with pytest.raises(ConfirmationTimeout) as exc_info:
            live_distributor.execute(payouts(), 0, TREASURY, resume=batch)
        assert exc_info.value.submission == batch


class TestSubmissionState:
    """Tests for FundsDistributor.submission_state."""

    @pytest.fixture
    def batch(self, fake_rpc):
        return fake_rpc.sign_batch([], None)

    def test_landed(self, live_distributor, fake_rpc, batch):
        """Test a confirmed signature has landed."""
        fake_rpc.statuses["sig1"] = {"confirmationStatus": "confirmed", "err": None}

        assert live_distributor.submission_state("sig1", batch) is SubmissionState.LANDED

    def test_failed_on_chain(self, live_distributor, fake_rpc, batch):
        """Test an executed-with-error signature moved nothing."""
        fake_rpc.statuses["sig1"] = {"confirmationStatus": "processed", "err": {"x": 1}}

        assert live_distributor.submission_state("sig1", batch) is SubmissionState.FAILED

    def test_processed_is_pending(self, live_distributor, fake_rpc, batch):
        """Test a signature below the commitment level may still land."""
        fake_rpc.statuses["sig1"] = {"confirmationStatus": "processed", "err": None}
        fake_rpc.expire_blockhashes()

        assert live_distributor.submission_state("sig1", batch) is SubmissionState.PENDING

    def test_unseen_within_window(self, live_distributor, batch):
        """Test an unseen signature with a live blockhash is pending."""
        assert live_distributor.submission_state("sig1", batch) is SubmissionState.PENDING

    def test_unseen_after_expiry(self, live_distributor, fake_rpc, batch):
        """Test an unseen signature past its last valid height can no longer land."""
        fake_rpc.expire_blockhashes()

        assert live_distributor.submission_state("sig1", batch) is SubmissionState.EXPIRED

    def test_unseen_without_height(self, live_distributor, fake_rpc):
        """Test expiry is never assumed without a last valid block height."""
        fake_rpc.expire_blockhashes()

        assert live_distributor.submission_state("sig1") is SubmissionState.PENDING

    def test_mock_reference(self, live_distributor):
        """Test mock references never land."""
        assert live_distributor.submission_state("mock_distribution_1") is SubmissionState.EXPIRED

    def test_without_signer(self, mock_distributor):
        """Test a mock distributor treats every reference as expired."""
        assert mock_distributor.submission_state("sig1") is SubmissionState.EXPIRED


class TestBuildFundsDistributor:
    """Tests for build_funds_distributor."""

    def test_without_signer(self):
        """Test no secret builds a mock distributor."""
        distributor = build_funds_distributor(DistributorSettings())

        assert not distributor.has_signer
        assert distributor.rpc is None

    def test_with_signer(self):
        """Test a configured secret builds a live distributor."""
        keypair = Keypair()
        settings = DistributorSettings(
            signer_secret=json.dumps(list(bytes(keypair))), confirmation_timeout=5
        )

        distributor = build_funds_distributor(settings)

        assert distributor.has_signer
        assert distributor.signer_address == str(keypair.pubkey())
        assert distributor.confirmation_timeout == 5
        distributor.rpc.close()


class TestFakeRPCContract:
    """Sanity checks that the fake matches what the distributor calls."""

    def test_fake_signatures_increment(self):
        """Test the fake numbers signatures per signed batch."""
        rpc = FakeRPC()

        assert rpc.sign_batch([], None).signature == "sig1"
        assert rpc.sign_batch([], None).signature == "sig2"

    def test_fake_counts_distinct_batches(self):
        """Test resends are not counted as new batches."""
        rpc = FakeRPC()
        batch = rpc.sign_batch([], None)

        rpc.send_transaction(batch.encoded)
        rpc.send_transaction(batch.encoded)

        assert rpc.sent == ["sig1", "sig1"]
        assert len(rpc.submitted) == 1

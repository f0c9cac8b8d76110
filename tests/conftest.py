"""
Pytest configuration and shared fixtures for x402 distributor tests.

This module provides shared fixtures and test configuration including:
- In-memory storage and a registered revenue stream
- Fake holder directory and fake Solana RPC client
- A DistributionService wired from those fakes
- Flask app and test client built with create_app
- Metrics reset between tests
"""

import os
import sys
import threading

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["X402_ENVIRONMENT"] = "test"
os.environ["X402_STORAGE"] = "memory"
os.environ.pop("X402_WEBHOOK_SECRET", None)
os.environ.pop("X402_API_KEY", None)
os.environ.pop("X402_REQUIRE_AUTH", None)
os.environ.pop("X402_SIGNER_SECRET", None)
os.environ.pop("REDIS_URL", None)

from solders.keypair import Keypair  # noqa: E402

from config import DistributorSettings  # noqa: E402
from distribution_types import Holder, SignedBatch  # noqa: E402
from funds_distributor import FundsDistributor  # noqa: E402
from holder_directory import HolderDirectory, mock_holder_address  # noqa: E402
from monitoring import metrics  # noqa: E402
from scaling import LocalLockManager  # noqa: E402
from split_calculator import SplitCalculator  # noqa: E402
from storage import MemoryStorage  # noqa: E402

STREAM_ID = mock_holder_address("stream", 0)
TREASURY = mock_holder_address("treasury", 0)
WEBHOOK_SECRET = "test-webhook-secret"
API_KEY = "test-api-key"


def make_holders(count: int, weights=None) -> list[Holder]:
    """Holders with valid base58 addresses."""
    weights = weights or [1] * count
    return [
        Holder(account_address=mock_holder_address("holder", i), weight=weights[i])
        for i in range(count)
    ]


class FakeHolderDirectory(HolderDirectory):
    """Holder directory returning a fixed list, or raising a given error."""

    strategy = "fake"

    def __init__(self, holders=None, error: Exception | None = None):
        self.holders = holders if holders is not None else make_holders(3)
        self.error = error
        self.calls = 0

    def get_holders(self, stream_id):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.holders)


class FakeRPC:
    """
    Stand-in for SolanaRPCClient covering what FundsDistributor uses.

    ``sign_error`` / ``submit_error`` / ``confirm_error`` make the next
    calls fail; ``statuses`` maps signatures to getSignatureStatuses
    entries. ``submitted`` lists each distinct signed batch that was sent,
    ``sent`` every send including resends. Setting ``confirm_gate`` makes
    confirm block until the event is set.
    """

    BLOCKHASH_LIFETIME = 150

    def __init__(self):
        self.submitted = []
        self.sent = []
        self.sign_error: Exception | None = None
        self.submit_error: Exception | None = None
        self.confirm_error: Exception | None = None
        self.statuses: dict[str, dict] = {}
        self.commitment = "confirmed"
        self.block_height = 1000
        self.confirm_gate: threading.Event | None = None
        self.confirm_entered = threading.Event()
        self._signed: dict[str, list] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def sign_batch(self, instructions, signer):
        if self.sign_error is not None:
            raise self.sign_error
        with self._lock:
            self._counter += 1
            signature = f"sig{self._counter}"
        self._signed[signature] = list(instructions)
        return SignedBatch(
            signature=signature,
            blockhash=f"hash{self._counter}",
            encoded=f"tx:{signature}",
            last_valid_block_height=self.block_height + self.BLOCKHASH_LIFETIME,
        )

    def send_transaction(self, encoded):
        if self.submit_error is not None:
            raise self.submit_error
        signature = encoded.split(":", 1)[1]
        self.sent.append(signature)
        if signature not in (s for s, _ in self.submitted):
            self.submitted.append((signature, self._signed[signature]))
        return signature

    def confirm(self, signature, timeout, poll_interval=1.0):
        self.confirm_entered.set()
        if self.confirm_gate is not None:
            self.confirm_gate.wait(5)
        if self.confirm_error is not None:
            raise self.confirm_error
        status = {"confirmationStatus": "confirmed", "err": None}
        self.statuses[signature] = status
        return status

    def get_signature_status(self, signature):
        return self.statuses.get(signature)

    def get_block_height(self, commitment="finalized"):
        return self.block_height

    def expire_blockhashes(self):
        """Advance past the validity window of every batch signed so far."""
        self.block_height += self.BLOCKHASH_LIFETIME + 1

    def is_confirmed(self, status):
        return bool(status) and status.get("confirmationStatus") in ("confirmed", "finalized")


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty metrics."""
    metrics.reset()
    yield


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def holder_directory():
    return FakeHolderDirectory()


@pytest.fixture
def lock_manager():
    return LocalLockManager()


@pytest.fixture
def fake_rpc():
    return FakeRPC()


@pytest.fixture
def signer():
    return Keypair()


@pytest.fixture
def mock_distributor(lock_manager):
    """Distributor without a signer: every batch is recorded as mock."""
    return FundsDistributor(None, lock_manager=lock_manager)


@pytest.fixture
def live_distributor(fake_rpc, signer, lock_manager):
    """Distributor with a signer and a fake RPC client."""
    return FundsDistributor(
        fake_rpc,
        signer=signer,
        lock_manager=lock_manager,
        confirmation_timeout=1.0,
        lock_timeout=1.0,
    )


def build_service(storage, holder_directory, distributor, lock_manager):
    from distribution_service import DistributionService

    return DistributionService(
        storage=storage,
        holder_directory=holder_directory,
        funds_distributor=distributor,
        calculator=SplitCalculator("2.5"),
        lock_manager=lock_manager,
        lock_timeout=1.0,
    )


@pytest.fixture
def service(storage, holder_directory, mock_distributor, lock_manager):
    """Service with a registered equal-split stream and no signer."""
    svc = build_service(storage, holder_directory, mock_distributor, lock_manager)
    svc.register_stream(STREAM_ID, TREASURY, distribution_percentage=90)
    return svc


@pytest.fixture
def live_service(storage, holder_directory, live_distributor, lock_manager):
    """Service with a registered equal-split stream and a signer."""
    svc = build_service(storage, holder_directory, live_distributor, lock_manager)
    svc.register_stream(STREAM_ID, TREASURY, distribution_percentage=90)
    return svc


@pytest.fixture
def settings():
    return DistributorSettings(environment="test", storage_backend="memory", api_key=API_KEY)


@pytest.fixture
def flask_app(service, settings):
    """Flask test app around the mock-signer service."""
    from api import create_app

    app = create_app(service=service, settings=settings)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(flask_app):
    """Test client sending the operator API key."""
    client = flask_app.test_client()
    client.environ_base["HTTP_X_API_KEY"] = API_KEY
    return client


@pytest.fixture
def anonymous_client(flask_app):
    """Test client without an API key."""
    return flask_app.test_client()

"""
x402 Distributor - Solana JSON-RPC Client

Thin HTTP client for the handful of Solana RPC methods the distributor
needs: token holder lookup, blockhash, transaction submission and
signature status polling. Transactions are built and signed locally with
solders; the RPC node only ever sees serialized bytes.

Transport follows the usual pattern for outbound calls in this codebase:
a requests Session with an HTTPAdapter retry strategy for transient
HTTP-level failures, explicit timeouts on every call.
"""

import base64
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction
from urllib3.util.retry import Retry

from config import __version__
from distribution_types import SignedBatch

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_ACCOUNT_SIZE = 165
# Maximum serialized transaction size accepted by the cluster
PACKET_DATA_SIZE = 1232

DEFAULT_TIMEOUT = 15
MAX_RETRIES = 3
RETRY_BACKOFF_FACTOR = 0.5

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


# =============================================================================
# Errors
# =============================================================================


class SolanaRPCError(Exception):
    """The RPC node returned an error or an unusable response."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class TransactionFailedError(SolanaRPCError):
    """The transaction landed but its execution failed."""


class TransactionTooLargeError(SolanaRPCError):
    """The serialized transaction exceeds the cluster packet limit."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class TokenHolding:
    """One SPL token account holding a stream's mint."""

    owner: str
    token_account: str
    amount: int
    ui_amount: float
    decimals: int


# =============================================================================
# Client
# =============================================================================


class SolanaRPCClient:
    """JSON-RPC client for a Solana cluster."""

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        session: requests.Session | None = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timeout = timeout
        self.max_retries = max_retries
        self._request_id = 0

        if session is not None:
            self.session = session
        else:
            self._setup_session()

    def _setup_session(self):
        """Set up requests session with retry logic."""
        self.session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"x402-distributor/{__version__}",
            }
        )

    def _call(self, method: str, params: list[Any], timeout: float | None = None) -> Any:
        """
        Perform one JSON-RPC call.

        Raises:
            TimeoutError: If the node did not answer in time
            SolanaRPCError: On transport errors or an RPC error object
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            response = self.session.post(
                self.rpc_url, json=payload, timeout=timeout or self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            raise TimeoutError(f"RPC {method} timed out") from e
        except requests.RequestException as e:
            raise SolanaRPCError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise SolanaRPCError(f"RPC {method} returned invalid JSON") from e

        if "error" in body:
            error = body["error"] or {}
            raise SolanaRPCError(
                f"RPC {method} error: {error.get('message', 'unknown error')}",
                code=error.get("code"),
                data=error.get("data"),
            )
        if "result" not in body:
            raise SolanaRPCError(f"RPC {method} response has no result")
        return body["result"]

    # =========================================================================
    # Queries
    # =========================================================================

    def get_token_holders(self, mint: str, timeout: float | None = None) -> list[TokenHolding]:
        """
        List the token accounts holding ``mint`` with a positive balance.

        Uses getProgramAccounts on the SPL token program, filtered by the
        token account size and the mint at offset 0.
        """
        result = self._call(
            "getProgramAccounts",
            [
                TOKEN_PROGRAM_ID,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "filters": [
                        {"dataSize": TOKEN_ACCOUNT_SIZE},
                        {"memcmp": {"offset": 0, "bytes": mint}},
                    ],
                },
            ],
            timeout=timeout,
        )
        if not isinstance(result, list):
            raise SolanaRPCError("getProgramAccounts returned an unexpected shape")

        holdings = []
        for entry in result:
            try:
                info = entry["account"]["data"]["parsed"]["info"]
                token_amount = info["tokenAmount"]
                amount = int(token_amount["amount"])
            except (KeyError, TypeError, ValueError):
                logger.warning(
                    "Skipping unparseable token account", extra={"account": entry.get("pubkey")}
                )
                continue
            if amount <= 0:
                continue
            holdings.append(
                TokenHolding(
                    owner=info["owner"],
                    token_account=entry["pubkey"],
                    amount=amount,
                    ui_amount=float(token_amount.get("uiAmount") or 0),
                    decimals=int(token_amount.get("decimals", 0)),
                )
            )
        return holdings

    def get_balance(self, address: str) -> int:
        """Balance of an account in lamports."""
        result = self._call("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    def get_latest_blockhash(self) -> tuple[str, int | None]:
        """Recent blockhash and the last block height at which it is still valid."""
        result = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        height = value.get("lastValidBlockHeight")
        return value["blockhash"], int(height) if height is not None else None

    def get_block_height(self, commitment: str = "finalized") -> int:
        return int(self._call("getBlockHeight", [{"commitment": commitment}]))

    def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        """Status of a transaction signature, or None if the cluster has not seen it."""
        result = self._call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        statuses = result.get("value") or [None]
        return statuses[0]

    # =========================================================================
    # Transactions
    # =========================================================================

    def send_transaction(self, encoded: str) -> str:
        """Submit a base64-encoded signed transaction; returns its signature."""
        return self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )

    def build_transaction(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        blockhash: str | None = None,
    ) -> Transaction:
        """
        Build and sign a transaction paying fees from ``signer``.

        Raises:
            TransactionTooLargeError: If it does not fit in one packet
        """
        recent = Hash.from_string(blockhash or self.get_latest_blockhash()[0])
        message = Message.new_with_blockhash(list(instructions), signer.pubkey(), recent)
        tx = Transaction([signer], message, recent)

        size = len(bytes(tx))
        if size > PACKET_DATA_SIZE:
            raise TransactionTooLargeError(
                f"Transaction of {size} bytes with {len(instructions)} instructions "
                f"exceeds the {PACKET_DATA_SIZE}-byte packet limit"
            )
        return tx

    def sign_batch(self, instructions: Sequence[Instruction], signer: Keypair) -> SignedBatch:
        """
        Sign all instructions as one atomic transaction without sending it.

        The signature is known before submission, so a send that times out
        still leaves a reference to check.
        """
        blockhash, last_valid = self.get_latest_blockhash()
        tx = self.build_transaction(instructions, signer, blockhash=blockhash)
        return SignedBatch(
            signature=str(tx.signatures[0]),
            blockhash=blockhash,
            encoded=base64.b64encode(bytes(tx)).decode("ascii"),
            last_valid_block_height=last_valid,
        )

    def is_confirmed(self, status: dict[str, Any] | None) -> bool:
        """Whether a signature status has reached this client's commitment."""
        if not status:
            return False
        reached = _COMMITMENT_RANK.get(status.get("confirmationStatus") or "", -1)
        return reached >= _COMMITMENT_RANK.get(self.commitment, 1)

    def confirm(self, signature: str, timeout: float, poll_interval: float = 1.0) -> dict[str, Any]:
        """
        Poll until ``signature`` reaches the configured commitment.

        Raises:
            TimeoutError: If the deadline passes first
            TransactionFailedError: If the transaction executed with an error
        """
        deadline = time.monotonic() + timeout
        while True:
            status = self.get_signature_status(signature)
            if status and status.get("err"):
                raise TransactionFailedError(
                    f"Transaction {signature} failed: {status['err']}", data=status["err"]
                )
            if self.is_confirmed(status):
                return status

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"Transaction {signature} not {self.commitment} within {timeout}s"
                )
            time.sleep(min(poll_interval, remaining))

    def close(self):
        self.session.close()

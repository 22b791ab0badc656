"""
External collaborator interfaces.

The engine never reaches for chain state, fee estimates, keys or storage on
its own; implementations of these interfaces are passed into the wallet's
constructor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field

from walletcore.destinations import (
    PubKeyHash,
    ScriptHash,
    WitnessV0KeyHash,
    WitnessV1Taproot,
    destination_from_script,
)
from walletcore.errors import SigningFailed
from walletcore.fees import FeeRate
from walletcore.models import IsMine, KeyReservation, WalletTransactionRecord
from walletcore.transaction import Transaction, TxOut

# DER signature with sighash byte, worst case
DUMMY_SIGNATURE_SIZE = 72
COMPRESSED_PUBKEY_SIZE = 33
SCHNORR_SIGNATURE_SIZE = 64


@dataclass
class InputSignature:
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)


class ChainOracle(ABC):
    """Read access to the current best chain."""

    @abstractmethod
    def tip_height(self) -> int:
        """Height of the best chain tip"""

    @abstractmethod
    def tip_hash(self) -> str:
        """Hash of the best chain tip"""

    @abstractmethod
    def is_in_best_chain(self, block_hash: str) -> bool:
        """Check whether a block is part of the best chain"""

    @abstractmethod
    def block_height(self, block_hash: str) -> int | None:
        """Height of a known block, None if unknown"""

    @abstractmethod
    def block_time(self, block_hash: str) -> int | None:
        """Block timestamp (unix seconds), None if unknown"""

    def median_time_past(self) -> int:
        """Median time of the tip, used for locktime finality"""
        tip = self.block_time(self.tip_hash())
        return tip if tip is not None else 0


class MempoolOracle(ABC):
    """Read access to the node's mempool, and the submission point for new transactions."""

    @abstractmethod
    def contains(self, txid: str) -> bool:
        """Check mempool membership"""

    @abstractmethod
    def chain_within_limit(self, txid: str, limit: int) -> bool:
        """
        Check that the transaction has fewer than `limit` in-mempool ancestors
        and descendants (itself included). True if it is not in the mempool.
        """

    @abstractmethod
    def check_chain_limits(self, tx: Transaction) -> bool:
        """Check that adding tx would not exceed ancestor/descendant count and size limits"""

    @abstractmethod
    def submit(self, tx: Transaction) -> bool:
        """Submit a transaction for mempool admission and relay, True if accepted"""


class FeeOracle(ABC):
    @abstractmethod
    def estimate(
        self, target_blocks: int, tx_metadata: dict[str, str] | None = None
    ) -> FeeRate | None:
        """Fee rate to confirm within target blocks, None if no estimate is available.

        tx_metadata carries the caller's annotations for the transaction being built.
        """

    @abstractmethod
    def min_relay_fee_rate(self) -> FeeRate:
        """Minimum fee rate for mempool admission"""

    @abstractmethod
    def discard_fee_rate(self) -> FeeRate:
        """Rate at which change is considered not worth creating"""


class Signer(ABC):
    @abstractmethod
    def sign_input(self, tx: Transaction, index: int, prevout: TxOut) -> InputSignature:
        """Produce scriptSig/witness for input `index`, raising SigningFailed if unable"""

    def dummy_signature(self, index: int, prevout: TxOut) -> InputSignature:
        """
        Placeholder signature of maximal size for the output's script type,
        used to estimate the signed size before selecting the fee.
        """
        dest = destination_from_script(prevout.script_pubkey)
        dummy_sig = bytes(DUMMY_SIGNATURE_SIZE)
        dummy_pubkey = bytes(COMPRESSED_PUBKEY_SIZE)
        if isinstance(dest, PubKeyHash):
            script_sig = (
                bytes([DUMMY_SIGNATURE_SIZE])
                + dummy_sig
                + bytes([COMPRESSED_PUBKEY_SIZE])
                + dummy_pubkey
            )
            return InputSignature(script_sig=script_sig)
        if isinstance(dest, WitnessV0KeyHash):
            return InputSignature(witness=[dummy_sig, dummy_pubkey])
        if isinstance(dest, ScriptHash):
            # Assume P2SH-wrapped P2WPKH: push of the 22-byte redeem script
            return InputSignature(script_sig=bytes(23), witness=[dummy_sig, dummy_pubkey])
        if isinstance(dest, WitnessV1Taproot):
            return InputSignature(witness=[bytes(SCHNORR_SIGNATURE_SIZE)])
        raise SigningFailed(index, f"cannot estimate signature size for {type(dest).__name__}")


class KeyProvider(ABC):
    @abstractmethod
    def reserve_key(self) -> KeyReservation:
        """Hand out a fresh change key; it is not handed out again until returned"""

    @abstractmethod
    def keep_key(self, key: KeyReservation) -> None:
        """Mark a reserved key as used"""

    @abstractmethod
    def return_key(self, key: KeyReservation) -> None:
        """Give a reserved key back to the pool"""

    @abstractmethod
    def ismine(self, script_pubkey: bytes) -> IsMine:
        """Ownership of an output script"""


class Persistence(ABC):
    @abstractmethod
    def write_record(self, record: WalletTransactionRecord) -> None:
        """Append or overwrite a transaction record"""

    @abstractmethod
    def load_records(self) -> Iterable[WalletTransactionRecord]:
        """Read all records at startup"""

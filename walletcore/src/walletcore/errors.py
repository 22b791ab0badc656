"""
Wallet error taxonomy.

Every failure a caller can trigger is a WalletError subclass carrying enough
context to render a specific message. LedgerInvariantError is different: it
signals a broken structural invariant inside the ledger and is not meant to be
caught.
"""

from __future__ import annotations


class WalletError(Exception):
    pass


class InvalidAmount(WalletError):
    def __init__(self, amount: int, message: str | None = None):
        self.amount = amount
        super().__init__(message or f"Invalid amount: {amount}")


class InsufficientFunds(WalletError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(
            f"Insufficient funds: need {needed} sats, "
            f"have {available} sats ({needed - available} short)"
        )


class DustOutput(WalletError):
    def __init__(self, value: int, threshold: int, index: int, message: str | None = None):
        self.value = value
        self.threshold = threshold
        self.index = index
        super().__init__(
            message or f"Output {index} value {value} is below dust threshold {threshold}"
        )


class ChangeIndexOutOfRange(WalletError):
    def __init__(self, position: int, output_count: int):
        self.position = position
        self.output_count = output_count
        super().__init__(f"Change index {position} out of range (outputs: {output_count})")


class TransactionTooLarge(WalletError):
    def __init__(self, weight: int, limit: int):
        self.weight = weight
        self.limit = limit
        super().__init__(
            f"Transaction too large: weight {weight} exceeds {limit} by {weight - limit}"
        )


class MempoolChainTooLong(WalletError):
    def __init__(self, txid: str):
        self.txid = txid
        super().__init__(f"Transaction {txid} has too long of a mempool chain")


class SigningFailed(WalletError):
    def __init__(self, input_index: int, reason: str = ""):
        self.input_index = input_index
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Signing input {input_index} failed{detail}")


class FeeCalculationFailed(WalletError):
    pass


class TxnNotFound(WalletError):
    def __init__(self, txid: str):
        self.txid = txid
        super().__init__(f"Transaction not found in wallet: {txid}")


class InvalidState(WalletError):
    def __init__(self, txid: str, reason: str):
        self.txid = txid
        self.reason = reason
        super().__init__(f"Transaction {txid}: {reason}")


class LedgerInvariantError(RuntimeError):
    """A structural invariant of the ledger index does not hold."""

"""
walletcore - Wallet transaction engine

Tracks wallet transactions and their chain state, computes balances, selects
coins and builds fee-paying transactions.
"""

__version__ = "0.1.0"

from walletcore.balance import BalanceView
from walletcore.coin_selection import CoinSelector, selection_tiers
from walletcore.config import NetworkType, WalletSettings, get_settings, setup_logging
from walletcore.errors import (
    ChangeIndexOutOfRange,
    DustOutput,
    FeeCalculationFailed,
    InsufficientFunds,
    InvalidAmount,
    InvalidState,
    LedgerInvariantError,
    MempoolChainTooLong,
    SigningFailed,
    TransactionTooLarge,
    TxnNotFound,
    WalletError,
)
from walletcore.fees import FeeRate
from walletcore.interfaces import (
    ChainOracle,
    FeeOracle,
    InputSignature,
    KeyProvider,
    MempoolOracle,
    Persistence,
    Signer,
)
from walletcore.keystore import KeyPool
from walletcore.ledger import LedgerIndex
from walletcore.models import (
    Balance,
    BlockRef,
    BuildResult,
    CoinControl,
    CoinSelection,
    IsMine,
    Recipient,
    SelectionPolicy,
    UpsertOutcome,
    UTXOCandidate,
    WalletTransactionRecord,
)
from walletcore.transaction import Outpoint, Transaction, TxIn, TxOut
from walletcore.tx_builder import TransactionBuilder
from walletcore.wallet import Wallet

__all__ = [
    "Balance",
    "BalanceView",
    "BlockRef",
    "BuildResult",
    "ChainOracle",
    "ChangeIndexOutOfRange",
    "CoinControl",
    "CoinSelection",
    "CoinSelector",
    "DustOutput",
    "FeeCalculationFailed",
    "FeeOracle",
    "FeeRate",
    "InputSignature",
    "InsufficientFunds",
    "InvalidAmount",
    "InvalidState",
    "IsMine",
    "KeyPool",
    "KeyProvider",
    "LedgerIndex",
    "LedgerInvariantError",
    "MempoolChainTooLong",
    "MempoolOracle",
    "NetworkType",
    "Outpoint",
    "Persistence",
    "Recipient",
    "SelectionPolicy",
    "Signer",
    "SigningFailed",
    "Transaction",
    "TransactionBuilder",
    "TransactionTooLarge",
    "TxIn",
    "TxOut",
    "TxnNotFound",
    "UTXOCandidate",
    "UpsertOutcome",
    "Wallet",
    "WalletError",
    "WalletSettings",
    "WalletTransactionRecord",
    "get_settings",
    "selection_tiers",
    "setup_logging",
]

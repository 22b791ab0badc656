"""
Wallet facade.

Wires the ledger, balance view, coin selector and transaction builder to the
injected chain, mempool, fee, key and storage collaborators, and is the entry
point for chain notifications.

Lock order: the chain lock (owned by whoever drives chain state) is always
taken before the ledger lock.
"""

from __future__ import annotations

import random
import threading
from dataclasses import replace
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from loguru import logger

from walletcore.balance import BalanceView
from walletcore.coin_selection import CoinSelector
from walletcore.config import WalletSettings, get_settings
from walletcore.interfaces import (
    ChainOracle,
    FeeOracle,
    KeyProvider,
    MempoolOracle,
    Persistence,
    Signer,
)
from walletcore.ledger import LedgerIndex
from walletcore.models import (
    Balance,
    BlockRef,
    BuildResult,
    CoinControl,
    Recipient,
    UTXOCandidate,
    WalletTransactionRecord,
)
from walletcore.transaction import Outpoint, Transaction
from walletcore.tx_builder import TransactionBuilder


class Wallet:
    """
    Transaction engine for a single wallet.

    Typical use:
        wallet = Wallet(chain, mempool, fees, keys, signer, settings)
        wallet.block_connected(block, txs)
        result = wallet.build([Recipient(script, 50_000)])
        wallet.commit(result)
    """

    def __init__(
        self,
        chain: ChainOracle,
        mempool: MempoolOracle,
        fees: FeeOracle,
        keys: KeyProvider,
        signer: Signer,
        settings: WalletSettings | None = None,
        persistence: Persistence | None = None,
        chain_lock: threading.RLock | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.settings = settings or get_settings()
        self.chain = chain
        self.mempool = mempool
        self.keys = keys
        self.chain_lock = chain_lock if chain_lock is not None else threading.RLock()
        rng = rng if rng is not None else random.Random()

        self.ledger = LedgerIndex(
            chain,
            keys,
            persistence=persistence,
            clock=clock,
            coinbase_maturity=self.settings.coinbase_maturity,
        )
        self.balance = BalanceView(self.ledger, self.settings.spend_zero_conf_change)
        self.selector = CoinSelector(
            mempool,
            min_change=self.settings.min_change,
            iterations=self.settings.selection_iterations,
            rng=rng,
        )
        self.builder = TransactionBuilder(
            self.ledger,
            self.balance,
            self.selector,
            chain,
            mempool,
            fees,
            signer,
            keys,
            self.settings,
            rng=rng,
        )

        logger.info(f"Initialized wallet on {self.settings.network.value}")

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the chain lock, then the ledger lock."""
        with self.chain_lock:
            with self.ledger.lock:
                yield

    def load(self) -> int:
        with self.locked():
            return self.ledger.load()

    # -- chain notifications -----------------------------------------------

    def block_connected(self, block: BlockRef, txs: list[Transaction]) -> None:
        with self.locked():
            # Depths of everything already confirmed just changed
            self.ledger.invalidate_caches()
            for position, tx in enumerate(txs):
                self.ledger.sync_from_chain(tx, block, position, in_mempool=False)
            logger.debug(f"Processed block {block.height} ({len(txs)} transactions)")

    def block_disconnected(self, block: BlockRef, txs: list[Transaction]) -> None:
        with self.locked():
            self.ledger.disconnect_block(block.hash)
            for tx in txs:
                self.ledger.sync_from_chain(tx, in_mempool=self.mempool.contains(tx.txid()))
            self.ledger.invalidate_caches()
            logger.debug(f"Disconnected block {block.height}")

    def transaction_added_to_mempool(self, tx: Transaction) -> None:
        with self.locked():
            self.ledger.sync_from_chain(tx, in_mempool=True)

    def transaction_removed_from_mempool(self, txid: str) -> None:
        with self.locked():
            self.ledger.set_in_mempool(txid, False)

    # -- queries -----------------------------------------------------------

    def get_transaction(self, txid: str) -> WalletTransactionRecord | None:
        """Snapshot of a wallet transaction; changing it leaves the ledger untouched."""
        with self.locked():
            record = self.ledger.get_record(txid)
            if record is None:
                return None
            return replace(record, metadata=dict(record.metadata))

    def get_balance(self, min_depth: int = 0) -> Balance:
        with self.locked():
            return self.balance.get_balance(min_depth)

    def get_available_balance(self, coin_control: CoinControl | None = None) -> int:
        with self.locked():
            return self.balance.get_available_balance(coin_control)

    def list_unspent(
        self,
        min_depth: int = 1,
        max_depth: int | None = None,
        only_safe: bool = True,
    ) -> list[UTXOCandidate]:
        with self.locked():
            return self.ledger.available_coins(
                self.balance.is_trusted,
                only_safe=only_safe,
                min_depth=min_depth,
                max_depth=max_depth,
            )

    def is_spent(self, outpoint: Outpoint) -> bool:
        with self.locked():
            return self.ledger.is_spent(outpoint)

    def get_conflicts(self, txid: str) -> set[str]:
        with self.locked():
            return self.ledger.get_conflicts(txid)

    # -- spending ----------------------------------------------------------

    def build(
        self,
        recipients: list[Recipient],
        coin_control: CoinControl | None = None,
        *,
        sign: bool = True,
        tx_metadata: dict[str, str] | None = None,
    ) -> BuildResult:
        with self.locked():
            return self.builder.build(
                recipients, coin_control, sign=sign, tx_metadata=tx_metadata
            )

    def commit(self, result: BuildResult, metadata: dict[str, str] | None = None) -> bool:
        """
        Record a built transaction as ours and hand it to the mempool.

        The transaction stays in the ledger even if the mempool rejects it;
        it can then be abandoned to release its inputs.

        Returns:
            True if the mempool accepted the transaction
        """
        with self.locked():
            if result.change_key is not None:
                self.keys.keep_key(result.change_key)
                result.change_key = None

            self.ledger.upsert(result.tx, from_me=True, metadata=metadata)

            txid = result.txid
            accepted = self.mempool.submit(result.tx)
            if accepted:
                self.ledger.set_in_mempool(txid, True)
                logger.info(f"Committed transaction {txid} (fee {result.fee} sats)")
            else:
                logger.warning(f"Transaction {txid} committed but rejected by the mempool")
            return accepted

    def release(self, result: BuildResult) -> None:
        """Give back the change key of a built transaction that will not be committed."""
        if result.change_key is not None:
            self.keys.return_key(result.change_key)
            result.change_key = None

    def abandon(self, txid: str) -> bool:
        with self.locked():
            return self.ledger.abandon(txid)

    def mark_replaced(self, original_txid: str, replacement_txid: str) -> None:
        with self.locked():
            self.ledger.mark_replaced(original_txid, replacement_txid)

    # -- coin locking ------------------------------------------------------

    def lock_coin(self, outpoint: Outpoint) -> None:
        self.ledger.lock_coin(outpoint)

    def unlock_coin(self, outpoint: Outpoint) -> None:
        self.ledger.unlock_coin(outpoint)

    def unlock_all_coins(self) -> None:
        self.ledger.unlock_all_coins()

    def list_locked_coins(self) -> list[Outpoint]:
        return self.ledger.list_locked_coins()

"""
Balance view: read-only aggregation over the ledger index.

Nothing here mutates the ledger. Results are cached against the ledger's
version counter, so any ledger mutation invalidates them.
"""

from __future__ import annotations

from dataclasses import replace

from walletcore.ledger import LedgerIndex
from walletcore.models import Balance, CoinControl, IsMine, WalletTransactionRecord


class BalanceView:
    def __init__(self, ledger: LedgerIndex, spend_zero_conf_change: bool = True):
        self.ledger = ledger
        self.spend_zero_conf_change = spend_zero_conf_change
        self._cache: dict[tuple, tuple[int, object]] = {}

    def _cached(self, key: tuple, compute):
        with self.ledger.lock:
            # Tag with the version the value was computed from
            version = self.ledger.version
            entry = self._cache.get(key)
            if entry is not None and entry[0] == version:
                return entry[1]
            value = compute()
            self._cache[key] = (version, value)
            return value

    def is_trusted(
        self, record: WalletTransactionRecord, trusted_parents: set[str] | None = None
    ) -> bool:
        """
        Whether the record's outputs can be counted on.

        Confirmed transactions are trusted. Unconfirmed ones only if we sent
        them ourselves, they are in the mempool, and every parent is ours and
        trusted in turn.
        """
        with self.ledger.lock:
            return self._is_trusted(
                record, trusted_parents if trusted_parents is not None else set()
            )

    def _is_trusted(self, record: WalletTransactionRecord, trusted_parents: set[str]) -> bool:
        ledger = self.ledger
        if not ledger.is_final_tx(record):
            return False
        depth = ledger.get_depth(record)
        if depth >= 1:
            return True
        if depth < 0:
            return False
        if not self.spend_zero_conf_change or not ledger.is_from_me(record):
            return False
        if not record.in_mempool:
            return False

        for txin in record.tx.inputs:
            parent = ledger.get_record(txin.prevout.txid)
            if parent is None or txin.prevout.vout >= len(parent.tx.outputs):
                return False
            if not ledger.output_ismine(parent, txin.prevout.vout) & IsMine.SPENDABLE:
                return False
            if parent.txid in trusted_parents:
                continue
            if not self._is_trusted(parent, trusted_parents):
                return False
            trusted_parents.add(parent.txid)
        return True

    def available_credit(
        self, record: WalletTransactionRecord, filter: IsMine = IsMine.SPENDABLE
    ) -> int:
        """Value of our unspent outputs in this transaction (0 while an immature coinbase)."""
        ledger = self.ledger

        def compute() -> int:
            if ledger.is_immature_coinbase(record):
                return 0
            credit = 0
            for vout, txout in enumerate(record.tx.outputs):
                if not ledger.keys.ismine(txout.script_pubkey) & filter:
                    continue
                if ledger.is_spent(record.outpoint(vout)):
                    continue
                credit += txout.value
            return credit

        return self._cached((record.txid, "available", int(filter)), compute)

    def immature_credit(
        self, record: WalletTransactionRecord, filter: IsMine = IsMine.SPENDABLE
    ) -> int:
        with self.ledger.lock:
            if self.ledger.is_immature_coinbase(record) and self.ledger.get_depth(record) > 0:
                return self.ledger.get_credit(record, filter)
            return 0

    def get_balance(self, min_depth: int = 0) -> Balance:
        with self.ledger.lock:
            balance = self._cached(
                ("balance", min_depth), lambda: self._compute_balance(min_depth)
            )
            return replace(balance)

    def _compute_balance(self, min_depth: int) -> Balance:
        balance = Balance()
        trusted_parents: set[str] = set()
        for record in self.ledger.records():
            trusted = self.is_trusted(record, trusted_parents)
            depth = self.ledger.get_depth(record)
            mine = self.available_credit(record, IsMine.SPENDABLE)
            watch = self.available_credit(record, IsMine.WATCH_ONLY)

            if trusted and depth >= min_depth:
                balance.mine_trusted += mine
                balance.watchonly_trusted += watch
            if not trusted and depth == 0 and record.in_mempool:
                balance.mine_untrusted_pending += mine
                balance.watchonly_untrusted_pending += watch

            balance.mine_immature += self.immature_credit(record, IsMine.SPENDABLE)
            balance.watchonly_immature += self.immature_credit(record, IsMine.WATCH_ONLY)
        return balance

    def get_available_balance(self, coin_control: CoinControl | None = None) -> int:
        """Sum of the outputs coin selection could spend right now."""
        with self.ledger.lock:
            candidates = self.ledger.available_coins(self.is_trusted, coin_control)
            return sum(c.value for c in candidates if c.spendable)

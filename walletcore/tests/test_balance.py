"""
Tests for the balance view.
"""

from __future__ import annotations

from conftest import foreign_outpoint, foreign_script, make_tx

from walletcore.balance import BalanceView
from walletcore.constants import COIN, NULL_TXID, NULL_VOUT
from walletcore.models import Balance, IsMine
from walletcore.transaction import Outpoint, Transaction, TxIn, TxOut


def spend_to_self(wallet, keys, funding: Transaction, value: int, in_mempool: bool = True):
    """Our own unconfirmed transaction paying `value` back to us from funding:0."""
    tx = make_tx([Outpoint(funding.txid(), 0)], [(keys.get_new_script(), value)])
    wallet.ledger.upsert(tx, from_me=True, in_mempool=in_mempool)
    return tx


class TestGetBalance:
    """Tests for balance totals."""

    def test_empty(self, wallet) -> None:
        assert wallet.get_balance() == Balance()

    def test_confirmed_incoming(self, wallet, funder) -> None:
        funder.send(COIN)
        balance = wallet.get_balance()
        assert balance.mine_trusted == COIN
        assert balance.mine_untrusted_pending == 0

    def test_unconfirmed_incoming_is_pending(self, wallet, funder) -> None:
        """Foreign unconfirmed coins are never trusted."""
        funder.send(COIN, confirm=False)
        balance = wallet.get_balance()
        assert balance.mine_trusted == 0
        assert balance.mine_untrusted_pending == COIN

    def test_min_depth(self, wallet, funder) -> None:
        funder.send(COIN)
        assert wallet.get_balance(min_depth=2).mine_trusted == 0
        funder.mine()
        assert wallet.get_balance(min_depth=2).mine_trusted == COIN

    def test_immature_coinbase(self, wallet, funder, chain, keys) -> None:
        coinbase = Transaction(
            inputs=[TxIn(Outpoint(NULL_TXID, NULL_VOUT), b"\x01\x02")],
            outputs=[TxOut(50 * COIN, keys.get_new_script())],
        )
        wallet.block_connected(chain.mine(), [coinbase])
        balance = wallet.get_balance()
        assert balance.mine_immature == 50 * COIN
        assert balance.mine_trusted == 0

        funder.mine(100)
        balance = wallet.get_balance()
        assert balance.mine_immature == 0
        assert balance.mine_trusted == 50 * COIN

    def test_watch_only(self, wallet, funder, keys) -> None:
        watched = foreign_script(7)
        keys.add_watch_only(watched)
        funder.send(COIN, script=watched)

        balance = wallet.get_balance()
        assert balance.watchonly_trusted == COIN
        assert balance.mine_trusted == 0

    def test_spend_updates_balance(self, wallet, funder) -> None:
        """Cached totals are recomputed after a ledger mutation."""
        funding = funder.send(COIN)
        assert wallet.get_balance().mine_trusted == COIN

        tx = make_tx([Outpoint(funding.txid(), 0)], [(foreign_script(), COIN - 1000)])
        wallet.ledger.upsert(tx, from_me=True, in_mempool=True)
        assert wallet.get_balance().mine_trusted == 0

    def test_returned_balance_is_a_copy(self, wallet, funder) -> None:
        funder.send(COIN)
        balance = wallet.get_balance()
        balance.mine_trusted = 0
        assert wallet.get_balance().mine_trusted == COIN


class TestIsTrusted:
    """Tests for trust of unconfirmed transactions."""

    def test_own_change_in_mempool_is_trusted(self, wallet, funder, keys) -> None:
        funding = funder.send(COIN)
        change = spend_to_self(wallet, keys, funding, COIN - 1000)

        assert wallet.balance.is_trusted(wallet.ledger.get_record(change.txid()))
        assert wallet.get_balance().mine_trusted == COIN - 1000

    def test_not_in_mempool_is_untrusted(self, wallet, funder, keys) -> None:
        funding = funder.send(COIN)
        change = spend_to_self(wallet, keys, funding, COIN - 1000, in_mempool=False)
        assert not wallet.balance.is_trusted(wallet.ledger.get_record(change.txid()))

    def test_zero_conf_change_disabled(self, wallet, funder, keys) -> None:
        funding = funder.send(COIN)
        change = spend_to_self(wallet, keys, funding, COIN - 1000)

        strict = BalanceView(wallet.ledger, spend_zero_conf_change=False)
        assert not strict.is_trusted(wallet.ledger.get_record(change.txid()))

    def test_unknown_parent_is_untrusted(self, wallet, keys) -> None:
        tx = make_tx([foreign_outpoint()], [(keys.get_new_script(), COIN)])
        wallet.ledger.upsert(tx, from_me=True, in_mempool=True)
        assert not wallet.balance.is_trusted(wallet.ledger.get_record(tx.txid()))

    def test_untrusted_parent_propagates(self, wallet, funder, keys) -> None:
        """A chain of our own transactions is only as trusted as its root."""
        incoming = funder.send(COIN, confirm=False)
        child = spend_to_self(wallet, keys, incoming, COIN - 1000)
        assert not wallet.balance.is_trusted(wallet.ledger.get_record(child.txid()))

    def test_conflicted_is_untrusted(self, wallet, funder, keys, chain) -> None:
        funding = funder.send(COIN)
        change = spend_to_self(wallet, keys, funding, COIN - 1000)
        double_spend = make_tx([Outpoint(funding.txid(), 0)], [(foreign_script(), COIN - 5000)])
        wallet.block_connected(chain.mine(), [double_spend])

        record = wallet.ledger.get_record(change.txid())
        assert wallet.ledger.get_depth(record) < 0
        assert not wallet.balance.is_trusted(record)
        assert wallet.get_balance().mine_trusted == 0


class TestCredit:
    """Tests for per-transaction credit."""

    def test_available_credit_excludes_spent(self, wallet, funder, keys) -> None:
        funding = funder.send(COIN, 2 * COIN)
        record = wallet.ledger.get_record(funding.txid())
        assert wallet.balance.available_credit(record) == 3 * COIN

        spend_to_self(wallet, keys, funding, COIN - 1000)
        assert wallet.balance.available_credit(record) == 2 * COIN

    def test_watch_only_filter(self, wallet, funder, keys) -> None:
        watched = foreign_script(8)
        keys.add_watch_only(watched)
        funding = funder.send(COIN, script=watched)
        record = wallet.ledger.get_record(funding.txid())

        assert wallet.balance.available_credit(record, IsMine.SPENDABLE) == 0
        assert wallet.balance.available_credit(record, IsMine.WATCH_ONLY) == COIN

    def test_available_balance(self, wallet, funder) -> None:
        funder.send(COIN)
        funder.send(2 * COIN)
        funder.send(5 * COIN, confirm=False)
        assert wallet.get_available_balance() == 3 * COIN

"""
Pytest configuration and fixtures for walletcore tests.
"""

from __future__ import annotations

import copy
import itertools
import random
from collections.abc import Iterable

import pytest
from coincurve import PrivateKey

from walletcore.config import NetworkType, WalletSettings
from walletcore.constants import DEFAULT_DISCARD_FEE, DEFAULT_MIN_RELAY_FEE
from walletcore.destinations import WitnessV0KeyHash, hash160, script_for_destination
from walletcore.fees import FeeRate
from walletcore.interfaces import ChainOracle, FeeOracle, MempoolOracle, Persistence
from walletcore.keystore import KeyPool
from walletcore.ledger import LedgerIndex
from walletcore.models import BlockRef, WalletTransactionRecord
from walletcore.transaction import Outpoint, Transaction, TxIn, TxOut
from walletcore.wallet import Wallet

GENESIS_TIME = 1_600_000_000
START_HEIGHT = 200

_foreign_ids = itertools.count(1)


def foreign_outpoint() -> Outpoint:
    """An outpoint the wallet knows nothing about."""
    return Outpoint(f"{next(_foreign_ids):064x}", 0)


def foreign_script(tag: int = 0) -> bytes:
    """A P2WPKH script no wallet key pays to."""
    return script_for_destination(WitnessV0KeyHash(hash160(b"foreign" + bytes([tag]))))


def make_tx(
    inputs: Iterable[Outpoint],
    outputs: Iterable[tuple[bytes, int]],
    locktime: int = 0,
    witness: bool = False,
) -> Transaction:
    return Transaction(
        inputs=[
            TxIn(prevout, witness=[b"\x30" * 71, b"\x02" * 33] if witness else [])
            for prevout in inputs
        ],
        outputs=[TxOut(value, script) for script, value in outputs],
        version=2,
        locktime=locktime,
    )


class FakeChain(ChainOracle):
    """Best chain of empty blocks, ten minutes apart, with reorg support."""

    def __init__(self, height: int = START_HEIGHT):
        self.blocks: dict[str, tuple[int, int]] = {}
        self.best: list[str] = []
        self._ids = itertools.count()
        for _ in range(height + 1):
            self.mine()

    def mine(self, time: int | None = None) -> BlockRef:
        height = len(self.best)
        block_hash = f"{next(self._ids):064x}"
        if time is None:
            time = GENESIS_TIME + height * 600
        self.blocks[block_hash] = (height, time)
        self.best.append(block_hash)
        return BlockRef(block_hash, height)

    def disconnect_tip(self) -> BlockRef:
        block_hash = self.best.pop()
        return BlockRef(block_hash, self.blocks[block_hash][0])

    def tip_height(self) -> int:
        return len(self.best) - 1

    def tip_hash(self) -> str:
        return self.best[-1]

    def is_in_best_chain(self, block_hash: str) -> bool:
        entry = self.blocks.get(block_hash)
        return entry is not None and entry[0] < len(self.best) and self.best[entry[0]] == block_hash

    def block_height(self, block_hash: str) -> int | None:
        entry = self.blocks.get(block_hash)
        return entry[0] if entry is not None else None

    def block_time(self, block_hash: str) -> int | None:
        entry = self.blocks.get(block_hash)
        return entry[1] if entry is not None else None


class FakeMempool(MempoolOracle):
    def __init__(self, accept: bool = True, chain_limit: int = 25):
        self.txs: dict[str, Transaction] = {}
        self.accept = accept
        self.chain_limit = chain_limit

    def _ancestors(self, tx: Transaction) -> set[str]:
        found: set[str] = set()
        todo = [inp.prevout.txid for inp in tx.inputs]
        while todo:
            txid = todo.pop()
            if txid in found or txid not in self.txs:
                continue
            found.add(txid)
            todo.extend(inp.prevout.txid for inp in self.txs[txid].inputs)
        return found

    def _descendants(self, txid: str) -> set[str]:
        return {
            other_id
            for other_id, other in self.txs.items()
            if other_id != txid and txid in self._ancestors(other)
        }

    def contains(self, txid: str) -> bool:
        return txid in self.txs

    def chain_within_limit(self, txid: str, limit: int) -> bool:
        tx = self.txs.get(txid)
        if tx is None:
            return True
        return (
            len(self._ancestors(tx)) + 1 < limit and len(self._descendants(txid)) + 1 < limit
        )

    def check_chain_limits(self, tx: Transaction) -> bool:
        return len(self._ancestors(tx)) + 1 <= self.chain_limit

    def submit(self, tx: Transaction) -> bool:
        if self.accept:
            self.txs[tx.txid()] = tx
        return self.accept


class FakeFeeOracle(FeeOracle):
    def __init__(
        self,
        rate: FeeRate | None = FeeRate(5_000),
        min_relay: FeeRate = FeeRate(DEFAULT_MIN_RELAY_FEE),
        discard: FeeRate = FeeRate(DEFAULT_DISCARD_FEE),
    ):
        self.rate = rate
        self.min_relay = min_relay
        self.discard = discard
        self.requested_targets: list[int] = []
        self.requested_metadata: list[dict[str, str] | None] = []

    def estimate(
        self, target_blocks: int, tx_metadata: dict[str, str] | None = None
    ) -> FeeRate | None:
        self.requested_targets.append(target_blocks)
        self.requested_metadata.append(tx_metadata)
        return self.rate

    def min_relay_fee_rate(self) -> FeeRate:
        return self.min_relay

    def discard_fee_rate(self) -> FeeRate:
        return self.discard


class InMemoryPersistence(Persistence):
    def __init__(self):
        self.records: dict[str, WalletTransactionRecord] = {}
        self.writes = 0

    def write_record(self, record: WalletTransactionRecord) -> None:
        self.records[record.txid] = copy.deepcopy(record)
        self.writes += 1

    def load_records(self) -> Iterable[WalletTransactionRecord]:
        return [copy.deepcopy(record) for record in self.records.values()]


class Clock:
    """Settable wall clock."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class Funder:
    """Pays foreign coins to the wallet and drives its chain notifications."""

    def __init__(self, wallet: Wallet, chain: FakeChain, mempool: FakeMempool, keys: KeyPool):
        self.wallet = wallet
        self.chain = chain
        self.mempool = mempool
        self.keys = keys

    def send(self, *values: int, script: bytes | None = None, confirm: bool = True) -> Transaction:
        if script is None:
            script = self.keys.get_new_script()
        tx = make_tx([foreign_outpoint()], [(script, value) for value in values])
        if confirm:
            self.wallet.block_connected(self.chain.mine(), [tx])
        else:
            self.mempool.txs[tx.txid()] = tx
            self.wallet.transaction_added_to_mempool(tx)
        return tx

    def confirm(self, *txs: Transaction) -> BlockRef:
        block = self.chain.mine()
        for tx in txs:
            self.mempool.txs.pop(tx.txid(), None)
        self.wallet.block_connected(block, list(txs))
        return block

    def mine(self, count: int = 1) -> None:
        for _ in range(count):
            self.wallet.block_connected(self.chain.mine(), [])


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def mempool() -> FakeMempool:
    return FakeMempool()


@pytest.fixture
def fee_oracle() -> FakeFeeOracle:
    """5 sat/vB estimate, 1 sat/vB min relay"""
    return FakeFeeOracle()


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def private_keys() -> list[PrivateKey]:
    """Deterministic test keys"""
    return [PrivateKey((i + 1).to_bytes(32, "big")) for i in range(20)]


@pytest.fixture
def keys(private_keys: list[PrivateKey]) -> KeyPool:
    return KeyPool(private_keys)


@pytest.fixture
def settings() -> WalletSettings:
    return WalletSettings(network=NetworkType.REGTEST)


@pytest.fixture
def ledger(chain: FakeChain, keys: KeyPool, persistence: InMemoryPersistence, clock: Clock):
    return LedgerIndex(chain, keys, persistence=persistence, clock=clock)


@pytest.fixture
def wallet(
    chain: FakeChain,
    mempool: FakeMempool,
    fee_oracle: FakeFeeOracle,
    keys: KeyPool,
    settings: WalletSettings,
    persistence: InMemoryPersistence,
    clock: Clock,
) -> Wallet:
    return Wallet(
        chain,
        mempool,
        fee_oracle,
        keys,
        keys,
        settings=settings,
        persistence=persistence,
        rng=random.Random(42),
        clock=clock,
    )


@pytest.fixture
def funder(wallet: Wallet, chain: FakeChain, mempool: FakeMempool, keys: KeyPool) -> Funder:
    return Funder(wallet, chain, mempool, keys)

"""
Wallet data models.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, IntFlag

from pydantic import BaseModel, Field

from walletcore.fees import FeeRate
from walletcore.transaction import Outpoint, Transaction, TxOut


class IsMine(IntFlag):
    NO = 0
    WATCH_ONLY = 1
    SPENDABLE = 2
    ALL = WATCH_ONLY | SPENDABLE


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class BlockRef:
    hash: str
    height: int


@dataclass
class WalletTransactionRecord:
    """
    A transaction relevant to the wallet, with its chain state.

    block/position encode the confirmation state:
    - block unset: unconfirmed (or abandoned)
    - block set, position >= 0: included in that block
    - block set, position == -1: conflicted by that block
    """

    tx: Transaction
    txid: str
    block: BlockRef | None = None
    position: int = -1
    order: int = -1
    time_received: int = 0
    time_smart: int = 0
    in_mempool: bool = False
    abandoned: bool = False
    from_me: bool = False
    metadata: dict[str, str] = field(default_factory=dict)

    def is_conflicted(self) -> bool:
        return self.block is not None and self.position == -1

    def is_in_block(self) -> bool:
        return self.block is not None and self.position >= 0

    def is_coinbase(self) -> bool:
        return self.tx.is_coinbase()

    def is_replaced(self) -> bool:
        return "replaced_by_txid" in self.metadata

    def is_replacement(self) -> bool:
        return "replaces_txid" in self.metadata

    def outpoint(self, vout: int) -> Outpoint:
        return Outpoint(self.txid, vout)


@dataclass(frozen=True, order=True)
class InputCoin:
    """A spendable output reduced to what selection arithmetic needs. Ordered by value."""

    value: int
    outpoint: Outpoint
    script_pubkey: bytes = b""

    @property
    def txout(self) -> TxOut:
        return TxOut(self.value, self.script_pubkey)


@dataclass
class UTXOCandidate:
    """Output offered to coin selection by the ledger's candidate scan."""

    record: WalletTransactionRecord
    vout: int
    depth: int
    spendable: bool
    solvable: bool
    safe: bool
    from_me: bool = False

    @property
    def outpoint(self) -> Outpoint:
        return self.record.outpoint(self.vout)

    @property
    def txout(self) -> TxOut:
        return self.record.tx.outputs[self.vout]

    @property
    def value(self) -> int:
        return self.txout.value

    def input_coin(self) -> InputCoin:
        return InputCoin(self.value, self.outpoint, self.txout.script_pubkey)


@dataclass
class Recipient:
    script_pubkey: bytes
    amount: int
    subtract_fee_from_amount: bool = False


class SelectionPolicy(BaseModel):
    """Confirmation and ancestor constraints for one coin selection attempt."""

    conf_mine: int = Field(default=1, ge=0, description="Min depth for coins we sent ourselves")
    conf_theirs: int = Field(default=6, ge=0, description="Min depth for foreign coins")
    max_ancestors: int | None = Field(
        default=0, ge=0, description="Max mempool chain length, None = unbounded"
    )
    selected: set[Outpoint] = Field(default_factory=set)
    allow_other_inputs: bool = True
    coin_filter: Callable[[UTXOCandidate], bool] | None = None

    model_config = {"frozen": True}

    def has_selected(self) -> bool:
        return bool(self.selected)

    def tier(self, conf_mine: int, conf_theirs: int, max_ancestors: int | None) -> SelectionPolicy:
        return self.model_copy(
            update={
                "conf_mine": conf_mine,
                "conf_theirs": conf_theirs,
                "max_ancestors": max_ancestors,
            }
        )


class CoinControl(BaseModel):
    """Caller overrides for a single transaction build."""

    change_script: bytes | None = None
    change_position: int | None = None
    selected: set[Outpoint] = Field(default_factory=set)
    excluded: set[Outpoint] = Field(default_factory=set)
    allow_other_inputs: bool = False
    allow_watch_only: bool = False
    fee_rate: FeeRate | None = None
    confirm_target: int | None = Field(default=None, ge=1, le=1008)
    signal_rbf: bool | None = None
    coin_filter: Callable[[UTXOCandidate], bool] | None = None

    model_config = {"frozen": False}

    def has_selected(self) -> bool:
        return bool(self.selected)

    def is_selected(self, outpoint: Outpoint) -> bool:
        return outpoint in self.selected

    def select(self, outpoint: Outpoint) -> None:
        self.selected.add(outpoint)

    def unselect(self, outpoint: Outpoint) -> None:
        self.selected.discard(outpoint)

    def selection_policy(self) -> SelectionPolicy:
        return SelectionPolicy(
            selected=set(self.selected),
            allow_other_inputs=self.allow_other_inputs or not self.selected,
            coin_filter=self.coin_filter,
        )


@dataclass
class CoinSelection:
    """Result of coin selection"""

    coins: list[InputCoin]
    total_value: int

    @property
    def outpoints(self) -> set[Outpoint]:
        return {coin.outpoint for coin in self.coins}


@dataclass
class KeyReservation:
    """A change key handed out by the key provider and not yet kept or returned."""

    index: int
    pubkey: bytes
    script_pubkey: bytes


@dataclass
class BuildResult:
    tx: Transaction
    fee: int
    change_position: int
    coins: list[InputCoin]
    change_key: KeyReservation | None = None

    @property
    def txid(self) -> str:
        return self.tx.txid()

    @property
    def has_change(self) -> bool:
        return self.change_position != -1


@dataclass
class Balance:
    mine_trusted: int = 0
    mine_untrusted_pending: int = 0
    mine_immature: int = 0
    watchonly_trusted: int = 0
    watchonly_untrusted_pending: int = 0
    watchonly_immature: int = 0

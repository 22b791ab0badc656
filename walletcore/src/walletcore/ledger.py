"""
Ledger index: the wallet's record of every transaction relevant to its
outputs, the spend graph between them, and their chain state.

All mutable state lives behind one re-entrant lock owned by the index; every
public method takes it, so callers holding it across several calls (the
transaction builder does) see a consistent view.

Confirmation depth is signed:
- > 0: confirmed, buried that many blocks deep on the best chain
- 0: unconfirmed, abandoned, or in a block that left the best chain
- < 0: conflicted by a best-chain block that many blocks deep
"""

from __future__ import annotations

import functools
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator

from loguru import logger

from walletcore.constants import COINBASE_MATURITY, SMART_TIME_TOLERANCE
from walletcore.errors import InvalidState, LedgerInvariantError, TxnNotFound
from walletcore.interfaces import ChainOracle, KeyProvider, Persistence
from walletcore.models import (
    BlockRef,
    CoinControl,
    IsMine,
    UpsertOutcome,
    UTXOCandidate,
    WalletTransactionRecord,
)
from walletcore.transaction import Outpoint, Transaction, TxIn, is_final


def with_lock(func):
    @functools.wraps(func)
    def wrapper(self: LedgerIndex, *args, **kwargs):
        with self.lock:
            return func(self, *args, **kwargs)

    return wrapper


def _strip_signatures(tx: Transaction) -> bytes:
    """Serialization ignoring scriptSigs and witnesses, for malleability-equivalence."""
    stripped = Transaction(
        inputs=[TxIn(inp.prevout, b"", inp.sequence) for inp in tx.inputs],
        outputs=tx.outputs,
        version=tx.version,
        locktime=tx.locktime,
    )
    return stripped.serialize(include_witness=False)


class LedgerIndex:
    def __init__(
        self,
        chain: ChainOracle,
        keys: KeyProvider,
        persistence: Persistence | None = None,
        clock: Callable[[], int] | None = None,
        coinbase_maturity: int = COINBASE_MATURITY,
    ):
        self.chain = chain
        self.keys = keys
        self.persistence = persistence
        self.clock = clock or (lambda: int(time.time()))
        self.coinbase_maturity = coinbase_maturity

        self.lock = threading.RLock()

        self._records: dict[str, WalletTransactionRecord] = {}
        self._ordered: list[WalletTransactionRecord] = []
        self._spends: dict[Outpoint, set[str]] = {}
        self._locked_coins: set[Outpoint] = set()
        self._next_order = 0

        # Bumped on every mutation; cached amounts tagged with an older
        # version are recomputed on next access
        self._version = 0
        self._amount_cache: dict[tuple[str, str, int], tuple[int, int]] = {}

    # -- bookkeeping -------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def _bump(self) -> None:
        self._version += 1

    def invalidate_caches(self) -> None:
        """Force recomputation of derived amounts, e.g. after the chain tip moved."""
        with self.lock:
            self._bump()

    def _write(self, record: WalletTransactionRecord) -> None:
        if self.persistence is not None:
            self.persistence.write_record(record)

    def _cached(self, key: tuple[str, str, int], compute: Callable[[], int]) -> int:
        # Tag with the version the value was computed from
        version = self._version
        entry = self._amount_cache.get(key)
        if entry is not None and entry[0] == version:
            return entry[1]
        value = compute()
        self._amount_cache[key] = (version, value)
        return value

    @with_lock
    def load(self, persistence: Persistence | None = None) -> int:
        """Rebuild the index from persisted records. Returns the number loaded."""
        source = persistence or self.persistence
        if source is None:
            return 0

        loaded = sorted(source.load_records(), key=lambda r: r.order)
        for record in loaded:
            if record.txid in self._records:
                raise LedgerInvariantError(f"Duplicate record in storage: {record.txid}")
            self._records[record.txid] = record
            self._ordered.append(record)
            self._add_to_spends(record)
            self._next_order = max(self._next_order, record.order + 1)

        self._bump()
        logger.info(f"Loaded {len(loaded)} wallet transactions")
        return len(loaded)

    # -- lookups -----------------------------------------------------------

    @with_lock
    def __contains__(self, txid: str) -> bool:
        return txid in self._records

    @with_lock
    def __len__(self) -> int:
        return len(self._records)

    @with_lock
    def get_record(self, txid: str) -> WalletTransactionRecord | None:
        return self._records.get(txid)

    def _require(self, txid: str) -> WalletTransactionRecord:
        record = self._records.get(txid)
        if record is None:
            raise LedgerInvariantError(f"Transaction {txid} referenced by the index is missing")
        return record

    @with_lock
    def records(self) -> Iterator[WalletTransactionRecord]:
        return iter(list(self._records.values()))

    @with_lock
    def ordered_history(self) -> list[WalletTransactionRecord]:
        """Records in insertion order, for history replay."""
        return list(self._ordered)

    @with_lock
    def spenders(self, outpoint: Outpoint) -> set[str]:
        return set(self._spends.get(outpoint, ()))

    def _spenders_of_outputs(self, txid: str) -> Iterator[str]:
        record = self._require(txid)
        for vout in range(len(record.tx.outputs)):
            yield from sorted(self._spends.get(Outpoint(txid, vout), ()))

    # -- chain state -------------------------------------------------------

    @with_lock
    def get_depth(self, record: WalletTransactionRecord) -> int:
        if record.block is None:
            return 0
        if not self.chain.is_in_best_chain(record.block.hash):
            return 0
        depth = self.chain.tip_height() - record.block.height + 1
        return -depth if record.position == -1 else depth

    @with_lock
    def blocks_to_maturity(self, record: WalletTransactionRecord) -> int:
        if not record.is_coinbase():
            return 0
        return max(0, self.coinbase_maturity + 1 - self.get_depth(record))

    @with_lock
    def is_immature_coinbase(self, record: WalletTransactionRecord) -> bool:
        return self.blocks_to_maturity(record) > 0

    @with_lock
    def is_final_tx(self, record: WalletTransactionRecord) -> bool:
        return is_final(record.tx, self.chain.tip_height() + 1, self.chain.median_time_past())

    # -- ownership and amounts ---------------------------------------------

    @with_lock
    def output_ismine(self, record: WalletTransactionRecord, vout: int) -> IsMine:
        return self.keys.ismine(record.tx.outputs[vout].script_pubkey)

    def _input_ismine_value(self, txin: TxIn, filter: IsMine) -> int:
        parent = self._records.get(txin.prevout.txid)
        if parent is None or txin.prevout.vout >= len(parent.tx.outputs):
            return 0
        txout = parent.tx.outputs[txin.prevout.vout]
        if self.keys.ismine(txout.script_pubkey) & filter:
            return txout.value
        return 0

    @with_lock
    def get_debit(self, record: WalletTransactionRecord, filter: IsMine = IsMine.ALL) -> int:
        """Value of our outputs this transaction spends."""
        if record.is_coinbase():
            return 0
        return self._cached(
            (record.txid, "debit", int(filter)),
            lambda: sum(self._input_ismine_value(inp, filter) for inp in record.tx.inputs),
        )

    @with_lock
    def get_credit(self, record: WalletTransactionRecord, filter: IsMine = IsMine.ALL) -> int:
        """Value of this transaction's outputs that pay to us."""
        return self._cached(
            (record.txid, "credit", int(filter)),
            lambda: sum(
                out.value
                for out in record.tx.outputs
                if self.keys.ismine(out.script_pubkey) & filter
            ),
        )

    @with_lock
    def get_change(self, record: WalletTransactionRecord) -> int:
        """Value paid back to our spendable keys by a transaction we funded."""
        if not self.is_from_me(record):
            return 0
        return self.get_credit(record, IsMine.SPENDABLE)

    @with_lock
    def is_from_me(self, record: WalletTransactionRecord, filter: IsMine = IsMine.ALL) -> bool:
        return record.from_me or self.get_debit(record, filter) > 0

    @with_lock
    def get_fee(self, record: WalletTransactionRecord) -> int | None:
        """Fee paid, when every input spends one of our outputs."""
        if record.is_coinbase():
            return None
        debit = self.get_debit(record)
        if debit == 0:
            return None
        all_ours = all(
            self._input_ismine_value(inp, IsMine.ALL) > 0 for inp in record.tx.inputs
        )
        if not all_ours:
            return None
        return debit - record.tx.total_out()

    @with_lock
    def is_relevant(self, tx: Transaction) -> bool:
        if any(self.keys.ismine(out.script_pubkey) != IsMine.NO for out in tx.outputs):
            return True
        if tx.is_coinbase():
            return False
        return any(self._input_ismine_value(inp, IsMine.ALL) > 0 for inp in tx.inputs)

    # -- spend index -------------------------------------------------------

    def _add_to_spends(self, record: WalletTransactionRecord) -> None:
        if record.is_coinbase():
            return
        for txin in record.tx.inputs:
            spenders = self._spends.setdefault(txin.prevout, set())
            spenders.add(record.txid)
            if len(spenders) > 1:
                self._sync_metadata(txin.prevout)

    def _sync_metadata(self, outpoint: Outpoint) -> None:
        """Give every equivalent (malleated) spender of an outpoint the oldest one's metadata."""
        spenders = [self._require(txid) for txid in self._spends[outpoint]]
        oldest = min(spenders, key=lambda r: r.order)
        oldest_body = _strip_signatures(oldest.tx)
        for record in spenders:
            if record is oldest or _strip_signatures(record.tx) != oldest_body:
                continue
            record.metadata = dict(oldest.metadata)
            record.time_smart = oldest.time_smart
            record.from_me = oldest.from_me
            self._write(record)

    @with_lock
    def is_spent(self, outpoint: Outpoint) -> bool:
        for txid in self._spends.get(outpoint, ()):
            record = self._require(txid)
            depth = self.get_depth(record)
            if depth > 0 or (depth == 0 and not record.abandoned):
                return True
        return False

    @with_lock
    def get_conflicts(self, txid: str) -> set[str]:
        """Every other known transaction spending an input of txid."""
        record = self._records.get(txid)
        if record is None or record.is_coinbase():
            return set()
        result: set[str] = set()
        for txin in record.tx.inputs:
            spenders = self._spends.get(txin.prevout, set())
            if len(spenders) > 1:
                result |= spenders
        result.discard(txid)
        return result

    # -- observation -------------------------------------------------------

    def _compute_time_smart(self, record: WalletTransactionRecord) -> int:
        """
        Position a transaction in history independent of clock skew.

        Unconfirmed transactions use the time they were first seen. Confirmed
        ones use their block time, clamped to be no earlier than the latest
        history entry we saw before them (tolerating 5 minutes of skew) and no
        later than when we first saw them.
        """
        time_smart = record.time_received
        if record.block is None or record.abandoned:
            return time_smart

        block_time = self.chain.block_time(record.block.hash)
        if block_time is None:
            logger.warning(
                f"Found {record.txid} in block {record.block.hash} not in index, "
                "using time received"
            )
            return time_smart

        latest_now = record.time_received
        latest_entry = 0
        latest_tolerated = latest_now + SMART_TIME_TOLERANCE
        for other in reversed(self._ordered):
            if other is record:
                continue
            smart_time = other.time_smart or other.time_received
            if smart_time <= latest_tolerated:
                latest_entry = smart_time
                if smart_time > latest_now:
                    latest_now = smart_time
                break

        return max(latest_entry, min(block_time, latest_now))

    @with_lock
    def upsert(
        self,
        tx: Transaction,
        block: BlockRef | None = None,
        position: int | None = None,
        *,
        from_me: bool | None = None,
        in_mempool: bool | None = None,
        metadata: dict[str, str] | None = None,
        allow_update: bool = True,
    ) -> UpsertOutcome:
        """
        Insert a transaction, or merge a new observation of a known one.

        Merged fields: block reference and position, from-me flag, mempool
        membership, and a witness-bearing body replacing a stripped one.
        Existing metadata keys are never overwritten.

        A block without a position still means included in that block; the
        position then defaults to 0 (or the one already recorded for it).
        Position -1 with a block is reserved for conflicts.
        """
        if block is not None and position is not None and position < 0:
            raise ValueError(f"Block position must not be negative: {position}")

        txid = tx.txid()
        record = self._records.get(txid)

        if record is None:
            record = WalletTransactionRecord(
                tx=tx,
                txid=txid,
                block=block,
                position=(position if position is not None else 0) if block is not None else -1,
                order=self._next_order,
                time_received=self.clock(),
                in_mempool=bool(in_mempool) and block is None,
                from_me=bool(from_me),
                metadata=dict(metadata or {}),
            )
            self._next_order += 1
            self._records[txid] = record
            self._ordered.append(record)
            record.time_smart = self._compute_time_smart(record)
            self._add_to_spends(record)
            self._bump()
            self._write(record)
            state = f"block {block.height}" if block is not None else "unconfirmed"
            logger.info(f"Added wallet transaction {txid} ({state}, order {record.order})")
            return UpsertOutcome.INSERTED

        if not allow_update:
            return UpsertOutcome.UNCHANGED

        updated = False

        if block is not None and position is None:
            position = record.position if block == record.block and record.is_in_block() else 0
        if block is not None and block != record.block:
            record.block = block
            updated = True
        if block is not None and position != record.position:
            record.position = position
            updated = True
        if block is not None and record.abandoned:
            record.abandoned = False
            updated = True

        if in_mempool is not None and in_mempool != record.in_mempool:
            record.in_mempool = in_mempool
            updated = True
        if in_mempool and record.abandoned:
            # Seen in the mempool again: no longer abandoned
            record.abandoned = False
            updated = True

        if from_me and not record.from_me:
            record.from_me = True
            updated = True

        if tx.has_witness() and not record.tx.has_witness():
            record.tx = tx
            updated = True

        for key, value in (metadata or {}).items():
            if key not in record.metadata:
                record.metadata[key] = value
                updated = True

        if not updated:
            return UpsertOutcome.UNCHANGED

        self._bump()
        self._write(record)
        logger.debug(f"Updated wallet transaction {txid}")
        return UpsertOutcome.UPDATED

    @with_lock
    def sync_from_chain(
        self,
        tx: Transaction,
        block: BlockRef | None = None,
        position: int | None = None,
        *,
        in_mempool: bool | None = None,
    ) -> bool:
        """
        Apply a block or mempool observation of a transaction.

        The transaction is indexed first (if it is ours or already known);
        only then are other spenders of its inputs marked conflicted by the
        block. Returns True if the transaction is tracked by the wallet.
        """
        txid = tx.txid()
        tracked = txid in self._records or self.is_relevant(tx)
        if tracked:
            self.upsert(tx, block, position, in_mempool=in_mempool)

        if block is not None and not tx.is_coinbase():
            for txin in tx.inputs:
                for other in sorted(self._spends.get(txin.prevout, ())):
                    if other == txid:
                        continue
                    logger.info(
                        f"Transaction {txid} (in block {block.hash}) conflicts with wallet "
                        f"transaction {other} (both spend {txin.prevout})"
                    )
                    self.mark_conflicted(block.hash, other)

        return tracked

    # -- conflict / abandon ------------------------------------------------

    @with_lock
    def mark_conflicted(self, block_hash: str, txid: str) -> set[str]:
        """
        Mark txid, and everything spending its outputs, as conflicted by a
        block. Returns the txids whose state changed.
        """
        conflict_depth = 0
        height = self.chain.block_height(block_hash)
        if height is not None and self.chain.is_in_best_chain(block_hash):
            conflict_depth = -(self.chain.tip_height() - height + 1)

        # Unknown block or not on the best chain: nothing to conflict with yet
        if conflict_depth >= 0 or height is None:
            logger.debug(f"Block {block_hash} is not on the best chain, not marking {txid}")
            return set()

        changed: set[str] = set()
        todo: deque[str] = deque([txid])
        done: set[str] = set()

        while todo:
            now = todo.popleft()
            if now in done:
                continue
            done.add(now)

            record = self._require(now)
            if conflict_depth < self.get_depth(record):
                record.block = BlockRef(block_hash, height)
                record.position = -1
                record.abandoned = False
                self._write(record)
                changed.add(now)
                todo.extend(s for s in self._spenders_of_outputs(now) if s not in done)

        if changed:
            self._bump()
            logger.info(
                f"Marked {len(changed)} transaction(s) conflicted by block {block_hash}: "
                f"{sorted(changed)}"
            )
        return changed

    @with_lock
    def abandon(self, txid: str) -> bool:
        """
        Mark an unconfirmed, non-mempool transaction and all its descendants
        abandoned, releasing the inputs they spend.
        """
        origin = self._records.get(txid)
        if origin is None:
            raise TxnNotFound(txid)

        depth = self.get_depth(origin)
        if depth != 0:
            state = "confirmed" if depth > 0 else "conflicted"
            logger.warning(f"Refusing to abandon {txid}: transaction is {state}")
            raise InvalidState(txid, f"cannot abandon a {state} transaction")
        if origin.in_mempool:
            logger.warning(f"Refusing to abandon {txid}: transaction is in the mempool")
            raise InvalidState(txid, "cannot abandon a transaction in the mempool")

        changed: set[str] = set()
        todo: deque[str] = deque([txid])
        done: set[str] = set()

        while todo:
            now = todo.popleft()
            if now in done:
                continue
            done.add(now)

            record = self._require(now)
            current = self.get_depth(record)
            # A descendant cannot be in a block if its ancestor is not
            if current > 0:
                raise LedgerInvariantError(f"Descendant {now} of unconfirmed {txid} is confirmed")

            if current == 0 and not record.abandoned:
                if record.in_mempool:
                    raise LedgerInvariantError(
                        f"Descendant {now} of non-mempool {txid} is in the mempool"
                    )
                record.abandoned = True
                record.block = None
                record.position = -1
                self._write(record)
                changed.add(now)
                todo.extend(s for s in self._spenders_of_outputs(now) if s not in done)

        if changed:
            self._bump()
        logger.info(f"Abandoned {len(changed)} transaction(s): {sorted(changed)}")
        return True

    @with_lock
    def disconnect_block(self, block_hash: str) -> set[str]:
        """
        Clear the chain state of every record included in, or conflicted by,
        a block that left the best chain.
        """
        changed: set[str] = set()
        for record in self._records.values():
            if record.block is not None and record.block.hash == block_hash:
                record.block = None
                record.position = -1
                self._write(record)
                changed.add(record.txid)

        if changed:
            self._bump()
            logger.info(
                f"Block {block_hash} disconnected, {len(changed)} transaction(s) unconfirmed"
            )
        return changed

    @with_lock
    def set_in_mempool(self, txid: str, in_mempool: bool) -> bool:
        record = self._records.get(txid)
        if record is None or record.in_mempool == in_mempool:
            return False
        record.in_mempool = in_mempool
        if in_mempool:
            record.abandoned = False
        self._bump()
        self._write(record)
        return True

    @with_lock
    def mark_replaced(self, original_txid: str, replacement_txid: str) -> None:
        """Record that replacement_txid replaces original_txid by fee bump."""
        original = self._records.get(original_txid)
        if original is None:
            raise TxnNotFound(original_txid)
        replacement = self._records.get(replacement_txid)
        if replacement is None:
            raise TxnNotFound(replacement_txid)

        original.metadata["replaced_by_txid"] = replacement_txid
        replacement.metadata["replaces_txid"] = original_txid
        self._bump()
        self._write(original)
        self._write(replacement)
        logger.info(f"Marked {original_txid} as replaced by {replacement_txid}")

    # -- coin locking ------------------------------------------------------

    @with_lock
    def lock_coin(self, outpoint: Outpoint) -> None:
        self._locked_coins.add(outpoint)

    @with_lock
    def unlock_coin(self, outpoint: Outpoint) -> None:
        self._locked_coins.discard(outpoint)

    @with_lock
    def unlock_all_coins(self) -> None:
        self._locked_coins.clear()

    @with_lock
    def is_locked_coin(self, outpoint: Outpoint) -> bool:
        return outpoint in self._locked_coins

    @with_lock
    def list_locked_coins(self) -> list[Outpoint]:
        return sorted(self._locked_coins)

    # -- candidate scan ----------------------------------------------------

    @with_lock
    def available_coins(
        self,
        is_trusted: Callable[[WalletTransactionRecord], bool],
        coin_control: CoinControl | None = None,
        *,
        only_safe: bool = True,
        min_depth: int = 0,
        max_depth: int | None = None,
    ) -> list[UTXOCandidate]:
        """Enumerate the wallet's unspent outputs that coin selection may use."""
        candidates: list[UTXOCandidate] = []
        restrict_to_selected = (
            coin_control is not None
            and coin_control.has_selected()
            and not coin_control.allow_other_inputs
        )

        for record in self._ordered:
            if not self.is_final_tx(record):
                continue
            if self.is_immature_coinbase(record):
                continue

            depth = self.get_depth(record)
            if depth < 0:
                continue
            # Not even in our mempool: cannot build on it
            if depth == 0 and not record.in_mempool:
                continue

            safe = is_trusted(record)
            # Coins from replacing or replaced transactions may vanish
            if depth == 0 and (record.is_replacement() or record.is_replaced()):
                safe = False
            if only_safe and not safe:
                continue
            if depth < min_depth or (max_depth is not None and depth > max_depth):
                continue

            from_me = self.is_from_me(record)

            for vout, txout in enumerate(record.tx.outputs):
                outpoint = Outpoint(record.txid, vout)
                if restrict_to_selected and not coin_control.is_selected(outpoint):
                    continue
                if coin_control is not None and outpoint in coin_control.excluded:
                    continue
                if outpoint in self._locked_coins:
                    continue
                if self.is_spent(outpoint):
                    continue

                mine = self.keys.ismine(txout.script_pubkey)
                if mine == IsMine.NO:
                    continue

                spendable = bool(mine & IsMine.SPENDABLE) or (
                    coin_control is not None
                    and coin_control.allow_watch_only
                    and bool(mine & IsMine.WATCH_ONLY)
                )
                solvable = bool(mine & IsMine.SPENDABLE)
                candidates.append(
                    UTXOCandidate(
                        record=record,
                        vout=vout,
                        depth=depth,
                        spendable=spendable,
                        solvable=solvable,
                        safe=safe,
                        from_me=from_me,
                    )
                )

        return candidates

"""
Transaction builder.

Turns a list of recipients into a fee-paying transaction spending wallet
coins:
- validates the requested amounts
- selects coins under progressively looser confirmation requirements
- iterates fee and change to a fixed point, folding dust change into the fee
- randomizes change position and input order, sets anti-fee-sniping locktime
- optionally signs every input

Building never mutates the ledger. The only side effect is the change key
reservation, which is handed back to the key provider unless the result
carries a change output.
"""

from __future__ import annotations

import random
from dataclasses import replace

from loguru import logger

from walletcore.balance import BalanceView
from walletcore.coin_selection import CoinSelector, selection_tiers
from walletcore.config import WalletSettings
from walletcore.constants import (
    LOCKTIME_BACKDATE_ODDS,
    LOCKTIME_MAX_BACKDATE,
    MAX_BIP125_RBF_SEQUENCE,
    SEQUENCE_NO_RBF,
    WITNESS_SCALE_FACTOR,
    money_range,
)
from walletcore.errors import (
    ChangeIndexOutOfRange,
    DustOutput,
    FeeCalculationFailed,
    InvalidAmount,
    MempoolChainTooLong,
    TransactionTooLarge,
)
from walletcore.fees import FeeRate, get_dust_threshold, is_dust
from walletcore.interfaces import ChainOracle, FeeOracle, KeyProvider, MempoolOracle, Signer
from walletcore.ledger import LedgerIndex
from walletcore.models import (
    BuildResult,
    CoinControl,
    CoinSelection,
    InputCoin,
    KeyReservation,
    Recipient,
    UTXOCandidate,
)
from walletcore.transaction import Transaction, TxIn, TxOut

# Extra bytes allowed for when deciding whether a change output is affordable
CHANGE_SIZE_SLACK = 2


class TransactionBuilder:
    def __init__(
        self,
        ledger: LedgerIndex,
        balance: BalanceView,
        selector: CoinSelector,
        chain: ChainOracle,
        mempool: MempoolOracle,
        fees: FeeOracle,
        signer: Signer,
        keys: KeyProvider,
        settings: WalletSettings,
        rng: random.Random | None = None,
    ):
        self.ledger = ledger
        self.balance = balance
        self.selector = selector
        self.chain = chain
        self.mempool = mempool
        self.fees = fees
        self.signer = signer
        self.keys = keys
        self.settings = settings
        self.rng = rng if rng is not None else random.Random()

    def build(
        self,
        recipients: list[Recipient],
        coin_control: CoinControl | None = None,
        *,
        sign: bool = True,
        tx_metadata: dict[str, str] | None = None,
    ) -> BuildResult:
        """
        Build a transaction paying the recipients.

        Args:
            recipients: Outputs to create, in order
            coin_control: Optional input, change and fee overrides
            sign: Sign the inputs; if False the inputs are left empty
            tx_metadata: Caller metadata, handed to the fee oracle

        Returns:
            BuildResult with the transaction, fee paid and change position.
            If it has change, change_key holds the reserved key: pass the
            result to commit or release.

        Raises:
            InvalidAmount, InsufficientFunds, DustOutput, ChangeIndexOutOfRange,
            FeeCalculationFailed, SigningFailed, TransactionTooLarge,
            MempoolChainTooLong
        """
        coin_control = coin_control or CoinControl()
        self._validate_recipients(recipients)
        if coin_control.change_position is not None and coin_control.change_position < 0:
            raise ChangeIndexOutOfRange(coin_control.change_position, len(recipients))

        with self.ledger.lock:
            candidates = self.ledger.available_coins(self.balance.is_trusted, coin_control)

            change_key: KeyReservation | None = None
            if coin_control.change_script is not None:
                change_script = coin_control.change_script
            else:
                change_key = self.keys.reserve_key()
                change_script = change_key.script_pubkey

            try:
                result = self._create(
                    recipients, coin_control, candidates, change_script, sign, tx_metadata
                )
            except Exception:
                if change_key is not None:
                    self.keys.return_key(change_key)
                raise

        if change_key is not None:
            if result.has_change:
                result.change_key = change_key
            else:
                self.keys.return_key(change_key)

        logger.info(
            f"Built transaction {result.txid}: {len(result.tx.inputs)} inputs, "
            f"{len(result.tx.outputs)} outputs, fee {result.fee} sats"
        )
        return result

    @staticmethod
    def _validate_recipients(recipients: list[Recipient]) -> None:
        if not recipients:
            raise InvalidAmount(0, "Transaction must have at least one recipient")
        total = 0
        for recipient in recipients:
            if recipient.amount < 0:
                raise InvalidAmount(
                    recipient.amount,
                    f"Transaction amounts must not be negative: {recipient.amount}",
                )
            total += recipient.amount
            if not money_range(recipient.amount) or not money_range(total):
                raise InvalidAmount(total, f"Transaction amount out of range: {total}")

    def fee_rate(
        self, coin_control: CoinControl, tx_metadata: dict[str, str] | None = None
    ) -> FeeRate:
        """Target fee rate: explicit, else estimated, else the fallback; never below min relay."""
        min_relay = self.fees.min_relay_fee_rate()
        if coin_control.fee_rate is not None:
            rate = coin_control.fee_rate
        else:
            target = coin_control.confirm_target or self.settings.confirm_target
            rate = self.fees.estimate(target, tx_metadata)
            if rate is None:
                rate = FeeRate(self.settings.fallback_fee)
                logger.debug(f"No fee estimate for {target} blocks, using fallback {rate}")
        return max(rate, min_relay)

    def discard_rate(self) -> FeeRate:
        return max(self.fees.discard_fee_rate(), FeeRate(self.settings.dust_relay_fee))

    def _select_coins(
        self, candidates: list[UTXOCandidate], target: int, coin_control: CoinControl
    ) -> CoinSelection:
        tiers = selection_tiers(
            self.settings.max_chain_length,
            self.settings.spend_zero_conf_change,
            self.settings.reject_long_chains,
        )
        return self.selector.select_with_tiers(
            candidates, target, coin_control.selection_policy(), tiers
        )

    def anti_fee_sniping_locktime(self) -> int:
        """Current height, occasionally backdated to blend in with delayed broadcasts."""
        locktime = self.chain.tip_height()
        if self.rng.randrange(LOCKTIME_BACKDATE_ODDS) == 0:
            locktime = max(0, locktime - self.rng.randrange(LOCKTIME_MAX_BACKDATE))
        return locktime

    def _estimate_vsize(self, tx: Transaction, coins: list[InputCoin]) -> int:
        """Virtual size of tx once signed, using maximal-size dummy signatures."""
        inputs = []
        for index, coin in enumerate(coins):
            dummy = self.signer.dummy_signature(index, coin.txout)
            inputs.append(
                replace(tx.inputs[index], script_sig=dummy.script_sig, witness=dummy.witness)
            )
        return Transaction(inputs, tx.outputs, tx.version, tx.locktime).vsize()

    def _recipient_outputs(
        self, recipients: list[Recipient], fee: int, subtract_count: int
    ) -> list[TxOut]:
        outputs: list[TxOut] = []
        dust_relay = FeeRate(self.settings.dust_relay_fee)
        first = True
        for index, recipient in enumerate(recipients):
            value = recipient.amount
            if recipient.subtract_fee_from_amount:
                value -= fee // subtract_count
                # First flagged recipient also pays the remainder
                if first:
                    value -= fee % subtract_count
                    first = False

            txout = TxOut(value, recipient.script_pubkey)
            if is_dust(txout, dust_relay):
                threshold = get_dust_threshold(txout, dust_relay)
                if recipient.subtract_fee_from_amount and fee > 0:
                    if value < 0:
                        message = "The transaction amount is too small to pay the fee"
                    else:
                        message = (
                            "The transaction amount is too small to send after the fee "
                            "has been deducted"
                        )
                else:
                    message = "Transaction amount too small"
                raise DustOutput(value, threshold, index, f"{message} (output {index})")
            outputs.append(txout)
        return outputs

    def _create(
        self,
        recipients: list[Recipient],
        coin_control: CoinControl,
        candidates: list[UTXOCandidate],
        change_script: bytes,
        sign: bool,
        tx_metadata: dict[str, str] | None = None,
    ) -> BuildResult:
        value = sum(r.amount for r in recipients)
        subtract_count = sum(1 for r in recipients if r.subtract_fee_from_amount)

        fee_rate = self.fee_rate(coin_control, tx_metadata)
        discard_rate = self.discard_rate()
        change_prototype = TxOut(0, change_script)
        change_threshold = get_dust_threshold(change_prototype, discard_rate)
        requested_position = (
            coin_control.change_position if coin_control.change_position is not None else -1
        )

        signal_rbf = (
            coin_control.signal_rbf
            if coin_control.signal_rbf is not None
            else self.settings.signal_rbf
        )
        sequence = MAX_BIP125_RBF_SEQUENCE if signal_rbf else SEQUENCE_NO_RBF
        locktime = self.anti_fee_sniping_locktime()

        fee = 0
        pick_new_inputs = True
        selection: CoinSelection | None = None

        while True:
            change_position = requested_position
            outputs = self._recipient_outputs(recipients, fee, subtract_count)
            value_to_select = value if subtract_count else value + fee

            if pick_new_inputs or selection is None:
                selection = self._select_coins(candidates, value_to_select, coin_control)

            change = selection.total_value - value_to_select
            if change > 0:
                change_output = TxOut(change, change_script)
                if is_dust(change_output, discard_rate):
                    # Not worth a change output: give it to the miners
                    change_position = -1
                    fee += change
                else:
                    if change_position == -1:
                        change_position = self.rng.randrange(len(outputs) + 1)
                    elif change_position > len(outputs):
                        raise ChangeIndexOutOfRange(change_position, len(outputs))
                    outputs.insert(change_position, change_output)
            else:
                change_position = -1

            tx = Transaction(
                inputs=[TxIn(coin.outpoint, sequence=sequence) for coin in selection.coins],
                outputs=outputs,
                version=2,
                locktime=locktime,
            )
            vsize = self._estimate_vsize(tx, selection.coins)
            fee_needed = fee_rate.get_fee(vsize)

            if fee >= fee_needed:
                # Paying more than needed without change: see if the excess
                # covers a change output after all
                if change_position == -1 and subtract_count == 0 and pick_new_inputs:
                    fee_with_change = fee_rate.get_fee(
                        vsize + change_prototype.serialized_size() + CHANGE_SIZE_SLACK
                    )
                    if fee >= fee_with_change + change_threshold:
                        pick_new_inputs = False
                        fee = fee_with_change
                        continue

                if fee > fee_needed and change_position != -1 and subtract_count == 0:
                    extra = fee - fee_needed
                    outputs[change_position].value += extra
                    fee -= extra
                break

            if not pick_new_inputs:
                raise FeeCalculationFailed("Transaction fee and change calculation failed")

            # Take the missing fee out of the change if enough would remain
            if change_position != -1 and subtract_count == 0:
                additional = fee_needed - fee
                change_output = outputs[change_position]
                if change_output.value >= self.settings.min_change // 2 + additional:
                    change_output.value -= additional
                    fee += additional
                    break

            # Fee comes out of the recipients: keep the inputs, redo the outputs
            if subtract_count:
                pick_new_inputs = False

            fee = fee_needed
            logger.debug(f"Fee {fee} sats for {vsize} vbytes at {fee_rate}, reselecting")

        coins = list(selection.coins)
        self.rng.shuffle(coins)
        tx = Transaction(
            inputs=[TxIn(coin.outpoint, sequence=sequence) for coin in coins],
            outputs=tx.outputs,
            version=2,
            locktime=locktime,
        )

        value_in = sum(coin.value for coin in coins)
        if value_in != tx.total_out() + fee:
            raise FeeCalculationFailed(
                f"Inputs {value_in} do not balance outputs {tx.total_out()} plus fee {fee}"
            )

        if sign:
            self._sign(tx, coins)
            weight = tx.weight()
        else:
            weight = self._estimate_vsize(tx, coins) * WITNESS_SCALE_FACTOR

        if weight > self.settings.max_tx_weight:
            raise TransactionTooLarge(weight, self.settings.max_tx_weight)

        if self.settings.reject_long_chains and not self.mempool.check_chain_limits(tx):
            raise MempoolChainTooLong(tx.txid())

        return BuildResult(tx=tx, fee=fee, change_position=change_position, coins=coins)

    def _sign(self, tx: Transaction, coins: list[InputCoin]) -> None:
        for index, coin in enumerate(coins):
            signature = self.signer.sign_input(tx, index, coin.txout)
            tx.inputs[index].script_sig = signature.script_sig
            tx.inputs[index].witness = list(signature.witness)

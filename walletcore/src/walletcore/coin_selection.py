"""
Coin selection.

Picks a subset of the wallet's candidate outputs covering a target value:
manual selections first, then an exact single coin, then all small coins if
they sum exactly, otherwise a randomized approximate subset-sum search
compared against the smallest single coin above the target.

The random source only varies the choice among otherwise equivalent
selections, for privacy. Pass a seeded random.Random to make it repeatable.
"""

from __future__ import annotations

import random

from loguru import logger

from walletcore.constants import MIN_CHANGE, SUBSET_SUM_ITERATIONS
from walletcore.errors import InsufficientFunds, InvalidAmount
from walletcore.interfaces import MempoolOracle
from walletcore.models import CoinSelection, InputCoin, SelectionPolicy, UTXOCandidate


def selection_tiers(
    max_chain_length: int, spend_zero_conf_change: bool = True, reject_long_chains: bool = True
) -> list[tuple[int, int, int | None]]:
    """(conf_mine, conf_theirs, max_ancestors) for each selection attempt, strictest first."""
    tiers: list[tuple[int, int, int | None]] = [(1, 6, 0), (1, 1, 0)]
    if spend_zero_conf_change:
        tiers += [
            (0, 1, 2),
            (0, 1, min(4, max_chain_length // 3)),
            (0, 1, max_chain_length // 2),
            (0, 1, max_chain_length),
        ]
        if not reject_long_chains:
            tiers.append((0, 1, None))
    return tiers


class CoinSelector:
    def __init__(
        self,
        mempool: MempoolOracle | None = None,
        min_change: int = MIN_CHANGE,
        iterations: int = SUBSET_SUM_ITERATIONS,
        rng: random.Random | None = None,
    ):
        self.mempool = mempool
        self.min_change = min_change
        self.iterations = iterations
        # Unseeded Random draws its seed from the OS
        self.rng = rng if rng is not None else random.Random()

    def select(
        self,
        candidates: list[UTXOCandidate],
        target: int,
        policy: SelectionPolicy,
    ) -> CoinSelection:
        """
        Select candidates covering target under the policy.

        Raises:
            InsufficientFunds: if no subset satisfies the target under this policy
        """
        if target < 0:
            raise InvalidAmount(target, f"Selection target must not be negative: {target}")

        spendable = [c for c in candidates if c.spendable]

        # Manual selection only: exactly those coins or nothing
        if policy.has_selected() and not policy.allow_other_inputs:
            coins = [c.input_coin() for c in spendable if c.outpoint in policy.selected]
            total = sum(coin.value for coin in coins)
            if total < target:
                raise InsufficientFunds(target, total)
            logger.debug(f"Using {len(coins)} manually selected coins ({total} sats)")
            return CoinSelection(coins, total)

        preset = [c.input_coin() for c in spendable if c.outpoint in policy.selected]
        missing = policy.selected - {coin.outpoint for coin in preset}
        if missing:
            logger.warning(f"Preset inputs not available for spending: {sorted(missing)}")
            raise InsufficientFunds(target, sum(coin.value for coin in preset))

        preset_value = sum(coin.value for coin in preset)
        if preset_value >= target:
            return CoinSelection(preset, preset_value)

        remaining = [c for c in spendable if c.outpoint not in policy.selected]
        eligible = self.filter_candidates(remaining, policy)
        selection = self.select_from_coins(eligible, target - preset_value)
        return CoinSelection(preset + selection.coins, preset_value + selection.total_value)

    def select_with_tiers(
        self,
        candidates: list[UTXOCandidate],
        target: int,
        policy: SelectionPolicy,
        tiers: list[tuple[int, int, int | None]],
    ) -> CoinSelection:
        """
        Try each (conf_mine, conf_theirs, max_ancestors) tier in turn until one succeeds.

        Raises:
            InsufficientFunds: with the total spendable value, if every tier fails
        """
        for conf_mine, conf_theirs, max_ancestors in tiers:
            try:
                return self.select(
                    candidates, target, policy.tier(conf_mine, conf_theirs, max_ancestors)
                )
            except InsufficientFunds:
                logger.debug(
                    f"Selection of {target} sats failed at tier "
                    f"({conf_mine}, {conf_theirs}, {max_ancestors})"
                )
        available = sum(c.value for c in candidates if c.spendable)
        raise InsufficientFunds(target, available)

    def filter_candidates(
        self, candidates: list[UTXOCandidate], policy: SelectionPolicy
    ) -> list[InputCoin]:
        """Apply the policy's confirmation, mempool chain and predicate constraints."""
        coins: list[InputCoin] = []
        for candidate in candidates:
            min_depth = policy.conf_mine if candidate.from_me else policy.conf_theirs
            if candidate.depth < min_depth:
                continue
            if (
                policy.max_ancestors is not None
                and self.mempool is not None
                and not self.mempool.chain_within_limit(
                    candidate.record.txid, policy.max_ancestors
                )
            ):
                continue
            if policy.coin_filter is not None and not policy.coin_filter(candidate):
                continue
            coins.append(candidate.input_coin())
        return coins

    def select_from_coins(self, coins: list[InputCoin], target: int) -> CoinSelection:
        """
        Core selection over already-filtered coins.

        Raises:
            InsufficientFunds: if the coins cannot cover target
        """
        coins = list(coins)
        self.rng.shuffle(coins)

        lowest_larger: InputCoin | None = None
        small: list[InputCoin] = []
        total_lower = 0

        for coin in coins:
            if coin.value == target:
                logger.debug(f"Exact match: {coin.outpoint} ({coin.value} sats)")
                return CoinSelection([coin], coin.value)
            if coin.value < target + self.min_change:
                small.append(coin)
                total_lower += coin.value
            elif lowest_larger is None or coin.value < lowest_larger.value:
                lowest_larger = coin

        if total_lower == target:
            return CoinSelection(small, total_lower)

        if total_lower < target:
            if lowest_larger is None:
                raise InsufficientFunds(target, total_lower)
            return CoinSelection([lowest_larger], lowest_larger.value)

        small.sort(key=lambda c: c.value, reverse=True)
        best, best_value = self._approximate_best_subset(small, total_lower, target)
        if best_value != target and total_lower >= target + self.min_change:
            best, best_value = self._approximate_best_subset(
                small, total_lower, target + self.min_change
            )

        # Prefer the single larger coin if the search found nothing that
        # leaves usable change, or if it is no bigger than the subset
        if lowest_larger is not None and (
            (best_value != target and best_value < target + self.min_change)
            or lowest_larger.value <= best_value
        ):
            return CoinSelection([lowest_larger], lowest_larger.value)

        chosen = [coin for coin, included in zip(small, best) if included]
        logger.debug(
            f"Subset search picked {len(chosen)} of {len(small)} coins: "
            f"{best_value} sats for target {target}"
        )
        return CoinSelection(chosen, best_value)

    def _approximate_best_subset(
        self, coins: list[InputCoin], total_lower: int, target: int
    ) -> tuple[list[bool], int]:
        """
        Stochastic subset-sum search over coins sorted by descending value.

        Each iteration first includes coins at random, then fills with the
        rest in order; whenever the running total reaches the target the
        subset is recorded if it beats the best so far, and the last coin is
        taken back out to keep looking for a tighter fit.
        """
        best = [True] * len(coins)
        best_value = total_lower

        for _ in range(self.iterations):
            if best_value == target:
                break
            included = [False] * len(coins)
            total = 0
            reached_target = False
            for pass_number in range(2):
                if reached_target:
                    break
                for i, coin in enumerate(coins):
                    take = self.rng.getrandbits(1) == 1 if pass_number == 0 else not included[i]
                    if not take:
                        continue
                    total += coin.value
                    included[i] = True
                    if total >= target:
                        reached_target = True
                        if total < best_value:
                            best_value = total
                            best = included.copy()
                        total -= coin.value
                        included[i] = False

        return best, best_value

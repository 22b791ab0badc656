"""
Fee rates and dust thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass

from walletcore.constants import WITNESS_SCALE_FACTOR
from walletcore.transaction import TxOut

OP_RETURN = 0x6A

# Size of an input spending the output, used to price the output's dust limit
_WITNESS_SPEND_SIZE = 32 + 4 + 1 + (107 // WITNESS_SCALE_FACTOR) + 4
_LEGACY_SPEND_SIZE = 32 + 4 + 1 + 107 + 4


@dataclass(frozen=True, order=True)
class FeeRate:
    """Fee rate in satoshis per 1000 virtual bytes."""

    sat_per_kvb: int

    @classmethod
    def from_sat_per_vbyte(cls, sat_per_vbyte: int | float) -> FeeRate:
        return cls(int(sat_per_vbyte * 1000))

    def get_fee(self, vsize: int) -> int:
        fee = self.sat_per_kvb * vsize // 1000
        if fee == 0 and vsize != 0 and self.sat_per_kvb > 0:
            fee = 1
        return fee

    def __str__(self) -> str:
        return f"{self.sat_per_kvb / 1000:.3f} sat/vB"


def is_witness_program(script: bytes) -> bool:
    if len(script) < 4 or len(script) > 42:
        return False
    if script[0] != 0x00 and not (0x51 <= script[0] <= 0x60):
        return False
    return script[1] + 2 == len(script)


def is_unspendable(script: bytes) -> bool:
    return len(script) > 0 and script[0] == OP_RETURN


def get_dust_threshold(txout: TxOut, dust_relay_fee: FeeRate) -> int:
    """
    Smallest value for which spending the output is worth more than the fee
    paid to spend it at the given rate.
    """
    if is_unspendable(txout.script_pubkey):
        return 0
    size = txout.serialized_size()
    if is_witness_program(txout.script_pubkey):
        size += _WITNESS_SPEND_SIZE
    else:
        size += _LEGACY_SPEND_SIZE
    return dust_relay_fee.get_fee(size)


def is_dust(txout: TxOut, dust_relay_fee: FeeRate) -> bool:
    return txout.value < get_dust_threshold(txout, dust_relay_fee)

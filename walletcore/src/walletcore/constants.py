"""
Bitcoin policy and wallet constants.

Amounts are in satoshis, fee rates in satoshis per 1000 virtual bytes.
"""

from __future__ import annotations

COIN = 100_000_000
CENT = 1_000_000

# Money range
MAX_MONEY = 21_000_000 * COIN

# Standard P2PKH dust limit at the default dust relay fee
STANDARD_DUST_LIMIT = 546  # satoshis

# Default dust relay fee rate (sat/kvB), used for recipient outputs
DEFAULT_DUST_RELAY_FEE = 3_000

# Default minimum relay fee rate (sat/kvB)
DEFAULT_MIN_RELAY_FEE = 1_000

# Default discard fee rate (sat/kvB); change below the dust threshold at this
# rate is dropped into the fee instead of creating an output
DEFAULT_DISCARD_FEE = 10_000

# Used when the fee oracle has no estimate for the confirm target
DEFAULT_FALLBACK_FEE = 20_000

DEFAULT_CONFIRM_TARGET = 6

# Coin selection: coins below target + MIN_CHANGE go to the subset-sum search
MIN_CHANGE = CENT

SUBSET_SUM_ITERATIONS = 1000

# Standardness ceiling for a transaction's weight
MAX_STANDARD_TX_WEIGHT = 400_000
WITNESS_SCALE_FACTOR = 4

# Mempool package limits
DEFAULT_ANCESTOR_LIMIT = 25
DEFAULT_DESCENDANT_LIMIT = 25

# Blocks a coinbase output must be buried before it can be spent
COINBASE_MATURITY = 100

# Smart timestamps tolerate clock skew up to this many seconds
SMART_TIME_TOLERANCE = 300

# Sequence numbers
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_NO_RBF = SEQUENCE_FINAL - 1
MAX_BIP125_RBF_SEQUENCE = 0xFFFFFFFD

# Locktimes below this are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000

# Anti fee sniping: backdate the locktime with probability 1/N by up to M blocks
LOCKTIME_BACKDATE_ODDS = 10
LOCKTIME_MAX_BACKDATE = 100

# Null prevout marking a coinbase input
NULL_TXID = "00" * 32
NULL_VOUT = 0xFFFFFFFF


def money_range(value: int) -> bool:
    """Check that an amount is within the valid money range"""
    return 0 <= value <= MAX_MONEY

"""
In-memory key pool for P2WPKH keys.

Implements both the key provider (change key reservation, ownership checks)
and the signer (BIP143 segwit v0 signatures via coincurve).
"""

from __future__ import annotations

import struct
import threading
from collections import deque
from collections.abc import Iterable

from coincurve import PrivateKey
from loguru import logger

from walletcore.destinations import WitnessV0KeyHash, hash160, script_for_destination
from walletcore.errors import SigningFailed
from walletcore.interfaces import InputSignature, KeyProvider, Signer
from walletcore.models import IsMine, KeyReservation
from walletcore.transaction import Transaction, TxOut, hash256, varint

SIGHASH_ALL = 1


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    if input_index >= len(tx.inputs):
        raise SigningFailed(input_index, "input index out of range")

    hash_prevouts = hash256(b"".join(inp.prevout.serialize() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.prevout.serialize()
        + varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


class KeyPool(KeyProvider, Signer):
    """
    Pool of private keys paying to P2WPKH scripts.

    Keys are handed out in order; a reserved key is not handed out again
    until it is returned. When the pool runs dry it is topped up with fresh
    random keys.
    """

    def __init__(
        self,
        private_keys: Iterable[PrivateKey] = (),
        watch_only: Iterable[bytes] = (),
    ):
        self._lock = threading.Lock()
        self._keys: list[PrivateKey] = []
        self._scripts: dict[bytes, int] = {}
        self._available: deque[int] = deque()
        self._reserved: set[int] = set()
        self._watch_only: set[bytes] = set(watch_only)

        for key in private_keys:
            self._available.append(self._add_key(key))

    def _add_key(self, key: PrivateKey) -> int:
        index = len(self._keys)
        self._keys.append(key)
        self._scripts[self.script_for_key(key)] = index
        return index

    @staticmethod
    def script_for_key(key: PrivateKey) -> bytes:
        pubkey = key.public_key.format(compressed=True)
        return script_for_destination(WitnessV0KeyHash(hash160(pubkey)))

    def _reservation(self, index: int) -> KeyReservation:
        key = self._keys[index]
        return KeyReservation(
            index=index,
            pubkey=key.public_key.format(compressed=True),
            script_pubkey=self.script_for_key(key),
        )

    def reserve_key(self) -> KeyReservation:
        with self._lock:
            if self._available:
                index = self._available.popleft()
            else:
                index = self._add_key(PrivateKey())
                logger.debug(f"Key pool topped up with key {index}")
            self._reserved.add(index)
            return self._reservation(index)

    def keep_key(self, key: KeyReservation) -> None:
        with self._lock:
            self._reserved.discard(key.index)

    def return_key(self, key: KeyReservation) -> None:
        with self._lock:
            if key.index in self._reserved:
                self._reserved.discard(key.index)
                self._available.appendleft(key.index)

    def get_new_script(self) -> bytes:
        """Reserve and keep a key, returning its receiving script."""
        key = self.reserve_key()
        self.keep_key(key)
        return key.script_pubkey

    def add_watch_only(self, script_pubkey: bytes) -> None:
        with self._lock:
            self._watch_only.add(script_pubkey)

    def ismine(self, script_pubkey: bytes) -> IsMine:
        if script_pubkey in self._scripts:
            return IsMine.SPENDABLE
        if script_pubkey in self._watch_only:
            return IsMine.WATCH_ONLY
        return IsMine.NO

    def available_count(self) -> int:
        return len(self._available)

    def sign_input(self, tx: Transaction, index: int, prevout: TxOut) -> InputSignature:
        key_index = self._scripts.get(prevout.script_pubkey)
        if key_index is None:
            raise SigningFailed(index, "no private key for output script")

        private_key = self._keys[key_index]
        pubkey = private_key.public_key.format(compressed=True)
        sighash = compute_sighash_segwit(
            tx, index, create_p2wpkh_script_code(pubkey), prevout.value, SIGHASH_ALL
        )
        # The sighash is already SHA256d; hasher=None skips hashing again
        signature = private_key.sign(sighash, hasher=None) + bytes([SIGHASH_ALL])
        return InputSignature(witness=[signature, pubkey])

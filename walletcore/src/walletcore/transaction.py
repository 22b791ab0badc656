"""
Transaction primitives and serialization.

Transactions are serialized in the BIP144 segwit format whenever any input
carries witness data, and in the legacy format otherwise.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from walletcore.constants import (
    LOCKTIME_THRESHOLD,
    NULL_TXID,
    NULL_VOUT,
    SEQUENCE_FINAL,
    WITNESS_SCALE_FACTOR,
)


class TransactionParseError(Exception):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint and return (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return struct.unpack("<H", data[offset : offset + 2])[0], offset + 2
    if first == 0xFE:
        return struct.unpack("<I", data[offset : offset + 4])[0], offset + 4
    return struct.unpack("<Q", data[offset : offset + 8])[0], offset + 8


@dataclass(frozen=True, order=True)
class Outpoint:
    """Reference to an output: (txid, vout). txid is in RPC (big-endian) hex."""

    txid: str
    vout: int

    def serialize(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def is_null(self) -> bool:
        return self.txid == NULL_TXID and self.vout == NULL_VOUT

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TxIn:
    prevout: Outpoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            self.prevout.serialize()
            + varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + varint(len(self.script_pubkey)) + self.script_pubkey

    def serialized_size(self) -> int:
        return 8 + len(varint(len(self.script_pubkey))) + len(self.script_pubkey)


@dataclass
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def is_coinbase(self) -> bool:
        return len(self.inputs) == 1 and self.inputs[0].prevout.is_null()

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness()

        result = struct.pack("<I", self.version)
        if with_witness:
            result += bytes([0x00, 0x01])

        result += varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += varint(len(inp.witness))
                for item in inp.witness:
                    result += varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in display order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    def weight(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        return base_size * (WITNESS_SCALE_FACTOR - 1) + total_size

    def vsize(self) -> int:
        return (self.weight() + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR

    def total_out(self) -> int:
        return sum(out.value for out in self.outputs)

    def hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.deserialize(bytes.fromhex(tx_hex))

    @classmethod
    def deserialize(cls, tx_bytes: bytes) -> Transaction:
        try:
            offset = 0
            version = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4

            has_witness = False
            if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
                has_witness = True
                offset += 2

            input_count, offset = read_varint(tx_bytes, offset)
            inputs: list[TxIn] = []
            for _ in range(input_count):
                txid = tx_bytes[offset : offset + 32][::-1].hex()
                offset += 32
                vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
                offset += 4
                script_len, offset = read_varint(tx_bytes, offset)
                script_sig = tx_bytes[offset : offset + script_len]
                offset += script_len
                sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
                offset += 4
                inputs.append(TxIn(Outpoint(txid, vout), script_sig, sequence))

            output_count, offset = read_varint(tx_bytes, offset)
            outputs: list[TxOut] = []
            for _ in range(output_count):
                value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
                offset += 8
                script_len, offset = read_varint(tx_bytes, offset)
                outputs.append(TxOut(value, tx_bytes[offset : offset + script_len]))
                offset += script_len

            if has_witness:
                for inp in inputs:
                    stack_count, offset = read_varint(tx_bytes, offset)
                    for _ in range(stack_count):
                        item_len, offset = read_varint(tx_bytes, offset)
                        inp.witness.append(tx_bytes[offset : offset + item_len])
                        offset += item_len

            locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4
            if offset != len(tx_bytes):
                raise TransactionParseError(f"{len(tx_bytes) - offset} trailing bytes")

        except (IndexError, struct.error) as e:
            raise TransactionParseError(f"Failed to parse transaction: {e}") from e

        return cls(inputs=inputs, outputs=outputs, version=version, locktime=locktime)


def is_final(tx: Transaction, block_height: int, block_time: int) -> bool:
    """
    Check whether a transaction may be included in a block at the given
    height and time.
    """
    if tx.locktime == 0:
        return True
    cutoff = block_height if tx.locktime < LOCKTIME_THRESHOLD else block_time
    if tx.locktime < cutoff:
        return True
    return all(inp.sequence == SEQUENCE_FINAL for inp in tx.inputs)

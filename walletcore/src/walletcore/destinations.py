"""
Output destinations.

A destination is one of a closed set of frozen dataclasses. Conversions
between destinations, scriptPubKeys and addresses dispatch on the concrete
type and raise on anything outside the set.

Supports:
- P2PKH (1..., m..., n...)
- P2SH (3..., 2...)
- P2WPKH (bc1q..., tb1q..., bcrt1q...)
- P2WSH (bc1q... 62 chars)
- P2TR (script only; bech32m address encoding is not supported)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Union

import base58
import bech32

from walletcore.config import NetworkType


@dataclass(frozen=True)
class PubKeyHash:
    hash160: bytes


@dataclass(frozen=True)
class ScriptHash:
    hash160: bytes


@dataclass(frozen=True)
class WitnessV0KeyHash:
    hash160: bytes


@dataclass(frozen=True)
class WitnessV0ScriptHash:
    sha256: bytes


@dataclass(frozen=True)
class WitnessV1Taproot:
    output_key: bytes


@dataclass(frozen=True)
class NonStandard:
    script: bytes


Destination = Union[
    PubKeyHash,
    ScriptHash,
    WitnessV0KeyHash,
    WitnessV0ScriptHash,
    WitnessV1Taproot,
    NonStandard,
]


def get_bech32_hrp(network: NetworkType) -> str:
    """Get bech32 human-readable part for network."""
    return {
        NetworkType.MAINNET: "bc",
        NetworkType.TESTNET: "tb",
        NetworkType.SIGNET: "tb",
        NetworkType.REGTEST: "bcrt",
    }[network]


def _base58_versions(network: NetworkType) -> tuple[int, int]:
    """(P2PKH version, P2SH version)"""
    if network == NetworkType.MAINNET:
        return 0x00, 0x05
    return 0x6F, 0xC4


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def script_for_destination(dest: Destination) -> bytes:
    if isinstance(dest, PubKeyHash):
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + dest.hash160 + bytes([0x88, 0xAC])
    if isinstance(dest, ScriptHash):
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + dest.hash160 + bytes([0x87])
    if isinstance(dest, WitnessV0KeyHash):
        # OP_0 <20-byte-pubkeyhash>
        return bytes([0x00, 0x14]) + dest.hash160
    if isinstance(dest, WitnessV0ScriptHash):
        # OP_0 <32-byte-scripthash>
        return bytes([0x00, 0x20]) + dest.sha256
    if isinstance(dest, WitnessV1Taproot):
        # OP_1 <32-byte-pubkey>
        return bytes([0x51, 0x20]) + dest.output_key
    if isinstance(dest, NonStandard):
        return dest.script
    raise TypeError(f"Unknown destination type: {type(dest).__name__}")


def destination_from_script(script: bytes) -> Destination:
    if len(script) == 25 and script[:3] == bytes([0x76, 0xA9, 0x14]) and script[23:] == bytes(
        [0x88, 0xAC]
    ):
        return PubKeyHash(script[3:23])
    if len(script) == 23 and script[:2] == bytes([0xA9, 0x14]) and script[22] == 0x87:
        return ScriptHash(script[2:22])
    if len(script) == 22 and script[:2] == bytes([0x00, 0x14]):
        return WitnessV0KeyHash(script[2:])
    if len(script) == 34 and script[:2] == bytes([0x00, 0x20]):
        return WitnessV0ScriptHash(script[2:])
    if len(script) == 34 and script[:2] == bytes([0x51, 0x20]):
        return WitnessV1Taproot(script[2:])
    return NonStandard(script)


def destination_from_address(address: str, network: NetworkType) -> Destination:
    hrp = get_bech32_hrp(network)
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        program = bytes(witprog)
        if witver == 0 and len(program) == 20:
            return WitnessV0KeyHash(program)
        if witver == 0 and len(program) == 32:
            return WitnessV0ScriptHash(program)
        raise ValueError(f"Unsupported witness version: {witver}")

    decoded = base58.b58decode_check(address)
    version, payload = decoded[0], decoded[1:]
    p2pkh_version, p2sh_version = _base58_versions(network)
    if len(payload) != 20:
        raise ValueError(f"Invalid base58 payload length: {len(payload)}")
    if version == p2pkh_version:
        return PubKeyHash(payload)
    if version == p2sh_version:
        return ScriptHash(payload)
    raise ValueError(f"Unknown address version: {version}")


def address_for_destination(dest: Destination, network: NetworkType) -> str:
    p2pkh_version, p2sh_version = _base58_versions(network)
    if isinstance(dest, PubKeyHash):
        return base58.b58encode_check(bytes([p2pkh_version]) + dest.hash160).decode()
    if isinstance(dest, ScriptHash):
        return base58.b58encode_check(bytes([p2sh_version]) + dest.hash160).decode()
    if isinstance(dest, (WitnessV0KeyHash, WitnessV0ScriptHash)):
        program = dest.hash160 if isinstance(dest, WitnessV0KeyHash) else dest.sha256
        result = bech32.encode(get_bech32_hrp(network), 0, program)
        if result is None:
            raise ValueError(f"Failed to encode witness v0 address: {program.hex()}")
        return result
    if isinstance(dest, (WitnessV1Taproot, NonStandard)):
        raise ValueError(f"No address encoding for {type(dest).__name__}")
    raise TypeError(f"Unknown destination type: {type(dest).__name__}")


def address_to_scriptpubkey(address: str, network: NetworkType) -> bytes:
    return script_for_destination(destination_from_address(address, network))


def scriptpubkey_to_address(script: bytes, network: NetworkType) -> str:
    return address_for_destination(destination_from_script(script), network)

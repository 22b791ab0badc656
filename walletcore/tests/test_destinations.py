"""
Tests for destinations and address conversion.
"""

from __future__ import annotations

import pytest

from walletcore.config import NetworkType
from walletcore.destinations import (
    NonStandard,
    PubKeyHash,
    ScriptHash,
    WitnessV0KeyHash,
    WitnessV0ScriptHash,
    WitnessV1Taproot,
    address_for_destination,
    address_to_scriptpubkey,
    destination_from_address,
    destination_from_script,
    get_bech32_hrp,
    script_for_destination,
    scriptpubkey_to_address,
)

# BIP-0173 test vector program
WITNESS_PROGRAM = bytes.fromhex("751e76e8199196d454941c45d1b3a323f1433bd6")


class TestAddressToScriptPubKey:
    """Tests for address to scriptPubKey conversion."""

    def test_p2wpkh_mainnet(self) -> None:
        """Known address from BIP-0173."""
        script = address_to_scriptpubkey(
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", NetworkType.MAINNET
        )
        assert script == bytes([0x00, 0x14]) + WITNESS_PROGRAM

    def test_p2wpkh_testnet(self) -> None:
        script = address_to_scriptpubkey(
            "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", NetworkType.TESTNET
        )
        assert script == bytes([0x00, 0x14]) + WITNESS_PROGRAM

    def test_p2wpkh_regtest(self) -> None:
        script = address_to_scriptpubkey(
            "bcrt1qw508d6qejxtdg4y5r3zarvary0c5xw7kygt080", NetworkType.REGTEST
        )
        assert script == bytes([0x00, 0x14]) + WITNESS_PROGRAM

    def test_p2wsh_mainnet(self) -> None:
        """62-character bech32 address."""
        dest = destination_from_address(
            "bc1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3qccfmv3", NetworkType.MAINNET
        )
        assert isinstance(dest, WitnessV0ScriptHash)
        assert len(script_for_destination(dest)) == 34

    def test_p2pkh_mainnet(self) -> None:
        script = address_to_scriptpubkey("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", NetworkType.MAINNET)
        assert script[:3] == bytes([0x76, 0xA9, 0x14])
        assert script[-2:] == bytes([0x88, 0xAC])
        assert len(script) == 25

    def test_p2sh_mainnet(self) -> None:
        dest = destination_from_address("3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy", NetworkType.MAINNET)
        assert isinstance(dest, ScriptHash)
        script = script_for_destination(dest)
        assert script[:2] == bytes([0xA9, 0x14])
        assert script[-1] == 0x87

    def test_mainnet_base58_on_testnet(self) -> None:
        """Version bytes are checked against the network."""
        with pytest.raises(ValueError, match="Unknown address version"):
            destination_from_address("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", NetworkType.TESTNET)

    def test_invalid_bech32(self) -> None:
        with pytest.raises(ValueError, match="Invalid bech32"):
            address_to_scriptpubkey("bc1invalid", NetworkType.MAINNET)

    def test_invalid_base58(self) -> None:
        with pytest.raises(ValueError):
            address_to_scriptpubkey("1InvalidAddress", NetworkType.MAINNET)


class TestScriptToAddress:
    """Tests for scriptPubKey to address conversion."""

    def test_p2wpkh(self) -> None:
        script = script_for_destination(WitnessV0KeyHash(WITNESS_PROGRAM))
        address = scriptpubkey_to_address(script, NetworkType.MAINNET)
        assert address == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"

    def test_p2pkh(self) -> None:
        address = "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"
        script = address_to_scriptpubkey(address, NetworkType.MAINNET)
        assert scriptpubkey_to_address(script, NetworkType.MAINNET) == address

    def test_taproot_has_no_address(self) -> None:
        """Taproot outputs are recognized but not encoded."""
        script = bytes([0x51, 0x20]) + bytes(32)
        assert destination_from_script(script) == WitnessV1Taproot(bytes(32))
        with pytest.raises(ValueError, match="No address encoding"):
            scriptpubkey_to_address(script, NetworkType.MAINNET)

    def test_nonstandard(self) -> None:
        script = b"\x6a\x04test"
        assert destination_from_script(script) == NonStandard(script)
        with pytest.raises(ValueError):
            scriptpubkey_to_address(script, NetworkType.MAINNET)


class TestDestinationFromScript:
    """Tests for script classification."""

    def test_classifies_standard_scripts(self) -> None:
        h20 = bytes(range(20))
        h32 = bytes(range(32))
        for dest in (
            PubKeyHash(h20),
            ScriptHash(h20),
            WitnessV0KeyHash(h20),
            WitnessV0ScriptHash(h32),
            WitnessV1Taproot(h32),
        ):
            assert destination_from_script(script_for_destination(dest)) == dest

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(TypeError, match="Unknown destination type"):
            script_for_destination("not a destination")  # type: ignore[arg-type]


def test_bech32_hrp() -> None:
    assert get_bech32_hrp(NetworkType.MAINNET) == "bc"
    assert get_bech32_hrp(NetworkType.SIGNET) == "tb"
    assert get_bech32_hrp(NetworkType.REGTEST) == "bcrt"

"""
Bitcoin address encoding and decoding.

Supports:
- P2WPKH / P2WSH (bech32, witness version 0)
- P2PKH / P2SH (base58check)
"""

from __future__ import annotations

import base58
import bech32

from desccore.models import NetworkType
from desccore.script import p2pkh_script, p2sh_script

BECH32_HRP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
    NetworkType.SIGNET: 0x6F,
    NetworkType.REGTEST: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
    NetworkType.SIGNET: 0xC4,
    NetworkType.REGTEST: 0xC4,
}


def _networks_for_hrp(hrp: str) -> list[NetworkType]:
    return [net for net, net_hrp in BECH32_HRP.items() if net_hrp == hrp]


def address_to_scriptpubkey(address: str, network: NetworkType | str | None = None) -> bytes:
    """
    Convert a Bitcoin address to its scriptPubKey.

    Args:
        address: Address string
        network: When given, the address must belong to this network

    Raises:
        ValueError: On malformed addresses or a network mismatch
    """
    expected = NetworkType(network) if network is not None else None
    lowered = address.lower()

    if "1" in lowered and lowered.rsplit("1", 1)[0] in set(BECH32_HRP.values()):
        hrp = lowered.rsplit("1", 1)[0]
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        if expected is not None and expected not in _networks_for_hrp(hrp):
            raise ValueError(f"Address {address} is not valid on {expected.value}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            # OP_0 <20-byte-pubkeyhash> or OP_0 <32-byte-scripthash>
            return bytes([0x00, len(program)]) + program
        raise ValueError(f"Unsupported witness version {witver} in {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e
    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {address}")

    version = decoded[0]
    payload = decoded[1:]

    if version in set(P2PKH_VERSION.values()):
        networks = [net for net, v in P2PKH_VERSION.items() if v == version]
        script = p2pkh_script(payload)
    elif version in set(P2SH_VERSION.values()):
        networks = [net for net, v in P2SH_VERSION.items() if v == version]
        script = p2sh_script(payload)
    else:
        raise ValueError(f"Unknown address version: {version}")

    if expected is not None and expected not in networks:
        raise ValueError(f"Address {address} is not valid on {expected.value}")
    return script


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str) -> str:
    """Convert a scriptPubKey to an address on the given network."""
    net = NetworkType(network)

    # P2WPKH / P2WSH
    if (
        len(scriptpubkey) in (22, 34)
        and scriptpubkey[0] == 0x00
        and scriptpubkey[1] == len(scriptpubkey) - 2
    ):
        result = bech32.encode(BECH32_HRP[net], 0, scriptpubkey[2:])
        if result is None:
            raise ValueError(f"Failed to encode witness address: {scriptpubkey.hex()}")
        return result

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        return base58.b58encode_check(bytes([P2PKH_VERSION[net]]) + scriptpubkey[3:23]).decode()

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == bytes([0xA9, 0x14]) and scriptpubkey[22] == 0x87:
        return base58.b58encode_check(bytes([P2SH_VERSION[net]]) + scriptpubkey[2:22]).decode()

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")

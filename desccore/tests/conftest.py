"""
Shared fixtures for desccore tests.
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey

from desccore.keys import HDKey
from desccore.models import Keychain, NetworkType, Utxo

BIP32_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


def make_utxo(
    value: int,
    height: int | None = 100,
    txid_byte: int = 1,
    vout: int = 0,
    satisfaction_weight: int = 258,
    script_pubkey: bytes = b"\x00\x20" + bytes(32),
    spendable: bool = True,
    keychain: Keychain = Keychain.EXTERNAL,
    derivation_index: int = 0,
) -> Utxo:
    return Utxo(
        txid=f"{txid_byte:02x}" * 32,
        vout=vout,
        value=value,
        script_pubkey=script_pubkey,
        keychain=keychain,
        derivation_index=derivation_index,
        satisfaction_weight=satisfaction_weight,
        height=height,
        spendable=spendable,
    )


@pytest.fixture
def utxo_factory():
    return make_utxo


@pytest.fixture
def private_keys() -> list[PrivateKey]:
    return [PrivateKey((i + 1).to_bytes(32, "big")) for i in range(3)]


@pytest.fixture
def pubkeys_hex(private_keys) -> list[str]:
    return [k.public_key.format(compressed=True).hex() for k in private_keys]


@pytest.fixture
def master_key() -> HDKey:
    return HDKey.from_seed(BIP32_SEED, NetworkType.TESTNET)


@pytest.fixture
def account_keys(master_key) -> list[str]:
    """Three tprv account keys with origins and a receive wildcard."""
    keys = []
    for account in range(3):
        path = f"m/84'/1'/{account}'"
        xprv = master_key.derive(path).to_string(private=True)
        keys.append(f"[{master_key.fingerprint.hex()}/84'/1'/{account}']{xprv}/0/*")
    return keys

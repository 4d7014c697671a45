"""
Shared fixtures for descwallet tests.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from desccore.descriptor import Descriptor
from desccore.keys import HDKey
from desccore.models import NetworkType
from descwallet.backends.base import BlockchainBackend
from descwallet.wallet.store import WalletStore

SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


@pytest.fixture
def account_key() -> str:
    """tprv account key with origin, without the keychain suffix."""
    master = HDKey.from_seed(SEED, NetworkType.REGTEST)
    account = master.derive("m/84'/1'/0'")
    return f"[{master.fingerprint.hex()}/84'/1'/0']{account.to_string(private=True)}"


@pytest.fixture
def descriptor(account_key) -> Descriptor:
    return Descriptor.parse(f"wpkh({account_key}/0/*)", NetworkType.REGTEST)


@pytest.fixture
def change_descriptor(account_key) -> Descriptor:
    return Descriptor.parse(f"wpkh({account_key}/1/*)", NetworkType.REGTEST)


@pytest.fixture
def store(tmp_path) -> WalletStore:
    return WalletStore(tmp_path, "test")


@pytest.fixture
def backend() -> AsyncMock:
    """Backend mock that reports an empty chain at height 110."""
    mock = AsyncMock(spec=BlockchainBackend)
    mock.get_tip_height.return_value = 110
    mock.get_script_histories.side_effect = lambda scripts: {s: [] for s in scripts}
    mock.get_utxos.side_effect = lambda scripts: {s: [] for s in scripts}
    return mock

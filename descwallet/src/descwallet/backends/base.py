"""
Base blockchain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from desccore.script import sha256


class BackendError(Exception):
    """Chain backend request failed"""


@dataclass
class HistoryItem:
    txid: str
    height: int | None = None  # None while unconfirmed


@dataclass
class ScriptUtxo:
    txid: str
    vout: int
    value: int
    height: int | None = None  # None while unconfirmed


def script_hash(script_pubkey: bytes) -> str:
    """Electrum-style script hash: reversed SHA256 of the scriptPubKey, hex encoded."""
    return sha256(script_pubkey)[::-1].hex()


class BlockchainBackend(ABC):
    """
    Abstract blockchain backend interface.
    Implementations look up chain data by scriptPubKey and never hold keys.
    """

    @abstractmethod
    async def get_tip_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def get_script_histories(self, scripts: list[bytes]) -> dict[bytes, list[HistoryItem]]:
        """Get the transaction history of every script"""

    @abstractmethod
    async def get_utxos(self, scripts: list[bytes]) -> dict[bytes, list[ScriptUtxo]]:
        """Get the unspent outputs paying to every script"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    async def close(self) -> None:
        """Close backend connection"""
        pass

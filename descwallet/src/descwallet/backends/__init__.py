"""
Blockchain backend implementations.

Available backends:
- ElectrumBackend: Electrum server over TCP or TLS
- EsploraBackend: Esplora REST API (Blockstream, mempool.space or self-hosted)
"""

from descwallet.backends.base import (
    BackendError,
    BlockchainBackend,
    HistoryItem,
    ScriptUtxo,
    script_hash,
)
from descwallet.backends.electrum import ElectrumBackend
from descwallet.backends.esplora import EsploraBackend

__all__ = [
    "BackendError",
    "BlockchainBackend",
    "ElectrumBackend",
    "EsploraBackend",
    "HistoryItem",
    "ScriptUtxo",
    "script_hash",
]

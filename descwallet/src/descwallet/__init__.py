"""
descwallet - Command-line descriptor wallet

Wallet state, chain backends, the wallet service and the typer CLI/REPL
built on top of desccore.
"""

__version__ = "0.1.0"

from descwallet.config import Settings, WalletOptions, get_settings
from descwallet.errors import NoSnapshotError, StoreError, WalletError
from descwallet.wallet.service import WalletService

__all__ = [
    "NoSnapshotError",
    "Settings",
    "StoreError",
    "WalletError",
    "WalletOptions",
    "WalletService",
    "get_settings",
]

"""
Wallet-level exceptions.
"""


class WalletError(Exception):
    """Wallet operation failed"""


class StoreError(WalletError):
    """Wallet state file is unreadable or belongs to other descriptors"""


class NoSnapshotError(WalletError):
    """No valid UTXO snapshot; the wallet must be synced first"""

    def __init__(self, message: str = "no snapshot available"):
        super().__init__(message)

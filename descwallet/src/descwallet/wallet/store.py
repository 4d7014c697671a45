"""
JSON file wallet state store, one file per wallet name.
"""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from descwallet.errors import StoreError
from descwallet.wallet.models import WalletState


class WalletStore:
    def __init__(self, data_dir: Path, name: str):
        self.data_dir = Path(data_dir).expanduser()
        self.name = name

    @property
    def path(self) -> Path:
        return self.data_dir / f"{self.name}.json"

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> WalletState | None:
        if not self.path.exists():
            return None
        try:
            return WalletState.model_validate_json(self.path.read_text())
        except (OSError, ValidationError) as e:
            raise StoreError(f"Cannot read wallet state {self.path}: {e}") from e

    def load(
        self,
        network: str,
        descriptor_checksum: str,
        change_descriptor_checksum: str | None = None,
    ) -> WalletState:
        """
        Load the state of this wallet, creating it on first use.

        Raises:
            StoreError: The stored wallet was created for other descriptors or
                another network
        """
        state = self.read()
        if state is None:
            logger.info(f"Creating wallet '{self.name}' in {self.data_dir}")
            state = WalletState(
                network=network,
                descriptor_checksum=descriptor_checksum,
                change_descriptor_checksum=change_descriptor_checksum,
            )
            self.save(state)
            return state

        if state.network != network:
            raise StoreError(
                f"Wallet '{self.name}' belongs to {state.network}, not {network}"
            )
        if (
            state.descriptor_checksum != descriptor_checksum
            or state.change_descriptor_checksum != change_descriptor_checksum
        ):
            raise StoreError(f"Wallet '{self.name}' was created with different descriptors")
        return state

    def save(self, state: WalletState) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(state.model_dump_json(indent=2))
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

"""
Persistent wallet state models.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from desccore.models import Keychain, Utxo


class ScriptEntry(BaseModel):
    keychain: Keychain
    index: int = Field(..., ge=0)


class StoredUtxo(BaseModel):
    txid: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    script_pubkey: str  # hex
    keychain: Keychain
    derivation_index: int = Field(..., ge=0)
    height: int | None = None

    def to_utxo(self, satisfaction_weight: int) -> Utxo:
        return Utxo(
            txid=self.txid,
            vout=self.vout,
            value=self.value,
            script_pubkey=bytes.fromhex(self.script_pubkey),
            keychain=self.keychain,
            derivation_index=self.derivation_index,
            satisfaction_weight=satisfaction_weight,
            height=self.height,
        )


class WalletState(BaseModel):
    """Everything the wallet remembers between commands."""

    network: str
    descriptor_checksum: str
    change_descriptor_checksum: str | None = None

    # Highest index handed out per keychain, -1 when none yet
    last_revealed: dict[Keychain, int] = Field(
        default_factory=lambda: {Keychain.EXTERNAL: -1, Keychain.INTERNAL: -1}
    )
    # scriptPubKey hex -> where it was derived
    scripts: dict[str, ScriptEntry] = Field(default_factory=dict)

    utxos: list[StoredUtxo] = Field(default_factory=list)
    tip_height: int | None = None
    snapshot_valid: bool = False

    def revealed(self, keychain: Keychain) -> int:
        return self.last_revealed.get(keychain, -1)

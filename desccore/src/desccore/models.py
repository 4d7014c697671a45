"""
Data models for the transaction construction pipeline.

All amounts are integer satoshis and all weights integer weight units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class Keychain(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


class SelectionAlgorithm(str, Enum):
    LARGEST_FIRST = "largest-first"
    OLDEST_FIRST = "oldest-first"


@dataclass(frozen=True)
class OutPoint:
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        """Parse "txid:vout"."""
        txid, sep, vout = value.rpartition(":")
        if not sep or len(txid) != 64:
            raise ValueError(f"Invalid outpoint: {value}")
        try:
            bytes.fromhex(txid)
            index = int(vout)
        except ValueError as e:
            raise ValueError(f"Invalid outpoint: {value}") from e
        if index < 0:
            raise ValueError(f"Invalid outpoint: {value}")
        return cls(txid.lower(), index)


@dataclass(frozen=True)
class Utxo:
    """Unspent output owned by the wallet, as seen in a snapshot"""

    txid: str
    vout: int
    value: int
    script_pubkey: bytes
    keychain: Keychain
    derivation_index: int
    # Weight units the input adds on top of the bare outpoint + sequence
    satisfaction_weight: int
    height: int | None = None  # None while unconfirmed
    spendable: bool = True

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)

    @property
    def is_confirmed(self) -> bool:
        return self.height is not None

    def confirmations(self, tip_height: int) -> int:
        if self.height is None:
            return 0
        return max(tip_height - self.height + 1, 0)


@dataclass(frozen=True)
class UtxoSnapshot:
    """Point-in-time view of the wallet's UTXO set."""

    utxos: tuple[Utxo, ...]
    tip_height: int

    @property
    def balance(self) -> int:
        return sum(u.value for u in self.utxos)

    @property
    def confirmed_balance(self) -> int:
        return sum(u.value for u in self.utxos if u.is_confirmed)


@dataclass(frozen=True)
class Recipient:
    script_pubkey: bytes
    amount: int


@dataclass(frozen=True)
class ChangeSlot:
    """A fresh internal address the balancer may pay change to."""

    script_pubkey: bytes
    keychain: Keychain
    derivation_index: int


@dataclass(frozen=True)
class ChangeOutput:
    script_pubkey: bytes
    amount: int
    keychain: Keychain
    derivation_index: int


@dataclass(frozen=True)
class SelectionRequest:
    target: int
    fee_rate: int  # sat/vB
    # Weight of the transaction without any inputs (overhead + outputs)
    base_weight: int
    must_use: tuple[OutPoint, ...] = ()
    must_not_use: tuple[OutPoint, ...] = ()
    algorithm: SelectionAlgorithm = SelectionAlgorithm.LARGEST_FIRST
    drain: bool = False
    # Height-based relative lock every input must have matured past
    relative_lock: int | None = None
    tip_height: int | None = None


@dataclass(frozen=True)
class SelectionResult:
    utxos: tuple[Utxo, ...]
    total_value: int
    estimated_weight: int
    fee: int

    @property
    def outpoints(self) -> tuple[OutPoint, ...]:
        return tuple(u.outpoint for u in self.utxos)


@dataclass(frozen=True)
class TxPlan:
    recipients: tuple[Recipient, ...]
    change: ChangeOutput | None
    fee: int
    inputs_total: int
    outputs_total: int = field(init=False)

    def __post_init__(self) -> None:
        total = sum(r.amount for r in self.recipients)
        if self.change is not None:
            total += self.change.amount
        object.__setattr__(self, "outputs_total", total)

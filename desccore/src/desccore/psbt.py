"""
BIP174 Partially Signed Bitcoin Transactions (version 0).

Binary layout:

    "psbt" 0xff
    <global map> 0x00
    <input map> 0x00   (one per transaction input)
    <output map> 0x00  (one per transaction output)

Each map entry is <compact size key length><key type><key data>
<compact size value length><value>. Entries are written ordered by
(key type, key data); records this module does not interpret are kept
verbatim and written back unchanged.
"""

from __future__ import annotations

import base64
import binascii
import copy
import struct
from dataclasses import dataclass, field
from enum import Enum

from desccore.errors import PSBTError
from desccore.tx import Transaction, TxIn, TxOut, read_varint, varint

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02


class PSBTState(str, Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially-signed"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class KeyOriginInfo:
    fingerprint: bytes
    path: tuple[int, ...]

    def serialize(self) -> bytes:
        return self.fingerprint + b"".join(struct.pack("<I", i) for i in self.path)

    @classmethod
    def parse(cls, data: bytes) -> KeyOriginInfo:
        if len(data) < 4 or len(data) % 4:
            raise PSBTError(f"Invalid BIP32 derivation value of {len(data)} bytes")
        path = tuple(struct.unpack("<I", data[i : i + 4])[0] for i in range(4, len(data), 4))
        return cls(data[:4], path)


def _serialize_witness(items: list[bytes]) -> bytes:
    return varint(len(items)) + b"".join(varint(len(item)) + item for item in items)


def _parse_witness(data: bytes) -> list[bytes]:
    count, offset = read_varint(data, 0)
    items = []
    for _ in range(count):
        length, offset = read_varint(data, offset)
        if offset + length > len(data):
            raise PSBTError("Truncated witness stack")
        items.append(data[offset : offset + length])
        offset += length
    if offset != len(data):
        raise PSBTError("Trailing data after witness stack")
    return items


@dataclass
class PSBTInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOriginInfo] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[tuple[int, bytes], bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def records(self) -> list[tuple[int, bytes, bytes]]:
        records = []
        if self.non_witness_utxo is not None:
            records.append((PSBT_IN_NON_WITNESS_UTXO, b"", self.non_witness_utxo))
        if self.witness_utxo is not None:
            records.append((PSBT_IN_WITNESS_UTXO, b"", self.witness_utxo.serialize()))
        for pubkey, sig in self.partial_sigs.items():
            records.append((PSBT_IN_PARTIAL_SIG, pubkey, sig))
        if self.sighash_type is not None:
            records.append((PSBT_IN_SIGHASH_TYPE, b"", struct.pack("<I", self.sighash_type)))
        if self.redeem_script is not None:
            records.append((PSBT_IN_REDEEM_SCRIPT, b"", self.redeem_script))
        if self.witness_script is not None:
            records.append((PSBT_IN_WITNESS_SCRIPT, b"", self.witness_script))
        for pubkey, origin in self.bip32_derivations.items():
            records.append((PSBT_IN_BIP32_DERIVATION, pubkey, origin.serialize()))
        if self.final_script_sig is not None:
            records.append((PSBT_IN_FINAL_SCRIPTSIG, b"", self.final_script_sig))
        if self.final_script_witness is not None:
            records.append(
                (PSBT_IN_FINAL_SCRIPTWITNESS, b"", _serialize_witness(self.final_script_witness))
            )
        records.extend((t, k, v) for (t, k), v in self.unknown.items())
        return records

    def set_record(self, key_type: int, key_data: bytes, value: bytes) -> None:
        if key_type == PSBT_IN_NON_WITNESS_UTXO:
            _expect_empty_key(key_type, key_data)
            self.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO:
            _expect_empty_key(key_type, key_data)
            self.witness_utxo = _parse_txout(value)
        elif key_type == PSBT_IN_PARTIAL_SIG:
            _expect_pubkey(key_type, key_data)
            self.partial_sigs[key_data] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE:
            _expect_empty_key(key_type, key_data)
            if len(value) != 4:
                raise PSBTError("Sighash type must be 4 bytes")
            self.sighash_type = struct.unpack("<I", value)[0]
        elif key_type == PSBT_IN_REDEEM_SCRIPT:
            _expect_empty_key(key_type, key_data)
            self.redeem_script = value
        elif key_type == PSBT_IN_WITNESS_SCRIPT:
            _expect_empty_key(key_type, key_data)
            self.witness_script = value
        elif key_type == PSBT_IN_BIP32_DERIVATION:
            _expect_pubkey(key_type, key_data)
            self.bip32_derivations[key_data] = KeyOriginInfo.parse(value)
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
            _expect_empty_key(key_type, key_data)
            self.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            _expect_empty_key(key_type, key_data)
            self.final_script_witness = _parse_witness(value)
        else:
            self.unknown[(key_type, key_data)] = value

    def clear_signing_data(self) -> None:
        """Drop everything but the UTXO and final fields once finalized."""
        self.partial_sigs.clear()
        self.sighash_type = None
        self.redeem_script = None
        self.witness_script = None
        self.bip32_derivations.clear()

    def merge(self, other: PSBTInput) -> None:
        self.non_witness_utxo = self.non_witness_utxo or other.non_witness_utxo
        self.witness_utxo = self.witness_utxo or other.witness_utxo
        self.partial_sigs.update(other.partial_sigs)
        if self.sighash_type is None:
            self.sighash_type = other.sighash_type
        self.redeem_script = self.redeem_script or other.redeem_script
        self.witness_script = self.witness_script or other.witness_script
        self.bip32_derivations.update(other.bip32_derivations)
        if self.final_script_sig is None:
            self.final_script_sig = other.final_script_sig
        if self.final_script_witness is None:
            self.final_script_witness = other.final_script_witness
        for key, value in other.unknown.items():
            self.unknown.setdefault(key, value)


@dataclass
class PSBTOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOriginInfo] = field(default_factory=dict)
    unknown: dict[tuple[int, bytes], bytes] = field(default_factory=dict)

    def records(self) -> list[tuple[int, bytes, bytes]]:
        records = []
        if self.redeem_script is not None:
            records.append((PSBT_OUT_REDEEM_SCRIPT, b"", self.redeem_script))
        if self.witness_script is not None:
            records.append((PSBT_OUT_WITNESS_SCRIPT, b"", self.witness_script))
        for pubkey, origin in self.bip32_derivations.items():
            records.append((PSBT_OUT_BIP32_DERIVATION, pubkey, origin.serialize()))
        records.extend((t, k, v) for (t, k), v in self.unknown.items())
        return records

    def set_record(self, key_type: int, key_data: bytes, value: bytes) -> None:
        if key_type == PSBT_OUT_REDEEM_SCRIPT:
            _expect_empty_key(key_type, key_data)
            self.redeem_script = value
        elif key_type == PSBT_OUT_WITNESS_SCRIPT:
            _expect_empty_key(key_type, key_data)
            self.witness_script = value
        elif key_type == PSBT_OUT_BIP32_DERIVATION:
            _expect_pubkey(key_type, key_data)
            self.bip32_derivations[key_data] = KeyOriginInfo.parse(value)
        else:
            self.unknown[(key_type, key_data)] = value

    def merge(self, other: PSBTOutput) -> None:
        self.redeem_script = self.redeem_script or other.redeem_script
        self.witness_script = self.witness_script or other.witness_script
        self.bip32_derivations.update(other.bip32_derivations)
        for key, value in other.unknown.items():
            self.unknown.setdefault(key, value)


def _expect_empty_key(key_type: int, key_data: bytes) -> None:
    if key_data:
        raise PSBTError(f"Record type {key_type:#x} must not carry key data")


def _expect_pubkey(key_type: int, key_data: bytes) -> None:
    if len(key_data) not in (33, 65):
        raise PSBTError(f"Record type {key_type:#x} needs a public key, got {len(key_data)} bytes")


def _parse_txout(value: bytes) -> TxOut:
    if len(value) < 9:
        raise PSBTError("Truncated witness UTXO")
    amount = struct.unpack("<Q", value[:8])[0]
    script_len, offset = read_varint(value, 8)
    if offset + script_len != len(value):
        raise PSBTError("Malformed witness UTXO")
    return TxOut(amount, value[offset:])


class PSBT:
    """A version 0 PSBT: an unsigned transaction plus per-input and per-output maps."""

    def __init__(
        self,
        tx: Transaction,
        inputs: list[PSBTInput] | None = None,
        outputs: list[PSBTOutput] | None = None,
        unknown: dict[tuple[int, bytes], bytes] | None = None,
    ):
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise PSBTError("Unsigned transaction must have empty scriptSigs and witnesses")
        self.tx = tx
        self.inputs = inputs if inputs is not None else [PSBTInput() for _ in tx.inputs]
        self.outputs = outputs if outputs is not None else [PSBTOutput() for _ in tx.outputs]
        self.unknown = unknown or {}
        if len(self.inputs) != len(tx.inputs) or len(self.outputs) != len(tx.outputs):
            raise PSBTError("PSBT maps do not match the transaction's inputs and outputs")

    # -- state ----------------------------------------------------------------

    @property
    def state(self) -> PSBTState:
        if self.inputs and all(inp.is_finalized for inp in self.inputs):
            return PSBTState.FINALIZED
        if any(inp.partial_sigs or inp.is_finalized for inp in self.inputs):
            return PSBTState.PARTIALLY_SIGNED
        return PSBTState.UNSIGNED

    @property
    def is_finalized(self) -> bool:
        return self.state == PSBTState.FINALIZED

    @property
    def txid(self) -> str:
        return self.tx.txid

    def input_value(self) -> int | None:
        """Sum of the spent outputs, or None when a witness UTXO is missing."""
        if any(inp.witness_utxo is None for inp in self.inputs):
            return None
        return sum(inp.witness_utxo.value for inp in self.inputs)

    def fee(self) -> int | None:
        total = self.input_value()
        if total is None:
            return None
        return total - sum(out.value for out in self.tx.outputs)

    # -- serialization --------------------------------------------------------

    def serialize(self) -> bytes:
        result = bytearray(PSBT_MAGIC)
        global_records = [(PSBT_GLOBAL_UNSIGNED_TX, b"", self.tx.serialize(include_witness=False))]
        global_records.extend((t, k, v) for (t, k), v in self.unknown.items())
        result += _serialize_map(global_records)
        for inp in self.inputs:
            result += _serialize_map(inp.records())
        for out in self.outputs:
            result += _serialize_map(out.records())
        return bytes(result)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode()

    def __str__(self) -> str:
        return self.to_base64()

    @classmethod
    def parse(cls, data: bytes) -> PSBT:
        """
        Parse a binary PSBT.

        Raises:
            PSBTError: On malformed data, duplicate keys or an unsupported version
        """
        if not data.startswith(PSBT_MAGIC):
            raise PSBTError("Missing PSBT magic bytes")
        try:
            return cls._parse(data)
        except (IndexError, struct.error) as e:
            raise PSBTError(f"Truncated PSBT: {e}") from e
        except ValueError as e:
            raise PSBTError(f"Malformed PSBT: {e}") from e

    @classmethod
    def _parse(cls, data: bytes) -> PSBT:
        offset = len(PSBT_MAGIC)
        global_map, offset = _parse_map(data, offset)

        tx = None
        unknown = {}
        for (key_type, key_data), value in global_map.items():
            if key_type == PSBT_GLOBAL_UNSIGNED_TX:
                _expect_empty_key(key_type, key_data)
                tx = Transaction.parse(value)
            else:
                if key_type == PSBT_GLOBAL_VERSION and value != b"\x00\x00\x00\x00":
                    raise PSBTError(f"Unsupported PSBT version {value.hex()}")
                unknown[(key_type, key_data)] = value
        if tx is None:
            raise PSBTError("PSBT has no unsigned transaction")

        inputs = []
        for _ in tx.inputs:
            records, offset = _parse_map(data, offset)
            inp = PSBTInput()
            for (key_type, key_data), value in records.items():
                inp.set_record(key_type, key_data, value)
            inputs.append(inp)

        outputs = []
        for _ in tx.outputs:
            records, offset = _parse_map(data, offset)
            out = PSBTOutput()
            for (key_type, key_data), value in records.items():
                out.set_record(key_type, key_data, value)
            outputs.append(out)

        if offset != len(data):
            raise PSBTError(f"Trailing data after PSBT ({len(data) - offset} bytes)")
        return cls(tx, inputs, outputs, unknown)

    @classmethod
    def from_base64(cls, text: str) -> PSBT:
        try:
            data = base64.b64decode(text.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PSBTError(f"Invalid base64 PSBT: {e}") from e
        return cls.parse(data)

    def copy(self) -> PSBT:
        return copy.deepcopy(self)

    # -- combine / extract ----------------------------------------------------

    def combine(self, other: PSBT) -> PSBT:
        """Merge the metadata and signatures of `other` into a copy of this PSBT."""
        if self.tx.serialize(include_witness=False) != other.tx.serialize(include_witness=False):
            raise PSBTError("Cannot combine PSBTs for different transactions")
        result = self.copy()
        for mine, theirs in zip(result.inputs, other.inputs):
            mine.merge(theirs)
        for mine, theirs in zip(result.outputs, other.outputs):
            mine.merge(theirs)
        for key, value in other.unknown.items():
            result.unknown.setdefault(key, value)
        return result

    def extract_transaction(self) -> Transaction:
        """
        Build the network-ready transaction.

        Raises:
            PSBTError: When any input is not finalized
        """
        if not self.is_finalized:
            raise PSBTError("PSBT is not finalized")
        inputs = [
            TxIn(
                txid=txin.txid,
                vout=txin.vout,
                sequence=txin.sequence,
                script_sig=meta.final_script_sig or b"",
                witness=list(meta.final_script_witness or []),
            )
            for txin, meta in zip(self.tx.inputs, self.inputs)
        ]
        outputs = [TxOut(out.value, out.script_pubkey) for out in self.tx.outputs]
        return Transaction(inputs, outputs, version=self.tx.version, locktime=self.tx.locktime)


def combine_psbts(psbts: list[PSBT]) -> PSBT:
    if not psbts:
        raise PSBTError("Nothing to combine")
    result = psbts[0]
    for other in psbts[1:]:
        result = result.combine(other)
    if len(psbts) == 1:
        result = result.copy()
    return result


def _serialize_map(records: list[tuple[int, bytes, bytes]]) -> bytes:
    result = bytearray()
    for key_type, key_data, value in sorted(records, key=lambda r: (r[0], r[1])):
        key = varint(key_type) + key_data
        result += varint(len(key)) + key + varint(len(value)) + value
    result += b"\x00"
    return bytes(result)


def _parse_map(data: bytes, offset: int) -> tuple[dict[tuple[int, bytes], bytes], int]:
    records: dict[tuple[int, bytes], bytes] = {}
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return records, offset
        key = data[offset : offset + key_len]
        if len(key) != key_len:
            raise PSBTError("Truncated PSBT key")
        offset += key_len
        key_type, type_len = read_varint(key, 0)
        key_data = key[type_len:]

        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        if len(value) != value_len:
            raise PSBTError("Truncated PSBT value")
        offset += value_len

        if (key_type, key_data) in records:
            raise PSBTError(f"Duplicate key of type {key_type:#x} in PSBT map")
        records[(key_type, key_data)] = value

"""
Transaction serialization and weight estimation.

Transactions are serialized in the legacy format when no input carries
witness data (as required inside a PSBT) and in the BIP144 segwit format
otherwise.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from desccore.constants import (
    SEGWIT_MARKER_WEIGHT,
    SEQUENCE_RBF,
    TX_FIXED_SIZE,
    TX_VERSION,
    TXIN_BASE_SIZE,
    WITNESS_SCALE_FACTOR,
)
from desccore.script import hash256


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint and return (value, new_offset)."""
    if offset >= len(data):
        raise ValueError("Unexpected end of data reading varint")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + size > len(data):
        raise ValueError("Unexpected end of data reading varint")
    return int.from_bytes(data[offset + 1 : offset + 1 + size], "little"), offset + 1 + size


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is in RPC format (big-endian), need to reverse for raw tx
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


@dataclass
class TxIn:
    txid: str
    vout: int
    sequence: int = SEQUENCE_RBF
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            serialize_outpoint(self.txid, self.vout)
            + varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + varint(len(self.script_pubkey)) + self.script_pubkey


@dataclass
class Transaction:
    inputs: list[TxIn]
    outputs: list[TxOut]
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        result = struct.pack("<I", self.version)
        if segwit:
            result += bytes([0x00, 0x01])  # SegWit marker and flag

        result += varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += varint(len(inp.witness))
                for item in inp.witness:
                    result += varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in RPC byte order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * (WITNESS_SCALE_FACTOR - 1) + total

    @property
    def vsize(self) -> int:
        return weight_to_vsize(self.weight)

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        """Parse a transaction in legacy or segwit serialization."""
        try:
            tx, offset = cls._parse(data)
        except (IndexError, KeyError, struct.error) as e:
            raise ValueError(f"Failed to parse transaction: {e}") from e
        if offset != len(data):
            raise ValueError(f"Trailing data after transaction ({len(data) - offset} bytes)")
        return tx

    @classmethod
    def _parse(cls, data: bytes) -> tuple[Transaction, int]:
        offset = 0
        version = struct.unpack("<I", data[offset : offset + 4])[0]
        offset += 4

        # Check for SegWit marker
        segwit = data[offset] == 0x00 and data[offset + 1] == 0x01
        if segwit:
            offset += 2

        input_count, offset = read_varint(data, offset)
        inputs = []
        for _ in range(input_count):
            txid = data[offset : offset + 32][::-1].hex()
            offset += 32
            vout = struct.unpack("<I", data[offset : offset + 4])[0]
            offset += 4
            script_len, offset = read_varint(data, offset)
            script_sig = data[offset : offset + script_len]
            offset += script_len
            sequence = struct.unpack("<I", data[offset : offset + 4])[0]
            offset += 4
            inputs.append(TxIn(txid=txid, vout=vout, sequence=sequence, script_sig=script_sig))

        output_count, offset = read_varint(data, offset)
        outputs = []
        for _ in range(output_count):
            value = struct.unpack("<Q", data[offset : offset + 8])[0]
            offset += 8
            script_len, offset = read_varint(data, offset)
            script = data[offset : offset + script_len]
            if len(script) != script_len:
                raise ValueError("Truncated output script")
            offset += script_len
            outputs.append(TxOut(value=value, script_pubkey=script))

        if segwit:
            for inp in inputs:
                item_count, offset = read_varint(data, offset)
                for _ in range(item_count):
                    item_len, offset = read_varint(data, offset)
                    inp.witness.append(data[offset : offset + item_len])
                    offset += item_len

        locktime = struct.unpack("<I", data[offset : offset + 4])[0]
        offset += 4
        return cls(inputs=inputs, outputs=outputs, version=version, locktime=locktime), offset


def weight_to_vsize(weight: int) -> int:
    return (weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR


def fee_for_weight(weight: int, fee_rate: int) -> int:
    """Fee in sats for a transaction of the given weight at fee_rate sat/vB."""
    return weight_to_vsize(weight) * fee_rate


def input_weight(satisfaction_weight: int) -> int:
    """Weight of an input: outpoint + sequence plus its scriptSig and witness."""
    return TXIN_BASE_SIZE * WITNESS_SCALE_FACTOR + satisfaction_weight


def output_weight(script_pubkey_len: int) -> int:
    return (8 + len(varint(script_pubkey_len)) + script_pubkey_len) * WITNESS_SCALE_FACTOR


def base_tx_weight(num_inputs: int, output_script_lens: list[int]) -> int:
    """Weight of a segwit transaction without its inputs' own weight."""
    overhead = TX_FIXED_SIZE + len(varint(num_inputs)) + len(varint(len(output_script_lens)))
    return (
        overhead * WITNESS_SCALE_FACTOR
        + SEGWIT_MARKER_WEIGHT
        + sum(output_weight(n) for n in output_script_lens)
    )


def estimate_tx_weight(satisfaction_weights: list[int], output_script_lens: list[int]) -> int:
    """
    Estimate the final weight of a transaction.

    Args:
        satisfaction_weights: Per-input scriptSig + witness weight
        output_script_lens: Length of every output's scriptPubKey
    """
    return base_tx_weight(len(satisfaction_weights), output_script_lens) + sum(
        input_weight(w) for w in satisfaction_weights
    )

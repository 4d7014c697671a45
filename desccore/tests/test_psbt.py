"""
Tests for the PSBT codec, combiner and extractor.
"""

import pytest

from desccore.errors import PSBTError
from desccore.psbt import (
    PSBT,
    PSBT_MAGIC,
    KeyOriginInfo,
    PSBTInput,
    PSBTState,
    combine_psbts,
)
from desccore.tx import Transaction, TxIn, TxOut, varint

PUBKEY_A = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
PUBKEY_B = bytes.fromhex("02c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5")


def _record(key_type: int, key_data: bytes, value: bytes) -> bytes:
    key = varint(key_type) + key_data
    return varint(len(key)) + key + varint(len(value)) + value


def _unsigned_tx() -> Transaction:
    return Transaction(
        inputs=[TxIn("11" * 32, 0), TxIn("22" * 32, 1)],
        outputs=[TxOut(50_000, b"\x00\x14" + bytes(20))],
    )


@pytest.fixture
def psbt() -> PSBT:
    result = PSBT(_unsigned_tx())
    result.inputs[0].witness_utxo = TxOut(30_000, b"\x00\x20" + bytes(32))
    result.inputs[1].witness_utxo = TxOut(25_000, b"\x00\x20" + bytes(32))
    result.inputs[0].bip32_derivations[PUBKEY_A] = KeyOriginInfo(b"\xd3\x4d\xb3\x3f", (0x80000054, 0, 3))
    result.inputs[0].witness_script = b"\x51"
    return result


class TestSerialization:
    def test_round_trip(self, psbt):
        data = psbt.serialize()
        assert data.startswith(PSBT_MAGIC)
        parsed = PSBT.parse(data)
        assert parsed.serialize() == data
        assert parsed.inputs[0].bip32_derivations[PUBKEY_A].path == (0x80000054, 0, 3)
        assert parsed.inputs[1].witness_utxo.value == 25_000

    def test_base64_round_trip(self, psbt):
        text = psbt.to_base64()
        assert text.startswith("cHNidP8")
        assert PSBT.from_base64(text).serialize() == psbt.serialize()

    def test_unknown_records_are_kept(self, psbt):
        psbt.unknown[(0xFC, b"\x01")] = b"global"
        psbt.inputs[1].unknown[(0xFC, b"\x02")] = b"input"
        psbt.outputs[0].unknown[(0xFC, b"\x03")] = b"output"

        parsed = PSBT.parse(psbt.serialize())
        assert parsed.unknown[(0xFC, b"\x01")] == b"global"
        assert parsed.inputs[1].unknown[(0xFC, b"\x02")] == b"input"
        assert parsed.outputs[0].unknown[(0xFC, b"\x03")] == b"output"

    def test_version_zero_is_accepted(self):
        tx = _unsigned_tx().serialize(include_witness=False)
        data = (
            PSBT_MAGIC
            + _record(0x00, b"", tx)
            + _record(0xFB, b"", b"\x00\x00\x00\x00")
            + b"\x00"
            + b"\x00" * 3
        )
        assert PSBT.parse(data).unknown[(0xFB, b"")] == b"\x00\x00\x00\x00"

    def test_final_witness_round_trip(self, psbt):
        psbt.inputs[0].final_script_witness = [b"", b"\x30" * 71, b"\x51"]
        parsed = PSBT.parse(psbt.serialize())
        assert parsed.inputs[0].final_script_witness == [b"", b"\x30" * 71, b"\x51"]


class TestParseErrors:
    def test_missing_magic(self, psbt):
        with pytest.raises(PSBTError, match="magic"):
            PSBT.parse(psbt.serialize()[5:])

    def test_duplicate_key(self):
        tx = _unsigned_tx().serialize(include_witness=False)
        data = PSBT_MAGIC + _record(0x00, b"", tx) + _record(0x00, b"", tx) + b"\x00"
        with pytest.raises(PSBTError, match="Duplicate"):
            PSBT.parse(data)

    def test_unsupported_version(self):
        tx = _unsigned_tx().serialize(include_witness=False)
        data = (
            PSBT_MAGIC
            + _record(0x00, b"", tx)
            + _record(0xFB, b"", b"\x02\x00\x00\x00")
            + b"\x00"
            + b"\x00" * 3
        )
        with pytest.raises(PSBTError, match="version"):
            PSBT.parse(data)

    def test_missing_transaction(self):
        with pytest.raises(PSBTError):
            PSBT.parse(PSBT_MAGIC + b"\x00")

    def test_truncated(self, psbt):
        with pytest.raises(PSBTError):
            PSBT.parse(psbt.serialize()[:-3])

    def test_trailing_data(self, psbt):
        with pytest.raises(PSBTError):
            PSBT.parse(psbt.serialize() + b"\x00")

    def test_partial_sig_needs_pubkey(self):
        tx = _unsigned_tx().serialize(include_witness=False)
        data = (
            PSBT_MAGIC
            + _record(0x00, b"", tx)
            + b"\x00"
            + _record(0x02, b"\x01\x02", b"sig")
            + b"\x00"
            + b"\x00"
            + b"\x00"
        )
        with pytest.raises(PSBTError):
            PSBT.parse(data)

    def test_bad_base64(self):
        with pytest.raises(PSBTError):
            PSBT.from_base64("not base64!")

    def test_signed_transaction_rejected(self):
        tx = _unsigned_tx()
        tx.inputs[0].script_sig = b"\x00"
        with pytest.raises(PSBTError):
            PSBT(tx)

    def test_map_count_mismatch(self):
        with pytest.raises(PSBTError):
            PSBT(_unsigned_tx(), inputs=[PSBTInput()])


class TestState:
    def test_unsigned(self, psbt):
        assert psbt.state == PSBTState.UNSIGNED
        assert not psbt.is_finalized

    def test_partially_signed(self, psbt):
        psbt.inputs[0].partial_sigs[PUBKEY_A] = b"\x30\x01"
        assert psbt.state == PSBTState.PARTIALLY_SIGNED

    def test_finalized(self, psbt):
        for meta in psbt.inputs:
            meta.final_script_witness = [b"\x01"]
        assert psbt.state == PSBTState.FINALIZED

    def test_fee(self, psbt):
        assert psbt.input_value() == 55_000
        assert psbt.fee() == 5_000

    def test_fee_unknown_without_utxos(self):
        assert PSBT(_unsigned_tx()).fee() is None


class TestCombine:
    def test_merges_signatures(self, psbt):
        first = psbt.copy()
        second = psbt.copy()
        first.inputs[0].partial_sigs[PUBKEY_A] = b"sig-a"
        second.inputs[0].partial_sigs[PUBKEY_B] = b"sig-b"

        combined = combine_psbts([first, second])

        assert combined.inputs[0].partial_sigs == {PUBKEY_A: b"sig-a", PUBKEY_B: b"sig-b"}
        assert PUBKEY_B not in first.inputs[0].partial_sigs

    def test_fills_missing_fields(self, psbt):
        bare = PSBT(_unsigned_tx())
        combined = combine_psbts([bare, psbt])
        assert combined.inputs[0].witness_script == b"\x51"
        assert combined.inputs[1].witness_utxo.value == 25_000

    def test_different_transactions(self, psbt):
        other_tx = _unsigned_tx()
        other_tx.locktime = 5
        with pytest.raises(PSBTError):
            combine_psbts([psbt, PSBT(other_tx)])

    def test_nothing_to_combine(self):
        with pytest.raises(PSBTError):
            combine_psbts([])

    def test_single_psbt_is_copied(self, psbt):
        combined = combine_psbts([psbt])
        assert combined is not psbt
        assert combined.serialize() == psbt.serialize()


class TestExtract:
    def test_not_finalized(self, psbt):
        with pytest.raises(PSBTError):
            psbt.extract_transaction()

    def test_extract(self, psbt):
        psbt.inputs[0].final_script_witness = [b"\x01", b"\x51"]
        psbt.inputs[1].final_script_witness = [b"\x02"]
        psbt.inputs[1].final_script_sig = b"\x00"

        tx = psbt.extract_transaction()

        assert tx.txid != psbt.txid  # scriptSig is part of the txid
        assert tx.inputs[0].witness == [b"\x01", b"\x51"]
        assert tx.inputs[1].script_sig == b"\x00"
        parsed = Transaction.parse(tx.serialize())
        assert parsed.serialize() == tx.serialize()

    def test_witness_only_keeps_txid(self, psbt):
        for meta in psbt.inputs:
            meta.final_script_witness = [b"\x01"]
        assert psbt.extract_transaction().txid == psbt.txid

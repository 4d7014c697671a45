"""
Tests for transaction serialization and weight estimation.
"""

import pytest

from desccore.tx import (
    Transaction,
    TxIn,
    TxOut,
    base_tx_weight,
    estimate_tx_weight,
    fee_for_weight,
    input_weight,
    output_weight,
    read_varint,
    varint,
)


class TestVarint:
    @pytest.mark.parametrize(
        "value, encoded",
        [
            (0, "00"),
            (0xFC, "fc"),
            (0xFD, "fdfd00"),
            (0x10000, "fe00000100"),
        ],
    )
    def test_encoding(self, value, encoded):
        assert varint(value).hex() == encoded
        assert read_varint(bytes.fromhex(encoded), 0) == (value, len(encoded) // 2)

    def test_truncated(self):
        with pytest.raises(ValueError):
            read_varint(b"\xfd\x01", 0)


class TestWeights:
    def test_output_weight(self):
        assert output_weight(22) == 124
        assert output_weight(34) == 172

    def test_base_weight(self):
        assert base_tx_weight(1, [22]) == 166
        assert base_tx_weight(1, [22, 34]) == 338

    def test_input_weight(self):
        assert input_weight(112) == 272

    def test_fee_rounds_vbytes_up(self):
        assert fee_for_weight(585, 1) == 147
        assert fee_for_weight(584, 5) == 730

    def test_estimate_matches_real_transaction(self):
        # wpkh spend: 71-byte DER signature plus sighash byte, 33-byte pubkey
        tx = Transaction(
            inputs=[TxIn("aa" * 32, 0, witness=[b"\x30" * 72, b"\x02" * 33])],
            outputs=[TxOut(10_000, b"\x00\x14" + bytes(20))],
        )
        estimate = estimate_tx_weight([112], [22])
        assert estimate == tx.weight


class TestTransaction:
    def test_legacy_round_trip(self):
        tx = Transaction(
            inputs=[TxIn("aa" * 32, 3, sequence=0xFFFFFFFE)],
            outputs=[TxOut(1_000, b"\x51"), TxOut(2_000, b"\x00\x14" + bytes(20))],
            locktime=123,
        )
        parsed = Transaction.parse(tx.serialize())
        assert parsed == tx
        assert parsed.txid == tx.txid

    def test_segwit_round_trip(self):
        tx = Transaction(
            inputs=[TxIn("bb" * 32, 0, witness=[b"", b"\x01\x02"])],
            outputs=[TxOut(5_000, b"\x00\x20" + bytes(32))],
        )
        data = tx.serialize()
        assert data[4:6] == b"\x00\x01"
        assert Transaction.parse(data).inputs[0].witness == [b"", b"\x01\x02"]
        assert len(tx.serialize(include_witness=False)) < len(data)

    def test_txid_byte_order(self):
        tx = Transaction(inputs=[TxIn("cc" * 32, 0)], outputs=[TxOut(1, b"\x51")])
        assert len(tx.txid) == 64

    @pytest.mark.parametrize("data", [b"", b"\x02\x00\x00\x00", b"\x02\x00\x00\x00\x01"])
    def test_garbage(self, data):
        with pytest.raises(ValueError):
            Transaction.parse(data)

    def test_trailing_bytes(self):
        tx = Transaction(inputs=[TxIn("aa" * 32, 0)], outputs=[TxOut(1, b"\x51")])
        with pytest.raises(ValueError):
            Transaction.parse(tx.serialize() + b"\x00")

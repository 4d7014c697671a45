"""
Tests for the Electrum backend (mocked connection).
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from descwallet.backends.base import BackendError, HistoryItem, ScriptUtxo, script_hash
from descwallet.backends.electrum import ElectrumBackend, parse_electrum_url

SCRIPT = b"\x00\x14" + bytes(20)


def _line(payload: dict) -> bytes:
    return json.dumps(payload).encode() + b"\n"


def _connected(backend: ElectrumBackend, *lines: bytes) -> MagicMock:
    """Attach a fake stream to the backend; returns the writer mock."""
    reader = MagicMock()
    reader.readline = AsyncMock(side_effect=list(lines))
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    backend._reader = reader
    backend._writer = writer
    return writer


class TestParseUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("ssl://electrum.blockstream.info:60002", ("electrum.blockstream.info", 60002, True)),
            ("tcp://127.0.0.1:50001", ("127.0.0.1", 50001, False)),
            ("example.com:50002", ("example.com", 50002, True)),
        ],
    )
    def test_valid(self, url, expected):
        assert parse_electrum_url(url) == expected

    @pytest.mark.parametrize("url", ["http://example.com:80", "ssl://example.com", "ssl://:50002"])
    def test_invalid(self, url):
        with pytest.raises(BackendError):
            parse_electrum_url(url)


class TestScriptHash:
    def test_reversed_sha256(self):
        # Electrum protocol documentation example for a P2PKH script
        script = bytes.fromhex("76a91462e907b15cbf27d5425399ebf6f0fb50ebb88f1888ac")
        assert (
            script_hash(script)
            == "8b01df4e368ea28f8dc0423bcf7a4923e3a12d307c875e47a0cfbf90b5c39161"
        )


class TestCall:
    @pytest.mark.asyncio
    async def test_skips_notifications(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        writer = _connected(
            backend,
            _line({"jsonrpc": "2.0", "method": "blockchain.headers.subscribe", "params": [{}]}),
            _line({"jsonrpc": "2.0", "id": 1, "result": {"height": 800_000, "hex": "00"}}),
        )

        assert await backend.get_tip_height() == 800_000

        sent = json.loads(writer.write.call_args[0][0])
        assert sent["method"] == "blockchain.headers.subscribe"
        assert sent["id"] == 1

    @pytest.mark.asyncio
    async def test_request_ids_increase(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        writer = _connected(
            backend,
            _line({"id": 1, "result": "aa" * 32}),
            _line({"id": 2, "result": "bb" * 32}),
        )
        await backend.broadcast_transaction("00")
        await backend.broadcast_transaction("01")
        ids = [json.loads(call[0][0])["id"] for call in writer.write.call_args_list]
        assert ids == [1, 2]

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        _connected(backend, _line({"id": 1, "error": {"code": 1, "message": "bad tx"}}))
        with pytest.raises(BackendError, match="bad tx"):
            await backend.broadcast_transaction("00")

    @pytest.mark.asyncio
    async def test_connection_closed(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        writer = _connected(backend, b"")
        with pytest.raises(BackendError, match="closed"):
            await backend.get_tip_height()
        writer.close.assert_called_once()
        assert backend._writer is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        _connected(backend, b"not json\n")
        with pytest.raises(BackendError):
            await backend.get_tip_height()
        assert backend._reader is None

    @pytest.mark.asyncio
    async def test_connect_retries(self):
        backend = ElectrumBackend("tcp://localhost:1", retries=3, retry_delay=0)
        with patch("asyncio.open_connection", AsyncMock(side_effect=OSError("refused"))) as mock_open:
            with pytest.raises(BackendError, match="Could not connect"):
                await backend.get_tip_height()
        assert mock_open.call_count == 3


class TestQueries:
    @pytest.mark.asyncio
    async def test_histories(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        history = [
            {"tx_hash": "aa" * 32, "height": 100},
            {"tx_hash": "bb" * 32, "height": 0},
            {"tx_hash": "cc" * 32, "height": -1},
        ]
        with patch.object(backend, "_call", AsyncMock(return_value=history)) as mock_call:
            result = await backend.get_script_histories([SCRIPT])

        mock_call.assert_awaited_once_with("blockchain.scripthash.get_history", [script_hash(SCRIPT)])
        assert result == {
            SCRIPT: [
                HistoryItem("aa" * 32, 100),
                HistoryItem("bb" * 32, None),
                HistoryItem("cc" * 32, None),
            ]
        }

    @pytest.mark.asyncio
    async def test_utxos(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        unspent = [{"tx_hash": "aa" * 32, "tx_pos": 1, "value": 5_000, "height": 90}]
        with patch.object(backend, "_call", AsyncMock(return_value=unspent)):
            result = await backend.get_utxos([SCRIPT])
        assert result == {SCRIPT: [ScriptUtxo("aa" * 32, 1, 5_000, 90)]}

    @pytest.mark.asyncio
    async def test_close_without_connection(self):
        backend = ElectrumBackend("tcp://localhost:50001")
        await backend.close()
        assert backend._writer is None

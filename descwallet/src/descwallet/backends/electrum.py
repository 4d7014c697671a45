"""
Electrum server backend.

Speaks newline-delimited JSON-RPC over a plain TCP or TLS connection, looking
scripts up by their Electrum script hash.
"""

from __future__ import annotations

import asyncio
import json
import ssl
from typing import Any

from loguru import logger

from descwallet.backends.base import (
    BackendError,
    BlockchainBackend,
    HistoryItem,
    ScriptUtxo,
    script_hash,
)


def parse_electrum_url(url: str) -> tuple[str, int, bool]:
    """
    Split "ssl://host:port" or "tcp://host:port" into (host, port, use_ssl).
    URLs without a scheme use TLS.
    """
    scheme, sep, rest = url.partition("://")
    if not sep:
        scheme, rest = "ssl", url
    if scheme not in ("ssl", "tcp"):
        raise BackendError(f"Unsupported Electrum URL scheme: {scheme}")
    host, _, port = rest.rpartition(":")
    if not host or not port.isdigit():
        raise BackendError(f"Invalid Electrum URL: {url}")
    return host, int(port), scheme == "ssl"


def _height(raw: int) -> int | None:
    # Electrum reports mempool transactions with height 0 or -1
    return raw if raw > 0 else None


class ElectrumBackend(BlockchainBackend):
    """Blockchain backend using an Electrum server."""

    def __init__(
        self,
        url: str,
        retries: int = 5,
        timeout: float = 30.0,
        retry_delay: float = 1.0,
    ):
        self.host, self.port, self.use_ssl = parse_electrum_url(url)
        self.retries = max(retries, 1)
        self.timeout = timeout
        self.retry_delay = retry_delay

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._request_id = 0
        # One request in flight at a time on the shared connection
        self._lock = asyncio.Lock()

    async def _connect(self) -> None:
        last_error: Exception | None = None
        ssl_context = ssl.create_default_context() if self.use_ssl else None
        for attempt in range(1, self.retries + 1):
            try:
                self._reader, self._writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port, ssl=ssl_context),
                    timeout=self.timeout,
                )
                logger.debug(f"Connected to Electrum server {self.host}:{self.port}")
                return
            except (OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(
                    f"Electrum connection attempt {attempt}/{self.retries} to "
                    f"{self.host}:{self.port} failed: {e}"
                )
                if attempt < self.retries:
                    await asyncio.sleep(self.retry_delay)
        raise BackendError(
            f"Could not connect to Electrum server {self.host}:{self.port}: {last_error}"
        )

    async def _disconnect(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing Electrum connection: {e}")

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """
        Send one JSON-RPC request and wait for its response.

        Server notifications received in the meantime are skipped.

        Raises:
            BackendError: Connection failure, timeout or an RPC error
        """
        async with self._lock:
            if self._writer is None:
                await self._connect()
            assert self._reader is not None and self._writer is not None

            self._request_id += 1
            request_id = self._request_id
            payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}

            try:
                self._writer.write(json.dumps(payload).encode() + b"\n")
                await asyncio.wait_for(self._writer.drain(), timeout=self.timeout)
                while True:
                    line = await asyncio.wait_for(self._reader.readline(), timeout=self.timeout)
                    if not line:
                        raise BackendError("Connection closed by Electrum server")
                    response = json.loads(line)
                    if response.get("id") == request_id:
                        break
            except (OSError, asyncio.TimeoutError, json.JSONDecodeError) as e:
                await self._disconnect()
                raise BackendError(f"Electrum call {method} failed: {e}") from e
            except BackendError:
                await self._disconnect()
                raise

        error = response.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise BackendError(f"Electrum error in {method}: {message}")
        return response.get("result")

    async def get_tip_height(self) -> int:
        header = await self._call("blockchain.headers.subscribe")
        return int(header["height"])

    async def get_script_histories(self, scripts: list[bytes]) -> dict[bytes, list[HistoryItem]]:
        result: dict[bytes, list[HistoryItem]] = {}
        for script in scripts:
            history = await self._call("blockchain.scripthash.get_history", [script_hash(script)])
            result[script] = [
                HistoryItem(txid=item["tx_hash"], height=_height(item["height"]))
                for item in history
            ]
        return result

    async def get_utxos(self, scripts: list[bytes]) -> dict[bytes, list[ScriptUtxo]]:
        result: dict[bytes, list[ScriptUtxo]] = {}
        for script in scripts:
            unspent = await self._call("blockchain.scripthash.listunspent", [script_hash(script)])
            result[script] = [
                ScriptUtxo(
                    txid=item["tx_hash"],
                    vout=item["tx_pos"],
                    value=item["value"],
                    height=_height(item["height"]),
                )
                for item in unspent
            ]
        return result

    async def broadcast_transaction(self, tx_hex: str) -> str:
        txid = await self._call("blockchain.transaction.broadcast", [tx_hex])
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def close(self) -> None:
        await self._disconnect()

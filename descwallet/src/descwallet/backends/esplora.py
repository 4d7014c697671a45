"""
Esplora REST API backend (Blockstream/mempool.space compatible).
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import (
    BackendError,
    BlockchainBackend,
    HistoryItem,
    ScriptUtxo,
    script_hash,
)

# Esplora returns confirmed transactions in pages of this size
CHAIN_PAGE_SIZE = 25


def _height(status: dict[str, Any]) -> int | None:
    if status.get("confirmed"):
        return status.get("block_height")
    return None


class EsploraBackend(BlockchainBackend):
    """
    Blockchain backend using an Esplora HTTP API.

    At most `concurrency` requests are in flight at once.
    """

    def __init__(
        self,
        base_url: str,
        concurrency: int = 4,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.concurrency = concurrency
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _request(self, method: str, endpoint: str, content: str | None = None) -> httpx.Response:
        url = f"{self.base_url}/{endpoint}"
        async with self._semaphore:
            try:
                if method == "GET":
                    response = await self.client.get(url)
                elif method == "POST":
                    response = await self.client.post(url, content=content)
                else:
                    raise ValueError(f"Unsupported HTTP method: {method}")
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise BackendError(
                    f"Esplora request failed: {endpoint} - {e.response.status_code} {e.response.text}"
                ) from e
            except httpx.HTTPError as e:
                logger.error(f"Esplora request failed: {endpoint} - {e}")
                raise BackendError(f"Esplora request failed: {endpoint} - {e}") from e
        return response

    async def _get_json(self, endpoint: str) -> Any:
        response = await self._request("GET", endpoint)
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Invalid JSON from Esplora: {endpoint}") from e

    async def get_tip_height(self) -> int:
        response = await self._request("GET", "blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise BackendError(f"Invalid tip height from Esplora: {response.text!r}") from e

    async def _script_history(self, script: bytes) -> list[HistoryItem]:
        scripthash = script_hash(script)
        txs = await self._get_json(f"scripthash/{scripthash}/txs")
        history = [HistoryItem(tx["txid"], _height(tx["status"])) for tx in txs]

        confirmed = [tx for tx in txs if tx["status"].get("confirmed")]
        while len(confirmed) >= CHAIN_PAGE_SIZE:
            last_seen = confirmed[-1]["txid"]
            confirmed = await self._get_json(f"scripthash/{scripthash}/txs/chain/{last_seen}")
            history.extend(HistoryItem(tx["txid"], _height(tx["status"])) for tx in confirmed)
        return history

    async def _script_utxos(self, script: bytes) -> list[ScriptUtxo]:
        items = await self._get_json(f"scripthash/{script_hash(script)}/utxo")
        return [
            ScriptUtxo(
                txid=item["txid"],
                vout=item["vout"],
                value=item["value"],
                height=_height(item["status"]),
            )
            for item in items
        ]

    async def get_script_histories(self, scripts: list[bytes]) -> dict[bytes, list[HistoryItem]]:
        histories = await asyncio.gather(*(self._script_history(s) for s in scripts))
        return dict(zip(scripts, histories))

    async def get_utxos(self, scripts: list[bytes]) -> dict[bytes, list[ScriptUtxo]]:
        utxos = await asyncio.gather(*(self._script_utxos(s) for s in scripts))
        return dict(zip(scripts, utxos))

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self._request("POST", "tx", content=tx_hex)
        txid = response.text.strip()
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()

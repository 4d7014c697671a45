"""
Descriptor wallet service.

Owns the wallet's descriptors, its persisted state and an optional chain
backend, and turns user commands into calls to the desccore pipeline.
Commands are serialized with an asyncio lock; each takes the UTXO snapshot
once and passes it by value to the core.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Sequence

from loguru import logger

from desccore.address import address_to_scriptpubkey, scriptpubkey_to_address
from desccore.assembler import Ordering, assemble_psbt
from desccore.balance import balance
from desccore.constants import SEQUENCE_LOCKTIME_ENABLED, SEQUENCE_RBF
from desccore.descriptor import Descriptor
from desccore.finalizer import finalize_psbt
from desccore.miniscript import older_is_time
from desccore.models import (
    ChangeSlot,
    Keychain,
    NetworkType,
    OutPoint,
    Recipient,
    SelectionAlgorithm,
    SelectionRequest,
    TxPlan,
    UtxoSnapshot,
)
from desccore.plan import SatisfactionPath
from desccore.psbt import PSBT, combine_psbts
from desccore.selection import select_utxos
from desccore.signer import descriptor_key_lookup, sign_psbt
from desccore.tx import Transaction, base_tx_weight
from descwallet.backends.base import BackendError, BlockchainBackend
from descwallet.errors import NoSnapshotError, WalletError
from descwallet.wallet.models import ScriptEntry, StoredUtxo
from descwallet.wallet.store import WalletStore


class WalletService:
    """
    Wallet built from an external descriptor and an optional change descriptor.

    Without a change descriptor, change is paid to fresh external addresses.
    """

    def __init__(
        self,
        descriptor: Descriptor,
        store: WalletStore,
        network: NetworkType | str = NetworkType.TESTNET,
        change_descriptor: Descriptor | None = None,
        backend: BlockchainBackend | None = None,
        gap_limit: int = 20,
    ):
        for d in (descriptor, change_descriptor):
            if d is not None and d.is_abstract:
                raise WalletError(f"Descriptor {d.to_string(private=False)} contains unresolved key aliases")

        self.descriptor = descriptor
        self.change_descriptor = change_descriptor
        self.network = NetworkType(network)
        self.store = store
        self.backend = backend
        self.gap_limit = gap_limit

        self.state = store.load(
            self.network.value,
            descriptor.checksum,
            change_descriptor.checksum if change_descriptor is not None else None,
        )
        self._lock = asyncio.Lock()

    # -- keychains ------------------------------------------------------------

    @property
    def keychains(self) -> list[Keychain]:
        if self.change_descriptor is None:
            return [Keychain.EXTERNAL]
        return [Keychain.EXTERNAL, Keychain.INTERNAL]

    @property
    def change_keychain(self) -> Keychain:
        return Keychain.INTERNAL if self.change_descriptor is not None else Keychain.EXTERNAL

    def descriptor_for(self, keychain: Keychain) -> Descriptor:
        if keychain == Keychain.INTERNAL:
            if self.change_descriptor is None:
                raise WalletError("Wallet has no change descriptor")
            return self.change_descriptor
        return self.descriptor

    def _descriptors(self) -> list[Descriptor]:
        return [self.descriptor_for(k) for k in self.keychains]

    def _next_index(self, keychain: Keychain) -> int:
        if not self.descriptor_for(keychain).is_wildcard:
            return 0
        return self.state.revealed(keychain) + 1

    def _register(self, keychain: Keychain, index: int) -> bytes:
        script = self.descriptor_for(keychain).script_pubkey(index)
        self.state.scripts[script.hex()] = ScriptEntry(keychain=keychain, index=index)
        return script

    def _reveal(self, keychain: Keychain, index: int) -> bytes:
        script = self._register(keychain, index)
        if index > self.state.revealed(keychain):
            self.state.last_revealed[keychain] = index
        return script

    def _save(self) -> None:
        self.store.save(self.state)

    def script_lookup(self, script_pubkey: bytes) -> tuple[Descriptor, int] | None:
        """Descriptor and derivation index of a wallet script, or None."""
        entry = self.state.scripts.get(script_pubkey.hex())
        if entry is None:
            # Scripts past the revealed range are searched up to the gap limit
            for keychain in self.keychains:
                end = self.state.revealed(keychain) + self.gap_limit + 1
                if not self.descriptor_for(keychain).is_wildcard:
                    end = 1
                for index in range(end):
                    if self._register(keychain, index) == script_pubkey:
                        return self.descriptor_for(keychain), index
            return None
        return self.descriptor_for(entry.keychain), entry.index

    # -- addresses ------------------------------------------------------------

    async def get_new_address(self) -> dict:
        async with self._lock:
            index = self._next_index(Keychain.EXTERNAL)
            script = self._reveal(Keychain.EXTERNAL, index)
            self._save()
        address = scriptpubkey_to_address(script, self.network)
        logger.debug(f"Revealed external address {index}: {address}")
        return {"address": address, "index": index}

    # -- chain sync -----------------------------------------------------------

    async def sync(self) -> UtxoSnapshot:
        """
        Scan every keychain up to the gap limit and replace the UTXO snapshot.

        A backend failure invalidates the stored snapshot before re-raising.
        """
        async with self._lock:
            if self.backend is None:
                raise WalletError("No blockchain backend configured")
            try:
                snapshot = await self._sync(self.backend)
            except BackendError:
                self.state.snapshot_valid = False
                self._save()
                logger.error("Sync failed, UTXO snapshot invalidated")
                raise
            self._save()
            return snapshot

    async def _scan_keychain(self, backend: BlockchainBackend, keychain: Keychain) -> list[bytes]:
        descriptor = self.descriptor_for(keychain)
        used: list[bytes] = []
        last_used = -1
        start = 0
        while True:
            if descriptor.is_wildcard:
                end = max(last_used, self.state.revealed(keychain)) + self.gap_limit + 1
            else:
                end = 1
            if start >= end:
                break
            scripts = [self._register(keychain, i) for i in range(start, end)]
            histories = await backend.get_script_histories(scripts)
            for index, script in enumerate(scripts, start):
                if histories.get(script):
                    last_used = index
                    used.append(script)
            start = end

        if last_used > self.state.revealed(keychain):
            self.state.last_revealed[keychain] = last_used
        logger.debug(f"Scanned {start} {keychain.value} script(s), {len(used)} used")
        return used

    async def _sync(self, backend: BlockchainBackend) -> UtxoSnapshot:
        tip_height = await backend.get_tip_height()
        used: list[bytes] = []
        for keychain in self.keychains:
            used.extend(await self._scan_keychain(backend, keychain))

        found = await backend.get_utxos(used) if used else {}
        utxos = []
        for script, items in found.items():
            entry = self.state.scripts[script.hex()]
            for item in items:
                utxos.append(
                    StoredUtxo(
                        txid=item.txid,
                        vout=item.vout,
                        value=item.value,
                        script_pubkey=script.hex(),
                        keychain=entry.keychain,
                        derivation_index=entry.index,
                        height=item.height,
                    )
                )
        utxos.sort(key=lambda u: (u.txid, u.vout))

        self.state.utxos = utxos
        self.state.tip_height = tip_height
        self.state.snapshot_valid = True
        logger.info(f"Synced at height {tip_height}: {len(utxos)} UTXO(s)")
        return self.snapshot()

    def snapshot(self) -> UtxoSnapshot:
        """
        Raises:
            NoSnapshotError: The wallet was never synced or the last sync failed
        """
        if not self.state.snapshot_valid or self.state.tip_height is None:
            raise NoSnapshotError()
        utxos = tuple(
            u.to_utxo(self.descriptor_for(u.keychain).max_satisfaction_weight)
            for u in self.state.utxos
            if u.keychain in self.keychains
        )
        return UtxoSnapshot(utxos=utxos, tip_height=self.state.tip_height)

    # -- inspection -----------------------------------------------------------

    async def list_unspent(self) -> list[dict]:
        async with self._lock:
            snapshot = self.snapshot()
        return [
            {
                "outpoint": str(u.outpoint),
                "txout": {"value": u.value, "script_pubkey": u.script_pubkey.hex()},
                "keychain": u.keychain.value,
                "derivation_index": u.derivation_index,
                "height": u.height,
                "confirmations": u.confirmations(snapshot.tip_height),
            }
            for u in snapshot.utxos
        ]

    async def get_balance(self) -> dict:
        async with self._lock:
            snapshot = self.snapshot()
        return {
            "confirmed": snapshot.confirmed_balance,
            "unconfirmed": snapshot.balance - snapshot.confirmed_balance,
            "total": snapshot.balance,
        }

    def policies(self) -> dict:
        return {
            "external": self.descriptor.policies(),
            "internal": self.change_descriptor.policies() if self.change_descriptor else None,
        }

    def public_descriptor(self) -> dict:
        return {
            "external": self.descriptor.as_public().to_string(),
            "internal": (
                self.change_descriptor.as_public().to_string() if self.change_descriptor else None
            ),
        }

    # -- transactions ---------------------------------------------------------

    def _recipients(self, recipients: Sequence[tuple[str, int]]) -> list[Recipient]:
        if not recipients:
            raise WalletError("At least one recipient is required")
        result = []
        for address, amount in recipients:
            try:
                script = address_to_scriptpubkey(address, self.network)
            except ValueError as e:
                raise WalletError(f"Invalid recipient address {address}: {e}") from e
            result.append(Recipient(script, amount))
        return result

    def _policy_path(self, index: int | None) -> SatisfactionPath | None:
        if index is None:
            return None
        plan = self.descriptor.plan
        if not 0 <= index < len(plan):
            raise WalletError(f"Policy path {index} does not exist, the descriptor has {len(plan)}")
        return plan[index]

    async def create_tx(
        self,
        recipients: Sequence[tuple[str, int]],
        fee_rate: int = 1,
        send_all: bool = False,
        must_use: Sequence[OutPoint] = (),
        must_not_use: Sequence[OutPoint] = (),
        enable_rbf: bool = True,
        algorithm: SelectionAlgorithm | str = SelectionAlgorithm.LARGEST_FIRST,
        ordering: Ordering | str = Ordering.BIP69,
        policy_path: int | None = None,
    ) -> dict:
        """
        Select, balance and assemble an unsigned PSBT.

        Args:
            recipients: (address, amount) pairs; with send_all the last
                recipient's amount is ignored and it receives the remainder
            fee_rate: sat/vB
            policy_path: Index of the external descriptor's satisfaction path
                to spend through; only external UTXOs are then considered

        Returns:
            {"psbt": base64 PSBT, "details": summary}
        """
        async with self._lock:
            snapshot = self.snapshot()
            outputs = self._recipients(recipients)
            path = self._policy_path(policy_path)

            utxos = snapshot.utxos
            relative_lock = None
            if path is not None:
                weight = self.descriptor.satisfaction_weight(path)
                utxos = tuple(
                    replace(u, satisfaction_weight=weight)
                    for u in utxos
                    if u.keychain == Keychain.EXTERNAL
                )
                if path.older is not None and not older_is_time(path.older):
                    relative_lock = path.older

            fixed = outputs[:-1] if send_all else outputs
            request = SelectionRequest(
                target=sum(r.amount for r in fixed),
                fee_rate=fee_rate,
                base_weight=base_tx_weight(1, [len(r.script_pubkey) for r in outputs]),
                must_use=tuple(must_use),
                must_not_use=tuple(must_not_use),
                algorithm=SelectionAlgorithm(algorithm),
                drain=send_all,
                relative_lock=relative_lock,
                tip_height=snapshot.tip_height,
            )
            selection = select_utxos(request, utxos)

            change_keychain = self.change_keychain
            change_descriptor = self.descriptor_for(change_keychain)
            change_index = self._next_index(change_keychain)
            change_slot = ChangeSlot(
                script_pubkey=change_descriptor.script_pubkey(change_index),
                keychain=change_keychain,
                derivation_index=change_index,
            )
            plan = balance(
                selection,
                outputs,
                fee_rate,
                change=None if send_all else change_slot,
                drain=send_all,
            )

            psbt = assemble_psbt(
                plan,
                selection,
                lambda utxo: self.descriptor_for(utxo.keychain),
                change_descriptor=change_descriptor,
                sequence=SEQUENCE_RBF if enable_rbf else SEQUENCE_LOCKTIME_ENABLED,
                ordering=ordering,
                path=path,
            )
            if plan.change is not None:
                self._reveal(change_keychain, change_index)
                self._save()

        logger.info(f"Created transaction {psbt.txid} paying fee {plan.fee}")
        return {"psbt": psbt.to_base64(), "details": self._details(psbt, plan, fee_rate)}

    def _details(self, psbt: PSBT, plan: TxPlan, fee_rate: int) -> dict:
        received = sum(
            out.value for out in psbt.tx.outputs if out.script_pubkey.hex() in self.state.scripts
        )
        return {
            "txid": psbt.txid,
            "sent": plan.inputs_total,
            "received": received,
            "fee": plan.fee,
            "fee_rate": fee_rate,
            "inputs": [f"{txin.txid}:{txin.vout}" for txin in psbt.tx.inputs],
        }

    # -- PSBT handling --------------------------------------------------------

    async def sign(self, psbt_b64: str) -> dict:
        """Sign with every private key in the descriptors, then finalize what is complete."""
        psbt = PSBT.from_base64(psbt_b64)
        async with self._lock:
            signed, added = sign_psbt(psbt, descriptor_key_lookup(self._descriptors()))
            finalized, is_finalized = finalize_psbt(signed, self.script_lookup)
        logger.info(f"Added {added} signature(s)")
        return {"psbt": finalized.to_base64(), "is_finalized": is_finalized}

    async def finalize(self, psbt_b64: str) -> dict:
        psbt = PSBT.from_base64(psbt_b64)
        async with self._lock:
            finalized, is_finalized = finalize_psbt(psbt, self.script_lookup)
        return {"psbt": finalized.to_base64(), "is_finalized": is_finalized}

    @staticmethod
    def extract(psbt_b64: str) -> dict:
        tx = PSBT.from_base64(psbt_b64).extract_transaction()
        return {"raw_tx": tx.serialize().hex(), "txid": tx.txid}

    @staticmethod
    def combine(psbts: Sequence[str]) -> dict:
        combined = combine_psbts([PSBT.from_base64(p) for p in psbts])
        return {"psbt": combined.to_base64()}

    async def broadcast(self, raw_tx: str) -> str:
        """Broadcast a raw transaction hex, returns its txid."""
        try:
            Transaction.parse(bytes.fromhex(raw_tx))
        except ValueError as e:
            raise WalletError(f"Invalid raw transaction: {e}") from e
        async with self._lock:
            if self.backend is None:
                raise WalletError("No blockchain backend configured")
            return await self.backend.broadcast_transaction(raw_tx)

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()

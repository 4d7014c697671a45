"""
PSBT assembly from a balanced plan and its selected inputs.

The assembler only attaches public metadata (previous outputs, scripts and
BIP32 derivations); signing happens elsewhere.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable

from loguru import logger

from desccore.constants import SEQUENCE_FINAL, SEQUENCE_LOCKTIME_ENABLED, SEQUENCE_RBF, TX_VERSION
from desccore.descriptor import Descriptor
from desccore.errors import AssemblyError, DescCoreError
from desccore.models import SelectionResult, TxPlan, Utxo
from desccore.plan import SatisfactionPath
from desccore.psbt import PSBT, KeyOriginInfo, PSBTInput, PSBTOutput
from desccore.tx import Transaction, TxIn, TxOut

DescriptorLookup = Callable[[Utxo], Descriptor]


class Ordering(str, Enum):
    BIP69 = "bip69"
    UNTOUCHED = "untouched"


def timelocks_for(
    path: SatisfactionPath | None, sequence: int = SEQUENCE_RBF, locktime: int = 0
) -> tuple[int, int]:
    """
    nSequence and nLockTime needed to spend through `path`.

    older(n) becomes every input's nSequence; after(n) raises nLockTime to n,
    which also requires a non-final nSequence.
    """
    if path is None:
        return sequence, locktime
    if path.older is not None:
        sequence = path.older
    if path.after is not None:
        locktime = max(locktime, path.after)
        if sequence == SEQUENCE_FINAL:
            sequence = SEQUENCE_LOCKTIME_ENABLED
    return sequence, locktime


def _derivations(descriptor: Descriptor, index: int) -> dict[bytes, KeyOriginInfo]:
    return {
        pubkey: KeyOriginInfo(fingerprint, path)
        for pubkey, fingerprint, path in descriptor.derivations(index)
    }


def assemble_psbt(
    plan: TxPlan,
    selection: SelectionResult,
    descriptor_lookup: DescriptorLookup,
    change_descriptor: Descriptor | None = None,
    locktime: int = 0,
    sequence: int = SEQUENCE_RBF,
    ordering: Ordering | str = Ordering.BIP69,
    path: SatisfactionPath | None = None,
) -> PSBT:
    """
    Build an unsigned PSBT.

    Args:
        plan: Balanced outputs and fee
        selection: Inputs to spend
        descriptor_lookup: Returns the descriptor that owns a UTXO
        change_descriptor: Descriptor of the change output's keychain
        locktime: nLockTime before policy timelocks are applied
        sequence: nSequence for every input before policy timelocks are applied
        ordering: "bip69" sorts inputs and outputs, "untouched" keeps them as given
        path: Satisfaction path the transaction will be spent through

    Raises:
        AssemblyError: Descriptor lookup fails or does not match an input
    """
    if sum(u.value for u in selection.utxos) != plan.inputs_total:
        raise AssemblyError("Plan input total does not match the selected inputs")
    if not selection.utxos:
        raise AssemblyError("Cannot assemble a transaction without inputs")

    sequence, locktime = timelocks_for(path, sequence, locktime)

    inputs = []
    for utxo in selection.utxos:
        try:
            descriptor = descriptor_lookup(utxo)
            script_pubkey = descriptor.script_pubkey(utxo.derivation_index)
        except (LookupError, DescCoreError) as e:
            raise AssemblyError(f"No descriptor for input {utxo.outpoint}: {e}") from e
        if script_pubkey != utxo.script_pubkey:
            raise AssemblyError(
                f"Descriptor script for {utxo.outpoint} at index {utxo.derivation_index} "
                "does not match the UTXO"
            )
        meta = PSBTInput(
            witness_utxo=TxOut(utxo.value, utxo.script_pubkey),
            redeem_script=descriptor.redeem_script(utxo.derivation_index),
            witness_script=descriptor.witness_script(utxo.derivation_index),
            bip32_derivations=_derivations(descriptor, utxo.derivation_index),
        )
        inputs.append((TxIn(utxo.txid, utxo.vout, sequence=sequence), meta))

    outputs = [(TxOut(r.amount, r.script_pubkey), PSBTOutput()) for r in plan.recipients]
    if plan.change is not None:
        change = plan.change
        if change_descriptor is None:
            raise AssemblyError("Plan has change but no change descriptor was given")
        try:
            change_script = change_descriptor.script_pubkey(change.derivation_index)
        except DescCoreError as e:
            raise AssemblyError(f"Cannot derive change script: {e}") from e
        if change_script != change.script_pubkey:
            raise AssemblyError(
                f"Change descriptor does not produce the change script at index {change.derivation_index}"
            )
        meta = PSBTOutput(
            redeem_script=change_descriptor.redeem_script(change.derivation_index),
            witness_script=change_descriptor.witness_script(change.derivation_index),
            bip32_derivations=_derivations(change_descriptor, change.derivation_index),
        )
        outputs.append((TxOut(change.amount, change.script_pubkey), meta))

    if Ordering(ordering) == Ordering.BIP69:
        inputs.sort(key=lambda pair: (pair[0].txid, pair[0].vout))
        outputs.sort(key=lambda pair: (pair[0].value, pair[0].script_pubkey))

    tx = Transaction(
        inputs=[txin for txin, _ in inputs],
        outputs=[txout for txout, _ in outputs],
        version=TX_VERSION,
        locktime=locktime,
    )
    psbt = PSBT(tx, [meta for _, meta in inputs], [meta for _, meta in outputs])
    logger.debug(
        f"Assembled PSBT {tx.txid}: {len(inputs)} input(s), {len(outputs)} output(s), "
        f"fee {plan.fee}"
    )
    return psbt

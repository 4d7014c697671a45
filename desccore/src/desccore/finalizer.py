"""
PSBT finalization driven by descriptor satisfaction plans.
"""

from __future__ import annotations

from typing import Callable

from loguru import logger

from desccore.descriptor import Descriptor
from desccore.psbt import PSBT, PSBTInput
from desccore.tx import TxIn

# scriptPubKey -> (descriptor, derivation index), or None when not ours
ScriptLookup = Callable[[bytes], tuple[Descriptor, int] | None]


def finalize_input(
    meta: PSBTInput,
    txin: TxIn,
    descriptor: Descriptor,
    index: int,
    version: int,
    locktime: int,
) -> bool:
    """
    Build the final scriptSig/witness of one input if some satisfaction path
    is complete. Returns whether the input was finalized.
    """
    pubkeys = [key.pubkey_at(index) for key in descriptor.keys]
    signed = {pos for pos, pubkey in enumerate(pubkeys) if pubkey in meta.partial_sigs}

    usable = descriptor.plan.usable_paths(signed, txin.sequence, locktime, version)
    if not usable:
        return False
    path = usable[0]

    witness = []
    for item in path.witness:
        if item.pubkey:
            witness.append(pubkeys[item.key])
        elif item.is_signature:
            witness.append(meta.partial_sigs[pubkeys[item.key]])
        else:
            witness.append(item.data)
    witness_script = descriptor.witness_script(index)
    if witness_script is not None:
        witness.append(witness_script)

    script_sig = descriptor.script_sig(index)
    meta.final_script_sig = script_sig or None
    meta.final_script_witness = witness
    meta.clear_signing_data()
    return True


def finalize_psbt(psbt: PSBT, descriptor_lookup: ScriptLookup) -> tuple[PSBT, bool]:
    """
    Finalize every input whose signatures and timelocks complete a path.

    The smallest complete path of the descriptor's satisfaction plan is used.
    Inputs that cannot be satisfied yet are left untouched.

    Returns:
        (finalized copy of the PSBT, whether every input is now finalized)
    """
    result = psbt.copy()
    for i, (meta, txin) in enumerate(zip(result.inputs, result.tx.inputs)):
        if meta.is_finalized:
            continue
        if meta.witness_utxo is None:
            logger.debug(f"Input {i} has no witness UTXO, cannot finalize")
            continue
        found = descriptor_lookup(meta.witness_utxo.script_pubkey)
        if found is None:
            logger.debug(f"Input {i} does not belong to this wallet")
            continue
        descriptor, index = found
        if finalize_input(meta, txin, descriptor, index, result.tx.version, result.tx.locktime):
            logger.debug(f"Finalized input {i}")
        else:
            logger.debug(f"Input {i} has no complete satisfaction path yet")
    return result, result.is_finalized

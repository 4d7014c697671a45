"""
PSBT signing for segwit v0 inputs (P2WPKH, P2WSH and their P2SH-wrapped forms).
"""

from __future__ import annotations

from typing import Callable, Iterable

from coincurve import PrivateKey
from loguru import logger

from desccore.constants import SIGHASH_ALL
from desccore.descriptor import Descriptor
from desccore.errors import SigningError
from desccore.keys import DescriptorKey
from desccore.psbt import PSBT, KeyOriginInfo, PSBTInput
from desccore.script import hash256, p2pkh_script
from desccore.tx import Transaction, serialize_outpoint, varint

# (public key, BIP32 origin) -> private key, or None when the key is not ours
KeyLookup = Callable[[bytes, KeyOriginInfo], PrivateKey | None]


def descriptor_key_lookup(descriptors: Iterable[Descriptor]) -> KeyLookup:
    """Key lookup backed by the private keys inside descriptors."""
    keys = [
        key
        for descriptor in descriptors
        for key in descriptor.keys
        if isinstance(key, DescriptorKey) and key.is_private
    ]

    def lookup(pubkey: bytes, origin: KeyOriginInfo) -> PrivateKey | None:
        for key in keys:
            found = key.private_key_for(pubkey, origin.fingerprint, origin.path)
            if found is not None:
                return found
        return None

    return lookup


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for SIGHASH_ALL."""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")

    hash_prevouts = hash256(b"".join(serialize_outpoint(inp.txid, inp.vout) for inp in tx.inputs))
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + serialize_outpoint(target_input.txid, target_input.vout)
        + varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def script_code_for(meta: PSBTInput) -> bytes:
    """
    The BIP143 scriptCode of an input: the witness script for P2WSH, the
    equivalent P2PKH script for P2WPKH.
    """
    if meta.witness_script is not None:
        return meta.witness_script
    if meta.witness_utxo is None:
        raise SigningError("Input has no witness UTXO")
    program = meta.redeem_script or meta.witness_utxo.script_pubkey
    if len(program) == 22 and program[:2] == b"\x00\x14":
        return p2pkh_script(program[2:])
    raise SigningError(f"Cannot sign input with script {program.hex()}")


def sign_psbt(psbt: PSBT, key_lookup: KeyLookup) -> tuple[PSBT, int]:
    """
    Add a signature for every BIP32 derivation the key lookup can resolve.

    Returns:
        (signed copy of the PSBT, number of signatures added)

    Raises:
        SigningError: An input asks for a sighash type other than SIGHASH_ALL
    """
    signed = psbt.copy()
    added = 0

    for index, meta in enumerate(signed.inputs):
        if meta.is_finalized or meta.witness_utxo is None:
            continue
        sighash_type = meta.sighash_type if meta.sighash_type is not None else SIGHASH_ALL
        if sighash_type != SIGHASH_ALL:
            raise SigningError(f"Unsupported sighash type {sighash_type} on input {index}")

        for pubkey, origin in meta.bip32_derivations.items():
            if pubkey in meta.partial_sigs:
                continue
            private_key = key_lookup(pubkey, origin)
            if private_key is None:
                continue

            sighash = compute_sighash_segwit(
                signed.tx, index, script_code_for(meta), meta.witness_utxo.value, sighash_type
            )
            # Sign the pre-hashed sighash (it's already SHA256d)
            # coincurve's sign() with hasher=None skips hashing
            signature = private_key.sign(sighash, hasher=None)
            meta.partial_sigs[pubkey] = signature + bytes([sighash_type])
            added += 1
            logger.debug(f"Signed input {index} with key {pubkey.hex()[:16]}...")

    return signed, added

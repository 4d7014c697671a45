"""
desccore - Transaction and PSBT construction core for descriptor wallets

Provides policy compilation, output descriptors, UTXO selection, fee/change
balancing and PSBT assembly, signing and finalization.
"""

__version__ = "0.1.0"

from desccore.assembler import Ordering, assemble_psbt, timelocks_for
from desccore.balance import balance, change_dust_threshold, relay_dust
from desccore.compiler import AliasKeySource, KeySource, compile_policy
from desccore.descriptor import Descriptor, ScriptType, descriptor_checksum
from desccore.errors import (
    AssemblyError,
    BalanceError,
    BalanceFundsError,
    CompileError,
    DescCoreError,
    DescriptorError,
    InsufficientFundsError,
    InvalidThresholdError,
    KeyParseError,
    PolicyParseError,
    PSBTError,
    SelectionError,
    SelectionFundsError,
    SigningError,
    UnresolvableKeyError,
    UnsatisfiablePolicyError,
)
from desccore.finalizer import finalize_psbt
from desccore.keys import DescriptorKey, HDKey
from desccore.models import (
    ChangeOutput,
    ChangeSlot,
    Keychain,
    NetworkType,
    OutPoint,
    Recipient,
    SelectionAlgorithm,
    SelectionRequest,
    SelectionResult,
    TxPlan,
    Utxo,
    UtxoSnapshot,
)
from desccore.plan import SatisfactionPath, SatisfactionPlan
from desccore.policy import parse_policy
from desccore.psbt import PSBT, PSBTState, combine_psbts
from desccore.selection import select_utxos
from desccore.signer import descriptor_key_lookup, sign_psbt

__all__ = [
    "AliasKeySource",
    "AssemblyError",
    "BalanceError",
    "BalanceFundsError",
    "ChangeOutput",
    "ChangeSlot",
    "CompileError",
    "DescCoreError",
    "Descriptor",
    "DescriptorError",
    "DescriptorKey",
    "HDKey",
    "InsufficientFundsError",
    "InvalidThresholdError",
    "KeyParseError",
    "KeySource",
    "Keychain",
    "NetworkType",
    "Ordering",
    "OutPoint",
    "PSBT",
    "PSBTError",
    "PSBTState",
    "PolicyParseError",
    "Recipient",
    "SatisfactionPath",
    "SatisfactionPlan",
    "ScriptType",
    "SelectionAlgorithm",
    "SelectionError",
    "SelectionFundsError",
    "SelectionRequest",
    "SelectionResult",
    "SigningError",
    "TxPlan",
    "UnresolvableKeyError",
    "UnsatisfiablePolicyError",
    "Utxo",
    "UtxoSnapshot",
    "assemble_psbt",
    "balance",
    "change_dust_threshold",
    "combine_psbts",
    "compile_policy",
    "descriptor_checksum",
    "descriptor_key_lookup",
    "finalize_psbt",
    "parse_policy",
    "relay_dust",
    "select_utxos",
    "sign_psbt",
    "timelocks_for",
]

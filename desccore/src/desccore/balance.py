"""
Fee and change balancing.

Fees are whole satoshis: fee = ceil(weight / 4) * fee_rate. Change is only
created when it is worth more than it costs to create and later spend; a
smaller remainder goes to the miner.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from desccore.constants import CHANGE_DUST_MULTIPLIER, DUST_RELAY_FEE_RATE, WITNESS_SCALE_FACTOR
from desccore.errors import BalanceError, BalanceFundsError
from desccore.models import ChangeOutput, ChangeSlot, Recipient, SelectionResult, TxPlan
from desccore.tx import estimate_tx_weight, fee_for_weight, output_weight, varint


def is_witness_program(script_pubkey: bytes) -> bool:
    """OP_n <2..40 byte program>"""
    if not 4 <= len(script_pubkey) <= 42:
        return False
    version_ok = script_pubkey[0] == 0x00 or 0x51 <= script_pubkey[0] <= 0x60
    return version_ok and script_pubkey[1] == len(script_pubkey) - 2


def relay_dust(script_pubkey: bytes) -> int:
    """
    Bitcoin Core's dust threshold (GetDustThreshold) at the dust relay fee:
    the cost of the output plus the input that will eventually spend it.
    """
    output_size = 8 + len(varint(len(script_pubkey))) + len(script_pubkey)
    if is_witness_program(script_pubkey):
        # outpoint + scriptSig length + discounted witness + sequence
        spend_size = 32 + 4 + 1 + 107 // WITNESS_SCALE_FACTOR + 4
    else:
        spend_size = 32 + 4 + 1 + 107 + 4
    return (output_size + spend_size) * DUST_RELAY_FEE_RATE


def change_dust_threshold(script_pubkey: bytes, fee_rate: int) -> int:
    """Smallest change worth creating at `fee_rate`."""
    output_vsize = output_weight(len(script_pubkey)) // WITNESS_SCALE_FACTOR
    return max(relay_dust(script_pubkey), CHANGE_DUST_MULTIPLIER * fee_rate * output_vsize)


def balance(
    selection: SelectionResult,
    recipients: Sequence[Recipient],
    fee_rate: int,
    change: ChangeSlot | None = None,
    drain: bool = False,
) -> TxPlan:
    """
    Finalize output amounts for the selected inputs.

    Args:
        selection: Selected inputs
        recipients: Outputs in order; with drain the last one receives the remainder
            and its amount is ignored
        fee_rate: sat/vB
        change: Fresh internal address for change, if the wallet has one
        drain: Send everything (minus fee) to the last recipient

    Raises:
        BalanceFundsError: Inputs cannot pay recipients plus the fee of the
            transaction without change
        BalanceError: Invalid amounts, or change is needed but no change slot was given
    """
    if not recipients:
        raise BalanceError("At least one recipient is required")
    if fee_rate < 0:
        raise BalanceError(f"Fee rate must not be negative: {fee_rate}")

    inputs_total = selection.total_value
    satisfaction_weights = [u.satisfaction_weight for u in selection.utxos]
    script_lens = [len(r.script_pubkey) for r in recipients]

    fixed = list(recipients[:-1]) if drain else list(recipients)
    for recipient in fixed:
        dust = relay_dust(recipient.script_pubkey)
        if recipient.amount < dust:
            raise BalanceError(f"Output amount {recipient.amount} is below the dust limit of {dust}")

    fee_without_change = fee_for_weight(
        estimate_tx_weight(satisfaction_weights, script_lens), fee_rate
    )
    sent = sum(r.amount for r in fixed)

    if drain:
        last = recipients[-1]
        amount = inputs_total - sent - fee_without_change
        dust = relay_dust(last.script_pubkey)
        if amount < dust:
            raise BalanceFundsError(sent + fee_without_change + dust, inputs_total)
        plan = TxPlan(
            recipients=tuple(fixed) + (Recipient(last.script_pubkey, amount),),
            change=None,
            fee=fee_without_change,
            inputs_total=inputs_total,
        )
        return _checked(plan)

    if inputs_total < sent + fee_without_change:
        raise BalanceFundsError(sent + fee_without_change, inputs_total)

    plan = None
    if change is not None:
        fee_with_change = fee_for_weight(
            estimate_tx_weight(satisfaction_weights, script_lens + [len(change.script_pubkey)]),
            fee_rate,
        )
        remainder = inputs_total - sent - fee_with_change
        threshold = change_dust_threshold(change.script_pubkey, fee_rate)
        if remainder >= threshold:
            plan = TxPlan(
                recipients=tuple(recipients),
                change=ChangeOutput(
                    script_pubkey=change.script_pubkey,
                    amount=remainder,
                    keychain=change.keychain,
                    derivation_index=change.derivation_index,
                ),
                fee=fee_with_change,
                inputs_total=inputs_total,
            )
        else:
            logger.debug(f"Change of {remainder} sats is below {threshold}, adding it to the fee")

    if plan is None:
        excess = inputs_total - sent - fee_without_change
        if change is None and excess >= change_dust_threshold(b"\x00\x14" + bytes(20), fee_rate):
            raise BalanceError(f"{excess} sats of change need a change address")
        plan = TxPlan(
            recipients=tuple(recipients),
            change=None,
            fee=inputs_total - sent,
            inputs_total=inputs_total,
        )
    return _checked(plan)


def _checked(plan: TxPlan) -> TxPlan:
    if plan.inputs_total != plan.outputs_total + plan.fee:
        raise BalanceError(
            f"Unbalanced plan: inputs {plan.inputs_total} != outputs {plan.outputs_total} + fee {plan.fee}"
        )
    if plan.fee < 0:
        raise BalanceError(f"Negative fee {plan.fee}")
    logger.debug(
        f"Balanced: {len(plan.recipients)} recipient(s), "
        f"change {plan.change.amount if plan.change else 0}, fee {plan.fee}"
    )
    return plan

"""
UTXO selection.

Candidates are filtered (unspendable, excluded, immature relative locks),
ordered by the requested algorithm and accumulated until they pay for the
target plus the fee of the transaction they produce. Adding an input adds
weight and therefore fee, so coverage is re-checked after every addition and
a pruning pass afterwards drops inputs that later, larger inputs made
unnecessary.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from desccore.constants import WITNESS_SCALE_FACTOR
from desccore.errors import SelectionError, SelectionFundsError
from desccore.models import SelectionAlgorithm, SelectionRequest, SelectionResult, Utxo
from desccore.tx import fee_for_weight, input_weight, varint


def selection_weight(base_weight: int, utxos: Sequence[Utxo]) -> int:
    """Transaction weight once `utxos` are added to a transaction of `base_weight`."""
    # base_weight already counts a one-byte input count
    extra_count_bytes = len(varint(len(utxos))) - 1
    return (
        base_weight
        + extra_count_bytes * WITNESS_SCALE_FACTOR
        + sum(input_weight(u.satisfaction_weight) for u in utxos)
    )


def is_mature(utxo: Utxo, relative_lock: int | None, tip_height: int | None) -> bool:
    """Whether `utxo` can be spent by an input carrying a height-based relative lock."""
    if relative_lock is None:
        return True
    if utxo.height is None or tip_height is None:
        return False
    # Spendable in the next block when tip + 1 >= height + lock
    return utxo.confirmations(tip_height) >= relative_lock


def _sort_key(algorithm: SelectionAlgorithm):
    if algorithm == SelectionAlgorithm.OLDEST_FIRST:
        return lambda u: (u.height is None, u.height or 0, -u.value, u.txid, u.vout)
    # Equal values: deeper confirmations first, unconfirmed last
    return lambda u: (-u.value, u.height is None, u.height or 0, u.txid, u.vout)


class _Accumulator:
    def __init__(self, request: SelectionRequest):
        self.request = request

    def fee(self, utxos: Sequence[Utxo]) -> int:
        return fee_for_weight(selection_weight(self.request.base_weight, utxos), self.request.fee_rate)

    def covers(self, utxos: Sequence[Utxo]) -> bool:
        if not utxos:
            return False
        return sum(u.value for u in utxos) >= self.request.target + self.fee(utxos)


def select_utxos(request: SelectionRequest, available: Sequence[Utxo]) -> SelectionResult:
    """
    Choose inputs for a transaction.

    Args:
        request: Target, fee rate, constraints and algorithm
        available: UTXO snapshot; never modified

    Returns:
        SelectionResult whose inputs cover target + fee. Without drain, no
        optional input can be removed without breaking that inequality.

    Raises:
        SelectionError: Invalid request or an unusable must-use UTXO
        SelectionFundsError: All usable UTXOs together cannot cover target + fee
    """
    if request.target < 0:
        raise SelectionError(f"Target must not be negative: {request.target}")
    if request.fee_rate < 0:
        raise SelectionError(f"Fee rate must not be negative: {request.fee_rate}")

    excluded = set(request.must_not_use)
    by_outpoint = {u.outpoint: u for u in available}
    required_outpoints = list(dict.fromkeys(request.must_use))

    required = []
    for outpoint in required_outpoints:
        utxo = by_outpoint.get(outpoint)
        if utxo is None:
            raise SelectionError(f"Required UTXO {outpoint} is not in the wallet")
        if outpoint in excluded:
            raise SelectionError(f"UTXO {outpoint} is both required and excluded")
        if not utxo.spendable or not is_mature(utxo, request.relative_lock, request.tip_height):
            raise SelectionError(f"Required UTXO {outpoint} is not spendable")
        required.append(utxo)

    required_set = set(required_outpoints)
    candidates = sorted(
        (
            u
            for u in available
            if u.spendable
            and u.outpoint not in excluded
            and u.outpoint not in required_set
            and is_mature(u, request.relative_lock, request.tip_height)
        ),
        key=_sort_key(request.algorithm),
    )

    acc = _Accumulator(request)

    if request.drain:
        chosen = required + candidates
    else:
        chosen = list(required)
        for utxo in candidates:
            if acc.covers(chosen):
                break
            chosen.append(utxo)

    total = sum(u.value for u in chosen)
    if not acc.covers(chosen):
        needed = request.target + acc.fee(chosen)
        logger.debug(
            f"Selection failed: need {needed} sats, {len(chosen)} usable UTXOs hold {total} sats"
        )
        raise SelectionFundsError(needed, total)

    if not request.drain:
        chosen = _prune(chosen, len(required), acc)

    weight = selection_weight(request.base_weight, chosen)
    fee = fee_for_weight(weight, request.fee_rate)
    total = sum(u.value for u in chosen)
    logger.debug(
        f"Selected {len(chosen)} UTXO(s) totalling {total} sats "
        f"(target {request.target}, weight {weight}, fee {fee})"
    )
    return SelectionResult(
        utxos=tuple(chosen), total_value=total, estimated_weight=weight, fee=fee
    )


def _prune(chosen: list[Utxo], num_required: int, acc: _Accumulator) -> list[Utxo]:
    """Drop optional inputs, smallest first, while the rest still covers the target."""
    result = list(chosen)
    removed = True
    while removed:
        removed = False
        optional = sorted(
            range(num_required, len(result)),
            key=lambda i: (result[i].value, -i),
        )
        for i in optional:
            trial = result[:i] + result[i + 1 :]
            if acc.covers(trial):
                result = trial
                removed = True
                break
    return result

"""
Satisfaction plans: the minimal ways to unlock a descriptor's script.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Sequence

from desccore.constants import (
    SEQUENCE_LOCKTIME_DISABLE_FLAG,
    SEQUENCE_LOCKTIME_MASK,
    SEQUENCE_LOCKTIME_TYPE_FLAG,
    SEQUENCE_FINAL,
)
from desccore.miniscript import KeyLike, Satisfaction, WitnessItem, after_is_time, older_is_time


@dataclass(frozen=True)
class SatisfactionPath:
    """
    One independent way to satisfy a script.

    Attributes:
        keys: Positions (in the descriptor's key list) of keys that must sign
        older: Relative timelock the spending input's nSequence must meet
        after: Absolute timelock the transaction's nLockTime must meet
        witness: Witness stack template, `key` fields hold key positions
        witness_size: Serialized size of the template's stack items in bytes
    """

    keys: tuple[int, ...]
    older: int | None
    after: int | None
    witness: tuple[WitnessItem, ...]
    witness_size: int

    @property
    def sort_key(self) -> tuple:
        return (self.witness_size, self.keys, self.older or 0, self.after or 0)

    def requirements_within(self, other: SatisfactionPath) -> bool:
        """True when every requirement of this path is also required by `other`."""
        return (
            set(self.keys) <= set(other.keys)
            and _lock_within(self.older, other.older, older_is_time)
            and _lock_within(self.after, other.after, after_is_time)
        )

    def timelocks_met(self, sequence: int, locktime: int, version: int = 2) -> bool:
        """Whether an input with `sequence` in a tx with `locktime` satisfies the timelocks."""
        if self.older is not None:
            if version < 2 or sequence & SEQUENCE_LOCKTIME_DISABLE_FLAG:
                return False
            if bool(sequence & SEQUENCE_LOCKTIME_TYPE_FLAG) != older_is_time(self.older):
                return False
            if sequence & SEQUENCE_LOCKTIME_MASK < self.older & SEQUENCE_LOCKTIME_MASK:
                return False
        if self.after is not None:
            if sequence == SEQUENCE_FINAL:
                return False
            if after_is_time(locktime) != after_is_time(self.after) or locktime < self.after:
                return False
        return True

    def to_dict(self, key_names: Sequence[str] | None = None) -> dict:
        return {
            "keys": [key_names[k] if key_names else k for k in self.keys],
            "older": self.older,
            "after": self.after,
            "witness_size": self.witness_size,
            "needs_signature": bool(self.keys),
        }


def _lock_within(a: int | None, b: int | None, is_time: Callable[[int], bool]) -> bool:
    if a is None:
        return True
    return b is not None and is_time(a) == is_time(b) and a <= b


@dataclass(frozen=True)
class SatisfactionPlan:
    """Immutable, ordered set of satisfaction paths, smallest witness first."""

    paths: tuple[SatisfactionPath, ...]

    def __iter__(self) -> Iterator[SatisfactionPath]:
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    def __bool__(self) -> bool:
        return bool(self.paths)

    def __getitem__(self, index: int) -> SatisfactionPath:
        return self.paths[index]

    @property
    def max_witness_size(self) -> int:
        return max((p.witness_size for p in self.paths), default=0)

    def usable_paths(
        self, signed: set[int], sequence: int, locktime: int, version: int = 2
    ) -> list[SatisfactionPath]:
        """Paths whose keys all have signatures and whose timelocks the tx meets."""
        return [
            p
            for p in self.paths
            if set(p.keys) <= signed and p.timelocks_met(sequence, locktime, version)
        ]


def build_plan(satisfactions: list[Satisfaction], keys: Sequence[KeyLike]) -> SatisfactionPlan:
    """
    Turn raw satisfactions into a plan.

    Key references become positions in `keys`. Paths whose requirements are a
    superset of another path's are dropped; among paths with identical
    requirements only the smallest witness is kept.
    """
    key_list = list(keys)
    candidates = []
    for sat in satisfactions:
        witness = tuple(
            WitnessItem(key=key_list.index(item.key), data=item.data, pubkey=item.pubkey)
            if item.key is not None
            else item
            for item in sat.items
        )
        positions = tuple(sorted({item.key for item in witness if item.is_signature}))
        candidates.append(SatisfactionPath(positions, sat.older, sat.after, witness, sat.size))

    candidates.sort(key=lambda p: p.sort_key)
    minimal = []
    for i, path in enumerate(candidates):
        dominated = False
        for j, other in enumerate(candidates):
            if i == j or not other.requirements_within(path):
                continue
            # Strictly weaker requirements, or identical ones with an earlier (smaller) witness
            if not path.requirements_within(other) or j < i:
                dominated = True
                break
        if not dominated:
            minimal.append(path)
    return SatisfactionPlan(tuple(minimal))

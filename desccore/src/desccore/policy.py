"""
Spending policy expressions.

Policies are the human-facing language compiled into miniscript:

    pk(A)                      signature by key A
    older(N) / after(N)        relative / absolute timelock
    and(X,Y,...)               all sub-policies
    or([W@]X,[W@]Y,...)        any sub-policy, optionally weighted by likelihood
    thresh(K,X,Y,...)          K of the sub-policies
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Union

from desccore.constants import MAX_TIMELOCK
from desccore.errors import PolicyParseError
from desccore.expression import Expression, parse_expression

_WEIGHT_RE = re.compile(r"^([0-9]+)@(.+)$", re.DOTALL)


@dataclass(frozen=True)
class Key:
    identifier: str

    def __str__(self) -> str:
        return f"pk({self.identifier})"


@dataclass(frozen=True)
class Older:
    blocks: int

    def __post_init__(self) -> None:
        _check_timelock("older", self.blocks)

    def __str__(self) -> str:
        return f"older({self.blocks})"


@dataclass(frozen=True)
class After:
    locktime: int

    def __post_init__(self) -> None:
        _check_timelock("after", self.locktime)

    def __str__(self) -> str:
        return f"after({self.locktime})"


@dataclass(frozen=True)
class And:
    children: tuple[Policy, ...]

    def __str__(self) -> str:
        return f"and({','.join(str(c) for c in self.children)})"


@dataclass(frozen=True)
class Or:
    children: tuple[Policy, ...]
    # Relative likelihood of each branch, 1 when not given
    weights: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if not self.weights:
            object.__setattr__(self, "weights", (1,) * len(self.children))
        if len(self.weights) != len(self.children):
            raise PolicyParseError("or() needs one weight per branch")
        if any(w <= 0 for w in self.weights):
            raise PolicyParseError("or() branch weights must be positive")

    def __str__(self) -> str:
        parts = []
        for weight, child in zip(self.weights, self.children):
            parts.append(str(child) if weight == 1 else f"{weight}@{child}")
        return f"or({','.join(parts)})"


@dataclass(frozen=True)
class Threshold:
    k: int
    children: tuple[Policy, ...]

    def __str__(self) -> str:
        return f"thresh({self.k},{','.join(str(c) for c in self.children)})"


Policy = Union[Key, Older, After, And, Or, Threshold]


def _check_timelock(name: str, value: int) -> None:
    if not 0 < value <= MAX_TIMELOCK:
        raise PolicyParseError(f"{name}({value}) out of range: need 0 < n <= {MAX_TIMELOCK}")


def children_of(policy: Policy) -> tuple[Policy, ...]:
    if isinstance(policy, (And, Or, Threshold)):
        return policy.children
    return ()


def iter_keys(policy: Policy) -> Iterator[str]:
    """Key identifiers in order of appearance."""
    if isinstance(policy, Key):
        yield policy.identifier
    for child in children_of(policy):
        yield from iter_keys(child)


def parse_policy(text: str) -> Policy:
    """
    Parse a policy string.

    Raises:
        PolicyParseError: On malformed input or out-of-range timelocks
    """
    try:
        expr = parse_expression(text)
    except ValueError as e:
        raise PolicyParseError(f"Malformed policy: {e}") from e
    return _from_expression(expr)


def _parse_int(value: str, what: str) -> int:
    if not value.isdigit():
        raise PolicyParseError(f"Expected an integer for {what}, got '{value}'")
    return int(value)


def _from_expression(expr: Expression) -> Policy:
    name, args = expr.name, expr.args

    if name == "pk":
        if len(args) != 1 or not args[0].is_leaf:
            raise PolicyParseError("pk() takes exactly one key")
        return Key(args[0].name)

    if name in ("older", "after"):
        if len(args) != 1 or not args[0].is_leaf:
            raise PolicyParseError(f"{name}() takes exactly one number")
        value = _parse_int(args[0].name, name)
        return Older(value) if name == "older" else After(value)

    if name == "and":
        if len(args) < 2:
            raise PolicyParseError("and() needs at least two sub-policies")
        return And(tuple(_from_expression(a) for a in args))

    if name == "or":
        if len(args) < 2:
            raise PolicyParseError("or() needs at least two sub-policies")
        children = []
        weights = []
        for arg in args:
            match = _WEIGHT_RE.match(arg.name)
            if match:
                weights.append(_parse_int(match.group(1), "or() weight"))
                arg = Expression(match.group(2), arg.args)
            else:
                weights.append(1)
            children.append(_from_expression(arg))
        return Or(tuple(children), tuple(weights))

    if name == "thresh":
        if len(args) < 2 or not args[0].is_leaf:
            raise PolicyParseError("thresh() needs a threshold and at least one sub-policy")
        k = _parse_int(args[0].name, "thresh() threshold")
        return Threshold(k, tuple(_from_expression(a) for a in args[1:]))

    if expr.is_leaf:
        raise PolicyParseError(f"Unexpected bare identifier '{name}', keys go inside pk()")
    raise PolicyParseError(f"Unknown policy fragment '{name}'")

"""
Miniscript fragments for P2WSH witness scripts.

Each fragment knows its type properties, its script encoding and the
symbolic witnesses that satisfy or dissatisfy it. Supported fragments:

    pk(K)  older(n)  after(n)  multi(k,K1,...,Kn)
    and_v(X,Y)  or_d(X,Z)  or_i(X,Z)  thresh(k,X1,...,Xn)

and the wrappers v: s: a: n: l:.

Type properties (see the Miniscript reference):
- base type B (pushes nonzero on success), V (succeeds or aborts) or
  W (works on the stack element below the top)
- z: consumes no stack elements, o: consumes exactly one
- d: has a dissatisfaction, u: pushes exactly 1 when satisfied
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Union

from desccore.constants import (
    LOCKTIME_THRESHOLD,
    MAX_MULTISIG_KEYS,
    PUBKEY_WITNESS_SIZE,
    SEQUENCE_LOCKTIME_TYPE_FLAG,
    SIGNATURE_WITNESS_SIZE,
)
from desccore.errors import DescriptorError
from desccore.expression import Expression
from desccore.script import (
    OP_0,
    OP_0NOTEQUAL,
    OP_ADD,
    OP_CHECKMULTISIG,
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSEQUENCEVERIFY,
    OP_CHECKSIG,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_FROMALTSTACK,
    OP_IF,
    OP_IFDUP,
    OP_NOTIF,
    OP_SWAP,
    OP_TOALTSTACK,
    OP_VERIFY,
    VERIFY_VARIANTS,
    push_data,
    push_int,
)
from desccore.tx import varint

# Anything with pubkey_at(index) and to_string(private): DescriptorKey or AliasKey
KeyLike = Any


@dataclass(frozen=True)
class Props:
    base: str
    z: bool = False
    o: bool = False
    d: bool = False
    u: bool = False

    def __str__(self) -> str:
        return self.base + "".join(c for c in "zodu" if getattr(self, c))


# ---------------------------------------------------------------------------
# Symbolic witnesses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WitnessItem:
    """
    One witness stack element: a signature by `key`, the public key of `key`
    (when `pubkey` is set) or a literal push of `data`.
    """

    key: KeyLike | None = None
    data: bytes = b""
    pubkey: bool = False

    @property
    def is_signature(self) -> bool:
        return self.key is not None and not self.pubkey

    @property
    def size(self) -> int:
        if self.pubkey:
            return PUBKEY_WITNESS_SIZE
        if self.key is not None:
            return SIGNATURE_WITNESS_SIZE
        return len(varint(len(self.data))) + len(self.data)


EMPTY = WitnessItem(data=b"")
ONE = WitnessItem(data=b"\x01")


def _sig(key: KeyLike) -> WitnessItem:
    return WitnessItem(key=key)


@dataclass(frozen=True)
class Satisfaction:
    """Witness items (bottom of stack first) plus the timelocks they rely on."""

    items: tuple[WitnessItem, ...] = ()
    older: int | None = None
    after: int | None = None

    @property
    def size(self) -> int:
        return sum(item.size for item in self.items)


def older_is_time(value: int) -> bool:
    return bool(value & SEQUENCE_LOCKTIME_TYPE_FLAG)


def after_is_time(value: int) -> bool:
    return value >= LOCKTIME_THRESHOLD


class _TimelockConflict(Exception):
    pass


def _merge_lock(a: int | None, b: int | None, is_time: Callable[[int], bool]) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    if is_time(a) != is_time(b):
        raise _TimelockConflict
    return max(a, b)


def concat(*sats: Satisfaction) -> Satisfaction | None:
    """Stack the witnesses of `sats` (first one at the bottom); None on timelock conflict."""
    items: tuple[WitnessItem, ...] = ()
    older = after = None
    try:
        for sat in sats:
            items += sat.items
            older = _merge_lock(older, sat.older, older_is_time)
            after = _merge_lock(after, sat.after, after_is_time)
    except _TimelockConflict:
        return None
    return Satisfaction(items, older, after)


def _combine(*options: list[Satisfaction]) -> list[Satisfaction]:
    """Every way of stacking one satisfaction from each option list."""
    result = []
    for combo in itertools.product(*options):
        merged = concat(*combo)
        if merged is not None:
            result.append(merged)
    return result


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------


class Fragment:
    """Base class for miniscript fragments."""

    @property
    def props(self) -> Props:
        raise NotImplementedError

    def script(self, index: int = 0) -> bytes:
        raise NotImplementedError

    def render(self, private: bool = True) -> str:
        raise NotImplementedError

    def satisfactions(self) -> list[Satisfaction]:
        raise NotImplementedError

    def dissatisfactions(self) -> list[Satisfaction]:
        raise NotImplementedError

    def keys(self) -> list[KeyLike]:
        """Keys in order of appearance."""
        return []

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True, eq=False)
class Pk(Fragment):
    key: KeyLike

    @property
    def props(self) -> Props:
        return Props("B", o=True, d=True, u=True)

    def script(self, index: int = 0) -> bytes:
        return push_data(self.key.pubkey_at(index)) + bytes([OP_CHECKSIG])

    def render(self, private: bool = True) -> str:
        return f"pk({self.key.to_string(private=private)})"

    def satisfactions(self) -> list[Satisfaction]:
        return [Satisfaction((_sig(self.key),))]

    def dissatisfactions(self) -> list[Satisfaction]:
        return [Satisfaction((EMPTY,))]

    def keys(self) -> list[KeyLike]:
        return [self.key]


@dataclass(frozen=True, eq=False)
class Multi(Fragment):
    k: int
    key_list: tuple[KeyLike, ...]

    def __post_init__(self) -> None:
        n = len(self.key_list)
        if not 0 < self.k <= n or n > MAX_MULTISIG_KEYS:
            raise DescriptorError(f"multi({self.k}, ...) with {n} keys is invalid")

    @property
    def props(self) -> Props:
        return Props("B", d=True, u=True)

    def script(self, index: int = 0) -> bytes:
        body = b"".join(push_data(key.pubkey_at(index)) for key in self.key_list)
        return push_int(self.k) + body + push_int(len(self.key_list)) + bytes([OP_CHECKMULTISIG])

    def render(self, private: bool = True) -> str:
        names = ",".join(key.to_string(private=private) for key in self.key_list)
        return f"multi({self.k},{names})"

    def satisfactions(self) -> list[Satisfaction]:
        # CHECKMULTISIG pops one extra element and wants signatures in key order
        return [
            Satisfaction((EMPTY,) + tuple(_sig(key) for key in combo))
            for combo in itertools.combinations(self.key_list, self.k)
        ]

    def dissatisfactions(self) -> list[Satisfaction]:
        return [Satisfaction((EMPTY,) * (self.k + 1))]

    def keys(self) -> list[KeyLike]:
        return list(self.key_list)


@dataclass(frozen=True, eq=False)
class Older(Fragment):
    value: int

    @property
    def props(self) -> Props:
        return Props("B", z=True)

    def script(self, index: int = 0) -> bytes:
        return push_int(self.value) + bytes([OP_CHECKSEQUENCEVERIFY])

    def render(self, private: bool = True) -> str:
        return f"older({self.value})"

    def satisfactions(self) -> list[Satisfaction]:
        return [Satisfaction(older=self.value)]

    def dissatisfactions(self) -> list[Satisfaction]:
        return []


@dataclass(frozen=True, eq=False)
class After(Fragment):
    value: int

    @property
    def props(self) -> Props:
        return Props("B", z=True)

    def script(self, index: int = 0) -> bytes:
        return push_int(self.value) + bytes([OP_CHECKLOCKTIMEVERIFY])

    def render(self, private: bool = True) -> str:
        return f"after({self.value})"

    def satisfactions(self) -> list[Satisfaction]:
        return [Satisfaction(after=self.value)]

    def dissatisfactions(self) -> list[Satisfaction]:
        return []


@dataclass(frozen=True, eq=False)
class AndV(Fragment):
    x: Fragment
    y: Fragment

    def __post_init__(self) -> None:
        if self.x.props.base != "V":
            raise DescriptorError(f"and_v: first argument must be V, got {self.x.props}")

    @property
    def props(self) -> Props:
        x, y = self.x.props, self.y.props
        return Props(
            y.base,
            z=x.z and y.z,
            o=(x.z and y.o) or (x.o and y.z),
            u=y.u,
        )

    def script(self, index: int = 0) -> bytes:
        return self.x.script(index) + self.y.script(index)

    def render(self, private: bool = True) -> str:
        return f"and_v({self.x.render(private)},{self.y.render(private)})"

    def satisfactions(self) -> list[Satisfaction]:
        # X runs first so its witness sits on top
        return _combine(self.y.satisfactions(), self.x.satisfactions())

    def dissatisfactions(self) -> list[Satisfaction]:
        return []

    def keys(self) -> list[KeyLike]:
        return self.x.keys() + self.y.keys()


@dataclass(frozen=True, eq=False)
class OrD(Fragment):
    x: Fragment
    z: Fragment

    def __post_init__(self) -> None:
        x, z = self.x.props, self.z.props
        if x.base != "B" or not (x.d and x.u):
            raise DescriptorError(f"or_d: first argument must be Bdu, got {x}")
        if z.base != "B":
            raise DescriptorError(f"or_d: second argument must be B, got {z}")

    @property
    def props(self) -> Props:
        x, z = self.x.props, self.z.props
        return Props("B", z=x.z and z.z, o=x.o and z.z, d=z.d, u=z.u)

    def script(self, index: int = 0) -> bytes:
        return (
            self.x.script(index)
            + bytes([OP_IFDUP, OP_NOTIF])
            + self.z.script(index)
            + bytes([OP_ENDIF])
        )

    def render(self, private: bool = True) -> str:
        return f"or_d({self.x.render(private)},{self.z.render(private)})"

    def satisfactions(self) -> list[Satisfaction]:
        return self.x.satisfactions() + _combine(
            self.z.satisfactions(), self.x.dissatisfactions()
        )

    def dissatisfactions(self) -> list[Satisfaction]:
        return _combine(self.z.dissatisfactions(), self.x.dissatisfactions())

    def keys(self) -> list[KeyLike]:
        return self.x.keys() + self.z.keys()


@dataclass(frozen=True, eq=False)
class OrI(Fragment):
    x: Fragment
    z: Fragment

    def __post_init__(self) -> None:
        if self.x.props.base != self.z.props.base or self.x.props.base == "W":
            raise DescriptorError(
                f"or_i: arguments must both be B or both V, got {self.x.props} and {self.z.props}"
            )

    @property
    def props(self) -> Props:
        x, z = self.x.props, self.z.props
        return Props(x.base, o=x.z and z.z, d=x.d or z.d, u=x.u and z.u)

    def script(self, index: int = 0) -> bytes:
        return (
            bytes([OP_IF])
            + self.x.script(index)
            + bytes([OP_ELSE])
            + self.z.script(index)
            + bytes([OP_ENDIF])
        )

    def render(self, private: bool = True) -> str:
        return f"or_i({self.x.render(private)},{self.z.render(private)})"

    def satisfactions(self) -> list[Satisfaction]:
        return _combine(self.x.satisfactions(), [Satisfaction((ONE,))]) + _combine(
            self.z.satisfactions(), [Satisfaction((EMPTY,))]
        )

    def dissatisfactions(self) -> list[Satisfaction]:
        return _combine(self.x.dissatisfactions(), [Satisfaction((ONE,))]) + _combine(
            self.z.dissatisfactions(), [Satisfaction((EMPTY,))]
        )

    def keys(self) -> list[KeyLike]:
        return self.x.keys() + self.z.keys()


@dataclass(frozen=True, eq=False)
class Thresh(Fragment):
    k: int
    subs: tuple[Fragment, ...]

    def __post_init__(self) -> None:
        if not 0 < self.k <= len(self.subs):
            raise DescriptorError(f"thresh({self.k}, ...) with {len(self.subs)} arguments is invalid")
        first = self.subs[0].props
        if first.base != "B" or not (first.d and first.u):
            raise DescriptorError(f"thresh: first argument must be Bdu, got {first}")
        for sub in self.subs[1:]:
            if sub.props.base != "W" or not (sub.props.d and sub.props.u):
                raise DescriptorError(f"thresh: later arguments must be Wdu, got {sub.props}")

    @property
    def props(self) -> Props:
        subs = [s.props for s in self.subs]
        z = all(p.z for p in subs)
        o = sum(1 for p in subs if p.o) == 1 and all(p.z or p.o for p in subs)
        return Props("B", z=z, o=o, d=True, u=True)

    def script(self, index: int = 0) -> bytes:
        result = self.subs[0].script(index)
        for sub in self.subs[1:]:
            result += sub.script(index) + bytes([OP_ADD])
        return result + push_int(self.k) + bytes([OP_EQUAL])

    def render(self, private: bool = True) -> str:
        return f"thresh({self.k},{','.join(s.render(private) for s in self.subs)})"

    def satisfactions(self) -> list[Satisfaction]:
        sats = [s.satisfactions() for s in self.subs]
        dsats = [s.dissatisfactions() for s in self.subs]
        result = []
        for chosen in itertools.combinations(range(len(self.subs)), self.k):
            options = [sats[i] if i in chosen else dsats[i] for i in range(len(self.subs))]
            # The first argument runs first, so its witness is stacked last
            result.extend(_combine(*reversed(options)))
        return result

    def dissatisfactions(self) -> list[Satisfaction]:
        return _combine(*reversed([s.dissatisfactions() for s in self.subs]))

    def keys(self) -> list[KeyLike]:
        return [key for sub in self.subs for key in sub.keys()]


@dataclass(frozen=True, eq=False)
class Wrap(Fragment):
    """A single-letter wrapper (v, s, a, n or l) around a fragment."""

    kind: str
    sub: Fragment

    def __post_init__(self) -> None:
        p = self.sub.props
        if self.kind not in WRAPPERS:
            raise DescriptorError(f"Unsupported wrapper '{self.kind}:'")
        if p.base != "B":
            raise DescriptorError(f"{self.kind}: wrapper needs a B argument, got {p}")
        if self.kind == "s" and not p.o:
            raise DescriptorError(f"s: wrapper needs a one-argument fragment, got {p}")

    @property
    def props(self) -> Props:
        p = self.sub.props
        if self.kind == "v":
            return Props("V", z=p.z, o=p.o)
        if self.kind in ("s", "a"):
            return Props("W", o=p.o and self.kind == "s", d=p.d, u=p.u)
        if self.kind == "n":
            return Props("B", z=p.z, o=p.o, d=p.d, u=True)
        # l: is or_i(0,X)
        return Props("B", o=p.z, d=True, u=p.u)

    def script(self, index: int = 0) -> bytes:
        inner = self.sub.script(index)
        if self.kind == "v":
            if inner[-1] in VERIFY_VARIANTS:
                return inner[:-1] + bytes([VERIFY_VARIANTS[inner[-1]]])
            return inner + bytes([OP_VERIFY])
        if self.kind == "s":
            return bytes([OP_SWAP]) + inner
        if self.kind == "a":
            return bytes([OP_TOALTSTACK]) + inner + bytes([OP_FROMALTSTACK])
        if self.kind == "n":
            return inner + bytes([OP_0NOTEQUAL])
        return bytes([OP_IF, OP_0, OP_ELSE]) + inner + bytes([OP_ENDIF])

    def render(self, private: bool = True) -> str:
        inner = self.sub.render(private)
        if isinstance(self.sub, Wrap):
            # Adjacent wrappers share one colon: s:l:n:X is written sln:X
            return self.kind + inner
        return f"{self.kind}:{inner}"

    def satisfactions(self) -> list[Satisfaction]:
        if self.kind == "l":
            return _combine(self.sub.satisfactions(), [Satisfaction((EMPTY,))])
        return self.sub.satisfactions()

    def dissatisfactions(self) -> list[Satisfaction]:
        if self.kind == "v":
            return []
        if self.kind == "l":
            return [Satisfaction((ONE,))]
        return self.sub.dissatisfactions()

    def keys(self) -> list[KeyLike]:
        return self.sub.keys()


WRAPPERS = "vsanl"

MiniscriptNode = Union[Pk, Multi, Older, After, AndV, OrD, OrI, Thresh, Wrap]


# ---------------------------------------------------------------------------
# Helpers used by the policy compiler
# ---------------------------------------------------------------------------


def make_dissatisfiable_unit(fragment: Fragment) -> Fragment:
    """Wrap a B fragment with n: and/or l: until it is d and u."""
    if not fragment.props.u:
        fragment = Wrap("n", fragment)
    if not fragment.props.d:
        fragment = Wrap("l", fragment)
    return fragment


def make_wrapped(fragment: Fragment) -> Fragment:
    """Turn a Bdu fragment into a Wdu one: s: when it takes one argument, else a:."""
    return Wrap("s" if fragment.props.o else "a", fragment)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_miniscript(expr: Expression, parse_key: Callable[[str], KeyLike]) -> Fragment:
    """
    Build a fragment tree from a parsed expression.

    Raises:
        DescriptorError: On unknown fragments or type errors
    """
    name = expr.name
    wrappers = ""
    if ":" in name:
        wrappers, name = name.split(":", 1)
        if not wrappers or any(c not in WRAPPERS for c in wrappers):
            raise DescriptorError(f"Unsupported wrappers '{wrappers}:'")

    fragment = _parse_fragment(Expression(name, expr.args), parse_key)
    for kind in reversed(wrappers):
        fragment = Wrap(kind, fragment)
    return fragment


def _int_arg(expr: Expression, what: str) -> int:
    if not expr.is_leaf or not expr.name.isdigit():
        raise DescriptorError(f"Expected an integer for {what}, got '{expr}'")
    return int(expr.name)


def _parse_fragment(expr: Expression, parse_key: Callable[[str], KeyLike]) -> Fragment:
    name, args = expr.name, expr.args

    def sub(i: int) -> Fragment:
        return parse_miniscript(args[i], parse_key)

    def expect(count: int) -> None:
        if len(args) != count:
            raise DescriptorError(f"{name}() takes {count} arguments, got {len(args)}")

    if name == "pk":
        expect(1)
        if not args[0].is_leaf:
            raise DescriptorError("pk() takes a key")
        return Pk(parse_key(args[0].name))
    if name == "multi":
        if len(args) < 2:
            raise DescriptorError("multi() needs a threshold and keys")
        return Multi(_int_arg(args[0], "multi() threshold"), tuple(parse_key(a.name) for a in args[1:]))
    if name == "older":
        expect(1)
        return Older(_int_arg(args[0], "older()"))
    if name == "after":
        expect(1)
        return After(_int_arg(args[0], "after()"))
    if name == "and_v":
        expect(2)
        return AndV(sub(0), sub(1))
    if name == "or_d":
        expect(2)
        return OrD(sub(0), sub(1))
    if name == "or_i":
        expect(2)
        return OrI(sub(0), sub(1))
    if name == "thresh":
        if len(args) < 2:
            raise DescriptorError("thresh() needs a threshold and arguments")
        return Thresh(
            _int_arg(args[0], "thresh() threshold"),
            tuple(parse_miniscript(a, parse_key) for a in args[1:]),
        )
    raise DescriptorError(f"Unsupported miniscript fragment '{name}'")

"""
Output descriptors.

Supported forms:
- wpkh(KEY)
- sh(wpkh(KEY))
- wsh(MINISCRIPT)
- sh(wsh(MINISCRIPT))

An optional BIP380 `#checksum` suffix is verified when present and always
emitted by `to_string()`.
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Sequence

from loguru import logger

from desccore.address import scriptpubkey_to_address
from desccore.constants import WITNESS_SCALE_FACTOR
from desccore.errors import DescriptorError, KeyParseError
from desccore.expression import Expression, parse_expression
from desccore.keys import AliasKey, DescriptorKey
from desccore.miniscript import Fragment, KeyLike, Satisfaction, WitnessItem, parse_miniscript
from desccore.models import NetworkType
from desccore.plan import SatisfactionPath, SatisfactionPlan, build_plan
from desccore.script import hash160, p2sh_script, p2wpkh_script, p2wsh_script, push_data
from desccore.tx import varint


def PolyMod(c: int, val: int) -> int:
    """
    Function to compute modulo over the polynomial used for descriptor checksums
    From: https://github.com/bitcoin/bitcoin/blob/master/src/script/descriptor.cpp
    """
    c0 = c >> 35
    c = ((c & 0x7FFFFFFFF) << 5) ^ val
    if c0 & 1:
        c ^= 0xF5DEE51989
    if c0 & 2:
        c ^= 0xA9FDCA3312
    if c0 & 4:
        c ^= 0x1BAB10E32D
    if c0 & 8:
        c ^= 0x3706B1677A
    if c0 & 16:
        c ^= 0x644D626FFD
    return c


_INPUT_CHARSET = "0123456789()[],'/*abcdefgh@:$%{}IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
_INPUT_CHARSET_INV = {c: i for (i, c) in enumerate(_INPUT_CHARSET)}
_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def descriptor_checksum(desc: str) -> str:
    """Compute the 8-character BIP380 checksum of a descriptor string."""
    c = 1
    cls = 0
    clscount = 0
    for ch in desc:
        pos = _INPUT_CHARSET_INV.get(ch)
        if pos is None:
            raise DescriptorError(f"Invalid character '{ch}' in descriptor")
        c = PolyMod(c, pos & 31)
        cls = cls * 3 + (pos >> 5)
        clscount += 1
        if clscount == 3:
            c = PolyMod(c, cls)
            cls = 0
            clscount = 0
    if clscount > 0:
        c = PolyMod(c, cls)
    for _ in range(8):
        c = PolyMod(c, 0)
    c ^= 1
    return "".join(_CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(8))


def split_checksum(text: str) -> tuple[str, str | None]:
    """Split `desc#checksum`, verifying the checksum when present."""
    body, sep, checksum = text.strip().partition("#")
    if not sep:
        return body, None
    if len(checksum) != 8:
        raise DescriptorError(f"Descriptor checksum must be 8 characters, got '{checksum}'")
    expected = descriptor_checksum(body)
    if checksum != expected:
        raise DescriptorError(f"Invalid descriptor checksum '{checksum}', expected '{expected}'")
    return body, checksum


class ScriptType(str, Enum):
    WPKH = "wpkh"
    SH_WPKH = "sh-wpkh"
    WSH = "wsh"
    SH_WSH = "sh-wsh"

    @property
    def is_wrapped(self) -> bool:
        return self in (ScriptType.SH_WPKH, ScriptType.SH_WSH)

    @property
    def is_wsh(self) -> bool:
        return self in (ScriptType.WSH, ScriptType.SH_WSH)


# scriptSig length: a single push of the nested witness program
_SCRIPT_SIG_SIZE = {
    ScriptType.WPKH: 0,
    ScriptType.SH_WPKH: 23,
    ScriptType.WSH: 0,
    ScriptType.SH_WSH: 35,
}


class Descriptor:
    """
    A parsed or compiled output descriptor.

    `miniscript` is set for wsh forms and `key` for wpkh forms. Descriptors
    are immutable; the satisfaction plan is computed once on first use.
    """

    def __init__(
        self,
        script_type: ScriptType | str,
        *,
        miniscript: Fragment | None = None,
        key: KeyLike | None = None,
        network: NetworkType | str = NetworkType.MAINNET,
    ):
        self.script_type = ScriptType(script_type)
        self.network = NetworkType(network)
        if self.script_type.is_wsh:
            if miniscript is None:
                raise DescriptorError("wsh descriptors need a miniscript")
            if miniscript.props.base != "B":
                raise DescriptorError(f"Top-level miniscript must be B, got {miniscript.props}")
        elif key is None:
            raise DescriptorError("wpkh descriptors need a key")
        self.miniscript = miniscript
        self.key = key

    @classmethod
    def parse(cls, text: str, network: NetworkType | str | None = None) -> Descriptor:
        """
        Parse a descriptor string.

        Raises:
            DescriptorError: On malformed descriptors, bad checksums or invalid keys
        """
        body, _ = split_checksum(text)
        try:
            expr = parse_expression(body)
        except ValueError as e:
            raise DescriptorError(f"Malformed descriptor: {e}") from e

        net = NetworkType(network) if network is not None else None

        def parse_key(name: str) -> DescriptorKey:
            try:
                return DescriptorKey.parse(name, net)
            except KeyParseError as e:
                raise DescriptorError(f"Invalid key '{name}': {e}") from e

        script_type, inner = _unwrap(expr)
        if script_type.is_wsh:
            descriptor = cls(
                script_type,
                miniscript=parse_miniscript(inner, parse_key),
                network=net or NetworkType.MAINNET,
            )
        else:
            if not inner.is_leaf:
                raise DescriptorError("wpkh() takes a single key")
            descriptor = cls(script_type, key=parse_key(inner.name), network=net or NetworkType.MAINNET)
        if net is None:
            descriptor.network = network_of_keys(descriptor.keys)
        return descriptor

    # -- keys -----------------------------------------------------------------

    @cached_property
    def keys(self) -> tuple[KeyLike, ...]:
        """Keys in order of appearance."""
        if self.miniscript is not None:
            return tuple(self.miniscript.keys())
        return (self.key,)

    @property
    def is_wildcard(self) -> bool:
        return any(key.is_wildcard for key in self.keys)

    @property
    def has_private_keys(self) -> bool:
        return any(key.is_private for key in self.keys)

    @property
    def is_abstract(self) -> bool:
        """True when some key is only a named placeholder."""
        return any(isinstance(key, AliasKey) for key in self.keys)

    # -- scripts --------------------------------------------------------------

    def witness_script(self, index: int = 0) -> bytes | None:
        if self.miniscript is None:
            return None
        return self.miniscript.script(index)

    def witness_program(self, index: int = 0) -> bytes:
        """The native segwit scriptPubKey (also the P2SH redeem script when wrapped)."""
        if self.miniscript is not None:
            return p2wsh_script(self.miniscript.script(index))
        return p2wpkh_script(self.key.pubkey_at(index))

    def redeem_script(self, index: int = 0) -> bytes | None:
        if not self.script_type.is_wrapped:
            return None
        return self.witness_program(index)

    def script_pubkey(self, index: int = 0) -> bytes:
        program = self.witness_program(index)
        if self.script_type.is_wrapped:
            return p2sh_script(hash160(program))
        return program

    def script_sig(self, index: int = 0) -> bytes:
        if not self.script_type.is_wrapped:
            return b""
        return push_data(self.witness_program(index))

    def address(self, index: int = 0, network: NetworkType | str | None = None) -> str:
        return scriptpubkey_to_address(self.script_pubkey(index), network or self.network)

    def derivations(self, index: int = 0) -> list[tuple[bytes, bytes, tuple[int, ...]]]:
        """(pubkey, master fingerprint, path) for every distinct key at `index`."""
        result = []
        seen = set()
        for key in self.keys:
            pubkey = key.pubkey_at(index)
            if pubkey in seen:
                continue
            seen.add(pubkey)
            fingerprint, path = key.derivation_at(index)
            result.append((pubkey, fingerprint, path))
        return result

    # -- satisfaction ---------------------------------------------------------

    @cached_property
    def plan(self) -> SatisfactionPlan:
        if self.miniscript is not None:
            sats = self.miniscript.satisfactions()
        else:
            sats = [
                Satisfaction((WitnessItem(key=self.key), WitnessItem(key=self.key, pubkey=True)))
            ]
        plan = build_plan(sats, self.keys)
        logger.debug(f"Satisfaction plan for {self.script_type.value}: {len(plan)} path(s)")
        return plan

    def satisfaction_weight(self, path: SatisfactionPath | None = None) -> int:
        """
        Weight the input's scriptSig and witness add on top of the bare input.

        Uses the largest path of the plan unless `path` is given.
        """
        paths = [path] if path is not None else list(self.plan)
        if not paths:
            raise DescriptorError("Descriptor has no satisfaction paths")

        script_len = 0
        if self.miniscript is not None:
            script_len = len(self.miniscript.script(0))

        witness_sizes = []
        for p in paths:
            count = len(p.witness) + (1 if self.miniscript is not None else 0)
            size = len(varint(count)) + p.witness_size
            if self.miniscript is not None:
                size += len(varint(script_len)) + script_len
            witness_sizes.append(size)

        script_sig = _SCRIPT_SIG_SIZE[self.script_type]
        return (len(varint(script_sig)) + script_sig) * WITNESS_SCALE_FACTOR + max(witness_sizes)

    @property
    def max_satisfaction_weight(self) -> int:
        return self.satisfaction_weight()

    def policies(self) -> dict:
        """Spending paths in a JSON-friendly form."""
        names = [key.to_string(private=False) for key in self.keys]
        return {
            "type": self.script_type.value,
            "keys": names,
            "paths": [p.to_dict() for p in self.plan],
        }

    # -- serialization --------------------------------------------------------

    def _body(self, private: bool) -> str:
        if self.miniscript is not None:
            inner = f"wsh({self.miniscript.render(private)})"
        else:
            inner = f"wpkh({self.key.to_string(private=private)})"
        return f"sh({inner})" if self.script_type.is_wrapped else inner

    def to_string(self, private: bool = True, checksum: bool = True) -> str:
        body = self._body(private)
        return f"{body}#{descriptor_checksum(body)}" if checksum else body

    @property
    def checksum(self) -> str:
        return descriptor_checksum(self._body(private=False))

    def as_public(self) -> Descriptor:
        """Same descriptor with every private key replaced by its public form."""
        return Descriptor.parse(self._public_body(), self.network)

    def _public_body(self) -> str:
        try:
            return self._body(private=False)
        except KeyParseError as e:
            raise DescriptorError(f"Cannot export public descriptor: {e}") from e

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"Descriptor({self.to_string(private=False)})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Descriptor):
            return NotImplemented
        return self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())


def _unwrap(expr: Expression) -> tuple[ScriptType, Expression]:
    def single_arg(e: Expression) -> Expression:
        if len(e.args) != 1:
            raise DescriptorError(f"{e.name}() takes exactly one argument")
        return e.args[0]

    if expr.name == "wpkh":
        return ScriptType.WPKH, single_arg(expr)
    if expr.name == "wsh":
        return ScriptType.WSH, single_arg(expr)
    if expr.name == "sh":
        inner = single_arg(expr)
        if inner.name == "wpkh":
            return ScriptType.SH_WPKH, single_arg(inner)
        if inner.name == "wsh":
            return ScriptType.SH_WSH, single_arg(inner)
        raise DescriptorError(f"Unsupported sh() content '{inner.name}'")
    raise DescriptorError(f"Unsupported descriptor type '{expr.name}'")


def network_of_keys(keys: Sequence[KeyLike]) -> NetworkType:
    for key in keys:
        if isinstance(key, DescriptorKey) and (key.xkey is not None or key.private_key is not None):
            return key.network
    return NetworkType.MAINNET

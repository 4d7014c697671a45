"""
Policy to descriptor compiler.

Lowering rules:
- pk(K)                    -> pk(K)
- older(n) / after(n)      -> older(n) / after(n)
- and(X,Y,...)             -> and_v(v:X,and_v(v:Y,...)) folded right
- or(X,Y,...)              -> branches sorted by weight (descending, stable), folded
                              right into or_d(X,Y) when X is dissatisfiable and unit,
                              or_i(X,Y) otherwise
- thresh(n, n children)    -> and
- thresh(1, ...)           -> or with equal weights
- thresh(k, keys only)     -> multi(k,...)
- thresh(k, ...)           -> thresh(k,X1,W2,...) with n:/l: and s:/a: wrappers
"""

from __future__ import annotations

import re
from typing import Mapping

from loguru import logger

from desccore import policy as pol
from desccore.constants import MAX_MULTISIG_KEYS
from desccore.descriptor import Descriptor, ScriptType, network_of_keys
from desccore.errors import (
    DuplicateKeyError,
    InvalidThresholdError,
    KeyParseError,
    UnresolvableKeyError,
    UnsatisfiablePolicyError,
)
from desccore.keys import AliasKey, DescriptorKey
from desccore.miniscript import (
    After,
    AndV,
    Fragment,
    KeyLike,
    Multi,
    Older,
    OrD,
    OrI,
    Pk,
    Thresh,
    Wrap,
    make_dissatisfiable_unit,
    make_wrapped,
)
from desccore.models import NetworkType

# Short identifiers like A, alice, key_1 name a key instead of encoding one
_ALIAS_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,31}$")


def is_alias(identifier: str) -> bool:
    return bool(_ALIAS_RE.match(identifier))


class KeySource:
    """
    Resolves policy key identifiers.

    Concrete keys (hex public keys, WIF, extended keys with origin and
    derivation suffix) are parsed; bare aliases are kept as placeholders.
    """

    def __init__(self, network: NetworkType | str | None = None):
        self.network = NetworkType(network) if network is not None else None

    def resolve(self, identifier: str) -> KeyLike:
        if is_alias(identifier):
            return AliasKey(identifier)
        return self._parse(identifier, identifier)

    def _parse(self, identifier: str, text: str) -> DescriptorKey:
        try:
            return DescriptorKey.parse(text, self.network)
        except KeyParseError as e:
            raise UnresolvableKeyError(identifier, str(e)) from e


class AliasKeySource(KeySource):
    """Resolves aliases through a name -> key expression map; unknown aliases fail."""

    def __init__(self, keys: Mapping[str, str], network: NetworkType | str | None = None):
        super().__init__(network)
        self.keys = dict(keys)

    def resolve(self, identifier: str) -> KeyLike:
        if identifier in self.keys:
            return self._parse(identifier, self.keys[identifier])
        if is_alias(identifier):
            raise UnresolvableKeyError(identifier, "unknown alias")
        return self._parse(identifier, identifier)


def compile_policy(
    policy: pol.Policy | str,
    key_source: KeySource | None = None,
    script_type: ScriptType | str = ScriptType.WSH,
    network: NetworkType | str | None = None,
) -> Descriptor:
    """
    Compile a spending policy into a wsh or sh(wsh) descriptor.

    Args:
        policy: Policy tree or policy string
        key_source: Resolves key identifiers (placeholders are kept by default)
        script_type: "wsh" or "sh-wsh"
        network: Network concrete keys must belong to

    Raises:
        PolicyParseError: Malformed policy string or out-of-range timelock
        UnresolvableKeyError: A key cannot be resolved
        InvalidThresholdError: thresh() with k outside 1..n
        DuplicateKeyError: The same key appears more than once
        UnsatisfiablePolicyError: No combination of conditions can ever satisfy the policy
    """
    if isinstance(policy, str):
        policy = pol.parse_policy(policy)
    stype = ScriptType(script_type)
    if not stype.is_wsh:
        raise ValueError(f"Policies compile to wsh or sh-wsh, not {stype.value}")
    source = key_source or KeySource(network)

    fragment = lower_policy(policy, source)
    _check_unique_keys(fragment)
    descriptor = Descriptor(
        stype, miniscript=fragment, network=network or network_of_keys(fragment.keys())
    )
    if not descriptor.plan:
        raise UnsatisfiablePolicyError(f"Policy {policy} can never be satisfied")
    for path in descriptor.plan:
        if not path.keys:
            logger.warning(
                f"Policy {policy} can be spent without any signature "
                f"(older={path.older}, after={path.after})"
            )

    logger.debug(f"Compiled {policy} -> {descriptor.to_string(private=False)}")
    return descriptor


def lower_policy(policy: pol.Policy, key_source: KeySource) -> Fragment:
    """
    Lower a policy tree to miniscript with an explicit post-order traversal.

    Each node is visited after all of its children; results are keyed by the
    node's path from the root so repeated sub-trees stay independent.
    """
    lowered: dict[tuple[int, ...], Fragment] = {}
    stack: list[tuple[pol.Policy, tuple[int, ...], bool]] = [(policy, (), False)]

    while stack:
        node, path, expanded = stack.pop()
        children = pol.children_of(node)
        if isinstance(node, pol.Threshold) and not expanded:
            _check_threshold(node)
        if children and not expanded:
            stack.append((node, path, True))
            for i in reversed(range(len(children))):
                stack.append((children[i], path + (i,), False))
            continue

        subs = [lowered.pop(path + (i,)) for i in range(len(children))]
        lowered[path] = _lower_node(node, subs, key_source)

    return lowered[()]


def _check_unique_keys(fragment: Fragment) -> None:
    # Two aliases that resolve to the same key count as a repeat
    seen: set[str] = set()
    for key in fragment.keys():
        name = key.to_string(private=False)
        if name in seen:
            raise DuplicateKeyError(name)
        seen.add(name)


def _check_threshold(node: pol.Threshold) -> None:
    if not 0 < node.k <= len(node.children):
        raise InvalidThresholdError(node.k, len(node.children))


def _lower_node(node: pol.Policy, subs: list[Fragment], key_source: KeySource) -> Fragment:
    if isinstance(node, pol.Key):
        return Pk(key_source.resolve(node.identifier))
    if isinstance(node, pol.Older):
        return Older(node.blocks)
    if isinstance(node, pol.After):
        return After(node.locktime)
    if isinstance(node, pol.And):
        return _lower_and(subs)
    if isinstance(node, pol.Or):
        return _lower_or(subs, list(node.weights))
    if isinstance(node, pol.Threshold):
        return _lower_threshold(node.k, subs)
    raise TypeError(f"Unknown policy node {node!r}")


def _lower_and(subs: list[Fragment]) -> Fragment:
    result = subs[-1]
    for sub in reversed(subs[:-1]):
        result = AndV(Wrap("v", sub), result)
    return result


def _lower_or(subs: list[Fragment], weights: list[int]) -> Fragment:
    # sorted() is stable, so equal weights keep their written order
    ordered = [sub for _, sub in sorted(zip(weights, subs), key=lambda pair: -pair[0])]
    result = ordered[-1]
    for sub in reversed(ordered[:-1]):
        p = sub.props
        if p.base == "B" and p.d and p.u:
            result = OrD(sub, result)
        else:
            result = OrI(sub, result)
    return result


def _lower_threshold(k: int, subs: list[Fragment]) -> Fragment:
    n = len(subs)
    if n == 1:
        return subs[0]
    if k == n:
        return _lower_and(subs)
    if k == 1:
        return _lower_or(subs, [1] * n)
    if all(isinstance(sub, Pk) for sub in subs) and n <= MAX_MULTISIG_KEYS:
        return Multi(k, tuple(sub.key for sub in subs))

    args = [make_dissatisfiable_unit(subs[0])]
    for sub in subs[1:]:
        args.append(make_wrapped(make_dissatisfiable_unit(sub)))
    return Thresh(k, tuple(args))

"""
Tests for compiling spending policies into descriptors.
"""

import pytest
from loguru import logger

from desccore.compiler import AliasKeySource, KeySource, compile_policy, is_alias
from desccore.descriptor import ScriptType
from desccore.errors import (
    DuplicateKeyError,
    InvalidThresholdError,
    KeyParseError,
    UnresolvableKeyError,
    UnsatisfiablePolicyError,
)
from desccore.keys import AliasKey, DescriptorKey
from desccore.miniscript import Multi
from desccore.models import NetworkType


def _body(descriptor) -> str:
    return descriptor.to_string(private=False, checksum=False)


class TestLowering:
    def test_single_key(self):
        assert _body(compile_policy("pk(A)")) == "wsh(pk(A))"

    def test_and_becomes_and_v(self):
        assert _body(compile_policy("and(pk(A),pk(B))")) == "wsh(and_v(v:pk(A),pk(B)))"

    def test_and_folds_right(self):
        descriptor = compile_policy("and(pk(A),pk(B),pk(C))")
        assert _body(descriptor) == "wsh(and_v(v:pk(A),and_v(v:pk(B),pk(C))))"

    def test_or_with_key_first_uses_or_d(self):
        assert _body(compile_policy("or(pk(A),older(10))")) == "wsh(or_d(pk(A),older(10)))"

    def test_or_with_timelock_first_uses_or_i(self):
        assert _body(compile_policy("or(older(10),pk(A))")) == "wsh(or_i(older(10),pk(A)))"

    def test_or_weights_reorder_branches(self):
        descriptor = compile_policy("or(1@pk(A),9@pk(B))")
        assert _body(descriptor) == "wsh(or_d(pk(B),pk(A)))"

    def test_key_only_threshold_becomes_multi(self):
        descriptor = compile_policy("thresh(2,pk(A),pk(B),pk(C))")
        assert isinstance(descriptor.miniscript, Multi)
        assert _body(descriptor) == "wsh(multi(2,A,B,C))"

    def test_threshold_of_all_becomes_and(self):
        descriptor = compile_policy("thresh(2,pk(A),pk(B))")
        assert _body(descriptor) == "wsh(and_v(v:pk(A),pk(B)))"

    def test_threshold_of_one_becomes_or(self):
        descriptor = compile_policy("thresh(1,pk(A),pk(B))")
        assert _body(descriptor) == "wsh(or_d(pk(A),pk(B)))"

    def test_mixed_threshold_wraps_arguments(self):
        descriptor = compile_policy("thresh(2,pk(A),pk(B),older(10))")
        assert _body(descriptor) == "wsh(thresh(2,pk(A),s:pk(B),sln:older(10)))"
        assert len(descriptor.plan) == 3

    def test_nested_policy(self):
        descriptor = compile_policy("and(pk(A),or(pk(B),older(144)))")
        assert _body(descriptor) == "wsh(and_v(v:pk(A),or_d(pk(B),older(144))))"

    def test_sh_wsh(self):
        descriptor = compile_policy("pk(A)", script_type="sh-wsh")
        assert descriptor.script_type == ScriptType.SH_WSH
        assert _body(descriptor) == "sh(wsh(pk(A)))"

    def test_wpkh_is_not_a_policy_target(self):
        with pytest.raises(ValueError):
            compile_policy("pk(A)", script_type="wpkh")


class TestPlans:
    def test_nested_policy_paths(self):
        plan = compile_policy("and(pk(A),or(pk(B),older(144)))").plan
        assert len(plan) == 2
        # The timelocked path needs only A and has the smaller witness
        assert plan[0].keys == (0,)
        assert plan[0].older == 144
        assert plan[1].keys == (0, 1)
        assert plan[1].older is None

    def test_multi_paths(self):
        plan = compile_policy("thresh(2,pk(A),pk(B),pk(C))").plan
        assert sorted(p.keys for p in plan) == [(0, 1), (0, 2), (1, 2)]
        assert all(p.older is None and p.after is None for p in plan)

    def test_policies_report(self):
        report = compile_policy("or(pk(A),after(500))").policies()
        assert report["type"] == "wsh"
        assert report["keys"] == ["A"]
        assert {(tuple(p["keys"]), p["after"]) for p in report["paths"]} == {
            ((0,), None),
            ((), 500),
        }
        assert {p["after"]: p["needs_signature"] for p in report["paths"]} == {None: True, 500: False}

    def test_keyless_path_is_reported(self):
        messages = []
        handler_id = logger.add(messages.append, level="WARNING")
        try:
            descriptor = compile_policy("thresh(2,pk(A),older(10),after(20))")
        finally:
            logger.remove(handler_id)

        keyless = [p for p in descriptor.plan if not p.keys]
        assert keyless
        assert all((p.older, p.after) == (10, 20) for p in keyless)
        assert len(messages) == len(keyless)
        assert "without any signature" in messages[0]

    def test_signed_paths_log_nothing(self):
        messages = []
        handler_id = logger.add(messages.append, level="WARNING")
        try:
            compile_policy("and(pk(A),or(pk(B),older(144)))")
        finally:
            logger.remove(handler_id)
        assert messages == []


class TestErrors:
    def test_threshold_above_children(self):
        with pytest.raises(InvalidThresholdError) as exc_info:
            compile_policy("thresh(3,pk(A),pk(B))")
        assert exc_info.value.k == 3
        assert exc_info.value.n == 2

    def test_zero_threshold(self):
        with pytest.raises(InvalidThresholdError):
            compile_policy("thresh(0,pk(A),pk(B))")

    def test_nested_invalid_threshold(self):
        with pytest.raises(InvalidThresholdError):
            compile_policy("or(pk(A),thresh(5,pk(B),pk(C)))")

    def test_conflicting_timelocks_are_unsatisfiable(self):
        with pytest.raises(UnsatisfiablePolicyError):
            compile_policy("and(after(100),after(500000001))")

    def test_unknown_alias(self, pubkeys_hex):
        source = AliasKeySource({"A": pubkeys_hex[0]})
        with pytest.raises(UnresolvableKeyError) as exc_info:
            compile_policy("and(pk(A),pk(B))", source)
        assert exc_info.value.identifier == "B"

    @pytest.mark.parametrize(
        "policy", ["or(pk(A),pk(A))", "and(pk(A),or(pk(B),pk(A)))", "thresh(2,pk(A),pk(B),pk(A))"]
    )
    def test_repeated_key(self, policy):
        with pytest.raises(DuplicateKeyError) as exc_info:
            compile_policy(policy)
        assert exc_info.value.key == "A"

    def test_aliases_for_the_same_key(self, pubkeys_hex):
        source = AliasKeySource({"A": pubkeys_hex[0], "B": pubkeys_hex[0]})
        with pytest.raises(DuplicateKeyError) as exc_info:
            compile_policy("or(pk(A),pk(B))", source)
        assert exc_info.value.key == pubkeys_hex[0]

    def test_malformed_concrete_key(self):
        with pytest.raises(UnresolvableKeyError):
            compile_policy("pk(02abcd)")

    def test_alias_key_has_no_script(self):
        descriptor = compile_policy("pk(A)")
        assert descriptor.is_abstract
        with pytest.raises(KeyParseError):
            descriptor.script_pubkey(0)


class TestConcreteKeys:
    def test_multisig_weight(self, pubkeys_hex):
        source = AliasKeySource(dict(zip("ABC", pubkeys_hex)))
        descriptor = compile_policy("thresh(2,pk(A),pk(B),pk(C))", source)
        assert not descriptor.is_abstract
        assert descriptor.max_satisfaction_weight == 258
        assert len(descriptor.script_pubkey(0)) == 34

    def test_sh_wsh_weight_adds_script_sig(self, pubkeys_hex):
        source = AliasKeySource(dict(zip("ABC", pubkeys_hex)))
        descriptor = compile_policy("thresh(2,pk(A),pk(B),pk(C))", source, "sh-wsh")
        # 35-byte scriptSig plus its length byte at four weight units each
        assert descriptor.max_satisfaction_weight == 258 + 35 * 4
        assert len(descriptor.script_pubkey(0)) == 23

    def test_hex_keys_inline(self, pubkeys_hex):
        descriptor = compile_policy(f"pk({pubkeys_hex[0]})")
        assert descriptor.keys[0].pubkey_at(0).hex() == pubkeys_hex[0]

    def test_extended_keys_set_network(self, account_keys):
        source = AliasKeySource({"A": account_keys[0]}, NetworkType.TESTNET)
        descriptor = compile_policy("pk(A)", source)
        assert descriptor.network == NetworkType.TESTNET
        assert descriptor.is_wildcard
        assert descriptor.address(0).startswith("tb1q")

    def test_deterministic(self, pubkeys_hex):
        source = AliasKeySource(dict(zip("ABC", pubkeys_hex)))
        policy = "or(9@and(pk(A),pk(B)),1@and(pk(C),older(1000)))"
        first = compile_policy(policy, source)
        second = compile_policy(policy, source)
        assert first.to_string() == second.to_string()
        assert first.plan == second.plan


class TestKeySources:
    @pytest.mark.parametrize("name", ["A", "alice", "key_1", "Bob-2"])
    def test_aliases(self, name):
        assert is_alias(name)

    def test_hex_is_not_alias(self, pubkeys_hex):
        assert not is_alias(pubkeys_hex[0])

    def test_default_source_keeps_placeholders(self):
        assert KeySource().resolve("A") == AliasKey("A")

    def test_alias_source_parses_mapped_keys(self, pubkeys_hex):
        key = AliasKeySource({"A": pubkeys_hex[0]}).resolve("A")
        assert isinstance(key, DescriptorKey)

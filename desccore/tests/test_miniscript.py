"""
Tests for miniscript fragments: type checks, script encoding and satisfactions.
"""

import pytest

from desccore.errors import DescriptorError
from desccore.expression import parse_expression
from desccore.keys import DescriptorKey
from desccore.miniscript import (
    AndV,
    Older,
    Pk,
    Wrap,
    make_dissatisfiable_unit,
    make_wrapped,
    parse_miniscript,
)


def _parse(text: str):
    return parse_miniscript(parse_expression(text), DescriptorKey.parse)


class TestScripts:
    def test_pk(self, pubkeys_hex):
        fragment = _parse(f"pk({pubkeys_hex[0]})")
        assert fragment.script() == bytes([0x21]) + bytes.fromhex(pubkeys_hex[0]) + bytes([0xAC])

    def test_v_wrapper_uses_verify_opcode(self, pubkeys_hex):
        fragment = _parse(f"v:pk({pubkeys_hex[0]})")
        assert fragment.script()[-1] == 0xAD

    def test_multi(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        fragment = _parse(f"multi(1,{a},{b})")
        expected = (
            bytes([0x51, 0x21])
            + bytes.fromhex(a)
            + bytes([0x21])
            + bytes.fromhex(b)
            + bytes([0x52, 0xAE])
        )
        assert fragment.script() == expected

    def test_older_uses_minimal_number(self):
        # 144 = 0x90 needs a sign byte
        assert _parse("older(144)").script() == bytes([0x02, 0x90, 0x00, 0xB2])
        assert _parse("older(16)").script() == bytes([0x60, 0xB2])

    def test_after(self):
        assert _parse("after(1)").script() == bytes([0x51, 0xB1])

    def test_or_d(self, pubkeys_hex):
        fragment = _parse(f"or_d(pk({pubkeys_hex[0]}),older(1))")
        script = fragment.script()
        assert script[35:37] == bytes([0x73, 0x64])
        assert script[-1] == 0x68

    def test_render_round_trip(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        text = f"thresh(2,pk({a}),s:pk({b}),sln:older(10))"
        assert _parse(text).render() == text


class TestTypeChecks:
    def test_and_v_needs_verify_first(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        with pytest.raises(DescriptorError):
            _parse(f"and_v(pk({a}),pk({b}))")

    def test_or_d_needs_dissatisfiable_first(self, pubkeys_hex):
        with pytest.raises(DescriptorError):
            _parse(f"or_d(older(1),pk({pubkeys_hex[0]}))")

    def test_thresh_needs_wrapped_arguments(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        with pytest.raises(DescriptorError):
            _parse(f"thresh(1,pk({a}),pk({b}))")

    def test_unknown_fragment(self):
        with pytest.raises(DescriptorError):
            _parse("sha256(00)")

    def test_unknown_wrapper(self, pubkeys_hex):
        with pytest.raises(DescriptorError):
            _parse(f"c:pk({pubkeys_hex[0]})")

    def test_multi_threshold_out_of_range(self, pubkeys_hex):
        with pytest.raises(DescriptorError):
            _parse(f"multi(3,{pubkeys_hex[0]},{pubkeys_hex[1]})")

    def test_props(self, pubkeys_hex):
        pk = _parse(f"pk({pubkeys_hex[0]})")
        assert str(pk.props) == "Bodu"
        assert str(Wrap("v", pk).props) == "Vo"
        assert str(Wrap("s", pk).props) == "Wodu"
        assert str(Older(5).props) == "Bz"


class TestHelpers:
    def test_dissatisfiable_unit_of_timelock(self):
        fragment = make_dissatisfiable_unit(Older(10))
        assert fragment.render() == "ln:older(10)"
        assert fragment.props.d and fragment.props.u

    def test_dissatisfiable_unit_keeps_key(self, pubkeys_hex):
        pk = _parse(f"pk({pubkeys_hex[0]})")
        assert make_dissatisfiable_unit(pk) is pk

    def test_wrapped_uses_swap_for_single_argument(self, pubkeys_hex):
        pk = _parse(f"pk({pubkeys_hex[0]})")
        assert make_wrapped(pk).kind == "s"

    def test_wrapped_uses_altstack_otherwise(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        fragment = _parse(f"and_v(v:pk({a}),pk({b}))")
        assert make_wrapped(fragment).kind == "a"


class TestSatisfactions:
    def test_multi_signatures_follow_key_order(self, pubkeys_hex):
        fragment = _parse(f"multi(2,{','.join(pubkeys_hex)})")
        sats = fragment.satisfactions()
        assert len(sats) == 3
        for sat in sats:
            # Leading empty element for the CHECKMULTISIG off-by-one
            assert sat.items[0].data == b""
            keys = [item.key for item in sat.items[1:]]
            assert keys == sorted(keys, key=lambda k: fragment.key_list.index(k))

    def test_and_v_stacks_first_argument_on_top(self, pubkeys_hex):
        a, b = pubkeys_hex[:2]
        fragment = _parse(f"and_v(v:pk({a}),pk({b}))")
        (sat,) = fragment.satisfactions()
        assert [item.key.pubkey_at().hex() for item in sat.items] == [b, a]

    def test_timelock_conflict_drops_combination(self):
        fragment = AndV(Wrap("v", Older(10)), Older(10 | (1 << 22)))
        assert fragment.satisfactions() == []

    def test_or_i_marks_branch(self, pubkeys_hex):
        fragment = _parse(f"or_i(older(10),pk({pubkeys_hex[0]}))")
        sats = fragment.satisfactions()
        assert sats[0].older == 10
        assert sats[0].items[-1].data == b"\x01"
        assert sats[1].items[-1].data == b""

    def test_pk_dissatisfaction_is_empty_push(self, pubkeys_hex):
        pk = Pk(DescriptorKey.parse(pubkeys_hex[0]))
        (dsat,) = pk.dissatisfactions()
        assert dsat.items[0].data == b""
        assert dsat.size == 1

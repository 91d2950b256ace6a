"""Tests for pipeline_lang.values."""

import pytest

from pipeline_lang.errors import EvalError
from pipeline_lang.tokens import Token
from pipeline_lang.values import (
    Array,
    Bool,
    Expando,
    KeyValuePair,
    Number,
    String,
    equals,
    render,
    to_native,
    type_name,
)


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

class TestNumber:

    def test_arithmetic(self):
        assert Number(7).invoke_op(Token.ADD, Number(3)).value == 10
        assert Number(7).invoke_op(Token.SUB, Number(3)).value == 4
        assert Number(7).invoke_op(Token.MUL, Number(3)).value == 21
        assert Number(7).invoke_op(Token.QUO, Number(2)).value == 3.5
        assert Number(7).invoke_op(Token.REM, Number(3)).value == 1

    def test_comparison(self):
        assert Number(1).invoke_op(Token.LSS, Number(2)).value is True
        assert Number(2).invoke_op(Token.LEQ, Number(2)).value is True
        assert Number(1).invoke_op(Token.GTR, Number(2)).value is False
        assert Number(2).invoke_op(Token.GEQ, Number(3)).value is False

    def test_division_by_zero(self):
        with pytest.raises(EvalError, match="division by zero"):
            Number(1).invoke_op(Token.QUO, Number(0))

    def test_remainder_needs_integers(self):
        with pytest.raises(EvalError, match="requires integer operands"):
            Number(1.5).invoke_op(Token.REM, Number(1))

    def test_type_mismatch(self):
        with pytest.raises(EvalError, match="type mismatch: number \\+ string"):
            Number(1).invoke_op(Token.ADD, String("a"))

    def test_rendering(self):
        assert str(Number(12)) == "12"
        assert str(Number(2.5)) == "2.5"
        assert str(Number(-3)) == "-3"

    def test_to_native(self):
        assert Number(3).to_native() == 3
        assert isinstance(Number(3).to_native(), int)
        assert Number(0.25).to_native() == 0.25


class TestString:

    def test_concatenation_renders_other_side(self):
        assert String("a").invoke_op(Token.ADD, Number(1)).value == "a1"
        assert String("a").invoke_op(Token.ADD, None).value == "aNULL"

    def test_comparison(self):
        assert String("a").invoke_op(Token.LSS, String("b")).value is True

    def test_fields_and_functions(self):
        s = String("hello")
        assert s.get_field("size").value == 5
        assert s.get_field("1").value == "e"
        assert s.invoke_func("startsWith", {"0": String("he")}).value is True
        assert s.invoke_func("endsWith", {"0": String("x")}).value is False
        assert s.invoke_func("contains", {"0": String("ll")}).value is True

    def test_unknown_field(self):
        with pytest.raises(EvalError, match="type string has no field 'nope'"):
            String("a").get_field("nope")


class TestBool:

    def test_logic(self):
        assert Bool(True).invoke_op(Token.LAND, Bool(False)).value is False
        assert Bool(False).invoke_op(Token.LOR, Bool(True)).value is True

    def test_rendering(self):
        assert str(Bool(True)) == "true"

    def test_not_defined_on_numbers(self):
        with pytest.raises(EvalError, match="type mismatch: bool && number"):
            Bool(True).invoke_op(Token.LAND, Number(1))


# ---------------------------------------------------------------------------
# Equality
# ---------------------------------------------------------------------------

class TestEquality:

    def test_scalars_by_value(self):
        assert equals(Number(1), Number(1))
        assert equals(String("a"), String("a"))
        assert not equals(Number(1), String("1"))

    def test_nil(self):
        assert equals(None, None)
        assert not equals(None, Number(0))

    def test_collections_element_wise(self):
        assert Array([Number(1), String("a")]) == Array([Number(1), String("a")])
        assert Array([Number(1)]) != Array([Number(1), Number(2)])

    def test_expando_ignores_order(self):
        a = Expando({"x": Number(1), "y": Number(2)})
        b = Expando({"y": Number(2), "x": Number(1)})
        assert a == b
        assert a.invoke_op(Token.EQL, b).value is True

    def test_different_types_are_unequal(self):
        assert Number(1).invoke_op(Token.EQL, String("1")).value is False
        assert Number(1).invoke_op(Token.NEQ, None).value is True


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class TestArray:

    def test_fields(self):
        a = Array([Number(1), Number(2)])
        assert a.get_field("size").value == 2
        assert a.get_field("1").value == 2

    def test_index_out_of_range(self):
        with pytest.raises(EvalError, match="index 2 out of range \\[0:2\\]"):
            Array([Number(1), Number(2)]).get_field("2")

    def test_set_field(self):
        a = Array([Number(1)])
        a.set_field("0", Number(5))
        assert a.items[0].value == 5

    def test_contains(self):
        a = Array([Number(1), String("a")])
        assert a.invoke_func("contains", {"0": String("a")}).value is True
        assert a.invoke_func("contains", {"0": Number(2)}).value is False

    def test_add_mutates_and_returns_self(self):
        a = Array()
        assert a.invoke_func("add", {"0": Number(1)}) is a
        assert len(a) == 1

    def test_add_range_flattens(self):
        a = Array([Number(1)])
        a.add_range(Array([Number(2), Number(3)]))
        a.add_range(Number(4))
        assert a.to_native() == [1, 2, 3, 4]

    def test_plus_creates_new_array(self):
        a = Array([Number(1)])
        b = a.invoke_op(Token.ADD, Array([Number(2)]))
        assert b.to_native() == [1, 2]
        assert a.to_native() == [1]

    def test_rendering(self):
        assert str(Array([Number(1), String("a"), None])) == "[1, a, NULL]"

    def test_set_replaces_items(self):
        a = Array([Number(1)])
        a.set(Array([Number(2), Number(3)]))
        assert a.to_native() == [2, 3]
        with pytest.raises(EvalError, match="cannot assign number to array"):
            a.set(Number(1))


class TestExpando:

    def test_key_lookup_before_builtins(self):
        e = Expando({"size": String("big")})
        assert e.get_field("size").value == "big"

    def test_builtin_fields(self):
        e = Expando({"a": Number(1), "b": Number(2)})
        assert e.get_field("size").value == 2
        assert e.get_field("keys").to_native() == ["a", "b"]
        assert e.get_field("values").to_native() == [1, 2]

    def test_missing_field(self):
        with pytest.raises(EvalError, match="field 'x' not found"):
            Expando().get_field("x")

    def test_contains_key(self):
        e = Expando({"a": Number(1)})
        assert e.invoke_func("containsKey", {"0": String("a")}).value is True
        assert e.invoke_func("containsKey", {"0": String("b")}).value is False

    def test_set_field_keeps_insertion_order(self):
        e = Expando({"b": Number(1)})
        e.set_field("a", Number(2))
        assert list(e.fields) == ["b", "a"]
        assert str(e) == "{b: 1, a: 2}"

    def test_to_native_nested(self):
        e = Expando({"a": Array([Expando({"b": Bool(True)})])})
        assert e.to_native() == {"a": [{"b": True}]}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_render_nil(self):
        assert render(None) == "NULL"

    def test_type_name(self):
        assert type_name(None) == "nil"
        assert type_name(Expando()) == "expando"

    def test_key_value_pair(self):
        kv = KeyValuePair("a", Number(1))
        assert str(kv) == "a: 1"
        assert kv.get_field("key").value == "a"
        assert kv.to_native() == ("a", 1)

    def test_to_native_passthrough(self):
        assert to_native(None) is None
        assert to_native(5) == 5

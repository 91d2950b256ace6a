"""Dynamic value model for pipeline-lang.

Every script value is a ``Value`` subclass; Python ``None`` is nil. All
variants share one set of operations: ``get_field``, ``set_field``,
``invoke_func``, ``invoke_op``, ``set``, ``to_native`` and ``str()``.
Failures raise ``EvalError`` without a position; the runtime attaches the
position of the node being evaluated.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from .errors import EvalError
from .tokens import Token

if TYPE_CHECKING:
    from . import ast_nodes as ast
    from .scope import Scope

Args = dict[str, Any]


def render(value: Any) -> str:
    """Render a script value; nil renders as NULL."""
    if value is None:
        return "NULL"
    return str(value)


def type_name(value: Any) -> str:
    if value is None:
        return "nil"
    return value.type_name


def equals(a: Any, b: Any) -> bool:
    """Value equality: scalars by value, collections element-wise."""
    if a is None or b is None:
        return a is None and b is None
    if type(a) is not type(b):
        return False
    return a._equals(b)


def truth(value: Any) -> bool:
    return isinstance(value, Bool) and value.value


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Value:
    """Base class for script values."""

    type_name = "value"

    def get_field(self, name: str) -> Any:
        if name in ("*", "**"):
            return self._traverse(name)
        raise EvalError(f"type {self.type_name} has no field '{name}'")

    def set_field(self, name: str, value: Any) -> None:
        raise EvalError(f"type {self.type_name} does not support setting field '{name}'")

    def invoke_func(self, name: str, args: Args) -> Any:
        raise EvalError(f"type {self.type_name} has no function '{name}'")

    def invoke_op(self, op: Token, other: Any) -> Any:
        if op is Token.EQL:
            return Bool(equals(self, other))
        if op is Token.NEQ:
            return Bool(not equals(self, other))
        if other is not None and type(other) is not type(self):
            raise EvalError(f"type mismatch: {self.type_name} {op} {type_name(other)}")
        raise EvalError(f"operator {op} not defined on {self.type_name}")

    def set(self, value: Any) -> None:
        raise EvalError(f"cannot assign to {self.type_name}")

    def to_native(self) -> Any:
        return self

    def children(self) -> list[Any] | None:
        """Direct children for ``*`` traversal, None for non-collections."""
        return None

    def _traverse(self, name: str) -> Any:
        from .paths import PathChildren

        if self.children() is None:
            raise EvalError(f"type {self.type_name} is not a collection")
        if name == "*":
            return PathChildren.of(self)
        return PathChildren.deep(self)

    def _equals(self, other: Value) -> bool:
        return self is other

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Value):
            return equals(self, other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

class Number(Value):
    type_name = "number"

    def __init__(self, value: float):
        self.value = float(value)

    def invoke_op(self, op: Token, other: Any) -> Any:
        if not isinstance(other, Number) or op in (Token.EQL, Token.NEQ):
            return super().invoke_op(op, other)
        a, b = self.value, other.value
        if op is Token.ADD:
            return Number(a + b)
        if op is Token.SUB:
            return Number(a - b)
        if op is Token.MUL:
            return Number(a * b)
        if op is Token.QUO:
            if b == 0:
                raise EvalError("division by zero")
            return Number(a / b)
        if op is Token.REM:
            if not (self.is_integral() and other.is_integral()):
                raise EvalError("operator % requires integer operands")
            if b == 0:
                raise EvalError("division by zero")
            return Number(math.fmod(a, b))
        return _compare(op, a, b, self)

    def is_integral(self) -> bool:
        return math.isfinite(self.value) and self.value.is_integer()

    def to_native(self) -> int | float:
        if self.is_integral():
            return int(self.value)
        return self.value

    def _equals(self, other: Value) -> bool:
        return self.value == other.value

    def __str__(self) -> str:
        if self.is_integral() and abs(self.value) < 1e16:
            return str(int(self.value))
        return repr(self.value)

    def __repr__(self) -> str:
        return f"Number({self})"

    def __hash__(self) -> int:
        return hash(self.value)


class String(Value):
    type_name = "string"

    def __init__(self, value: str):
        self.value = value

    def get_field(self, name: str) -> Any:
        if name in ("size", "length"):
            return Number(len(self.value))
        if name.isdecimal():
            i = int(name)
            if i >= len(self.value):
                raise EvalError(f"index {i} out of range [0:{len(self.value)}]")
            return String(self.value[i])
        return super().get_field(name)

    def invoke_func(self, name: str, args: Args) -> Any:
        arg = args.get("0")
        if name == "contains":
            return Bool(render(arg) in self.value)
        if name == "startsWith":
            return Bool(self.value.startswith(render(arg)))
        if name == "endsWith":
            return Bool(self.value.endswith(render(arg)))
        if name in ("size", "length"):
            return Number(len(self.value))
        return super().invoke_func(name, args)

    def invoke_op(self, op: Token, other: Any) -> Any:
        if op is Token.ADD:
            return String(self.value + render(other))
        if not isinstance(other, String) or op in (Token.EQL, Token.NEQ):
            return super().invoke_op(op, other)
        return _compare(op, self.value, other.value, self)

    def to_native(self) -> str:
        return self.value

    def _equals(self, other: Value) -> bool:
        return self.value == other.value

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"String({self.value!r})"

    def __hash__(self) -> int:
        return hash(self.value)


class Bool(Value):
    type_name = "bool"

    def __init__(self, value: bool):
        self.value = bool(value)

    def invoke_op(self, op: Token, other: Any) -> Any:
        if isinstance(other, Bool):
            if op is Token.LAND:
                return Bool(self.value and other.value)
            if op is Token.LOR:
                return Bool(self.value or other.value)
        return super().invoke_op(op, other)

    def to_native(self) -> bool:
        return self.value

    def _equals(self, other: Value) -> bool:
        return self.value == other.value

    def __str__(self) -> str:
        return "true" if self.value else "false"

    def __repr__(self) -> str:
        return f"Bool({self})"

    def __hash__(self) -> int:
        return hash(self.value)


def _compare(op: Token, a: Any, b: Any, lhs: Value) -> Bool:
    if op is Token.LSS:
        return Bool(a < b)
    if op is Token.LEQ:
        return Bool(a <= b)
    if op is Token.GTR:
        return Bool(a > b)
    if op is Token.GEQ:
        return Bool(a >= b)
    raise EvalError(f"operator {op} not defined on {lhs.type_name}")


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

def _index(name: str, size: int) -> int:
    try:
        i = int(name)
    except ValueError:
        return -1
    if i < 0 or i >= size:
        raise EvalError(f"index {i} out of range [0:{size}]")
    return i


class Array(Value):
    type_name = "array"

    def __init__(self, items: Iterable[Any] = ()):
        self.items: list[Any] = list(items)

    def add(self, value: Any) -> None:
        self.items.append(value)

    def add_range(self, value: Any) -> None:
        """Append ``value``, flattening it when it is an Array."""
        if isinstance(value, Array):
            self.items.extend(value.items)
        else:
            self.items.append(value)

    def children(self) -> list[Any]:
        return list(self.items)

    def get_field(self, name: str) -> Any:
        if name == "size":
            return Number(len(self.items))
        i = _index(name, len(self.items))
        if i >= 0:
            return self.items[i]
        return super().get_field(name)

    def set_field(self, name: str, value: Any) -> None:
        i = _index(name, len(self.items))
        if i < 0:
            super().set_field(name, value)
        self.items[i] = value

    def invoke_func(self, name: str, args: Args) -> Any:
        if name == "size":
            return Number(len(self.items))
        if name == "contains":
            target = args.get("0")
            return Bool(any(equals(item, target) for item in self.items))
        if name == "add":
            self.add(args.get("0"))
            return self
        if name in COLLECTION_FUNCS:
            return collection_func(name, self.items, args)
        i = _index(name, len(self.items))
        if i >= 0:
            return self.items[i]
        return super().invoke_func(name, args)

    def invoke_op(self, op: Token, other: Any) -> Any:
        if op is Token.ADD:
            result = Array(self.items)
            result.add_range(other)
            return result
        return super().invoke_op(op, other)

    def set(self, value: Any) -> None:
        if not isinstance(value, Array):
            raise EvalError(f"cannot assign {type_name(value)} to array")
        self.items = list(value.items)

    def to_native(self) -> list:
        return [to_native(item) for item in self.items]

    def _equals(self, other: Value) -> bool:
        if len(self.items) != len(other.items):
            return False
        return all(equals(a, b) for a, b in zip(self.items, other.items))

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def __str__(self) -> str:
        return "[" + ", ".join(render(i) for i in self.items) + "]"

    def __repr__(self) -> str:
        return f"Array({self})"


class Expando(Value):
    """An insertion-ordered mapping of string keys to values."""

    type_name = "expando"

    def __init__(self, fields: dict[str, Any] | None = None):
        self.fields: dict[str, Any] = dict(fields or {})

    def children(self) -> list[Any]:
        return list(self.fields.values())

    def get_field(self, name: str) -> Any:
        if name in self.fields:
            return self.fields[name]
        if name == "size":
            return Number(len(self.fields))
        if name == "keys":
            return Array(String(k) for k in self.fields)
        if name == "values":
            return Array(self.fields.values())
        if name in ("*", "**"):
            return self._traverse(name)
        raise EvalError(f"field '{name}' not found")

    def set_field(self, name: str, value: Any) -> None:
        self.fields[name] = value

    def invoke_func(self, name: str, args: Args) -> Any:
        if name == "containsKey":
            return Bool(render(args.get("0")) in self.fields)
        if name in ("size", "keys", "values"):
            return self.get_field(name)
        if name in self.fields and isinstance(self.fields[name], Closure):
            return self.fields[name].call(_positional(args))
        return super().invoke_func(name, args)

    def set(self, value: Any) -> None:
        if not isinstance(value, Expando):
            raise EvalError(f"cannot assign {type_name(value)} to expando")
        self.fields = dict(value.fields)

    def to_native(self) -> dict:
        return {k: to_native(v) for k, v in self.fields.items()}

    def _equals(self, other: Value) -> bool:
        if self.fields.keys() != other.fields.keys():
            return False
        return all(equals(v, other.fields[k]) for k, v in self.fields.items())

    def __str__(self) -> str:
        return "{" + ", ".join(f"{k}: {render(v)}" for k, v in self.fields.items()) + "}"

    def __repr__(self) -> str:
        return f"Expando({self})"


class KeyValuePair(Value):
    type_name = "pair"

    def __init__(self, key: str, value: Any):
        self.key = key
        self.value = value

    def get_field(self, name: str) -> Any:
        if name == "key":
            return String(self.key)
        if name == "value":
            return self.value
        return super().get_field(name)

    def to_native(self) -> tuple[str, Any]:
        return self.key, to_native(self.value)

    def _equals(self, other: Value) -> bool:
        return self.key == other.key and equals(self.value, other.value)

    def __str__(self) -> str:
        return f"{self.key}: {render(self.value)}"


# ---------------------------------------------------------------------------
# Closures
# ---------------------------------------------------------------------------

Invoker = Callable[["Closure", Sequence[Any]], Any]


class Closure(Value):
    """A function literal bound to the scope it was created in."""

    type_name = "closure"

    def __init__(self, params: Sequence[str], block: ast.Block, scope: Scope, invoker: Invoker):
        self.params = tuple(params)
        self.block = block
        self.scope = scope
        self._invoker = invoker

    def call(self, args: Sequence[Any]) -> Any:
        return self._invoker(self, args)

    def invoke_func(self, name: str, args: Args) -> Any:
        if name == "call":
            return self.call(_positional(args))
        return super().invoke_func(name, args)

    def to_native(self) -> Callable[..., Any]:
        from .reflect import to_native_callable

        return to_native_callable(self)

    def __str__(self) -> str:
        return "{" + ", ".join(self.params) + " => ...}"


def _positional(args: Args) -> list[Any]:
    return [args[str(i)] for i in range(len(args)) if str(i) in args]


# ---------------------------------------------------------------------------
# Collection functions shared by Array and path values
# ---------------------------------------------------------------------------

COLLECTION_FUNCS = ("find", "findAll", "any", "every", "select")


def predicate_arg(name: str, args: Args) -> Closure:
    fn = args.get("0")
    if not isinstance(fn, Closure):
        raise EvalError(f"{name} expects a closure argument, got {type_name(fn)}")
    return fn


def matches(fn: Closure, item: Any) -> bool:
    """Apply a predicate; anything but Bool true does not match."""
    return truth(fn.call([item]))


def collection_func(name: str, items: Sequence[Any], args: Args) -> Any:
    fn = predicate_arg(name, args)
    if name == "find":
        for item in items:
            if matches(fn, item):
                return item
        return None
    if name == "findAll":
        return Array(item for item in items if matches(fn, item))
    if name == "any":
        return Bool(any(matches(fn, item) for item in items))
    if name == "every":
        return Bool(all(matches(fn, item) for item in items))
    return Array(fn.call([item]) for item in items)


def to_native(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Value):
        return value.to_native()
    return value

"""Reflection bridge between script values and host Python objects."""

from __future__ import annotations

import inspect
import re
import types
import typing
from collections.abc import Callable as CallableABC
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from .errors import EvalError, PipelineLangError
from .values import (
    Args,
    Array,
    Bool,
    Closure,
    Expando,
    Number,
    String,
    Value,
    to_native,
    type_name,
)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(name: str) -> str:
    """``userName`` → ``user_name``."""
    return _CAMEL_RE.sub("_", name).lower()


def lower_camel(name: str) -> str:
    """``user_name`` → ``userName``; ``EnvVars`` → ``envVars``."""
    parts = name.split("_")
    head = parts[0][:1].lower() + parts[0][1:]
    return head + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def _candidates(name: str) -> list[str]:
    names = [name, snake_case(name), name[:1].upper() + name[1:]]
    return list(dict.fromkeys(names))


# ---------------------------------------------------------------------------
# Host → value
# ---------------------------------------------------------------------------

def to_value(obj: Any) -> Any:
    """Convert a host object into a script value."""
    if obj is None or isinstance(obj, Value):
        return obj
    if isinstance(obj, bool):
        return Bool(obj)
    if isinstance(obj, (int, float)):
        return Number(obj)
    if isinstance(obj, str):
        return String(obj)
    if isinstance(obj, Mapping):
        return Expando({str(k): to_value(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return Array(to_value(v) for v in obj)
    return Reference(obj)


# ---------------------------------------------------------------------------
# Value → host
# ---------------------------------------------------------------------------

def convert_from(value: Any, annotation: Any = Any) -> Any:
    """Convert a script value into a host object of type ``annotation``."""
    if annotation is Any or annotation is inspect.Parameter.empty:
        return to_native(value)
    if isinstance(annotation, type) and issubclass(annotation, Value):
        if value is not None and not isinstance(value, annotation):
            raise EvalError(f"expected {annotation.type_name}, got {type_name(value)}")
        return value

    origin = typing.get_origin(annotation)
    if origin is typing.Union or _is_union_type(origin):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if value is None:
            return None
        if len(args) == 1:
            return convert_from(value, args[0])
        return to_native(value)
    if origin is CallableABC or annotation is Callable:
        if isinstance(value, Closure):
            return to_native_callable(value)
        if value is None:
            return None
        raise EvalError(f"expected closure, got {type_name(value)}")
    if origin in (list, Sequence, tuple):
        if not isinstance(value, Array):
            raise EvalError(f"expected array, got {type_name(value)}")
        item_types = typing.get_args(annotation)
        item = item_types[0] if item_types else Any
        items = [convert_from(v, item) for v in value.items]
        return tuple(items) if origin is tuple else items
    if origin in (dict, Mapping):
        if not isinstance(value, Expando):
            raise EvalError(f"expected expando, got {type_name(value)}")
        kv = typing.get_args(annotation)
        item = kv[1] if len(kv) == 2 else Any
        return {k: convert_from(v, item) for k, v in value.fields.items()}

    if value is None:
        return None
    if annotation is str:
        return str(value)
    if annotation is bool:
        if isinstance(value, Bool):
            return value.value
        raise EvalError(f"expected bool, got {type_name(value)}")
    if annotation in (int, float):
        if isinstance(value, Number):
            return annotation(value.value)
        if isinstance(value, String):
            try:
                return annotation(value.value)
            except ValueError:
                raise EvalError(f"cannot convert '{value.value}' to {annotation.__name__}") from None
        raise EvalError(f"expected number, got {type_name(value)}")
    if annotation in (list, dict):
        native = to_native(value)
        if not isinstance(native, annotation):
            raise EvalError(f"expected {annotation.__name__}, got {type_name(value)}")
        return native
    native = to_native(value)
    if isinstance(annotation, type) and not isinstance(native, annotation):
        raise EvalError(f"expected {annotation.__name__}, got {type_name(value)}")
    return native


def _is_union_type(origin: Any) -> bool:
    return origin is types.UnionType


def to_native_callable(closure: Closure) -> Callable[..., Any]:
    """Wrap a closure as a plain Python function."""

    def call(*args: Any) -> Any:
        return to_native(closure.call([to_value(a) for a in args]))

    call.__name__ = "closure"
    return call


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------

def invoke(fn: Callable[..., Any], args: Args, name: str = "") -> Any:
    """Call a host function with script arguments.

    ``args`` maps parameter names, or positions ``"0"``, ``"1"``…, to
    values. Arguments are converted using the parameter annotations; the
    return value is converted back. A ``(value, exception)`` tuple return
    raises the exception when it is set.
    """
    name = name or getattr(fn, "__name__", "function")
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        sig = None

    if sig is None:
        positional = [to_native(args[k]) for k in sorted(args, key=_arg_order)]
        return _call(fn, name, positional, {})

    hints = _type_hints(fn)
    params = [p for p in sig.parameters.values()
              if p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)]
    call_args: list[Any] = []
    call_kwargs: dict[str, Any] = {}
    used: set[str] = set()
    skipped = False
    for i, p in enumerate(params):
        key = None
        for k in (str(i), p.name, lower_camel(p.name)):
            if k in args:
                key = k
                break
        if key is None:
            if p.default is not inspect.Parameter.empty:
                skipped = True
                continue
            converted = None
        else:
            used.add(key)
            converted = convert_from(args[key], hints.get(p.name, p.annotation))
        if skipped or p.kind is inspect.Parameter.KEYWORD_ONLY:
            call_kwargs[p.name] = converted
        else:
            call_args.append(converted)

    extra = [k for k in args if k not in used]
    if extra:
        accepts_varargs = any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in sig.parameters.values())
        if accepts_varargs and all(k.isdecimal() for k in extra):
            call_args.extend(to_native(args[k]) for k in sorted(extra, key=int))
        else:
            raise EvalError(f"func {name}: unexpected argument '{extra[0]}'")
    return _call(fn, name, call_args, call_kwargs)


def _call(fn: Callable[..., Any], name: str, args: list[Any], kwargs: dict[str, Any]) -> Any:
    try:
        result = fn(*args, **kwargs)
    except PipelineLangError:
        raise
    except Exception as e:
        raise EvalError(f"func {name}: {e}") from e
    if isinstance(result, tuple) and len(result) == 2 and (
            result[1] is None or isinstance(result[1], BaseException)):
        value, err = result
        if err is not None:
            raise EvalError(f"func {name}: {err}") from err
        result = value
    return to_value(result)


def _arg_order(key: str) -> tuple[int, str]:
    return (int(key), "") if key.isdecimal() else (1 << 30, key)


def _type_hints(fn: Callable[..., Any]) -> dict[str, Any]:
    try:
        return typing.get_type_hints(fn)
    except Exception:
        return {}


# ---------------------------------------------------------------------------
# Reference
# ---------------------------------------------------------------------------

class Reference(Value):
    """A script handle on an arbitrary host object."""

    type_name = "reference"

    def __init__(self, obj: Any):
        self.obj = obj

    def children(self) -> list[Any] | None:
        if isinstance(self.obj, Mapping):
            return [to_value(v) for v in self.obj.values()]
        if isinstance(self.obj, Sequence) and not isinstance(self.obj, (str, bytes)):
            return [to_value(v) for v in self.obj]
        return None

    def get_field(self, name: str) -> Any:
        if name in ("*", "**"):
            return self._traverse(name)
        found, value = self._lookup(name)
        if not found:
            raise EvalError(f"field '{name}' not found on {type(self.obj).__name__}")
        if inspect.ismethod(value) or inspect.isbuiltin(value):
            return invoke(value, {}, name)
        return to_value(value)

    def _lookup(self, name: str) -> tuple[bool, Any]:
        obj = self.obj
        if isinstance(obj, Mapping):
            if name in obj:
                return True, obj[name]
            return False, None
        if isinstance(obj, Sequence) and not isinstance(obj, (str, bytes)) and name.isdecimal():
            i = int(name)
            if i >= len(obj):
                raise EvalError(f"index {i} out of range [0:{len(obj)}]")
            return True, obj[i]
        if name.startswith("_"):
            return False, None
        for candidate in _candidates(name):
            if hasattr(obj, candidate):
                return True, getattr(obj, candidate)
        return False, None

    def set_field(self, name: str, value: Any) -> None:
        obj = self.obj
        if isinstance(obj, dict):
            obj[name] = to_native(value)
            return
        if isinstance(obj, list) and name.isdecimal():
            i = int(name)
            if i >= len(obj):
                raise EvalError(f"index {i} out of range [0:{len(obj)}]")
            obj[i] = to_native(value)
            return
        if name.startswith("_"):
            raise EvalError(f"field '{name}' not found on {type(obj).__name__}")
        for candidate in _candidates(name):
            if hasattr(obj, candidate):
                setattr(obj, candidate, to_native(value))
                return
        raise EvalError(f"field '{name}' not found on {type(obj).__name__}")

    def invoke_func(self, name: str, args: Args) -> Any:
        found, fn = (False, None) if isinstance(self.obj, Mapping) else self._lookup(name)
        if not found or not callable(fn):
            raise EvalError(f"function '{name}' not found on {type(self.obj).__name__}")
        return invoke(fn, args, name)

    def to_native(self) -> Any:
        return self.obj

    def _equals(self, other: Value) -> bool:
        return self.obj == other.obj

    def __str__(self) -> str:
        return str(self.obj)

    def __repr__(self) -> str:
        return f"Reference({self.obj!r})"


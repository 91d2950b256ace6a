"""Step contract: host callables with declared, script-bindable parameters.

A step is a factory for ``Execution`` objects. An execution is a
dataclass whose fields are the step's parameters; ``param()`` attaches
the binding tag that says how script arguments reach each field::

    @dataclass
    class Echo(Execution):
        message: Any = param(position=0)

        def run(self, ctx: StepContext) -> Any:
            print(self.message)

    steps = {"echo": Step(Echo)}

Tag grammar: ``name,position=N,required`` or ``-`` to hide a field.
Without a name the script name is the lower camel case field name.
"""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Sequence, TypeVar

from .errors import EvalError, PipelineLangError
from .reflect import convert_from, lower_camel, to_value
from .values import KeyValuePair, Value

if TYPE_CHECKING:
    from .scope import Scope

T = TypeVar("T")

TAG_KEY = "step"


def param(name: str | None = None, *, position: int | None = None, required: bool = False,
          skip: bool = False, default: Any = None,
          default_factory: Callable[[], Any] | None = None) -> Any:
    """Declare a step parameter field."""
    if skip:
        tag = "-"
    else:
        parts = [name or ""]
        if position is not None:
            parts.append(f"position={position}")
        if required:
            parts.append("required")
        tag = ",".join(parts)
    if default_factory is not None:
        return dataclasses.field(default_factory=default_factory, metadata={TAG_KEY: tag})
    return dataclasses.field(default=default, metadata={TAG_KEY: tag})


@dataclass(frozen=True)
class StepParam:
    field: str
    name: str
    position: int | None = None
    required: bool = False
    annotation: Any = Any


def parse_tag(field_name: str, tag: str) -> StepParam | None:
    """Parse a binding tag; returns None for ``-``."""
    if tag.strip() == "-":
        return None
    parts = [p.strip() for p in tag.split(",")]
    name = parts[0] or lower_camel(field_name)
    position = None
    required = False
    for opt in parts[1:]:
        if opt == "required":
            required = True
        elif opt.startswith("position="):
            try:
                position = int(opt[len("position="):])
            except ValueError:
                raise EvalError(f"invalid position in tag '{tag}' of field {field_name}") from None
        elif opt:
            raise EvalError(f"unknown option '{opt}' in tag of field {field_name}")
    return StepParam(field_name, name, position, required)


def step_params(cls: type) -> list[StepParam]:
    """The bindable parameters of an Execution dataclass."""
    if not dataclasses.is_dataclass(cls):
        return []
    try:
        hints = typing.get_type_hints(cls)
    except Exception:
        hints = {}
    result = []
    for f in dataclasses.fields(cls):
        tag = f.metadata.get(TAG_KEY, "")
        p = parse_tag(f.name, tag)
        if p is None:
            continue
        result.append(dataclasses.replace(p, annotation=hints.get(f.name, Any)))
    return result


class StepContext:
    """What a running step sees of the pipeline: the current scope."""

    def __init__(self, scope: Scope):
        self.scope = scope

    def get(self, key: type[T]) -> T | None:
        """A host object registered for ``key`` along the scope chain."""
        return self.scope.context(key)

    def lookup(self, name: str) -> Any:
        value, _ = self.scope.lookup(name)
        return value


class Execution:
    """One invocation of a step. Subclasses are dataclasses."""

    def run(self, ctx: StepContext) -> Any:
        raise NotImplementedError


class Step(Value):
    """A stateless step; ``start()`` returns a fresh Execution per call."""

    type_name = "step"

    def __init__(self, factory: Callable[[], Execution] | None = None, doc: str = ""):
        self._factory = factory
        self.doc = doc or (getattr(factory, "__doc__", "") or "").strip()

    def start(self) -> Execution:
        if self._factory is None:
            raise NotImplementedError("step has no execution factory")
        return self._factory()

    def call(self, args: Sequence[KeyValuePair], ctx: StepContext, name: str = "step") -> Any:
        execution = self.start()
        bind(execution, args, name)
        try:
            result = execution.run(ctx)
        except PipelineLangError:
            raise
        except Exception as e:
            raise EvalError(f"step {name}: {e}") from e
        return to_value(result)

    def params(self) -> list[StepParam]:
        return step_params(type(self.start()))

    def __str__(self) -> str:
        return "step"


def bind(execution: Execution, args: Sequence[KeyValuePair], name: str = "step") -> None:
    """Assign call arguments to the fields of ``execution``."""
    params = step_params(type(execution))
    by_name = {p.name: p for p in params}
    by_position = {p.position: p for p in params if p.position is not None}
    bound: set[str] = set()

    for i, arg in enumerate(args):
        if arg.key:
            p = by_name.get(arg.key)
            if p is None:
                raise EvalError(f"step {name}: unknown argument '{arg.key}'")
        else:
            p = by_position.get(i)
            if p is None:
                raise EvalError(f"step {name}: no parameter at position {i}")
        try:
            setattr(execution, p.field, convert_from(arg.value, p.annotation))
        except EvalError as e:
            raise EvalError(f"step {name}: argument '{p.name}': {e.message}") from None
        bound.add(p.field)

    for p in params:
        if p.required and p.field not in bound:
            raise EvalError(f"step {name}: missing required argument '{p.name}'")

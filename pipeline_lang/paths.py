"""Path traversal values behind the ``*``, ``**`` and ``..`` segments.

``e.*`` yields a ``PathChildren`` over the children of ``e``. Further
segments are applied to every child and the results are collected; a
child that fails is dropped. Each cursor remembers its parent so ``'..'``
can walk back up.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from .errors import EvalError, PipelineLangError
from .tokens import Token
from .values import (
    Args,
    Array,
    Bool,
    Number,
    Value,
    collection_func,
    matches,
    predicate_arg,
    render,
    to_native,
)

logger = logging.getLogger(__name__)


class Path(Value):
    """A cursor on a single value with a link to where it came from."""

    type_name = "path"

    def __init__(self, value: Any, parent: Path | None = None):
        self.value = value
        self.parent = parent

    def get_field(self, name: str) -> Any:
        if name == "..":
            if self.parent is None:
                raise EvalError("path has no parent")
            return self.parent
        target = _require(self.value, name)
        if name in ("*", "**"):
            if target.children() is None:
                raise EvalError(f"type {target.type_name} is not a collection")
            if name == "*":
                return PathChildren.of(target, self)
            return PathChildren.deep(target, self)
        return Path(target.get_field(name), self)

    def invoke_func(self, name: str, args: Args) -> Any:
        return Path(_require(self.value, name).invoke_func(name, args), self)

    def invoke_op(self, op: Token, other: Any) -> Any:
        return _require(self.value, str(op)).invoke_op(op, unwrap(other))

    def set_field(self, name: str, value: Any) -> None:
        _require(self.value, name).set_field(name, value)

    def set(self, value: Any) -> None:
        _require(self.value, "=").set(value)

    def children(self) -> list[Any] | None:
        if isinstance(self.value, Value):
            return self.value.children()
        return None

    def depth_first(self) -> Iterator[Path]:
        """This cursor's descendants in depth-first order."""
        for child in self.children() or ():
            p = Path(child, self)
            yield p
            yield from p.depth_first()

    def to_native(self) -> Any:
        return to_native(self.value)

    def __str__(self) -> str:
        return render(self.value)


class PathChildren(Value):
    """A set of cursors produced by ``*`` or ``**``.

    While ``traversing`` is set, field and method access distributes over
    every child. Results of ``findAll`` are not traversing: they are
    indexed by position instead.
    """

    type_name = "path"

    def __init__(self, paths: list[Path], parent: Value | None = None, traversing: bool = True):
        self.paths = paths
        self.parent = parent
        self.traversing = traversing

    @classmethod
    def of(cls, collection: Value, parent: Path | None = None) -> PathChildren:
        root = parent if parent is not None else Path(collection)
        return cls([Path(c, root) for c in collection.children() or ()], root)

    @classmethod
    def deep(cls, collection: Value, parent: Path | None = None) -> PathChildren:
        root = parent if parent is not None else Path(collection)
        return cls(list(root.depth_first()), root)

    def get_field(self, name: str) -> Any:
        return self.resolve(name, None)

    def invoke_func(self, name: str, args: Args) -> Any:
        return self.resolve(name, args)

    def resolve(self, name: str, args: Args | None) -> Any:
        if name == "..":
            if self.traversing:
                return self._iterate(lambda p: p.get_field(".."))
            return self.parent
        if name == "*":
            return PathChildren(self.paths, self.parent, traversing=True)
        if name == "**":
            return PathChildren([d for p in self.paths for d in p.depth_first()], self)
        if name == "find":
            fn = predicate_arg(name, args or {})
            for p in self.paths:
                if self._matches(fn, p):
                    return p
            return None
        if name == "findAll":
            fn = predicate_arg(name, args or {})
            return PathChildren([p for p in self.paths if self._matches(fn, p)], self, traversing=False)
        if name == "any":
            fn = predicate_arg(name, args or {})
            return Bool(any(self._matches(fn, p) for p in self.paths))
        if name == "every":
            fn = predicate_arg(name, args or {})
            return Bool(all(self._matches(fn, p) for p in self.paths))
        if name == "select":
            return collection_func(name, [unwrap(p) for p in self.paths], args or {})
        if name == "size":
            return Number(len(self.paths))
        if self.traversing:
            if args is None:
                return self._iterate(lambda p: p.get_field(name))
            return self._iterate(lambda p: p.invoke_func(name, args))
        if name.isdecimal():
            i = int(name)
            if i >= len(self.paths):
                raise EvalError(f"index {i} out of range [0:{len(self.paths)}]")
            return self.paths[i]
        raise EvalError(f"path does not support '{name}'")

    def invoke_op(self, op: Token, other: Any) -> Any:
        if op in (Token.EQL, Token.NEQ):
            return unwrap(self).invoke_op(op, unwrap(other))
        if not self.traversing:
            raise EvalError(f"invalid operation {op} on path collection")
        return PathChildren([Path(p.invoke_op(op, other), p) for p in self.paths], self)

    def set_field(self, name: str, value: Any) -> None:
        if not self.traversing:
            raise EvalError("invalid operation on path collection")
        for p in self.paths:
            p.set_field(name, value)

    def set(self, value: Any) -> None:
        if not self.traversing:
            raise EvalError("invalid operation on path collection")
        for p in self.paths:
            p.set(value)

    def children(self) -> list[Any]:
        return [unwrap(p) for p in self.paths]

    def to_native(self) -> list:
        return unwrap(self).to_native()

    def __str__(self) -> str:
        return str(unwrap(self))

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _matches(fn, p: Path) -> bool:
        try:
            return matches(fn, unwrap(p))
        except PipelineLangError as e:
            logger.debug("ignored predicate error during path iteration: %s", e)
            return False

    def _iterate(self, action) -> PathChildren:
        paths: list[Path] = []
        for p in self.paths:
            try:
                r = action(p)
            except PipelineLangError as e:
                logger.debug("ignored error during iteration over path: %s", e)
                continue
            if isinstance(r, PathChildren):
                paths.extend(r.paths)
            elif isinstance(r, Path):
                paths.append(r)
            else:
                paths.append(Path(r, p))
        return PathChildren(paths, self)


def unwrap(value: Any) -> Any:
    """Turn path cursors back into plain values; PathChildren become an Array."""
    if isinstance(value, Path):
        return unwrap(value.value)
    if isinstance(value, PathChildren):
        return Array(unwrap(p) for p in value.paths)
    return value


def _require(value: Any, name: str) -> Value:
    if value is None:
        raise EvalError(f"cannot access '{name}' on nil")
    return value

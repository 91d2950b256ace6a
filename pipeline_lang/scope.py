"""Lexical scopes: symbol tables chained through ``outer``."""

from __future__ import annotations

from typing import Any, Iterator, TypeVar

T = TypeVar("T")


class _Undefined:
    """Placeholder bound by the parser for names declared with ``:=``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


class Scope:
    """A symbol table mapping names to values with a link to its parent.

    Besides symbols a scope carries host context objects keyed by type.
    Steps fetch them with ``StepContext.get(type)``, which looks them up
    outward through the chain.
    """

    def __init__(self, outer: Scope | None = None, symbols: dict[str, Any] | None = None):
        self.outer = outer
        self.symbols: dict[str, Any] = dict(symbols or {})
        self._context: dict[type, Any] = {}

    def lookup(self, name: str) -> tuple[Any, bool]:
        """Find ``name`` along the chain; returns ``(value, found)``."""
        s: Scope | None = self
        while s is not None:
            if name in s.symbols:
                return s.symbols[name], True
            s = s.outer
        return None, False

    def lookup_local(self, name: str) -> tuple[Any, bool]:
        if name in self.symbols:
            return self.symbols[name], True
        return None, False

    def owner(self, name: str) -> Scope | None:
        """The scope along the chain that binds ``name``."""
        s: Scope | None = self
        while s is not None:
            if name in s.symbols:
                return s
            s = s.outer
        return None

    def insert(self, name: str, value: Any) -> bool:
        """Bind ``name`` in this scope. Returns False if it already exists."""
        if name in self.symbols:
            return False
        self.symbols[name] = value
        return True

    def define(self, name: str, value: Any) -> None:
        self.symbols[name] = value

    def names(self) -> Iterator[str]:
        """All visible names, innermost first, without duplicates."""
        seen: set[str] = set()
        s: Scope | None = self
        while s is not None:
            for name in s.symbols:
                if name not in seen:
                    seen.add(name)
                    yield name
            s = s.outer

    def register(self, obj: Any, key: type | None = None) -> None:
        """Register a host object retrievable by its type."""
        self._context[key or type(obj)] = obj

    def context(self, key: type[T]) -> T | None:
        s: Scope | None = self
        while s is not None:
            if key in s._context:
                return s._context[key]
            for k, v in s._context.items():
                if isinstance(k, type) and issubclass(k, key):
                    return v
            s = s.outer
        return None

    def context_by_name(self, name: str) -> Any:
        """A registered host object whose type name matches ``name``, ignoring case."""
        wanted = name.lower()
        s: Scope | None = self
        while s is not None:
            for k, v in s._context.items():
                if k.__name__.lower() == wanted:
                    return v
            s = s.outer
        return None

    def __repr__(self) -> str:
        return f"Scope({list(self.symbols)})"

"""AST node definitions for pipeline-lang.

Expression and statement nodes are frozen dataclasses. Nodes that own a
lexical scope (File, Pipeline, Stage, Closure) carry the ``Scope`` the
parser created for them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Iterator, Union

from .tokens import Position, Token

if TYPE_CHECKING:
    from .scope import Scope


@dataclass(frozen=True)
class Node:
    pos: Position = field(default=Position(), kw_only=True, compare=False, repr=False)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Ident(Node):
    name: str


@dataclass(frozen=True)
class Literal(Node):
    """A NUMBER, STRING or RSTRING literal; ``value`` is the source text."""
    kind: Token
    value: str


@dataclass(frozen=True)
class Binary(Node):
    lhs: Expr
    op: Token
    rhs: Expr

    @property
    def precedence(self) -> int:
        return self.op.precedence


@dataclass(frozen=True)
class Unary(Node):
    op: Token
    x: Expr


@dataclass(frozen=True)
class Argument(Node):
    """A call argument; ``name`` is empty for positional arguments."""
    name: str
    value: Expr


@dataclass(frozen=True)
class Call(Node):
    func: Expr
    args: tuple[Argument, ...] = ()


@dataclass(frozen=True)
class IndexExpr(Node):
    x: Expr
    index: Expr


@dataclass(frozen=True)
class PathExpr(Node):
    """A member access ``x.path``, a method call when ``args`` is not None."""
    x: Expr
    path: str
    args: tuple[Argument, ...] | None = None
    lhs: bool = False


@dataclass(frozen=True)
class ParenExpr(Node):
    x: Expr


@dataclass(frozen=True, eq=False)
class Closure(Node):
    params: tuple[str, ...]
    block: Block
    scope: Scope = field(repr=False)


@dataclass(frozen=True)
class KeyValueExpr(Node):
    key: Expr
    value: Expr


@dataclass(frozen=True)
class SequenceExpr(Node):
    values: tuple[Expr, ...]
    is_map: bool = False


@dataclass(frozen=True)
class RangeExpr(Node):
    start: Expr
    end: Expr


Expr = Union[
    Ident, Literal, Binary, Unary, Call, IndexExpr, PathExpr, ParenExpr,
    Closure, KeyValueExpr, SequenceExpr, RangeExpr,
]


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assignment(Node):
    lhs: Expr
    tok: Token
    rhs: Expr


@dataclass(frozen=True)
class ExprStmt(Node):
    x: Expr


@dataclass(frozen=True)
class DeclStmt(Node):
    """A name declared in a scope without an initial value.

    Scripts declare with ``:=``; the parser never builds this node. Hosts
    that assemble statements themselves use it to declare a nil name or,
    with ``type="Expando"``, an empty map.
    """
    name: str
    type: str = ""


@dataclass(frozen=True)
class IncDecStmt(Node):
    x: Expr
    tok: Token


@dataclass(frozen=True)
class Block(Node):
    stmts: tuple[Stmt, ...] = ()


@dataclass(frozen=True)
class StepBlock(Node):
    stmts: tuple[Stmt, ...] = ()


@dataclass(frozen=True)
class VarsBlock(Node):
    specs: tuple[Assignment, ...] = ()


Stmt = Union[Assignment, ExprStmt, DeclStmt, IncDecStmt, Block, StepBlock, VarsBlock]


# ---------------------------------------------------------------------------
# Structural nodes
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Stage(Node):
    name: str
    scope: Scope = field(repr=False)
    when: Expr | None = None
    steps: StepBlock | None = None
    vars: VarsBlock | None = None


@dataclass(frozen=True, eq=False)
class Pipeline(Node):
    name: str
    scope: Scope = field(repr=False)
    vars: tuple[VarsBlock, ...] = ()
    stages: tuple[Stage, ...] = ()


@dataclass(frozen=True, eq=False)
class File(Node):
    """Root AST node holding every pipeline in a source file."""
    pipelines: tuple[Pipeline, ...]
    scope: Scope = field(repr=False)

    def pipeline(self, name: str) -> Pipeline | None:
        for p in self.pipelines:
            if p.name == name:
                return p
        return None


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

_SKIP_FIELDS = {"pos", "scope"}


def iter_child_nodes(node: Node) -> Iterator[Node]:
    """Yield the direct child nodes of ``node`` in field order."""
    for f in fields(node):
        if f.name in _SKIP_FIELDS:
            continue
        value: Any = getattr(node, f.name)
        if isinstance(value, Node):
            yield value
        elif isinstance(value, tuple):
            for item in value:
                if isinstance(item, Node):
                    yield item


def walk(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all of its descendants in pre-order."""
    yield node
    for child in iter_child_nodes(node):
        yield from walk(child)


class NodeVisitor:
    """Dispatches ``visit(node)`` to ``visit_<ClassName>``."""

    def visit(self, node: Node) -> Any:
        method = getattr(self, "visit_" + type(node).__name__, self.generic_visit)
        return method(node)

    def generic_visit(self, node: Node) -> Any:
        for child in iter_child_nodes(node):
            self.visit(child)
        return None

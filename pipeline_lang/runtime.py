"""Tree-walking runtime for parsed pipeline files.

Runs the pipelines of a ``File`` stage by stage. Statements execute in
source order; the first failing statement stops its stage and the run.
Every failure is recorded with its source position and the whole run is
reported as a ``RunResult``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Sequence

from . import ast_nodes as ast
from .errors import ErrorList, EvalError, ParseError, PipelineLangError
from .logging import ExecutionLogger, RunLog
from .parser import parse_expr, universe
from .paths import unwrap
from .reflect import Reference, invoke
from .scope import UNDEFINED, Scope
from .steps import Step, StepContext
from .tokens import ASSIGN_OPS, Token
from .values import (
    Array,
    Bool,
    Closure,
    Expando,
    KeyValuePair,
    Number,
    String,
    Value,
    render,
    type_name,
)

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*")


class _StageFailed(Exception):
    """Stops the current stage after its error has been recorded."""


@dataclass
class RunResult:
    """Result of running a pipeline file."""
    success: bool
    value: Any = None
    run_log: RunLog | None = None
    error: PipelineLangError | None = None

    def summary(self) -> str:
        if self.run_log:
            return self.run_log.summary()
        status = "completed" if self.success else "failed"
        return f"{status}: {self.error or 'OK'}"


class Runtime(ast.NodeVisitor):
    """Evaluates AST nodes against the scopes the parser created.

    The runtime only creates scopes when a closure is called; everything
    else runs in the pipeline's and stages' own scopes.
    """

    def __init__(self, scope: Scope | None = None, logger: ExecutionLogger | None = None):
        self.scope = scope if scope is not None else universe()
        self.errors = ErrorList(EvalError)
        self.log = logger

    def err(self) -> EvalError | None:
        """All recorded errors joined into one, or None."""
        return self.errors.err()

    # -- entry points -------------------------------------------------------

    def run(self, target: ast.File | ast.Pipeline, name: str | None = None) -> RunResult:
        """Run every pipeline in ``target``, or only the one called ``name``."""
        if isinstance(target, ast.Pipeline):
            pipelines = [target]
        elif name is not None:
            p = target.pipeline(name)
            if p is None:
                error = EvalError(f"pipeline '{name}' not found")
                self.errors.append(error)
                return RunResult(success=False, error=error)
            pipelines = [p]
        else:
            pipelines = list(target.pipelines)

        if self.log is None:
            self.log = ExecutionLogger(name if name is not None else
                                       (pipelines[0].name if pipelines else ""))
        value = None
        for p in pipelines:
            ok, value = self._run_pipeline(p)
            if not ok:
                break

        run_log = self.log.finish()
        error = self.err()
        return RunResult(success=error is None, value=value, run_log=run_log, error=error)

    def eval(self, source: str | ast.Node) -> Any:
        """Evaluate an expression in the runtime's current scope."""
        node = parse_expr(source, self.scope) if isinstance(source, str) else source
        return unwrap(self.visit(node))

    def visit(self, node: ast.Node) -> Any:
        try:
            return super().visit(node)
        except EvalError as e:
            if e.line is None:
                raise EvalError(e.message, node.pos.line, node.pos.column) from e
            raise

    # -- pipelines & stages -------------------------------------------------

    def _run_pipeline(self, pipeline: ast.Pipeline) -> tuple[bool, Any]:
        self.scope = pipeline.scope
        for block in pipeline.vars:
            try:
                self._exec_all(block.specs)
            except _StageFailed:
                self.log.error(str(self.errors.err()))
                return False, None

        value = None
        for stage in pipeline.stages:
            ok, value = self._run_stage(stage)
            if not ok:
                return False, value
        return True, value

    def _run_stage(self, stage: ast.Stage) -> tuple[bool, Any]:
        self.scope = stage.scope
        entry = self.log.start_stage(stage.name)
        before = len(self.errors)
        try:
            if stage.vars is not None:
                self._exec_all(stage.vars.specs)
            if stage.when is not None:
                cond = self._exec_expr(stage.when)
                if isinstance(cond, Bool) and not cond.value:
                    logger.info("skipping stage '%s'", stage.name)
                    self.log.skip_stage(entry, reason="condition is false")
                    return True, None
            value = self._exec_all(stage.steps.stmts) if stage.steps is not None else None
        except _StageFailed:
            message = "\n".join(str(e) for e in list(self.errors)[before:])
            self.log.fail_stage(entry, message)
            return False, None
        self.log.complete_stage(entry)
        return True, value

    def _exec_all(self, stmts: Sequence[ast.Stmt]) -> Any:
        value = None
        for stmt in stmts:
            value = self._exec_expr(stmt)
        return value

    def _exec_expr(self, node: ast.Node) -> Any:
        try:
            return unwrap(self.visit(node))
        except PipelineLangError as e:
            if not isinstance(e, EvalError) or e.line is None:
                e = EvalError(e.message, node.pos.line, node.pos.column)
            self.errors.append(e)
            raise _StageFailed() from None

    # -- statements ---------------------------------------------------------

    def visit_StepBlock(self, node: ast.StepBlock) -> Any:
        value = None
        for stmt in node.stmts:
            value = self.visit(stmt)
        return value

    visit_Block = visit_StepBlock

    def visit_VarsBlock(self, node: ast.VarsBlock) -> None:
        for spec in node.specs:
            self.visit(spec)

    def visit_ExprStmt(self, node: ast.ExprStmt) -> Any:
        if isinstance(node.x, ast.Ident):
            value = self.visit(node.x)
            if isinstance(value, Step):
                return self._call(value, [], node.x.name)
            return value
        return unwrap(self.visit(node.x))

    def visit_DeclStmt(self, node: ast.DeclStmt) -> None:
        if node.type == "Expando":
            value: Any = Expando({})
        elif node.type:
            raise EvalError(f"unexpected type {node.type}")
        else:
            value = None
        existing, found = self.scope.lookup_local(node.name)
        if found and existing is not UNDEFINED:
            raise EvalError(f"identifier '{node.name}' already defined")
        self.scope.define(node.name, value)

    def visit_Assignment(self, node: ast.Assignment) -> None:
        if node.tok is Token.DEFINE:
            if not isinstance(node.lhs, ast.Ident):
                raise EvalError("non-name on left side of ':='")
            value = unwrap(self.visit(node.rhs))
            name = node.lhs.name
            existing, found = self.scope.lookup_local(name)
            if found and existing is not UNDEFINED:
                raise EvalError(f"identifier '{name}' already defined")
            self.scope.define(name, value)
            return
        op = ASSIGN_OPS[node.tok]
        self._store(node.lhs, op, lambda: unwrap(self.visit(node.rhs)))

    def visit_IncDecStmt(self, node: ast.IncDecStmt) -> None:
        op = Token.ADD if node.tok is Token.INC else Token.SUB
        self._store(node.x, op, lambda: Number(1))

    def _store(self, lhs: ast.Expr, op: Token | None, rhs) -> None:
        if isinstance(lhs, ast.Ident):
            owner = self._owner(lhs.name)
            value = rhs()
            if op is not None:
                value = self._binary(op, owner.symbols[lhs.name], value)
            owner.symbols[lhs.name] = value
            return
        if isinstance(lhs, ast.PathExpr):
            if lhs.args is not None:
                raise EvalError("cannot assign to a function call")
            target, key = self._target(lhs.x), lhs.path
        elif isinstance(lhs, ast.IndexExpr):
            target, key = self._target(lhs.x), self._key(lhs.index)
        else:
            raise EvalError("cannot assign to expression")
        if target is None:
            raise EvalError(f"cannot set '{key}' on nil")
        value = rhs()
        if op is not None:
            value = self._binary(op, unwrap(target.get_field(key)), value)
        target.set_field(key, value)

    # -- expressions --------------------------------------------------------

    def visit_Ident(self, node: ast.Ident) -> Any:
        owner = self._owner(node.name)
        return owner.symbols[node.name]

    def visit_Literal(self, node: ast.Literal) -> Value:
        if node.kind is Token.NUMBER:
            return Number(float(node.value))
        if node.kind is Token.RSTRING:
            return String(unescape(node.value))
        return String(self._interpolate(node.value))

    def visit_ParenExpr(self, node: ast.ParenExpr) -> Any:
        return unwrap(self.visit(node.x))

    def visit_Unary(self, node: ast.Unary) -> Value:
        x = unwrap(self.visit(node.x))
        if node.op is Token.NOT:
            if not isinstance(x, Bool):
                raise EvalError(f"operator ! not defined on {type_name(x)}")
            return Bool(not x.value)
        if not isinstance(x, Number):
            raise EvalError(f"operator - not defined on {type_name(x)}")
        return Number(-x.value)

    def visit_Binary(self, node: ast.Binary) -> Any:
        lhs = unwrap(self.visit(node.lhs))
        if isinstance(lhs, Bool):
            if node.op is Token.LAND and not lhs.value:
                return Bool(False)
            if node.op is Token.LOR and lhs.value:
                return Bool(True)
        rhs = unwrap(self.visit(node.rhs))
        return self._binary(node.op, lhs, rhs)

    def _binary(self, op: Token, lhs: Any, rhs: Any) -> Any:
        if lhs is None:
            if op is Token.EQL:
                return Bool(rhs is None)
            if op is Token.NEQ:
                return Bool(rhs is not None)
            raise EvalError(f"invalid operation: nil {op} {type_name(rhs)}")
        return lhs.invoke_op(op, rhs)

    def visit_Call(self, node: ast.Call) -> Any:
        func = unwrap(self.visit(node.func))
        args = [KeyValuePair(a.name, unwrap(self.visit(a.value))) for a in node.args]
        name = node.func.name if isinstance(node.func, ast.Ident) else "function"
        return self._call(func, args, name)

    def _call(self, func: Any, args: list[KeyValuePair], name: str) -> Any:
        if isinstance(func, Step):
            return func.call(args, StepContext(self.scope), name)
        if isinstance(func, Closure):
            return func.call([a.value for a in args])
        if isinstance(func, Reference) and callable(func.obj):
            return invoke(func.obj, _arg_dict(args), name)
        raise EvalError(f"'{name}' is not callable")

    def visit_PathExpr(self, node: ast.PathExpr) -> Any:
        return unwrap(self._path(node))

    def visit_IndexExpr(self, node: ast.IndexExpr) -> Any:
        return unwrap(self._path(node))

    def _path(self, node: ast.PathExpr | ast.IndexExpr) -> Any:
        target = self._target(node.x)
        if isinstance(node, ast.IndexExpr):
            key = self._key(node.index)
            if target is None:
                raise EvalError(f"cannot index nil with '{key}'")
            return target.get_field(key)
        if target is None:
            raise EvalError(f"cannot access '{node.path}' on nil")
        if node.args is None:
            return target.get_field(node.path)
        args = [KeyValuePair(a.name, unwrap(self.visit(a.value))) for a in node.args]
        return target.invoke_func(node.path, _arg_dict(args))

    def _target(self, x: ast.Expr) -> Any:
        """Evaluate the left side of a path, keeping traversal cursors."""
        if isinstance(x, (ast.PathExpr, ast.IndexExpr)):
            try:
                return self._path(x)
            except EvalError as e:
                if e.line is None:
                    raise EvalError(e.message, x.pos.line, x.pos.column) from e
                raise
        return unwrap(self.visit(x))

    def _key(self, index: ast.Expr) -> str:
        key = unwrap(self.visit(index))
        if isinstance(key, Number):
            if not key.is_integral():
                raise EvalError(f"invalid index {key}")
            return str(int(key.value))
        if isinstance(key, String):
            return key.value
        raise EvalError(f"invalid index type {type_name(key)}")

    def visit_Closure(self, node: ast.Closure) -> Closure:
        return Closure(node.params, node.block, self.scope, self._invoke_closure)

    def _invoke_closure(self, closure: Closure, args: Sequence[Any]) -> Any:
        if len(args) != len(closure.params):
            raise EvalError(f"closure expects {len(closure.params)} arguments, got {len(args)}")
        scope = Scope(closure.scope)
        for name, value in zip(closure.params, args):
            scope.define(name, unwrap(value))
        saved = self.scope
        self.scope = scope
        try:
            value = None
            for stmt in closure.block.stmts:
                value = self.visit(stmt)
            return unwrap(value)
        finally:
            self.scope = saved

    def visit_SequenceExpr(self, node: ast.SequenceExpr) -> Value:
        if node.is_map:
            fields: dict[str, Any] = {}
            for kv in node.values:
                fields[self._map_key(kv.key)] = unwrap(self.visit(kv.value))
            return Expando(fields)
        return Array(unwrap(self.visit(v)) for v in node.values)

    def _map_key(self, key: ast.Expr) -> str:
        if isinstance(key, ast.Literal) and key.kind is Token.RSTRING:
            return unescape(key.value)
        return render(unwrap(self.visit(key)))

    def visit_KeyValueExpr(self, node: ast.KeyValueExpr) -> KeyValuePair:
        return KeyValuePair(self._map_key(node.key), unwrap(self.visit(node.value)))

    def visit_RangeExpr(self, node: ast.RangeExpr) -> Array:
        start = unwrap(self.visit(node.start))
        end = unwrap(self.visit(node.end))
        if type(start) is not type(end):
            raise EvalError(f"range type mismatch: {type_name(start)}..{type_name(end)}")
        if not isinstance(start, Number):
            raise EvalError(f"range not supported on {type_name(start)}")
        if not (start.is_integral() and end.is_integral()):
            raise EvalError("range bounds must be integers")
        return Array(Number(i) for i in range(int(start.value), int(end.value) + 1))

    # -- helpers ------------------------------------------------------------

    def _owner(self, name: str) -> Scope:
        s: Scope | None = self.scope
        while s is not None:
            if name in s.symbols and s.symbols[name] is not UNDEFINED:
                return s
            s = s.outer
        raise EvalError(f"identifier '{name}' is not defined")

    def _interpolate(self, raw: str) -> str:
        out: list[str] = []
        i, n = 0, len(raw)
        while i < n:
            c = raw[i]
            if c == "\\" and i + 1 < n:
                out.append(raw[i + 1])
                i += 2
                continue
            if c == "$" and i + 1 < n:
                if raw[i + 1] == "{":
                    end = _closing_brace(raw, i + 2)
                    if end < 0:
                        raise EvalError("interpolation not terminated")
                    out.append(render(self._eval_source(raw[i + 2:end])))
                    i = end + 1
                    continue
                m = _NAME_RE.match(raw, i + 1)
                if m:
                    out.append(render(self._eval_source(m.group(0))))
                    i = m.end()
                    continue
            out.append(c)
            i += 1
        return "".join(out)

    def _eval_source(self, source: str) -> Any:
        try:
            node = parse_expr(source, self.scope)
        except ParseError as e:
            raise EvalError(f"invalid interpolation '{source}': {e.message}") from e
        return unwrap(self.visit(node))


def unescape(raw: str) -> str:
    """Resolve backslash escapes in a string literal's source text."""
    out: list[str] = []
    i = 0
    while i < len(raw):
        if raw[i] == "\\" and i + 1 < len(raw):
            out.append(raw[i + 1])
            i += 2
        else:
            out.append(raw[i])
            i += 1
    return "".join(out)


def _closing_brace(text: str, start: int) -> int:
    depth = 0
    quote = ""
    i = start
    while i < len(text):
        c = text[i]
        if quote:
            if c == "\\":
                i += 1
            elif c == quote:
                quote = ""
        elif c in ("'", '"'):
            quote = c
        elif c == "{":
            depth += 1
        elif c == "}":
            if depth == 0:
                return i
            depth -= 1
        i += 1
    return -1


def _arg_dict(args: list[KeyValuePair]) -> dict[str, Any]:
    return {a.key or str(i): a.value for i, a in enumerate(args)}


"""Recursive-descent parser: source text → AST with lexical scopes.

Public API:
    parse_file(source, scope=None) -> File
    parse_expr(source, scope=None) -> Expr

Identifiers are resolved against the scope chain while parsing, so a
misspelt name is reported before anything runs. All errors are collected
and raised together as a single ``ParseError``.
"""

from __future__ import annotations

from . import ast_nodes as ast
from .errors import ErrorList, ParseError
from .scanner import Scanner
from .scope import UNDEFINED, Scope
from .tokens import LOWEST_PREC, Position, Token
from .values import Bool


class _Bailout(Exception):
    """Unwinds to the nearest recovery point after a syntax error."""


_FILE_SYNC = frozenset({Token.PIPELINE, Token.EOF})
_STAGES_SYNC = _FILE_SYNC | {Token.STAGE, Token.VARS}
_STAGE_SYNC = _STAGES_SYNC | {Token.STEPS, Token.WHEN}


def universe() -> Scope:
    """The outermost scope: the predeclared constants."""
    return Scope(symbols={"true": Bool(True), "false": Bool(False)})


class Parser:
    """Single-pass parser over a Scanner with one token of lookahead."""

    def __init__(self, source: str, scope: Scope | None = None):
        self.errors = ErrorList(ParseError)
        self.scanner = Scanner(source, self.errors.add)
        self.scope = scope if scope is not None else universe()

        self.pos = Position()
        self.tok = Token.EOF
        self.lit = ""
        self._prev_end = 0
        self._depth = 0
        self._next()

    # -- token helpers ------------------------------------------------------

    def _next(self) -> None:
        if self.tok is Token.LBRACE:
            self._depth += 1
        elif self.tok is Token.RBRACE:
            self._depth -= 1
        self._prev_end = self.scanner.last_end
        self.pos, self.tok, self.lit = self.scanner.scan()

    def _desc(self) -> str:
        if self.tok is Token.SEMICOLON and self.lit == "\n":
            return "newline"
        if self.tok.is_literal() or self.tok is Token.ILLEGAL:
            return self.lit
        return self.tok.value

    def _error(self, pos: Position, msg: str) -> None:
        self.errors.add(pos, msg)

    def _fail(self, msg: str) -> None:
        self._error(self.pos, msg)
        raise _Bailout()

    def _expect(self, tok: Token) -> Position:
        pos = self.pos
        if self.tok is not tok:
            self._fail(f"expected '{tok}' but found '{self._desc()}'")
        self._next()
        return pos

    def _skip_semicolons(self) -> None:
        while self.tok is Token.SEMICOLON:
            self._next()

    def _sync(self, tokens: frozenset[Token], depth: int = 0) -> None:
        """Skip to a token of ``tokens`` nested no deeper than ``depth`` braces."""
        self.scanner.use_line_end(False)
        while self.tok not in _FILE_SYNC:
            if self.tok in tokens and self._depth <= depth:
                return
            self._next()

    def _adjacent(self) -> bool:
        """True when the current token directly follows the previous one."""
        return self.pos.offset == self._prev_end

    # -- scopes -------------------------------------------------------------

    def _open_scope(self) -> Scope:
        self.scope = Scope(self.scope)
        return self.scope

    def _close_scope(self) -> None:
        assert self.scope.outer is not None
        self.scope = self.scope.outer

    def _declare(self, name: str, pos: Position) -> None:
        if not self.scope.insert(name, UNDEFINED):
            self._error(pos, f"identifier '{name}' already defined")

    def _ident(self, name: str, pos: Position) -> ast.Ident:
        _, found = self.scope.lookup(name)
        if not found:
            self._error(pos, f"identifier '{name}' does not exist")
        return ast.Ident(name, pos=pos)

    # -- file structure -----------------------------------------------------

    def parse_file(self) -> ast.File:
        file_scope = self._open_scope()
        pipelines: list[ast.Pipeline] = []
        while self.tok is not Token.EOF:
            try:
                if self.tok is Token.SEMICOLON:
                    self._next()
                    continue
                if self.tok is not Token.PIPELINE:
                    self._fail(f"expected 'pipeline' but found '{self._desc()}'")
                pipelines.append(self._parse_pipeline())
            except _Bailout:
                self.scope = file_scope
                self._sync(_FILE_SYNC)
                self._depth = 0
        self._close_scope()
        return ast.File(tuple(pipelines), file_scope)

    def _parse_name(self) -> str:
        self._expect(Token.LPAREN)
        name = ""
        if self.tok in (Token.STRING, Token.RSTRING):
            name = self.lit
            self._next()
        self._expect(Token.RPAREN)
        return name

    def _parse_pipeline(self) -> ast.Pipeline:
        pos = self._expect(Token.PIPELINE)
        name = self._parse_name()
        scope = self._open_scope()
        vars_blocks: list[ast.VarsBlock] = []
        stages: list[ast.Stage] = []

        self._expect(Token.LBRACE)
        while self.tok not in (Token.RBRACE, Token.EOF):
            if self.tok is Token.SEMICOLON:
                self._next()
            elif self.tok is Token.VARS:
                vars_blocks.append(self._parse_vars())
            elif self.tok is Token.STAGES:
                self._parse_stages(vars_blocks, stages)
            else:
                self._fail(f"expected 'stages' but found '{self._desc()}'")
        self._expect(Token.RBRACE)

        self._close_scope()
        return ast.Pipeline(name, scope, tuple(vars_blocks), tuple(stages), pos=pos)

    def _parse_stages(self, vars_blocks: list[ast.VarsBlock], stages: list[ast.Stage]) -> None:
        self._expect(Token.STAGES)
        self._expect(Token.LBRACE)
        pipeline_scope = self.scope
        depth = self._depth
        while self.tok not in (Token.RBRACE, Token.EOF):
            try:
                if self.tok is Token.SEMICOLON:
                    self._next()
                elif self.tok is Token.VARS:
                    vars_blocks.append(self._parse_vars())
                elif self.tok is Token.STAGE:
                    stages.append(self._parse_stage())
                else:
                    self._fail(f"expected 'stage' but found '{self._desc()}'")
            except _Bailout:
                self.scope = pipeline_scope
                self._sync(_STAGES_SYNC | {Token.RBRACE}, depth)
                if self.tok in _FILE_SYNC:
                    raise
                if self.tok is Token.RBRACE:
                    break
        self._expect(Token.RBRACE)

    def _parse_stage(self) -> ast.Stage:
        pos = self._expect(Token.STAGE)
        name = self._parse_name()
        scope = self._open_scope()
        when: ast.Expr | None = None
        steps: ast.StepBlock | None = None
        vars_block: ast.VarsBlock | None = None

        self._expect(Token.LBRACE)
        depth = self._depth
        while self.tok not in (Token.RBRACE, Token.EOF):
            try:
                if self.tok is Token.SEMICOLON:
                    self._next()
                elif self.tok is Token.WHEN:
                    if when is not None:
                        self._error(self.pos, "redefine when block")
                    when = self._parse_when()
                elif self.tok is Token.STEPS:
                    if steps is not None:
                        self._error(self.pos, "redefine steps block")
                    steps = self._parse_steps()
                elif self.tok is Token.VARS:
                    if vars_block is not None:
                        self._error(self.pos, "redefine vars block")
                    vars_block = self._parse_vars()
                else:
                    self._fail(f"expected 'steps' but found '{self._desc()}'")
            except _Bailout:
                self.scope = scope
                self._sync(_STAGE_SYNC | {Token.RBRACE}, depth)
                if self.tok in _FILE_SYNC or self.tok is Token.STAGE:
                    raise
        self._expect(Token.RBRACE)

        self._close_scope()
        return ast.Stage(name, scope, when=when, steps=steps, vars=vars_block, pos=pos)

    def _block_start(self) -> None:
        # Newlines terminate statements from the token after '{' on.
        self.scanner.use_line_end(True)
        self._expect(Token.LBRACE)

    def _block_end(self) -> None:
        self.scanner.use_line_end(False)
        self._expect(Token.RBRACE)

    def _parse_when(self) -> ast.Expr:
        self._expect(Token.WHEN)
        self._block_start()
        self._skip_semicolons()
        x = self._parse_expr()
        self._skip_semicolons()
        self._block_end()
        return x

    def _parse_steps(self) -> ast.StepBlock:
        pos = self._expect(Token.STEPS)
        self._block_start()
        stmts = self._parse_stmt_list()
        self._block_end()
        return ast.StepBlock(tuple(stmts), pos=pos)

    def _parse_vars(self) -> ast.VarsBlock:
        pos = self._expect(Token.VARS)
        self._block_start()
        specs: list[ast.Assignment] = []
        for stmt in self._parse_stmt_list():
            if isinstance(stmt, ast.Assignment):
                specs.append(stmt)
            else:
                self._error(stmt.pos, "vars block only allows assignments")
        self._block_end()
        return ast.VarsBlock(tuple(specs), pos=pos)

    # -- statements ---------------------------------------------------------

    def _parse_stmt_list(self) -> list[ast.Stmt]:
        stmts: list[ast.Stmt] = []
        while self.tok not in (Token.RBRACE, Token.EOF):
            if self.tok is Token.SEMICOLON:
                self._next()
                continue
            stmts.append(self._parse_stmt())
            if self.tok not in (Token.SEMICOLON, Token.RBRACE, Token.EOF):
                self._fail(f"expected ';' but found '{self._desc()}'")
        return stmts

    def _parse_stmt(self, ident: tuple[str, Position] | None = None) -> ast.Stmt:
        pos = ident[1] if ident else self.pos
        if ident is None and self.tok is Token.IDENT:
            ident = (self.lit, self.pos)
            self._next()

        if ident is not None:
            name, ipos = ident
            if self.tok is Token.DEFINE:
                self._next()
                rhs = self._parse_expr()
                self._declare(name, ipos)
                return ast.Assignment(ast.Ident(name, pos=ipos), Token.DEFINE, rhs, pos=pos)
            x = self._parse_expr_from(self._ident(name, ipos))
        else:
            x = self._parse_expr()

        if self.tok is Token.DEFINE:
            self._error(self.pos, "non-name on left side of ':='")
            self._next()
            rhs = self._parse_expr()
            return ast.Assignment(x, Token.DEFINE, rhs, pos=pos)
        if self.tok.is_assign():
            op = self.tok
            self._next()
            rhs = self._parse_expr()
            if isinstance(x, ast.PathExpr):
                x = ast.PathExpr(x.x, x.path, x.args, lhs=True, pos=x.pos)
            elif not isinstance(x, (ast.Ident, ast.IndexExpr)):
                self._error(pos, "cannot assign to expression")
            return ast.Assignment(x, op, rhs, pos=pos)
        if self.tok in (Token.INC, Token.DEC):
            tok = self.tok
            self._next()
            return ast.IncDecStmt(x, tok, pos=pos)
        return ast.ExprStmt(x, pos=pos)

    # -- expressions --------------------------------------------------------

    def _parse_expr(self) -> ast.Expr:
        return self._parse_binary(LOWEST_PREC + 1)

    def _parse_expr_from(self, operand: ast.Expr) -> ast.Expr:
        """Continue an expression whose first operand is already parsed."""
        return self._parse_binary(LOWEST_PREC + 1, self._parse_primary(operand))

    def _parse_binary(self, prec1: int, x: ast.Expr | None = None) -> ast.Expr:
        if x is None:
            x = self._parse_unary()
        while True:
            op = self.tok
            prec = op.precedence
            if prec < prec1 or not op.is_operator():
                return x
            pos = self.pos
            self._next()
            y = self._parse_binary(prec + 1)
            x = ast.Binary(x, op, y, pos=pos)

    def _parse_unary(self) -> ast.Expr:
        if self.tok in (Token.NOT, Token.SUB):
            pos, op = self.pos, self.tok
            self._next()
            return ast.Unary(op, self._parse_unary(), pos=pos)
        return self._parse_primary()

    def _parse_primary(self, operand: ast.Expr | None = None) -> ast.Expr:
        x = operand if operand is not None else self._parse_operand()
        if isinstance(x, ast.Closure):
            # A trailing index belongs to the call taking the closure.
            return x
        x = self._parse_postfix(x)
        if isinstance(x, ast.Ident) and self._can_start_argument():
            return ast.Call(x, self._parse_args(), pos=x.pos)
        return x

    def _parse_operand(self) -> ast.Expr:
        pos, tok, lit = self.pos, self.tok, self.lit
        if tok is Token.IDENT:
            self._next()
            return self._ident(lit, pos)
        if tok in (Token.NUMBER, Token.STRING, Token.RSTRING):
            self._next()
            return ast.Literal(tok, lit, pos=pos)
        if tok is Token.LPAREN:
            line_mode = self.scanner.insert_line_end
            self.scanner.use_line_end(False)
            self._next()
            x = self._parse_expr()
            self.scanner.use_line_end(line_mode)
            self._expect(Token.RPAREN)
            return ast.ParenExpr(x, pos=pos)
        if tok is Token.LBRACK:
            return self._parse_sequence()
        if tok is Token.LBRACE:
            return self._parse_closure()
        self._fail(f"expected operand but found '{self._desc()}'")
        raise AssertionError("unreachable")

    def _parse_postfix(self, x: ast.Expr) -> ast.Expr:
        while True:
            if self.tok is Token.PERIOD:
                pos = self.pos
                self._next()
                if self.tok is Token.PERIOD:
                    self._next()
                    end = self._parse_postfix(self._parse_operand())
                    return ast.RangeExpr(x, end, pos=pos)
                segment = self._parse_segment()
                args = self._parse_args() if self._can_start_argument() else None
                x = ast.PathExpr(x, segment, args, pos=pos)
            elif self.tok is Token.LBRACK and self._adjacent():
                pos = self.pos
                line_mode = self.scanner.insert_line_end
                self.scanner.use_line_end(False)
                self._next()
                index = self._parse_expr()
                self.scanner.use_line_end(line_mode)
                self._expect(Token.RBRACK)
                x = ast.IndexExpr(x, index, pos=pos)
            else:
                return x

    def _parse_segment(self) -> str:
        tok, lit = self.tok, self.lit
        if tok in (Token.IDENT, Token.STRING, Token.RSTRING):
            self._next()
            return lit
        if tok.is_keyword():
            self._next()
            return tok.value
        if tok is Token.MUL:
            self._next()
            if self.tok is Token.MUL and self._adjacent():
                self._next()
                return "**"
            return "*"
        self._fail(f"expected path segment but found '{self._desc()}'")
        raise AssertionError("unreachable")

    def _can_start_argument(self) -> bool:
        tok = self.tok
        if tok.is_expr_end() or tok.is_operator() or tok.is_keyword():
            return False
        if tok is Token.PERIOD:
            return False
        if tok is Token.LBRACK and self._adjacent():
            return False
        return tok is not Token.ILLEGAL

    def _parse_args(self) -> tuple[ast.Argument, ...]:
        args = [self._parse_argument()]
        while self.tok is Token.COMMA:
            self._next()
            args.append(self._parse_argument())
        return tuple(args)

    def _parse_argument(self) -> ast.Argument:
        pos = self.pos
        if self.tok is Token.IDENT:
            name = self.lit
            self._next()
            if self.tok is Token.COLON:
                self._next()
                return ast.Argument(name, self._parse_expr(), pos=pos)
            return ast.Argument("", self._parse_expr_from(self._ident(name, pos)), pos=pos)
        return ast.Argument("", self._parse_expr(), pos=pos)

    def _parse_sequence(self) -> ast.SequenceExpr:
        line_mode = self.scanner.insert_line_end
        self.scanner.use_line_end(False)
        pos = self._expect(Token.LBRACK)
        values: list[ast.Expr] = []
        kinds: set[bool] = set()
        while self.tok not in (Token.RBRACK, Token.EOF):
            values.append(self._parse_element(kinds))
            if self.tok is not Token.COMMA:
                break
            self._next()
        if len(kinds) > 1:
            self._error(pos, "mixed list and map elements")
        self.scanner.use_line_end(line_mode)
        self._expect(Token.RBRACK)
        return ast.SequenceExpr(tuple(values), is_map=kinds == {True}, pos=pos)

    def _parse_element(self, kinds: set[bool]) -> ast.Expr:
        pos = self.pos
        if self.tok is Token.IDENT:
            name = self.lit
            self._next()
            if self.tok is Token.COLON:
                self._next()
                kinds.add(True)
                key = ast.Literal(Token.RSTRING, name, pos=pos)
                return ast.KeyValueExpr(key, self._parse_expr(), pos=pos)
            x = self._parse_expr_from(self._ident(name, pos))
        else:
            x = self._parse_expr()
        if self.tok is Token.COLON:
            self._next()
            kinds.add(True)
            return ast.KeyValueExpr(x, self._parse_expr(), pos=pos)
        kinds.add(False)
        return x

    def _parse_closure(self) -> ast.Closure:
        pos = self._expect(Token.LBRACE)
        scope = self._open_scope()
        params: list[str] = []
        first: tuple[str, Position] | None = None
        self._skip_semicolons()

        if self.tok is Token.IDENT:
            first = (self.lit, self.pos)
            self._next()
            if self.tok in (Token.COMMA, Token.LAMBDA):
                params.append(first[0])
                self._declare(*first)
                first = None
                while self.tok is Token.COMMA:
                    self._next()
                    if self.tok is not Token.IDENT:
                        self._fail(f"expected parameter name but found '{self._desc()}'")
                    params.append(self.lit)
                    self._declare(self.lit, self.pos)
                    self._next()
                self._expect(Token.LAMBDA)

        stmts: list[ast.Stmt] = []
        if first is not None:
            stmts.append(self._parse_stmt(first))
            if self.tok not in (Token.SEMICOLON, Token.RBRACE):
                self._fail(f"expected '}}' but found '{self._desc()}'")
        stmts.extend(self._parse_stmt_list())
        self._expect(Token.RBRACE)
        self._close_scope()
        return ast.Closure(tuple(params), ast.Block(tuple(stmts), pos=pos), scope, pos=pos)


def parse_file(source: str, scope: Scope | None = None) -> ast.File:
    """Parse a pipeline source file. Raises ParseError."""
    parser = Parser(source, scope)
    file = parser.parse_file()
    err = parser.errors.err()
    if err is not None:
        raise err
    return file


def parse_expr(source: str, scope: Scope | None = None) -> ast.Expr:
    """Parse a standalone expression. Raises ParseError."""
    parser = Parser(source, scope)
    x: ast.Expr | None = None
    try:
        x = parser._parse_expr()
        parser._skip_semicolons()
        if parser.tok is not Token.EOF:
            parser._fail(f"unexpected '{parser._desc()}' after expression")
    except _Bailout:
        pass
    err = parser.errors.err()
    if err is not None:
        raise err
    return x

"""Token kinds, keyword lookup and operator precedence for pipeline-lang."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class Position:
    """A location in source text. Lines and columns start at 1."""

    line: int = 1
    column: int = 1
    offset: int = 0

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


class Token(Enum):
    """Token kinds. The value is the canonical source text."""

    ILLEGAL = "ILLEGAL"
    EOF = "EOF"

    # Literals
    IDENT = "IDENT"
    NUMBER = "NUMBER"
    STRING = "STRING"
    RSTRING = "RSTRING"

    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    QUO = "/"
    REM = "%"

    ADD_ASSIGN = "+="
    SUB_ASSIGN = "-="
    MUL_ASSIGN = "*="
    QUO_ASSIGN = "/="
    REM_ASSIGN = "%="

    LAND = "&&"
    LOR = "||"
    INC = "++"
    DEC = "--"

    EQL = "=="
    NEQ = "!="
    LSS = "<"
    GTR = ">"
    LEQ = "<="
    GEQ = ">="
    NOT = "!"

    ASSIGN = "="
    DEFINE = ":="
    LAMBDA = "=>"

    # Punctuation
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACK = "["
    RBRACK = "]"
    COMMA = ","
    PERIOD = "."
    SEMICOLON = ";"
    COLON = ":"

    # Keywords
    PIPELINE = "pipeline"
    STAGES = "stages"
    STAGE = "stage"
    STEPS = "steps"
    WHEN = "when"
    VARS = "vars"

    def __str__(self) -> str:
        return self.value

    @property
    def precedence(self) -> int:
        """Binary precedence, 0 for tokens that are not binary operators."""
        return _PRECEDENCE.get(self, LOWEST_PREC)

    def is_literal(self) -> bool:
        return self in _LITERALS

    def is_operator(self) -> bool:
        """True for binary operators."""
        return self in _PRECEDENCE

    def is_keyword(self) -> bool:
        return self in _KEYWORD_TOKENS

    def is_assign(self) -> bool:
        return self in ASSIGN_OPS

    def is_expr_end(self) -> bool:
        """True for tokens that can never start a call argument."""
        return self in _EXPR_END


LOWEST_PREC = 0
UNARY_PREC = 6
HIGHEST_PREC = 7

_PRECEDENCE: dict[Token, int] = {
    Token.LOR: 1,
    Token.LAND: 2,
    Token.EQL: 3,
    Token.NEQ: 3,
    Token.LSS: 3,
    Token.LEQ: 3,
    Token.GTR: 3,
    Token.GEQ: 3,
    Token.ADD: 4,
    Token.SUB: 4,
    Token.MUL: 5,
    Token.QUO: 5,
    Token.REM: 5,
}

_LITERALS = frozenset({Token.IDENT, Token.NUMBER, Token.STRING, Token.RSTRING})

_KEYWORD_TOKENS = frozenset({
    Token.PIPELINE, Token.STAGES, Token.STAGE, Token.STEPS, Token.WHEN, Token.VARS,
})

KEYWORDS: dict[str, Token] = {t.value: t for t in _KEYWORD_TOKENS}

# Compound assignment → the binary operator it applies.
ASSIGN_OPS: dict[Token, Token | None] = {
    Token.ASSIGN: None,
    Token.DEFINE: None,
    Token.ADD_ASSIGN: Token.ADD,
    Token.SUB_ASSIGN: Token.SUB,
    Token.MUL_ASSIGN: Token.MUL,
    Token.QUO_ASSIGN: Token.QUO,
    Token.REM_ASSIGN: Token.REM,
}

_EXPR_END = frozenset({
    Token.EOF, Token.SEMICOLON, Token.RPAREN, Token.RBRACE, Token.RBRACK,
    Token.COMMA, Token.COLON, Token.LAMBDA, Token.INC, Token.DEC,
}) | frozenset(ASSIGN_OPS)


def lookup(ident: str) -> Token:
    """Map an identifier to its keyword token, or IDENT."""
    return KEYWORDS.get(ident, Token.IDENT)

"""Scanner: turns source text into a stream of (position, token, literal)."""

from __future__ import annotations

from typing import Callable, Iterator

from .tokens import Position, Token, lookup

ErrorHandler = Callable[[Position, str], None]

_EOF = ""

# Two-character operators keyed by their first character.
_COMPOUND: dict[str, tuple[Token, dict[str, Token]]] = {
    "+": (Token.ADD, {"=": Token.ADD_ASSIGN, "+": Token.INC}),
    "-": (Token.SUB, {"=": Token.SUB_ASSIGN, "-": Token.DEC}),
    "*": (Token.MUL, {"=": Token.MUL_ASSIGN}),
    "/": (Token.QUO, {"=": Token.QUO_ASSIGN}),
    "%": (Token.REM, {"=": Token.REM_ASSIGN}),
    "<": (Token.LSS, {"=": Token.LEQ}),
    ">": (Token.GTR, {"=": Token.GEQ}),
    "=": (Token.ASSIGN, {"=": Token.EQL, ">": Token.LAMBDA}),
    "!": (Token.NOT, {"=": Token.NEQ}),
    ":": (Token.COLON, {"=": Token.DEFINE}),
    "&": (Token.ILLEGAL, {"&": Token.LAND}),
    "|": (Token.ILLEGAL, {"|": Token.LOR}),
}

_SINGLE: dict[str, Token] = {
    "(": Token.LPAREN,
    ")": Token.RPAREN,
    "{": Token.LBRACE,
    "}": Token.RBRACE,
    "[": Token.LBRACK,
    "]": Token.RBRACK,
    ",": Token.COMMA,
    ".": Token.PERIOD,
    ";": Token.SEMICOLON,
}


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


class Scanner:
    """Pull scanner over pipeline-lang source.

    When ``insert_line_end`` is set a newline is reported as SEMICOLON
    instead of being skipped; the parser switches it on inside ``steps``,
    ``when`` and ``vars`` blocks.
    """

    def __init__(self, src: str, error_handler: ErrorHandler | None = None):
        self.src = src
        self.error_handler = error_handler
        self.error_count = 0
        self.insert_line_end = False

        self._offset = 0
        self._line = 1
        self._column = 1
        self._end = 0
        # Later NULs are reported as the scanner moves onto them.
        if self._ch == "\x00":
            self._error(self._pos(), "illegal character NUL")

    @property
    def last_end(self) -> int:
        """Offset just past the most recently scanned token."""
        return self._end

    def use_line_end(self, enabled: bool) -> None:
        self.insert_line_end = enabled

    # -- character helpers --------------------------------------------------

    @property
    def _ch(self) -> str:
        if self._offset < len(self.src):
            return self.src[self._offset]
        return _EOF

    def _peek(self, n: int = 1) -> str:
        i = self._offset + n
        if i < len(self.src):
            return self.src[i]
        return _EOF

    def _pos(self) -> Position:
        return Position(self._line, self._column, self._offset)

    def _next(self) -> None:
        if self._offset >= len(self.src):
            return
        if self.src[self._offset] == "\n":
            self._line += 1
            self._column = 1
        else:
            self._column += 1
        self._offset += 1
        if self._ch == "\x00":
            self._error(self._pos(), "illegal character NUL")

    def _error(self, pos: Position, msg: str) -> None:
        if self.error_handler is not None:
            self.error_handler(pos, msg)
        self.error_count += 1

    def _skip_whitespace(self) -> None:
        while self._ch in (" ", "\t", "\r") or (self._ch == "\n" and not self.insert_line_end):
            if self._ch == _EOF:
                return
            self._next()

    # -- scanners -----------------------------------------------------------

    def _scan_identifier(self) -> str:
        start = self._offset
        while self._ch and (self._ch.isalpha() or self._ch.isdecimal() or self._ch == "_"):
            self._next()
        return self.src[start:self._offset]

    def _scan_digits(self) -> None:
        while _is_digit(self._ch):
            self._next()

    def _scan_number(self) -> str:
        start = self._offset
        self._scan_digits()
        if self._ch == "." and _is_digit(self._peek()):
            self._next()
            self._scan_digits()
        return self.src[start:self._offset]

    def _scan_string(self, quote: str) -> str:
        """Scan a quoted literal; returns the text between the quotes as written."""
        pos = self._pos()
        self._next()  # opening quote
        start = self._offset
        while True:
            ch = self._ch
            if ch == "\n" or ch == _EOF:
                self._error(pos, "string literal not terminated")
                return self.src[start:self._offset]
            if ch == quote:
                lit = self.src[start:self._offset]
                self._next()
                return lit
            if ch == "\\":
                self._scan_escape(quote)
            else:
                self._next()

    def _scan_escape(self, quote: str) -> None:
        self._next()  # backslash
        if self._ch in ("\\", "$", quote) and self._ch != _EOF:
            self._next()
            return
        self._error(self._pos(), "escape sequence not terminated")

    def _skip_comment(self) -> None:
        while self._ch not in ("\n", _EOF):
            self._next()

    # -- public API ---------------------------------------------------------

    def scan(self) -> tuple[Position, Token, str]:
        """Return the next token as ``(position, token, literal)``."""
        while True:
            self._skip_whitespace()
            if self._ch == "/" and self._peek() == "/":
                self._skip_comment()
                continue
            break

        pos = self._pos()
        ch = self._ch
        lit = ""

        if ch == _EOF:
            tok = Token.EOF
        elif ch.isalpha() or ch == "_":
            lit = self._scan_identifier()
            tok = lookup(lit)
        elif _is_digit(ch):
            lit = self._scan_number()
            tok = Token.NUMBER
        elif ch == "\n":
            self._next()
            tok, lit = Token.SEMICOLON, "\n"
        elif ch == '"':
            lit = self._scan_string('"')
            tok = Token.STRING
        elif ch == "'":
            lit = self._scan_string("'")
            tok = Token.RSTRING
        elif ch in _SINGLE:
            self._next()
            tok = _SINGLE[ch]
        elif ch in _COMPOUND:
            single, pairs = _COMPOUND[ch]
            self._next()
            if self._ch in pairs and self._ch != _EOF:
                tok = pairs[self._ch]
                self._next()
            else:
                tok = single
                if tok is Token.ILLEGAL:
                    lit = ch
                    self._error(pos, f"illegal character {ch!r}")
        else:
            self._next()
            tok, lit = Token.ILLEGAL, ch
            if ch != "\x00":
                self._error(pos, f"illegal character {ch!r}")

        self._end = self._offset
        return pos, tok, lit

    def __iter__(self) -> Iterator[tuple[Position, Token, str]]:
        """Yield tokens up to and including EOF."""
        while True:
            item = self.scan()
            yield item
            if item[1] is Token.EOF:
                return


def tokenize(src: str, line_end: bool = False) -> list[tuple[Position, Token, str]]:
    """Scan ``src`` completely. Raises ParseError on lexical errors."""
    from .errors import ErrorList

    errors = ErrorList()
    scanner = Scanner(src, errors.add)
    scanner.use_line_end(line_end)
    tokens = list(scanner)
    err = errors.err()
    if err is not None:
        raise err
    return tokens

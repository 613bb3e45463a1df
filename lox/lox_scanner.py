from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, List, Optional

from lox.lox_errors import Diagnostics


class TokenType(Enum):
    # Single-character tokens.
    LEFT_PAREN = auto()
    RIGHT_PAREN = auto()
    LEFT_BRACE = auto()
    RIGHT_BRACE = auto()
    LEFT_BRACKET = auto()
    RIGHT_BRACKET = auto()
    COMMA = auto()
    DOT = auto()
    MINUS = auto()
    PLUS = auto()
    SEMICOLON = auto()
    SLASH = auto()
    STAR = auto()
    COLON = auto()

    # One or two character tokens.
    BANG = auto()
    BANG_EQUAL = auto()
    EQUAL = auto()
    EQUAL_EQUAL = auto()
    GREATER = auto()
    GREATER_EQUAL = auto()
    LESS = auto()
    LESS_EQUAL = auto()
    PLUS_EQUAL = auto()
    MINUS_EQUAL = auto()
    STAR_EQUAL = auto()
    SLASH_EQUAL = auto()

    # Literals.
    IDENTIFIER = auto()
    SQ_STRING = auto()
    DQ_STRING = auto()
    ST_STRING = auto()
    NUMBER = auto()

    # Keywords.
    AND = auto()
    CLASS = auto()
    MODULE = auto()
    ELSE = auto()
    FALSE = auto()
    FUN = auto()
    FOR = auto()
    FOREACH = auto()
    IN = auto()
    IF = auto()
    NIL = auto()
    OR = auto()
    PRINT = auto()
    RETURN = auto()
    SUPER = auto()
    THIS = auto()
    TRUE = auto()
    VAR = auto()
    WHILE = auto()
    BREAK = auto()
    CONTINUE = auto()
    TRY = auto()
    CATCH = auto()
    THROW = auto()

    EOF = auto()


KEYWORDS = {
    "and": TokenType.AND,
    "class": TokenType.CLASS,
    "module": TokenType.MODULE,
    "else": TokenType.ELSE,
    "false": TokenType.FALSE,
    "fun": TokenType.FUN,
    "for": TokenType.FOR,
    "foreach": TokenType.FOREACH,
    "in": TokenType.IN,
    "if": TokenType.IF,
    "nil": TokenType.NIL,
    "or": TokenType.OR,
    "print": TokenType.PRINT,
    "return": TokenType.RETURN,
    "super": TokenType.SUPER,
    "this": TokenType.THIS,
    "true": TokenType.TRUE,
    "var": TokenType.VAR,
    "while": TokenType.WHILE,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "try": TokenType.TRY,
    "catch": TokenType.CATCH,
    "throw": TokenType.THROW,
}

# Ends lexing; the rest of the buffer is ignored.
END_SCRIPT = "__END__"
LINE_MACRO = "__LINE__"

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", "'": "'", '"': '"', "$": "$"}

# Stands in for an escaped \$ inside a double-quoted string so it never opens an
# interpolation; the parser turns it back into "$".
ESCAPED_DOLLAR = "\ue000"
DIGITS = "0123456789"

SINGLE_CHAR = {
    "(": TokenType.LEFT_PAREN,
    ")": TokenType.RIGHT_PAREN,
    "[": TokenType.LEFT_BRACKET,
    "]": TokenType.RIGHT_BRACKET,
    ",": TokenType.COMMA,
    ".": TokenType.DOT,
    ";": TokenType.SEMICOLON,
    ":": TokenType.COLON,
}

# char -> (kind without '=', kind with '=')
WITH_EQUAL = {
    "!": (TokenType.BANG, TokenType.BANG_EQUAL),
    "=": (TokenType.EQUAL, TokenType.EQUAL_EQUAL),
    "<": (TokenType.LESS, TokenType.LESS_EQUAL),
    ">": (TokenType.GREATER, TokenType.GREATER_EQUAL),
    "+": (TokenType.PLUS, TokenType.PLUS_EQUAL),
    "-": (TokenType.MINUS, TokenType.MINUS_EQUAL),
    "*": (TokenType.STAR, TokenType.STAR_EQUAL),
}


@dataclass
class Token:
    kind: TokenType
    lexeme: str
    literal: Any
    file: Optional[str]
    line: int
    column: int = 0

    def rewrite(self, kind: TokenType, lexeme: str):
        """Turns a compound-assignment token into its plain operator."""
        self.kind = kind
        self.lexeme = lexeme

    def __str__(self):
        return f"{self.kind.name} {self.lexeme} {self.literal}"


class Scanner:
    """Turns source text into a list of tokens.

    Errors are reported to the diagnostics sink and scanning carries on, so one
    bad character does not hide the rest of the file. For the REPL the buffer
    can be extended with ``append_source``.
    """

    def __init__(self, source: str, filename: Optional[str] = None,
                 diagnostics: Optional[Diagnostics] = None, line: int = 1):
        self.source = source
        self.filename = filename
        self.diagnostics = diagnostics or Diagnostics()
        self.tokens: List[Token] = []
        self.start = 0
        self.current = 0
        self.line = line
        self.line_start = 0
        self.column = 1
        self.brace_depth = 0
        self.ended = False

    def scan_tokens(self) -> List[Token]:
        self.scan_until_end()
        self.add_eof()
        return self.tokens

    def scan_until_end(self):
        while not self._is_at_end():
            self.start = self.current
            self.column = self.start - self.line_start + 1
            self._scan_token()

    def add_eof(self):
        self.tokens.append(Token(TokenType.EOF, "", None, self.filename, self.line))

    def append_source(self, more: str) -> List[Token]:
        """Scans ``more`` as a continuation of the buffer and returns the new tokens."""
        if self.tokens and self.tokens[-1].kind is TokenType.EOF:
            self.tokens.pop()
        first = len(self.tokens)
        self.source += more
        self.scan_until_end()
        return self.tokens[first:]

    def _scan_token(self):
        c = self._advance()
        if c in SINGLE_CHAR:
            self._add_token(SINGLE_CHAR[c])
            return
        if c in WITH_EQUAL:
            plain, with_eq = WITH_EQUAL[c]
            self._add_token(with_eq if self._match("=") else plain)
            return
        match c:
            case "{":
                self.brace_depth += 1
                self._add_token(TokenType.LEFT_BRACE)
            case "}":
                self.brace_depth = max(0, self.brace_depth - 1)
                self._add_token(TokenType.RIGHT_BRACE)
            case "/":
                if self._match("/"):
                    while self._peek() != "\n" and not self._is_at_end():
                        self.current += 1
                elif self._match("*"):
                    self._block_comment()
                else:
                    self._add_token(TokenType.SLASH_EQUAL if self._match("=") else TokenType.SLASH)
            case " " | "\r" | "\t":
                pass
            case "\n":
                self._newline(self.current)
            case '"':
                self._string('"', TokenType.DQ_STRING)
            case "'":
                self._string("'", TokenType.SQ_STRING)
            case _:
                if c in DIGITS:
                    self._number()
                elif _is_alpha(c):
                    self._identifier()
                else:
                    self.diagnostics.error(self.line, f"Unexpected character '{c}'.")

    def _block_comment(self):
        start_line = self.line
        while not self._is_at_end():
            if self._peek() == "*" and self._peek_next() == "/":
                self.current += 2
                return
            if self._peek() == "\n":
                self._newline(self.current + 1)
            self.current += 1
        self.diagnostics.error(start_line, "Unterminated block comment.")

    def _string(self, quote: str, kind: TokenType):
        start_line = self.line
        chars = []
        # depth > 0 while inside ${ ... } of a double-quoted string
        depth = 0
        while not self._is_at_end():
            c = self._peek()
            if depth == 0 and c == quote:
                break
            if c == "\n":
                self._newline(self.current + 1)
            if depth == 0 and c == "\\" and self.current + 1 < len(self.source):
                esc = self.source[self.current + 1]
                if esc == "$" and kind is TokenType.DQ_STRING:
                    chars.append(ESCAPED_DOLLAR)
                else:
                    chars.append(ESCAPES.get(esc, "\\" + esc))
                self.current += 2
                continue
            if kind is TokenType.DQ_STRING and c == "$" and self._peek_next() == "{":
                depth += 1
                chars.append("${")
                self.current += 2
                continue
            if depth and c == "{":
                depth += 1
            elif depth and c == "}":
                depth -= 1
            chars.append(c)
            self.current += 1

        if self._is_at_end():
            self.diagnostics.error(start_line, "Unterminated string.")
            return
        self.current += 1
        self._add_token(kind, "".join(chars), line=start_line)

    def _number(self):
        while self._peek() in DIGITS:
            self.current += 1
        if self._peek() == "." and self._peek_next() in DIGITS:
            self.current += 1
            while self._peek() in DIGITS:
                self.current += 1
        self._add_token(TokenType.NUMBER, float(self.source[self.start:self.current]))

    def _identifier(self):
        if self.source[self.start] == "s" and self._peek() in ("'", '"') and self.current == self.start + 1:
            quote = self._advance()
            self._string(quote, TokenType.ST_STRING)
            return
        while _is_alpha(self._peek()) or self._peek() in DIGITS:
            self.current += 1
        text = self.source[self.start:self.current]
        if text == END_SCRIPT:
            self.ended = True
            return
        if text == LINE_MACRO:
            self._add_token(TokenType.NUMBER, float(self.line))
            return
        self._add_token(KEYWORDS.get(text, TokenType.IDENTIFIER))

    def _add_token(self, kind: TokenType, literal: Any = None, line: Optional[int] = None):
        text = self.source[self.start:self.current]
        self.tokens.append(Token(kind, text, literal, self.filename, line or self.line, self.column))

    def _newline(self, line_start: int):
        self.line += 1
        self.line_start = line_start

    def _advance(self) -> str:
        c = self.source[self.current]
        self.current += 1
        return c

    def _match(self, expected: str) -> bool:
        if self._is_at_end() or self.source[self.current] != expected:
            return False
        self.current += 1
        return True

    def _peek(self) -> str:
        if self._is_at_end():
            return "\0"
        return self.source[self.current]

    def _peek_next(self) -> str:
        if self.current + 1 >= len(self.source):
            return "\0"
        return self.source[self.current + 1]

    def _is_at_end(self) -> bool:
        return self.ended or self.current >= len(self.source)


def _is_alpha(c: str) -> bool:
    return c.isascii() and (c.isalpha() or c == "_")

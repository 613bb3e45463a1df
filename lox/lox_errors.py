import sys
from typing import Any, List, Optional, Tuple


class Diagnostics:
    """Collects lexical, parse and resolver errors for one interpreter session.

    Each error is kept as a ``(line, where, message)`` triple and echoed to
    stderr unless the sink was created silent.
    """

    def __init__(self, silent: bool = False, stream=None):
        self.silent = silent
        self.stream = stream
        self.messages: List[Tuple[int, str, str]] = []

    @property
    def had_error(self) -> bool:
        return bool(self.messages)

    def report(self, line: int, where: str, message: str):
        self.messages.append((line, where, message))
        if not self.silent:
            print(self.format_one(line, where, message), file=self.stream or sys.stderr)

    def error(self, line: int, message: str):
        self.report(line, "", message)

    def error_at(self, token, message: str):
        if token.kind.name == "EOF":
            self.report(token.line, " at end", message)
        else:
            self.report(token.line, f" at '{token.lexeme}'", message)

    @staticmethod
    def format_one(line: int, where: str, message: str) -> str:
        return f"[line {line}] Error{where}: {message}"

    def format(self, since: int = 0) -> str:
        return "\n".join(self.format_one(*m) for m in self.messages[since:])


class LoxSyntaxError(Exception):
    """Raised when source text fails to scan, parse or resolve."""

    def __init__(self, messages: List[Tuple[int, str, str]]):
        self.messages = list(messages)
        super().__init__("\n".join(Diagnostics.format_one(*m) for m in self.messages))

    @property
    def line(self) -> Optional[int]:
        return self.messages[0][0] if self.messages else None


class LoxRuntimeError(Exception):
    """A host-level runtime failure. Always fatal for the current run."""

    def __init__(self, token, message: str):
        super().__init__(message)
        self.token = token
        self.message = message


class LoxThrow(Exception):
    """Carries a script-level thrown value up to the nearest matching catch."""

    def __init__(self, value: Any, token=None):
        super().__init__(value)
        self.value = value
        self.token = token


class SystemExitRequest(Exception):
    """Raised by System.exit() to stop the current run."""

    def __init__(self, status: int = 0):
        super().__init__(status)
        self.status = status

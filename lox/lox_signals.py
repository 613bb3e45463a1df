import signal
from typing import Dict, List

from lox.lox_datatypes import LoxCallable


class SignalRegistry:
    """Maps OS signal names to script callables.

    Handlers are called with no arguments. ``deliver`` runs the handlers for a
    name directly, which is what the OS-level handler does as well.
    """

    def __init__(self, interpreter):
        self.interpreter = interpreter
        self.handlers: Dict[str, List[LoxCallable]] = {}

    @staticmethod
    def normalize(name: str) -> str:
        name = name.upper()
        return name if name.startswith("SIG") else "SIG" + name

    def register(self, name: str, fn: LoxCallable) -> bool:
        signame = self.normalize(name)
        signum = getattr(signal, signame, None)
        if not isinstance(signum, signal.Signals):
            raise ValueError(f"Unknown signal '{name}'.")
        first = signame not in self.handlers
        self.handlers.setdefault(signame, []).append(fn)
        if first:
            signal.signal(signum, lambda num, frame: self.deliver(signame))
        return True

    def deliver(self, name: str) -> int:
        """Calls every handler registered for ``name``; returns how many ran."""
        signame = self.normalize(name)
        handlers = list(self.handlers.get(signame, []))
        for fn in handlers:
            self.interpreter._dbg("call", "signal", signame, fn)
            self.interpreter.call_callable(fn, [], {}, None)
        return len(handlers)

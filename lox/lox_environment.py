from typing import Any, Dict, Optional


class UndefinedVariable(Exception):
    """A name was not bound in any scope that was searched."""

    def __init__(self, name: str):
        super().__init__(f"Undefined variable '{name}'.")
        self.name = name


class Environment:
    """A lexical scope: name bindings plus a link to the enclosing scope."""
    __slots__ = ("values", "enclosing")

    def __init__(self, enclosing: Optional['Environment'] = None):
        self.values: Dict[str, Any] = {}
        self.enclosing = enclosing

    def define(self, name: str, value: Any):
        self.values[name] = value

    def get(self, name: str, search_enclosing: bool = True) -> Any:
        env = self
        while env is not None:
            if name in env.values:
                return env.values[name]
            if not search_enclosing:
                break
            env = env.enclosing
        raise UndefinedVariable(name)

    def assign(self, name: str, value: Any, search_enclosing: bool = True):
        env = self
        while env is not None:
            if name in env.values:
                env.values[name] = value
                return
            if not search_enclosing:
                break
            env = env.enclosing
        raise UndefinedVariable(name)

    def ancestor(self, distance: int) -> 'Environment':
        env = self
        for _ in range(distance):
            env = env.enclosing
        return env

    def get_at(self, distance: int, name: str) -> Any:
        return self.ancestor(distance).get(name, False)

    def assign_at(self, distance: int, name: str, value: Any):
        self.ancestor(distance).assign(name, value, False)

    def __repr__(self):
        depth = 0
        env = self.enclosing
        while env is not None:
            depth += 1
            env = env.enclosing
        return f"<Environment depth={depth} names={sorted(self.values)}>"

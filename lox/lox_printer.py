"""
Renders parsed Lox programs as S-expressions, one top-level statement per line.
"""
from typing import List, Optional

from lox.lox_ast import (
    Assign, Binary, Logical, Unary, Grouping, Literal, Variable, This, Super, SuperSet,
    Call, SplatCall, KeywordArg, PropAccess, PropSet, ArrayLiteral, IndexedGet, IndexedSet,
    AnonFn, Expression, Print, Var, Block, If, While, For, Foreach, Break, Continue,
    Return, Function, Class, Module, In, Try, Catch, Throw, FunctionType, Param,
)
from lox.lox_errors import Diagnostics, LoxSyntaxError

PARSE_ERROR = "!error!"


class AstPrinter:
    """Formats statements and expressions. With ``interpreter`` set, variables show their resolved depth."""

    def __init__(self, interpreter=None, indent_width: int = 2):
        self.interpreter = interpreter
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def print_program(self, statements: List) -> str:
        return "".join(self.pformat(stmt) + "\n" for stmt in statements)

    def pformat(self, node, level: int = 0) -> str:
        handler = self._handlers.get(type(node))
        if handler is None:
            return repr(node)
        return handler(node, level)

    def _create_handlers(self):
        return {
            Expression: lambda s, l: self.pformat(s.expression, l),
            Print: lambda s, l: f"(print {self.pformat(s.expression, l)})",
            Var: self._pformat_var,
            Block: self._pformat_block,
            If: self._pformat_if,
            While: self._pformat_while,
            For: self._pformat_for,
            Foreach: self._pformat_foreach,
            Break: lambda s, l: "(break)",
            Continue: lambda s, l: "(continue)",
            Return: self._pformat_return,
            Function: self._pformat_function,
            Class: self._pformat_class,
            Module: self._pformat_module,
            In: self._pformat_in,
            Try: self._pformat_try,
            Catch: self._pformat_catch,
            Throw: lambda s, l: f"(throw {self.pformat(s.value, l)})",
            Assign: lambda e, l: f"(assign {e.name.lexeme} {self.pformat(e.value, l)})",
            Binary: self._pformat_operator,
            Logical: self._pformat_operator,
            Unary: lambda e, l: f"({e.operator.lexeme} {self.pformat(e.right, l)})",
            Grouping: lambda e, l: f"(group {self.pformat(e.expression, l)})",
            Literal: self._pformat_literal,
            Variable: self._pformat_variable,
            This: lambda e, l: "(this)",
            Super: lambda e, l: f"(super {e.property.lexeme})",
            SuperSet: lambda e, l: f"(superSet {e.property.lexeme} {self.pformat(e.value, l)})",
            Call: self._pformat_call,
            SplatCall: lambda e, l: "*" + self.pformat(e.expression, l),
            KeywordArg: lambda e, l: f"{e.name.lexeme}: {self.pformat(e.value, l)}",
            PropAccess: lambda e, l: f"(prop {self.pformat(e.left, l)} {e.property.lexeme})",
            PropSet: self._pformat_prop_set,
            ArrayLiteral: self._pformat_array,
            IndexedGet: lambda e, l: f"(indexedget {self.pformat(e.left, l)} {self.pformat(e.index, l)})",
            IndexedSet: self._pformat_indexed_set,
            AnonFn: self._pformat_anon_fn,
        }

    def _pad(self, level: int) -> str:
        return self._indent_char * level

    def _nested(self, head: str, children: List, level: int) -> str:
        """``(head`` then one child per line, indented, then the closing paren on its own line."""
        lines = [head]
        for child in children:
            lines.append(self._pad(level + 1) + self.pformat(child, level + 1))
        lines.append(self._pad(level) + ")")
        return "\n".join(lines)

    # --- Statements ---

    def _pformat_var(self, stmt: Var, level: int) -> str:
        parts = ["varDecl"]
        if len(stmt.names) == 1:
            parts.append(stmt.names[0].lexeme)
        else:
            parts.append("(" + " ".join(n.lexeme for n in stmt.names) + ")")
        parts.extend(self.pformat(init, level) for init in stmt.initializers)
        return "(" + " ".join(parts) + ")"

    def _pformat_block(self, stmt: Block, level: int) -> str:
        if not stmt.statements:
            return "(block)"
        return self._nested("(block", stmt.statements, level)

    def _pformat_if(self, stmt: If, level: int) -> str:
        children = [stmt.then_branch]
        if stmt.else_branch is not None:
            children.append(stmt.else_branch)
        return self._nested(f"(if {self.pformat(stmt.condition, level)}", children, level)

    def _pformat_while(self, stmt: While, level: int) -> str:
        return self._nested(f"(while {self.pformat(stmt.condition, level)}", [stmt.body], level)

    def _pformat_for(self, stmt: For, level: int) -> str:
        clauses = [self._or_nop(stmt.initializer, level), self._or_nop(stmt.condition, level),
                   self._or_nop(stmt.increment, level)]
        return self._nested("(for " + " ".join(clauses), [stmt.body], level)

    def _or_nop(self, node, level: int) -> str:
        return "(nop)" if node is None else self.pformat(node, level)

    def _pformat_foreach(self, stmt: Foreach, level: int) -> str:
        names = " ".join(v.lexeme for v in stmt.variables)
        return self._nested(f"(foreach ({names}) {self.pformat(stmt.iterable, level)}", [stmt.body], level)

    def _pformat_return(self, stmt: Return, level: int) -> str:
        if stmt.value is None:
            return "(return)"
        return f"(return {self.pformat(stmt.value, level)})"

    def _pformat_function(self, stmt: Function, level: int) -> str:
        tag = {FunctionType.GETTER: "getter", FunctionType.SETTER: "setter"}.get(stmt.kind, "fnDecl")
        name = stmt.name.lexeme
        if stmt.kind == FunctionType.CLASS_METHOD:
            name = "Class." + name
        head = f"({tag} {name}{self._params(stmt.params, level)}"
        return self._nested(head, [Block(stmt.name, stmt.body)], level)

    def _params(self, params: List[Param], level: int) -> str:
        out = []
        for param in params:
            if param.is_splatted:
                out.append("*" + param.name)
            elif param.is_kwarg:
                out.append(param.name + ":")
            elif param.default is not None:
                out.append(f"{param.name}={self.pformat(param.default, level)}")
            else:
                out.append(param.name)
        return "".join(" " + p for p in out)

    def _pformat_class(self, stmt: Class, level: int) -> str:
        head = "(classDecl " + stmt.name.lexeme
        if stmt.superclass is not None:
            head += " " + stmt.superclass.name.lexeme
        if not stmt.body:
            return head + ")"
        return self._nested(head, stmt.body, level)

    def _pformat_module(self, stmt: Module, level: int) -> str:
        head = "(moduleDecl " + stmt.name.lexeme
        if not stmt.body:
            return head + ")"
        return self._nested(head, stmt.body, level)

    def _pformat_in(self, stmt: In, level: int) -> str:
        head = f"(in {self.pformat(stmt.target, level)}"
        if not stmt.body:
            return head + ")"
        return self._nested(head, stmt.body, level)

    def _pformat_try(self, stmt: Try, level: int) -> str:
        return self._nested("(try", [stmt.block] + list(stmt.catches), level)

    def _pformat_catch(self, stmt: Catch, level: int) -> str:
        head = "(catch " + self.pformat(stmt.match, level)
        if stmt.variable is not None:
            head += f" (var {stmt.variable.lexeme})"
        return self._nested(head, [stmt.block], level)

    # --- Expressions ---

    def _pformat_operator(self, expr, level: int) -> str:
        return f"({expr.operator.lexeme} {self.pformat(expr.left, level)} {self.pformat(expr.right, level)})"

    def _pformat_literal(self, expr: Literal, level: int) -> str:
        value = expr.value
        if value is None:
            return "nil"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return f'"{value}"'
        if isinstance(value, (int, float)):
            return repr(float(value))
        return str(value)

    def _pformat_variable(self, expr: Variable, level: int) -> str:
        text = "(var " + expr.name.lexeme
        if self.interpreter is not None:
            dist = self.interpreter.locals.get(expr)
            text += " [dist " + ("global" if dist is None else str(dist)) + "]"
        return text + ")"

    def _pformat_call(self, expr: Call, level: int) -> str:
        parts = ["call", self.pformat(expr.left, level)]
        parts.extend(self.pformat(arg, level) for arg in expr.args)
        return "(" + " ".join(parts) + ")"

    def _pformat_prop_set(self, expr: PropSet, level: int) -> str:
        return (f"(propSet {self.pformat(expr.object, level)} {expr.property.lexeme} "
                f"{self.pformat(expr.value, level)})")

    def _pformat_array(self, expr: ArrayLiteral, level: int) -> str:
        return "(" + " ".join(["array"] + [self.pformat(e, level) for e in expr.elements]) + ")"

    def _pformat_indexed_set(self, expr: IndexedSet, level: int) -> str:
        return (f"(indexedset {self.pformat(expr.left, level)} {self.pformat(expr.index, level)} "
                f"{self.pformat(expr.value, level)})")

    def _pformat_anon_fn(self, expr: AnonFn, level: int) -> str:
        head = "(fnAnon" + self._params(expr.params, level)
        return self._nested(head, [Block(expr.keyword, expr.body)], level)


def print_source(source: str, resolve: bool = False, filename: Optional[str] = None) -> str:
    """Parses ``source`` and returns its printed form, or ``!error!`` on any static error."""
    from lox.lox_interpreter import Interpreter

    interpreter = Interpreter(diagnostics=Diagnostics(silent=True), bootstrap=False)
    try:
        statements = interpreter.compile(source, filename)
    except LoxSyntaxError:
        return PARSE_ERROR
    return AstPrinter(interpreter if resolve else None).print_program(statements)

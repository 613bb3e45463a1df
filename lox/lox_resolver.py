from enum import Enum
from typing import Dict, List, Optional, Set

from lox.lox_ast import (
    AnonFn, ArrayLiteral, Assign, Binary, Block, Break, Call, Catch, Class, Continue,
    Expr, Expression, For, Foreach, Function, FunctionType, Grouping, If, In, IndexedGet,
    IndexedSet, KeywordArg, Literal, Logical, Module, Print, PropAccess, PropSet, Return,
    SplatCall, Stmt, Super, SuperSet, This, Throw, Try, Unary, Var, Variable, While,
)
from lox.lox_errors import Diagnostics
from lox.lox_scanner import Token


class ClassType(Enum):
    NONE = "none"
    CLASS = "class"
    MODULE = "module"
    IN = "in"


class Resolver:
    """Computes, for each variable use, how many scopes away its definition lives.

    Distances are handed to ``interpreter.resolve(expr, depth)``; names that are
    not found in any local scope are left alone and treated as globals. The
    interpreter is also asked for classes that already exist at runtime so that
    ``super.name`` can be checked against native and previously loaded classes.
    """

    def __init__(self, interpreter, diagnostics: Optional[Diagnostics] = None):
        self.interpreter = interpreter
        self.diagnostics = diagnostics or interpreter.diagnostics
        self.scopes: List[Dict[str, bool]] = []
        self.current_function = FunctionType.NONE
        self.current_class = ClassType.NONE
        self.classes: Dict[str, Class] = {}
        self.modules: Dict[str, Module] = {}
        self.had_error = False
        self._stmt_handlers = {
            Block: self._block,
            Var: self._var,
            Function: self._function_stmt,
            Class: self._class,
            Module: self._module,
            In: self._in,
            Expression: lambda s: self._resolve_expr(s.expression),
            Print: lambda s: self._resolve_expr(s.expression),
            Throw: lambda s: self._resolve_expr(s.value),
            Return: self._return,
            If: self._if,
            While: self._while,
            For: self._for,
            Foreach: self._foreach,
            Try: self._try,
            Break: lambda s: None,
            Continue: lambda s: None,
        }
        self._expr_handlers = {
            Variable: self._variable,
            Assign: self._assign,
            This: self._this,
            Super: self._super,
            SuperSet: self._super_set,
            AnonFn: lambda e: self._resolve_function(e, FunctionType.FUNCTION),
            Literal: lambda e: None,
            Grouping: lambda e: self._resolve_expr(e.expression),
            Unary: lambda e: self._resolve_expr(e.right),
            Binary: self._binary,
            Logical: self._binary,
            Call: self._call,
            SplatCall: lambda e: self._resolve_expr(e.expression),
            KeywordArg: lambda e: self._resolve_expr(e.value),
            PropAccess: lambda e: self._resolve_expr(e.left),
            PropSet: self._prop_set,
            ArrayLiteral: self._array,
            IndexedGet: self._indexed_get,
            IndexedSet: self._indexed_set,
        }

    def resolve(self, statements: List[Stmt]):
        for stmt in statements:
            self._resolve_stmt(stmt)

    def _resolve_stmt(self, stmt: Stmt):
        self._stmt_handlers[type(stmt)](stmt)

    def _resolve_expr(self, expr: Expr):
        self._expr_handlers[type(expr)](expr)

    # --- Scopes ---

    def _begin_scope(self):
        self.scopes.append({})

    def _end_scope(self):
        self.scopes.pop()

    def _declare(self, name: Token):
        if not self.scopes:
            return
        scope = self.scopes[-1]
        if name.lexeme in scope:
            self._error(name, f"Variable '{name.lexeme}' already declared in this scope.")
        scope[name.lexeme] = False

    def _define(self, name: Token):
        if not self.scopes:
            return
        self.scopes[-1][name.lexeme] = True

    def _resolve_local(self, expr: Expr, name: str):
        for i in range(len(self.scopes) - 1, -1, -1):
            if name in self.scopes[i]:
                self.interpreter.resolve(expr, len(self.scopes) - 1 - i)
                return

    def _error(self, token: Token, message: str):
        self.had_error = True
        self.diagnostics.error_at(token, message)

    # --- Statements ---

    def _block(self, stmt: Block):
        self._begin_scope()
        self.resolve(stmt.statements)
        self._end_scope()

    def _var(self, stmt: Var):
        for name in stmt.names:
            self._declare(name)
        for init in stmt.initializers:
            self._resolve_expr(init)
        for name in stmt.names:
            self._define(name)

    def _function_stmt(self, stmt: Function):
        self._declare(stmt.name)
        self._define(stmt.name)
        self._resolve_function(stmt, stmt.kind)

    def _resolve_function(self, function, kind: FunctionType):
        enclosing = self.current_function
        self.current_function = kind
        self._begin_scope()
        for param in function.params:
            if param.default is not None:
                self._resolve_expr(param.default)
            self._declare(param.token)
            self._define(param.token)
        self._begin_scope()
        self.resolve(function.body)
        self._end_scope()
        self._end_scope()
        self.current_function = enclosing

    def _members(self, members: List[Function], class_type: ClassType):
        enclosing = self.current_class
        self.current_class = class_type
        self._begin_scope()
        self.scopes[-1]["this"] = True
        for member in members:
            self._resolve_function(member, member.kind)
        self._end_scope()
        self.current_class = enclosing

    def _class(self, stmt: Class):
        self._declare(stmt.name)
        self._define(stmt.name)
        if stmt.superclass is not None:
            self._resolve_expr(stmt.superclass)
        self.classes[stmt.name.lexeme] = stmt
        self._members(stmt.body, ClassType.CLASS)

    def _module(self, stmt: Module):
        self._declare(stmt.name)
        self._define(stmt.name)
        self.modules[stmt.name.lexeme] = stmt
        self._members(stmt.body, ClassType.MODULE)

    def _in(self, stmt: In):
        self._resolve_expr(stmt.target)
        enclosing = self.current_class
        self.current_class = ClassType.IN
        self._begin_scope()
        self.scopes[-1]["this"] = True
        for member in stmt.body:
            if isinstance(member, Function) and member.owner is stmt:
                # methods close over the block; binding adds a `this` scope on top
                self._begin_scope()
                self.scopes[-1]["this"] = True
                self._resolve_function(member, member.kind)
                self._end_scope()
            else:
                self._resolve_stmt(member)
        self._end_scope()
        self.current_class = enclosing

    def _return(self, stmt: Return):
        if stmt.value is not None:
            self._resolve_expr(stmt.value)

    def _if(self, stmt: If):
        self._resolve_expr(stmt.condition)
        self._resolve_stmt(stmt.then_branch)
        if stmt.else_branch is not None:
            self._resolve_stmt(stmt.else_branch)

    def _while(self, stmt: While):
        self._resolve_expr(stmt.condition)
        self._resolve_stmt(stmt.body)

    def _for(self, stmt: For):
        self._begin_scope()
        if stmt.initializer is not None:
            self._resolve_stmt(stmt.initializer)
        if stmt.condition is not None:
            self._resolve_expr(stmt.condition)
        if stmt.increment is not None:
            self._resolve_expr(stmt.increment)
        self._resolve_stmt(stmt.body)
        self._end_scope()

    def _foreach(self, stmt: Foreach):
        self._resolve_expr(stmt.iterable)
        self._begin_scope()
        for var in stmt.variables:
            self._declare(var)
            self._define(var)
        self._resolve_stmt(stmt.body)
        self._end_scope()

    def _try(self, stmt: Try):
        self._resolve_stmt(stmt.block)
        for clause in stmt.catches:
            self._catch(clause)

    def _catch(self, clause: Catch):
        self._resolve_expr(clause.match)
        if clause.variable is None:
            self._resolve_stmt(clause.block)
            return
        self._begin_scope()
        self._declare(clause.variable)
        self._define(clause.variable)
        self._resolve_stmt(clause.block)
        self._end_scope()

    # --- Expressions ---

    def _variable(self, expr: Variable):
        if self.scopes and self.scopes[-1].get(expr.name.lexeme) is False:
            self._error(expr.name, f"Can't read local variable '{expr.name.lexeme}' in its own initializer.")
        self._resolve_local(expr, expr.name.lexeme)

    def _assign(self, expr: Assign):
        self._resolve_expr(expr.value)
        self._resolve_local(expr, expr.name.lexeme)

    def _this(self, expr: This):
        if self.current_class is ClassType.NONE:
            self._error(expr.keyword, "Can't use 'this' outside of a class or 'in' block.")
            return
        self._resolve_local(expr, "this")

    def _super(self, expr: Super):
        if not self._check_super(expr):
            return
        self._resolve_local(expr, "this")

    def _super_set(self, expr: SuperSet):
        self._resolve_expr(expr.value)
        if not self._check_super(expr):
            return
        self._resolve_local(expr, "this")

    def _check_super(self, expr) -> bool:
        if expr.owner is None or self.current_class is ClassType.NONE or self.current_function is FunctionType.NONE:
            self._error(expr.keyword, "Can't use 'super' outside of a method.")
            return False
        if isinstance(expr.owner, Class) and not self._super_defines(expr.owner, expr.property.lexeme):
            self._error(expr.property, f"Undefined super method '{expr.property.lexeme}'.")
        return True

    def _super_defines(self, stmt: Class, name: str) -> bool:
        """False only when every ancestor is statically known and none defines ``name``."""
        seen: Set[str] = set()
        current = stmt
        while True:
            parent = current.superclass.name.lexeme if current.superclass else "Object"
            if parent in seen:
                return True
            seen.add(parent)
            declared = self.classes.get(parent)
            if declared is None:
                break
            if any(m.name.lexeme == name for m in declared.body):
                return True
            current = declared

        klass = self.interpreter.existing_class(parent)
        if klass is None:
            return True
        if klass.responds_to(name):
            return True
        # a module may be spliced in at runtime
        if any(any(m.name.lexeme == name for m in mod.body) for mod in self.modules.values()):
            return True
        return any(mod.responds_to(name) for mod in self.interpreter.modules.values())

    def _binary(self, expr):
        self._resolve_expr(expr.left)
        self._resolve_expr(expr.right)

    def _call(self, expr: Call):
        self._resolve_expr(expr.left)
        for arg in expr.args:
            self._resolve_expr(arg)

    def _prop_set(self, expr: PropSet):
        self._resolve_expr(expr.value)
        self._resolve_expr(expr.object)

    def _array(self, expr: ArrayLiteral):
        for element in expr.elements:
            self._resolve_expr(element)

    def _indexed_get(self, expr: IndexedGet):
        self._resolve_expr(expr.left)
        self._resolve_expr(expr.index)

    def _indexed_set(self, expr: IndexedSet):
        self._resolve_expr(expr.left)
        self._resolve_expr(expr.index)
        self._resolve_expr(expr.value)

import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Tuple

from lox.lox_ast import (
    AnonFn, ArrayLiteral, Assign, Binary, Block, Break, Call, Catch, Class, Continue,
    Expr, Expression, For, Foreach, Function, FunctionType, Grouping, If, In, IndexedGet,
    IndexedSet, KeywordArg, Literal, Logical, Module, Print, PropAccess, PropSet, Return,
    SplatCall, Stmt, Super, SuperSet, This, Throw, Try, Unary, Var, Variable, While,
)
from lox.lox_config import LoxConfig
from lox.lox_datatypes import (
    BREAK, CONTINUE, VARIADIC, Completion, LoxCallable, LoxClass, LoxFunction, LoxInstance,
    LoxModule, NativeFunction, ReturnSignal,
)
from lox.lox_environment import Environment, UndefinedVariable
from lox.lox_errors import Diagnostics, LoxRuntimeError, LoxSyntaxError, LoxThrow
from lox.lox_parser import Parser
from lox.lox_resolver import Resolver
from lox.lox_scanner import Scanner, Token, TokenType
from lox.lox_signals import SignalRegistry

OPERATOR_METHODS = {
    TokenType.PLUS: "opAdd",
    TokenType.MINUS: "opDiff",
    TokenType.STAR: "opMul",
    TokenType.SLASH: "opDiv",
}


@dataclass
class StackFrame:
    name: str
    token: Optional[Token]

    def __str__(self):
        if self.token is None:
            return f"at {self.name}"
        return f"at {self.name} ({self.token.file or '<script>'}:{self.token.line})"


class Tracepoint:
    """Before/after hook around every node the interpreter visits.

    ``position`` is ``(depth, index)``: how deep the node sits in the visit
    stack and how many siblings were visited before it at that depth. A
    debugger subclass can block in ``before`` until ``resume`` is called from
    another thread.
    """

    def __init__(self):
        self._running = threading.Event()
        self._running.set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self):
        self._running.clear()

    def resume(self):
        self._running.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._running.wait(timeout)

    def before(self, node, position: Tuple[int, int]):
        pass

    def after(self, node, position: Tuple[int, int], value: Any):
        pass


class Interpreter:
    """Executes resolved statements against a global environment.

    The interpreter owns every piece of session state: globals, the class and
    module registries, the call stack and the resolver's distance table, so
    several interpreters can live side by side.
    """

    def __init__(self, config: Optional[LoxConfig] = None, diagnostics: Optional[Diagnostics] = None,
                 bootstrap: bool = True):
        self.config = config or LoxConfig()
        self.diagnostics = diagnostics or Diagnostics(silent=self.config.silence_errors)
        self.globals = Environment()
        self.environment = self.globals
        self.locals: Dict[Expr, int] = {}
        self.classes: Dict[str, LoxClass] = {}
        self.modules: Dict[str, LoxModule] = {}
        self.call_stack: List[StackFrame] = []
        self.static_strings: Dict[str, LoxInstance] = {}
        self.loaded_files: set = set()
        self.at_exit_hooks: List[LoxCallable] = []
        self.side_effects: List[Dict] = []
        self.tracepoint: Optional[Tracepoint] = None
        self.last_value: Any = None
        self.signals = SignalRegistry(self)
        self._visit_stack: List[int] = []
        self._stmt_handlers = {
            Expression: self._exec_expression,
            Print: self._exec_print,
            Var: self._exec_var,
            Block: self._exec_block,
            If: self._exec_if,
            While: self._exec_while,
            For: self._exec_for,
            Foreach: self._exec_foreach,
            Break: lambda stmt: BREAK,
            Continue: lambda stmt: CONTINUE,
            Return: self._exec_return,
            Function: self._exec_function,
            Class: self._exec_class,
            Module: self._exec_module,
            In: self._exec_in,
            Try: self._exec_try,
            Throw: self._exec_throw,
        }
        self._expr_handlers = {
            Literal: self._eval_literal,
            Grouping: lambda expr: self.evaluate(expr.expression),
            ArrayLiteral: lambda expr: self.new_array([self.evaluate(e) for e in expr.elements]),
            Variable: lambda expr: self.lookup_variable(expr.name, expr),
            This: lambda expr: self.lookup_variable(expr.keyword, expr),
            Assign: self._eval_assign,
            Logical: self._eval_logical,
            Unary: self._eval_unary,
            Binary: self._eval_binary,
            Call: self._eval_call,
            PropAccess: lambda expr: self.get_property(self.evaluate(expr.left), expr.property),
            PropSet: self._eval_prop_set,
            IndexedGet: self._eval_indexed_get,
            IndexedSet: self._eval_indexed_set,
            Super: self._eval_super,
            SuperSet: self._eval_super_set,
            AnonFn: lambda expr: LoxFunction(expr, self.environment),
            SplatCall: self._eval_misplaced,
            KeywordArg: self._eval_misplaced,
        }
        if bootstrap:
            from lox.lox_runtime import StdLib
            StdLib(self).install()

    # --- Native class shortcuts ---

    @property
    def class_class(self) -> LoxClass:
        return self.classes["Class"]

    @property
    def module_class(self) -> LoxClass:
        return self.classes["Module"]

    def existing_class(self, name: str) -> Optional[LoxClass]:
        return self.classes.get(name)

    # --- Entry points ---

    def compile(self, source: str, filename: Optional[str] = None) -> List[Stmt]:
        """Scans, parses and resolves ``source``. Raises LoxSyntaxError on any static error."""
        mark = len(self.diagnostics.messages)
        tokens = Scanner(source, filename, self.diagnostics).scan_tokens()
        statements = Parser(tokens, self.diagnostics).parse()
        if len(self.diagnostics.messages) > mark:
            raise LoxSyntaxError(self.diagnostics.messages[mark:])
        Resolver(self, self.diagnostics).resolve(statements)
        if len(self.diagnostics.messages) > mark:
            raise LoxSyntaxError(self.diagnostics.messages[mark:])
        return statements

    def interpret(self, statements: List[Stmt], environment: Optional[Environment] = None) -> Any:
        """Runs top-level statements and returns the value of the last expression statement."""
        previous = self.environment
        if environment is not None:
            self.environment = environment
        value = None
        try:
            for stmt in statements:
                self.execute(stmt)
                value = self.last_value if isinstance(stmt, Expression) else None
        finally:
            self.environment = previous
        return value

    def resolve(self, expr: Expr, depth: int):
        self._dbg("resolve", type(expr).__name__, getattr(getattr(expr, "name", None), "lexeme", "this"), depth)
        self.locals[expr] = depth

    def execute(self, stmt: Stmt) -> Optional[Completion]:
        if self.tracepoint is None:
            return self._stmt_handlers[type(stmt)](stmt)
        return self._traced(stmt, self._stmt_handlers[type(stmt)])

    def evaluate(self, expr: Expr) -> Any:
        if self.tracepoint is None:
            return self._expr_handlers[type(expr)](expr)
        return self._traced(expr, self._expr_handlers[type(expr)])

    def execute_block(self, statements: List[Stmt], environment: Environment) -> Optional[Completion]:
        previous = self.environment
        self.environment = environment
        try:
            for stmt in statements:
                signal = self.execute(stmt)
                if signal is not None:
                    return signal
        finally:
            self.environment = previous
        return None

    def _traced(self, node, handler):
        if not self._visit_stack:
            self._visit_stack.append(0)
        position = (len(self._visit_stack), self._visit_stack[-1])
        self._visit_stack[-1] += 1
        self._visit_stack.append(0)
        self.tracepoint.before(node, position)
        try:
            value = handler(node)
        finally:
            self._visit_stack.pop()
        self.tracepoint.after(node, position, value)
        return value

    # --- Call stack and diagnostics ---

    def push_frame(self, name: str, token: Optional[Token]):
        self.call_stack.append(StackFrame(name, token))

    def pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def format_stacktrace(self, limit: int = 25) -> str:
        if not self.call_stack:
            return ""
        lines = ["Lox stacktrace:"]
        frames = list(reversed(self.call_stack))
        for frame in frames[:limit]:
            lines.append(f"  {frame}")
        if len(frames) > limit:
            lines.append(f"  ... {len(frames) - limit} more")
        return "\n".join(lines)

    def run_at_exit_hooks(self):
        while self.at_exit_hooks:
            hook = self.at_exit_hooks.pop(0)
            self.call_callable(hook, [], {}, None)

    def _dbg(self, key: str, *parts):
        if self.config.debug_enabled(key):
            print(f"[DBG {key}]", *parts, file=sys.stderr)

    def write_output(self, text: str):
        if self.config.use_print_buf:
            self.side_effects.append({'topics': ['stdout'], 'message': text})
        else:
            sys.stdout.write(text)
            sys.stdout.flush()

    # --- Errors ---

    def throw_error(self, class_name: str, message: str, token: Optional[Token] = None) -> NoReturn:
        """Raises a script-level error of the named native class."""
        if token is None and self.call_stack:
            token = self.call_stack[-1].token
        klass = self.classes[class_name]
        error = self.call_callable(klass, [self.new_string(message)], {}, token)
        self._dbg("throw", class_name, message)
        self.push_frame("throw", token)
        raise LoxThrow(error, token)

    # --- Statements ---

    def _exec_expression(self, stmt: Expression):
        self.last_value = self.evaluate(stmt.expression)

    def _exec_print(self, stmt: Print):
        self.write_output(self.stringify(self.evaluate(stmt.expression)) + "\n")

    def _exec_var(self, stmt: Var):
        values = [self.evaluate(init) for init in stmt.initializers]
        if len(stmt.names) > 1 and len(values) == 1 and self.is_array(values[0]):
            items = values[0].hidden["ary"]
            values = [items[i] if i < len(items) else None for i in range(len(stmt.names))]
        # names left without a value are nil
        for i, name in enumerate(stmt.names):
            self.environment.define(name.lexeme, values[i] if i < len(values) else None)

    def _exec_block(self, stmt: Block):
        return self.execute_block(stmt.statements, Environment(self.environment))

    def _exec_if(self, stmt: If):
        if self.is_truthy(self.evaluate(stmt.condition)):
            return self.execute(stmt.then_branch)
        if stmt.else_branch is not None:
            return self.execute(stmt.else_branch)
        return None

    def _exec_while(self, stmt: While):
        while self.is_truthy(self.evaluate(stmt.condition)):
            signal = self.execute(stmt.body)
            if signal is BREAK:
                break
            if isinstance(signal, ReturnSignal):
                return signal
        return None

    def _exec_for(self, stmt: For):
        previous = self.environment
        self.environment = Environment(previous)
        try:
            if stmt.initializer is not None:
                self.execute(stmt.initializer)
            while stmt.condition is None or self.is_truthy(self.evaluate(stmt.condition)):
                signal = self.execute(stmt.body)
                if signal is BREAK:
                    break
                if isinstance(signal, ReturnSignal):
                    return signal
                if stmt.increment is not None:
                    self.evaluate(stmt.increment)
        finally:
            self.environment = previous
        return None

    def _exec_foreach(self, stmt: Foreach):
        iterable = self.evaluate(stmt.iterable)
        if not isinstance(iterable, LoxInstance) or self.find_method(iterable, "iter") is None:
            self.throw_error("TypeError", f"foreach needs an object with an 'iter' method, got {self.type_name(iterable)}.", stmt.keyword)
        iterator = self.call_method(iterable, "iter", [], stmt.keyword)
        while self.is_truthy(self.call_method(iterator, "hasNext", [], stmt.keyword)):
            element = self.call_method(iterator, "nextIter", [], stmt.keyword)
            env = Environment(self.environment)
            if len(stmt.variables) == 1:
                env.define(stmt.variables[0].lexeme, element)
            else:
                if not self.is_array(element):
                    self.throw_error("TypeError", "foreach with several variables needs Array elements.", stmt.keyword)
                items = element.hidden["ary"]
                for i, var in enumerate(stmt.variables):
                    env.define(var.lexeme, items[i] if i < len(items) else None)
            signal = self.execute_block([stmt.body], env)
            if signal is BREAK:
                break
            if isinstance(signal, ReturnSignal):
                return signal
        return None

    def _exec_return(self, stmt: Return):
        value = self.evaluate(stmt.value) if stmt.value is not None else None
        return ReturnSignal(value)

    def _exec_function(self, stmt: Function):
        self.environment.define(stmt.name.lexeme, LoxFunction(stmt, self.environment))

    def define_members(self, target: LoxModule, members: List[Function], closure: Environment):
        for member in members:
            fn = LoxFunction(member, closure, member.kind is FunctionType.INITIALIZER)
            fn.owner = target
            name = member.name.lexeme
            match member.kind:
                case FunctionType.GETTER:
                    target.getters[name] = fn
                case FunctionType.SETTER:
                    target.setters[name] = fn
                case FunctionType.CLASS_METHOD:
                    target.define_singleton_method(name, fn)
                case _:
                    target.methods[name] = fn

    def _exec_class(self, stmt: Class):
        if stmt.superclass is not None:
            superclass = self.evaluate(stmt.superclass)
            if not isinstance(superclass, LoxClass) or superclass.module is not None or superclass.is_singleton:
                self.throw_error("TypeError", f"Superclass of {stmt.name.lexeme} must be a class.", stmt.superclass.name)
        else:
            superclass = self.classes["Object"]
        klass = LoxClass(stmt.name.lexeme, superclass, klass=self.class_class)
        self.environment.define(stmt.name.lexeme, klass)
        self.define_members(klass, stmt.body, self.environment)
        self.classes[klass.name] = klass
        stmt.runtime = klass
        self._dbg("lookup", "defined", klass, "<", superclass)

    def _exec_module(self, stmt: Module):
        module = LoxModule(stmt.name.lexeme, klass=self.module_class)
        self.environment.define(stmt.name.lexeme, module)
        self.define_members(module, stmt.body, self.environment)
        self.modules[module.name] = module
        stmt.runtime = module

    def _exec_in(self, stmt: In):
        target = self.evaluate(stmt.target)
        stmt.runtime = target
        previous = self.environment
        env = Environment(previous)
        env.define("this", target)
        self.environment = env
        try:
            for member in stmt.body:
                if isinstance(member, Function) and member.owner is stmt:
                    if not isinstance(target, LoxModule):
                        self.throw_error("TypeError", "Methods can only be added to a class or module.", member.name)
                    self.define_members(target, [member], env)
                    continue
                signal = self.execute(member)
                if signal is not None:
                    return signal
        finally:
            self.environment = previous
        return None

    def _exec_try(self, stmt: Try):
        depth = len(self.call_stack)
        try:
            return self.execute(stmt.block)
        except LoxThrow as thrown:
            for clause in stmt.catches:
                if not self._catch_matches(clause, thrown.value):
                    continue
                del self.call_stack[depth:]
                if clause.variable is None:
                    return self.execute(clause.block)
                env = Environment(self.environment)
                env.define(clause.variable.lexeme, thrown.value)
                return self.execute_block([clause.block], env)
            raise

    def _catch_matches(self, clause: Catch, value: Any) -> bool:
        matcher = self.evaluate(clause.match)
        if self.is_equal(matcher, value):
            return True
        return isinstance(value, LoxInstance) and isinstance(matcher, LoxModule) and value.is_a(matcher)

    def _exec_throw(self, stmt: Throw):
        value = self.evaluate(stmt.value)
        self._dbg("throw", self.type_name(value))
        self.push_frame("throw", stmt.keyword)
        raise LoxThrow(value, stmt.keyword)

    # --- Expressions ---

    def _eval_literal(self, expr: Literal):
        value = expr.value
        if isinstance(value, str):
            if expr.token is not None and expr.token.kind is TokenType.ST_STRING:
                return self.static_string(value)
            return self.new_string(value)
        return value

    def _eval_misplaced(self, expr):
        raise LoxRuntimeError(getattr(expr, "star", None) or getattr(expr, "name", None),
                              "Splat and keyword arguments are only allowed in calls.")

    def lookup_variable(self, name: Token, expr: Expr) -> Any:
        distance = self.locals.get(expr)
        try:
            if distance is not None:
                return self.environment.get_at(distance, name.lexeme)
            return self.environment.get(name.lexeme, True)
        except UndefinedVariable as e:
            self.throw_error("NameError", str(e), name)

    def _eval_assign(self, expr: Assign):
        value = self.evaluate(expr.value)
        distance = self.locals.get(expr)
        try:
            if distance is not None:
                self.environment.assign_at(distance, expr.name.lexeme, value)
            else:
                self.environment.assign(expr.name.lexeme, value, True)
        except UndefinedVariable as e:
            self.throw_error("NameError", str(e), expr.name)
        return value

    def _eval_logical(self, expr: Logical):
        left = self.evaluate(expr.left)
        if expr.operator.kind is TokenType.OR:
            if self.is_truthy(left):
                return left
        elif not self.is_truthy(left):
            return left
        return self.evaluate(expr.right)

    def _eval_unary(self, expr: Unary):
        right = self.evaluate(expr.right)
        if expr.operator.kind is TokenType.BANG:
            return not self.is_truthy(right)
        if not self.is_number(right):
            self.throw_error("TypeError", f"Operand of '-' must be a number, got {self.type_name(right)}.", expr.operator)
        return -right

    def _eval_binary(self, expr: Binary):
        left = self.evaluate(expr.left)
        right = self.evaluate(expr.right)
        op = expr.operator
        match op.kind:
            case TokenType.EQUAL_EQUAL:
                return self.is_equal(left, right)
            case TokenType.BANG_EQUAL:
                return not self.is_equal(left, right)
            case TokenType.GREATER | TokenType.GREATER_EQUAL | TokenType.LESS | TokenType.LESS_EQUAL:
                return self._compare(op, left, right)
        return self._arithmetic(op, left, right)

    def _compare(self, op: Token, left: Any, right: Any) -> bool:
        if self.is_number(left) and self.is_number(right):
            a, b = left, right
        elif self.is_string(left) and self.is_string(right):
            a, b = left.hidden["buf"], right.hidden["buf"]
        else:
            self.throw_error("TypeError", f"Operands of '{op.lexeme}' must be two numbers or two strings.", op)
        match op.kind:
            case TokenType.GREATER:
                return a > b
            case TokenType.GREATER_EQUAL:
                return a >= b
            case TokenType.LESS:
                return a < b
        return a <= b

    def _arithmetic(self, op: Token, left: Any, right: Any) -> Any:
        if self.is_number(left) and self.is_number(right):
            match op.kind:
                case TokenType.PLUS:
                    return left + right
                case TokenType.MINUS:
                    return left - right
                case TokenType.STAR:
                    return left * right
            if right == 0:
                raise LoxRuntimeError(op, "Division by zero.")
            return left / right
        method_name = OPERATOR_METHODS[op.kind]
        if isinstance(left, LoxInstance):
            method = self.find_method(left, method_name)
            if method is not None:
                return self.call_callable(method.bind(left), [right], {}, op)
        self.throw_error(
            "TypeError",
            f"Operands of '{op.lexeme}' must be numbers, or the left operand must define {method_name} "
            f"(got {self.type_name(left)} and {self.type_name(right)}).",
            op,
        )

    def _eval_call(self, expr: Call):
        if isinstance(expr.left, PropAccess):
            receiver = self.evaluate(expr.left.left)
            callee = self.get_property(receiver, expr.left.property)
        else:
            receiver = None
            callee = self.evaluate(expr.left)
        args, kwargs = self._evaluate_arguments(expr.args)
        if not isinstance(callee, LoxCallable):
            if callee is None and isinstance(expr.left, PropAccess):
                self.throw_error(
                    "NoSuchMethodError",
                    f"Undefined method '{expr.left.property.lexeme}' for {self.type_name(receiver)}.",
                    expr.left.property,
                )
            self.throw_error("TypeError", f"Can only call functions and classes, got {self.type_name(callee)}.", expr.paren)
        return self.call_callable(callee, args, kwargs, expr.paren)

    def _evaluate_arguments(self, arg_exprs: List[Expr]) -> Tuple[List[Any], Dict[str, Any]]:
        args: List[Any] = []
        kwargs: Dict[str, Any] = {}
        for arg in arg_exprs:
            match arg:
                case SplatCall():
                    value = self.evaluate(arg.expression)
                    if self.is_array(value):
                        args.extend(value.hidden["ary"])
                    elif self.is_map(value):
                        for key, item in list(value.hidden["map"].values()):
                            if not self.is_string(key):
                                self.throw_error("ArgumentError", "Keyword splat needs a Map with String keys.", arg.star)
                            self._add_kwarg(kwargs, key.hidden["buf"], item, arg.star)
                    else:
                        self.throw_error("ArgumentError", f"Can only splat an Array or a Map, got {self.type_name(value)}.", arg.star)
                case KeywordArg():
                    self._add_kwarg(kwargs, arg.name.lexeme, self.evaluate(arg.value), arg.name)
                case _:
                    args.append(self.evaluate(arg))
        return args, kwargs

    def _add_kwarg(self, kwargs: Dict[str, Any], name: str, value: Any, token: Token):
        if name in kwargs:
            self.throw_error("ArgumentError", f"Keyword argument '{name}' given more than once.", token)
        kwargs[name] = value

    def call_callable(self, callee: LoxCallable, args: List[Any], kwargs: Dict[str, Any],
                      token: Optional[Token] = None) -> Any:
        """Checks keywords and arity, then calls ``callee``."""
        name = self.callable_name(callee)
        if kwargs:
            allowed = callee.keyword_names()
            for key in kwargs:
                if key not in allowed:
                    self.throw_error("ArgumentError", f"{name} got an unknown keyword argument '{key}'.", token)
        low, high = callee.arity()
        if len(args) < low or (high != VARIADIC and len(args) > high):
            self.throw_error(
                "ArgumentError",
                f"Wrong number of arguments to {name}: expected {_arity_text(low, high)}, got {len(args)}.",
                token,
            )
        self._dbg("call", name, "argc", len(args), "kwargs", sorted(kwargs))
        return callee.call(self, args, kwargs, token)

    def call_method(self, receiver: Any, name: str, args: List[Any], token: Optional[Token] = None) -> Any:
        method = self.find_method(receiver, name) if isinstance(receiver, LoxInstance) else None
        if method is None:
            self.throw_error("NoSuchMethodError", f"Undefined method '{name}' for {self.type_name(receiver)}.", token)
        return self.call_callable(method.bind(receiver), args, {}, token)

    def find_method(self, receiver: LoxInstance, name: str) -> Optional[LoxCallable]:
        method = receiver.dispatch_class().find_method(name)
        self._dbg("lookup", name, "on", receiver.dispatch_class(), "->", method)
        return method

    # --- Properties ---

    def get_property(self, obj: Any, name: Token) -> Any:
        if not isinstance(obj, LoxInstance):
            self.throw_error("TypeError", f"Can't read property '{name.lexeme}' of {self.type_name(obj)}.", name)
        key = name.lexeme
        klass = obj.dispatch_class()
        getter = klass.find_getter(key)
        if getter is not None:
            return self.call_callable(getter.bind(obj), [], {}, name)
        if key in obj.properties:
            return obj.properties[key]
        method = klass.find_method(key)
        if method is not None:
            return method.bind(obj)
        missing = klass.find_method("propertyMissing")
        if missing is not None:
            return self.call_callable(missing.bind(obj), [self.new_string(key)], {}, name)
        return None

    def set_property(self, obj: Any, name: Token, value: Any) -> Any:
        if not isinstance(obj, LoxInstance):
            self.throw_error("TypeError", f"Can't set property '{name.lexeme}' on {self.type_name(obj)}.", name)
        setter = obj.dispatch_class().find_setter(name.lexeme)
        if setter is not None:
            self.call_callable(setter.bind(obj), [value], {}, name)
            return value
        self.check_mutable(obj, name)
        obj.properties[name.lexeme] = value
        return value

    def check_mutable(self, obj: LoxInstance, token: Optional[Token] = None):
        if obj.is_frozen:
            self.throw_error("FrozenObjectError", f"Can't modify frozen {self.type_name(obj)}.", token)

    def _eval_prop_set(self, expr: PropSet):
        obj = self.evaluate(expr.object)
        value = self.evaluate(expr.value)
        return self.set_property(obj, expr.property, value)

    def _eval_indexed_get(self, expr: IndexedGet):
        obj = self.evaluate(expr.left)
        index = self.evaluate(expr.index)
        return self.call_method(obj, "indexGet", [index], expr.bracket)

    def _eval_indexed_set(self, expr: IndexedSet):
        obj = self.evaluate(expr.left)
        index = self.evaluate(expr.index)
        value = self.evaluate(expr.value)
        self.call_method(obj, "indexSet", [index, value], expr.bracket)
        return value

    def _super_start(self, expr) -> Tuple[Any, Optional[LoxClass]]:
        receiver = self.environment.get_at(self.locals[expr], "this")
        owner = expr.owner.runtime
        if isinstance(owner, LoxClass):
            if expr.in_class_method:
                return receiver, owner.get_singleton_class().superclass
            return receiver, owner.superclass
        if isinstance(owner, LoxModule) and isinstance(receiver, LoxInstance):
            klass = receiver.dispatch_class()
            while klass is not None:
                if klass.module is owner:
                    return receiver, klass.superclass
                klass = klass.superclass
        return receiver, None

    def _eval_super(self, expr: Super):
        receiver, start = self._super_start(expr)
        name = expr.property.lexeme
        if start is not None:
            getter = start.find_getter(name)
            if getter is not None:
                return self.call_callable(getter.bind(receiver), [], {}, expr.property)
            method = start.find_method(name)
            if method is not None:
                return method.bind(receiver)
        self.throw_error("NoSuchMethodError", f"Undefined super method '{name}'.", expr.property)

    def _eval_super_set(self, expr: SuperSet):
        receiver, start = self._super_start(expr)
        value = self.evaluate(expr.value)
        setter = start.find_setter(expr.property.lexeme) if start is not None else None
        if setter is not None:
            self.call_callable(setter.bind(receiver), [value], {}, expr.property)
            return value
        self.check_mutable(receiver, expr.property)
        receiver.properties[expr.property.lexeme] = value
        return value

    # --- Values ---

    def new_instance(self, class_name: str) -> LoxInstance:
        return LoxInstance(self.classes[class_name])

    def new_string(self, text: str) -> LoxInstance:
        string = LoxInstance(self.classes["String"])
        string.hidden["buf"] = text
        return string

    def static_string(self, text: str) -> LoxInstance:
        string = self.static_strings.get(text)
        if string is None:
            string = self.new_string(text)
            string.freeze()
            self.static_strings[text] = string
        return string

    def new_array(self, items) -> LoxInstance:
        array = LoxInstance(self.classes["Array"])
        array.hidden["ary"] = list(items)
        return array

    def new_map(self, pairs=()) -> LoxInstance:
        mapping = LoxInstance(self.classes["Map"])
        mapping.hidden["map"] = {}
        for key, value in pairs:
            mapping.hidden["map"][self.map_key(key)] = (key, value)
        return mapping

    def map_key(self, key: Any) -> Any:
        """Hashable stand-in for a map key: strings by text, numbers by value, objects by identity."""
        if self.is_string(key):
            return ("str", key.hidden["buf"])
        if isinstance(key, bool) or key is None:
            return ("lit", key)
        if self.is_number(key):
            return ("num", key)
        return ("obj", id(key))

    @staticmethod
    def is_number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    @staticmethod
    def is_string(value: Any) -> bool:
        return isinstance(value, LoxInstance) and "buf" in value.hidden

    @staticmethod
    def is_array(value: Any) -> bool:
        return isinstance(value, LoxInstance) and "ary" in value.hidden

    @staticmethod
    def is_map(value: Any) -> bool:
        return isinstance(value, LoxInstance) and "map" in value.hidden

    @staticmethod
    def is_truthy(value: Any) -> bool:
        return not (value is None or value is False)

    def is_equal(self, a: Any, b: Any) -> bool:
        if a is None or b is None:
            return a is b
        if isinstance(a, bool) or isinstance(b, bool):
            return a is b
        if self.is_string(a) and self.is_string(b):
            return a.hidden["buf"] == b.hidden["buf"]
        if isinstance(a, (LoxInstance, LoxCallable)) or isinstance(b, (LoxInstance, LoxCallable)):
            return a is b
        return a == b

    def type_name(self, value: Any) -> str:
        match value:
            case None:
                return "nil"
            case bool():
                return "bool"
            case int() | float():
                return "number"
            case LoxClass():
                return "class"
            case LoxModule():
                return "module"
            case LoxInstance():
                if self.is_string(value):
                    return "string"
                if self.is_array(value):
                    return "array"
                if self.is_map(value):
                    return "map"
                return "instance"
            case LoxCallable():
                return "function"
        return type(value).__name__

    def callable_name(self, callee: LoxCallable) -> str:
        if isinstance(callee, LoxClass):
            return callee.display_name
        return callee.name or "(anon)"

    def stringify(self, value: Any) -> str:
        match value:
            case None:
                return "nil"
            case bool():
                return "true" if value else "false"
            case int() | float():
                return format_number(value)
            case LoxModule():
                return repr(value)
            case LoxInstance():
                if self.is_string(value):
                    return value.hidden["buf"]
                method = self.find_method(value, "toString")
                if method is None:
                    return f"<instance {value.get_class().display_name}>"
                result = self.call_callable(method.bind(value), [], {}, None)
                if not self.is_string(result):
                    self.throw_error("TypeError", "toString must return a String.")
                return result.hidden["buf"]
            case LoxCallable():
                return f"<fn {value.name}>"
        return str(value)

    # --- Loading ---

    def load_path(self) -> List[str]:
        paths = self.globals.values.get("LOAD_PATH")
        if self.is_array(paths):
            return [self.stringify(p) for p in paths.hidden["ary"]]
        return list(self.config.load_path)

    def resolve_script_path(self, path: str) -> Optional[str]:
        candidates = [path] if os.path.isabs(path) else [os.path.join(d, path) for d in self.load_path()]
        for candidate in candidates:
            for name in (candidate, candidate + ".lox"):
                if os.path.isfile(name):
                    return str(Path(name).resolve())
        return None

    def load_script(self, path: str, once: bool = False, token: Optional[Token] = None) -> bool:
        resolved = self.resolve_script_path(path)
        if resolved is None:
            self.throw_error("ArgumentError", f"Can't find script '{path}' in LOAD_PATH.", token)
        if once and resolved in self.loaded_files:
            self._dbg("load", "already loaded", resolved)
            return False
        self.loaded_files.add(resolved)
        self._dbg("load", resolved)
        source = Path(resolved).read_text(encoding="utf-8")
        try:
            statements = self.compile(source, resolved)
        except LoxSyntaxError as e:
            self.throw_error("SyntaxError", f"Can't load {resolved}:\n{e}", token)
        saved = {k: self.globals.values.get(k) for k in ("__FILE__", "__DIR__")}
        self.globals.define("__FILE__", self.new_string(resolved))
        self.globals.define("__DIR__", self.new_string(str(Path(resolved).parent)))
        try:
            self.interpret(statements, self.globals)
        finally:
            self.globals.values.update(saved)
        return True

    def eval_source(self, source: str, token: Optional[Token] = None) -> Any:
        try:
            statements = self.compile(source, "(eval)")
        except LoxSyntaxError as e:
            self.throw_error("SyntaxError", str(e), token)
        return self.interpret(statements, self.environment)


def format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return str(value)


def _arity_text(low: int, high: int) -> str:
    if high == VARIADIC:
        return f"at least {low}"
    if low == high:
        return str(low)
    return f"{low} to {high}"

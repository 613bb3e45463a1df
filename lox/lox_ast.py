from enum import Enum
from typing import Any, List, Optional

from lox.lox_scanner import Token


class FunctionType(Enum):
    NONE = "none"
    FUNCTION = "function"
    METHOD = "method"
    CLASS_METHOD = "class method"
    INITIALIZER = "initializer"
    GETTER = "getter"
    SETTER = "setter"


class Node:
    """Base class for AST nodes. Nodes hash by identity so they can key the resolver's table."""
    _fields: tuple = ()

    def __repr__(self):
        args = ", ".join(f"{name}={getattr(self, name)!r}" for name in self._fields)
        return f"{type(self).__name__}({args})"


class Expr(Node):
    pass


class Stmt(Node):
    pass


class Param:
    """A formal parameter: plain, defaulted, ``*splat`` or ``name:`` keyword."""

    def __init__(self, token: Token, default: Optional[Expr] = None,
                 is_splatted: bool = False, is_kwarg: bool = False):
        self.token = token
        self.default = default
        self.is_splatted = is_splatted
        self.is_kwarg = is_kwarg

    @property
    def name(self) -> str:
        return self.token.lexeme

    def has_default(self) -> bool:
        return self.default is not None or self.is_kwarg

    def must_receive_argument(self) -> bool:
        return not (self.is_splatted or self.has_default())

    def __repr__(self):
        prefix = "*" if self.is_splatted else ""
        suffix = ":" if self.is_kwarg else ("=" if self.default is not None else "")
        return f"Param({prefix}{self.name}{suffix})"


# --- Expressions ---

class Assign(Expr):
    _fields = ("name", "value")

    def __init__(self, name: Token, value: Expr):
        self.name = name
        self.value = value


class Binary(Expr):
    _fields = ("left", "operator", "right")

    def __init__(self, left: Expr, operator: Token, right: Expr):
        self.left = left
        self.operator = operator
        self.right = right


class Logical(Expr):
    _fields = ("left", "operator", "right")

    def __init__(self, left: Expr, operator: Token, right: Expr):
        self.left = left
        self.operator = operator
        self.right = right


class Unary(Expr):
    _fields = ("operator", "right")

    def __init__(self, operator: Token, right: Expr):
        self.operator = operator
        self.right = right


class Grouping(Expr):
    _fields = ("expression",)

    def __init__(self, expression: Expr):
        self.expression = expression


class Literal(Expr):
    """A constant. ``token`` tells the string flavours apart."""
    _fields = ("value",)

    def __init__(self, value: Any, token: Optional[Token] = None):
        self.value = value
        self.token = token


class Variable(Expr):
    _fields = ("name",)

    def __init__(self, name: Token):
        self.name = name


class This(Expr):
    _fields = ("keyword",)

    def __init__(self, keyword: Token):
        self.keyword = keyword


class Super(Expr):
    """``super.name``. ``owner`` is the enclosing class, module or ``in`` statement."""
    _fields = ("property",)

    def __init__(self, keyword: Token, property: Token, owner: Optional[Stmt], in_class_method: bool = False):
        self.keyword = keyword
        self.property = property
        self.owner = owner
        self.in_class_method = in_class_method


class SuperSet(Expr):
    _fields = ("property", "value")

    def __init__(self, keyword: Token, property: Token, value: Expr,
                 owner: Optional[Stmt], in_class_method: bool = False):
        self.keyword = keyword
        self.property = property
        self.value = value
        self.owner = owner
        self.in_class_method = in_class_method


class Call(Expr):
    _fields = ("left", "args")

    def __init__(self, left: Expr, paren: Token, args: List[Expr]):
        self.left = left
        self.paren = paren
        self.args = args


class SplatCall(Expr):
    _fields = ("expression",)

    def __init__(self, star: Token, expression: Expr):
        self.star = star
        self.expression = expression


class KeywordArg(Expr):
    _fields = ("name", "value")

    def __init__(self, name: Token, value: Expr):
        self.name = name
        self.value = value


class PropAccess(Expr):
    _fields = ("left", "property")

    def __init__(self, left: Expr, property: Token):
        self.left = left
        self.property = property


class PropSet(Expr):
    _fields = ("object", "property", "value")

    def __init__(self, object: Expr, property: Token, value: Expr):
        self.object = object
        self.property = property
        self.value = value


class ArrayLiteral(Expr):
    _fields = ("elements",)

    def __init__(self, bracket: Token, elements: List[Expr]):
        self.bracket = bracket
        self.elements = elements


class IndexedGet(Expr):
    _fields = ("left", "index")

    def __init__(self, bracket: Token, left: Expr, index: Expr):
        self.bracket = bracket
        self.left = left
        self.index = index


class IndexedSet(Expr):
    _fields = ("left", "index", "value")

    def __init__(self, bracket: Token, left: Expr, index: Expr, value: Expr):
        self.bracket = bracket
        self.left = left
        self.index = index
        self.value = value


class AnonFn(Expr):
    _fields = ("params", "body")

    def __init__(self, keyword: Token, params: List[Param], body: List[Stmt]):
        self.keyword = keyword
        self.params = params
        self.body = body
        self.kind = FunctionType.FUNCTION

    @property
    def name(self) -> Token:
        return self.keyword


# --- Statements ---

class Expression(Stmt):
    _fields = ("expression",)

    def __init__(self, expression: Expr):
        self.expression = expression


class Print(Stmt):
    _fields = ("expression",)

    def __init__(self, keyword: Token, expression: Expr):
        self.keyword = keyword
        self.expression = expression


class Var(Stmt):
    _fields = ("names", "initializers")

    def __init__(self, keyword: Token, names: List[Token], initializers: List[Expr]):
        self.keyword = keyword
        self.names = names
        self.initializers = initializers


class Block(Stmt):
    _fields = ("statements",)

    def __init__(self, brace: Token, statements: List[Stmt]):
        self.brace = brace
        self.statements = statements


class If(Stmt):
    _fields = ("condition", "then_branch", "else_branch")

    def __init__(self, keyword: Token, condition: Expr, then_branch: Stmt, else_branch: Optional[Stmt]):
        self.keyword = keyword
        self.condition = condition
        self.then_branch = then_branch
        self.else_branch = else_branch


class While(Stmt):
    _fields = ("condition", "body")

    def __init__(self, keyword: Token, condition: Expr, body: Optional[Stmt] = None):
        self.keyword = keyword
        self.condition = condition
        self.body = body


class For(Stmt):
    _fields = ("initializer", "condition", "increment", "body")

    def __init__(self, keyword: Token, initializer: Optional[Stmt], condition: Optional[Expr],
                 increment: Optional[Expr], body: Optional[Stmt] = None):
        self.keyword = keyword
        self.initializer = initializer
        self.condition = condition
        self.increment = increment
        self.body = body


class Foreach(Stmt):
    _fields = ("variables", "iterable", "body")

    def __init__(self, keyword: Token, variables: List[Token], iterable: Expr, body: Optional[Block] = None):
        self.keyword = keyword
        self.variables = variables
        self.iterable = iterable
        self.body = body


class Break(Stmt):
    _fields = ()

    def __init__(self, keyword: Token):
        self.keyword = keyword


class Continue(Stmt):
    _fields = ()

    def __init__(self, keyword: Token):
        self.keyword = keyword


class Return(Stmt):
    _fields = ("value",)

    def __init__(self, keyword: Token, value: Optional[Expr]):
        self.keyword = keyword
        self.value = value


class Function(Stmt):
    """A named function, method, getter or setter.

    ``owner`` points at the class, module or ``in`` statement a member was
    declared in; it is None for plain functions.
    """
    _fields = ("name", "params", "kind")

    def __init__(self, name: Token, params: List[Param], body: List[Stmt],
                 kind: FunctionType, owner: Optional[Stmt] = None):
        self.name = name
        self.params = params
        self.body = body
        self.kind = kind
        self.owner = owner


class Class(Stmt):
    """``runtime`` is filled in with the class object once the statement has run."""
    _fields = ("name", "superclass", "body")

    def __init__(self, name: Token, superclass: Optional[Variable], body: Optional[List[Function]] = None):
        self.name = name
        self.superclass = superclass
        self.body = body if body is not None else []
        self.runtime = None


class Module(Stmt):
    _fields = ("name", "body")

    def __init__(self, name: Token, body: Optional[List[Function]] = None):
        self.name = name
        self.body = body if body is not None else []
        self.runtime = None


class In(Stmt):
    _fields = ("target", "body")

    def __init__(self, keyword: Token, target: Expr, body: Optional[List[Stmt]] = None):
        self.keyword = keyword
        self.target = target
        self.body = body if body is not None else []
        self.runtime = None


class Try(Stmt):
    _fields = ("block", "catches")

    def __init__(self, keyword: Token, block: Block, catches: List['Catch']):
        self.keyword = keyword
        self.block = block
        self.catches = catches


class Catch(Stmt):
    _fields = ("match", "variable", "block")

    def __init__(self, keyword: Token, match: Expr, variable: Optional[Token], block: Block):
        self.keyword = keyword
        self.match = match
        self.variable = variable
        self.block = block


class Throw(Stmt):
    _fields = ("value",)

    def __init__(self, keyword: Token, value: Expr):
        self.keyword = keyword
        self.value = value

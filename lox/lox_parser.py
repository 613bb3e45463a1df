import copy
from typing import List, Optional

from lox.lox_ast import (
    AnonFn, ArrayLiteral, Assign, Binary, Block, Break, Call, Catch, Class, Continue,
    Expr, Expression, For, Foreach, Function, FunctionType, Grouping, If, In, IndexedGet,
    IndexedSet, KeywordArg, Literal, Logical, Module, Param, Print, PropAccess, PropSet,
    Return, SplatCall, Stmt, Super, SuperSet, This, Throw, Try, Unary, Var, Variable, While,
)
from lox.lox_errors import Diagnostics
from lox.lox_scanner import ESCAPED_DOLLAR, Scanner, Token, TokenType

T = TokenType

__all__ = ["Parser", "ParseError", "FunctionType"]

COMPOUND_ASSIGN = {
    T.PLUS_EQUAL: (T.PLUS, "+"),
    T.MINUS_EQUAL: (T.MINUS, "-"),
    T.STAR_EQUAL: (T.STAR, "*"),
    T.SLASH_EQUAL: (T.SLASH, "/"),
}

STATEMENT_STARTS = {
    T.CLASS, T.MODULE, T.FUN, T.VAR, T.FOR, T.FOREACH, T.IF, T.WHILE,
    T.PRINT, T.RETURN, T.TRY, T.THROW, T.IN,
}

MAX_ARGS = 255


class ParseError(Exception):
    """Unwinds the parser to the next statement boundary."""


class Parser:
    """Recursive-descent parser producing a list of statements.

    Errors go to the diagnostics sink; after each one the parser skips to the
    next statement boundary and keeps going. Check ``had_error`` before
    trusting the result.
    """

    def __init__(self, tokens: List[Token], diagnostics: Optional[Diagnostics] = None):
        self.tokens = tokens
        self.diagnostics = diagnostics or Diagnostics()
        self.current = 0
        self.had_error = False
        self._loops: List[Stmt] = []
        self._fn_kind = FunctionType.NONE
        self._params: List[str] = []
        self._owner: Optional[Stmt] = None

    @classmethod
    def from_source(cls, source: str, filename: Optional[str] = None,
                    diagnostics: Optional[Diagnostics] = None) -> 'Parser':
        diagnostics = diagnostics or Diagnostics()
        tokens = Scanner(source, filename, diagnostics).scan_tokens()
        return cls(tokens, diagnostics)

    def parse(self) -> List[Stmt]:
        statements = []
        while not self._is_at_end():
            stmt = self._declaration()
            if stmt is not None:
                statements.append(stmt)
        return statements

    # --- Declarations ---

    def _declaration(self) -> Optional[Stmt]:
        try:
            if self._match(T.VAR):
                return self._var_declaration()
            if self._check(T.FUN) and self._check_next(T.IDENTIFIER):
                self._advance()
                return self._function(FunctionType.FUNCTION)
            if self._match(T.CLASS):
                return self._class_declaration()
            if self._match(T.MODULE):
                return self._module_declaration()
            return self._statement()
        except ParseError:
            self._synchronize()
            return None

    def _var_declaration(self) -> Stmt:
        keyword = self._previous()
        names = [self._consume(T.IDENTIFIER, "Expect variable name.")]
        while self._match(T.COMMA):
            names.append(self._consume(T.IDENTIFIER, "Expect variable name."))
        for name in names:
            if name.lexeme in self._params:
                self._error(name, f"Cannot shadow parameter '{name.lexeme}'.")

        initializers: List[Expr] = []
        if self._match(T.EQUAL):
            initializers.append(self._expression())
            while self._match(T.COMMA):
                initializers.append(self._expression())
        if len(initializers) > len(names):
            self._error(keyword, "Too many initializers in variable declaration.")
        self._consume(T.SEMICOLON, "Expect ';' after variable declaration.")
        return Var(keyword, names, initializers)

    def _function(self, kind: FunctionType, owner: Optional[Stmt] = None) -> Function:
        name = self._consume(T.IDENTIFIER, f"Expect {kind.value} name.")
        return self._function_rest(name, kind, owner)

    def _function_rest(self, name: Token, kind: FunctionType, owner: Optional[Stmt]) -> Function:
        if kind is FunctionType.METHOD and name.lexeme == "init":
            kind = FunctionType.INITIALIZER
        self._consume(T.LEFT_PAREN, f"Expect '(' after {kind.value} name.")
        params = self._parameters()
        self._consume(T.LEFT_BRACE, f"Expect '{{' before {kind.value} body.")
        body = self._function_body(kind, params)
        return Function(name, params, body, kind, owner)

    def _function_body(self, kind: FunctionType, params: List[Param]) -> List[Stmt]:
        enclosing = (self._fn_kind, self._params, self._loops)
        self._fn_kind = kind
        self._params = [p.name for p in params]
        self._loops = []
        try:
            return self._block()
        finally:
            self._fn_kind, self._params, self._loops = enclosing

    def _parameters(self) -> List[Param]:
        params: List[Param] = []
        seen_default = seen_splat = seen_kwarg = False
        if not self._check(T.RIGHT_PAREN):
            while True:
                if len(params) >= MAX_ARGS:
                    self._error(self._peek(), f"Can't have more than {MAX_ARGS} parameters.")
                if self._match(T.STAR):
                    token = self._consume(T.IDENTIFIER, "Expect parameter name after '*'.")
                    if seen_splat or seen_kwarg:
                        self._error(token, "Splat parameter must come once, before keyword parameters.")
                    seen_splat = True
                    params.append(Param(token, is_splatted=True))
                else:
                    token = self._consume(T.IDENTIFIER, "Expect parameter name.")
                    if self._match(T.COLON):
                        default = None
                        if not (self._check(T.COMMA) or self._check(T.RIGHT_PAREN)):
                            default = self._expression()
                        seen_kwarg = True
                        params.append(Param(token, default, is_kwarg=True))
                    elif self._match(T.EQUAL):
                        if seen_splat or seen_kwarg:
                            self._error(token, "Default parameter must come before splat and keyword parameters.")
                        seen_default = True
                        params.append(Param(token, self._expression()))
                    else:
                        if seen_default or seen_splat or seen_kwarg:
                            self._error(token, f"Required parameter '{token.lexeme}' can't follow optional ones.")
                        params.append(Param(token))
                if not self._match(T.COMMA):
                    break
        self._consume(T.RIGHT_PAREN, "Expect ')' after parameters.")

        seen = set()
        for param in params:
            if param.name in seen:
                self._error(param.token, f"Duplicate parameter '{param.name}'.")
            seen.add(param.name)
        return params

    def _class_declaration(self) -> Stmt:
        name = self._consume(T.IDENTIFIER, "Expect class name.")
        superclass = None
        if self._match(T.LESS):
            superclass = Variable(self._consume(T.IDENTIFIER, "Expect superclass name."))
            if superclass.name.lexeme == name.lexeme:
                self._error(superclass.name, "A class can't inherit from itself.")
        self._consume(T.LEFT_BRACE, "Expect '{' before class body.")
        stmt = Class(name, superclass)
        stmt.body = self._member_body(stmt)
        return stmt

    def _module_declaration(self) -> Stmt:
        name = self._consume(T.IDENTIFIER, "Expect module name.")
        self._consume(T.LEFT_BRACE, "Expect '{' before module body.")
        stmt = Module(name)
        stmt.body = self._member_body(stmt)
        return stmt

    def _member_body(self, owner: Stmt) -> List[Function]:
        enclosing = self._owner
        self._owner = owner
        try:
            members = []
            while not self._check(T.RIGHT_BRACE) and not self._is_at_end():
                members.append(self._member(owner))
            self._consume(T.RIGHT_BRACE, "Expect '}' after body.")
            return members
        finally:
            self._owner = enclosing

    def _member(self, owner: Stmt) -> Function:
        if self._match(T.CLASS):
            return self._function(FunctionType.CLASS_METHOD, owner)
        name = self._consume(T.IDENTIFIER, "Expect method name.")
        if self._match(T.LEFT_BRACE):
            return Function(name, [], self._function_body(FunctionType.GETTER, []), FunctionType.GETTER, owner)
        if self._match(T.EQUAL):
            self._consume(T.LEFT_PAREN, "Expect '(' after '=' in setter.")
            params = self._parameters()
            if len(params) != 1 or params[0].is_splatted or params[0].is_kwarg:
                self._error(name, "Setter must take exactly one parameter.")
            self._consume(T.LEFT_BRACE, "Expect '{' before setter body.")
            body = self._function_body(FunctionType.SETTER, params)
            return Function(name, params, body, FunctionType.SETTER, owner)
        return self._function_rest(name, FunctionType.METHOD, owner)

    # --- Statements ---

    def _statement(self) -> Stmt:
        if self._match(T.PRINT):
            keyword = self._previous()
            value = self._expression()
            self._consume(T.SEMICOLON, "Expect ';' after value.")
            return Print(keyword, value)
        if self._match(T.LEFT_BRACE):
            return Block(self._previous(), self._block())
        if self._match(T.IF):
            return self._if_statement()
        if self._match(T.WHILE):
            return self._while_statement()
        if self._match(T.FOR):
            return self._for_statement()
        if self._match(T.FOREACH):
            return self._foreach_statement()
        if self._match(T.IN):
            return self._in_statement()
        if self._match(T.TRY):
            return self._try_statement()
        if self._match(T.THROW):
            keyword = self._previous()
            value = self._expression()
            self._consume(T.SEMICOLON, "Expect ';' after thrown value.")
            return Throw(keyword, value)
        if self._match(T.BREAK, T.CONTINUE):
            return self._jump_statement()
        if self._match(T.RETURN):
            return self._return_statement()
        expr = self._expression()
        self._consume(T.SEMICOLON, "Expect ';' after expression.")
        return Expression(expr)

    def _block(self) -> List[Stmt]:
        statements = []
        while not self._check(T.RIGHT_BRACE) and not self._is_at_end():
            stmt = self._declaration()
            if stmt is not None:
                statements.append(stmt)
        self._consume(T.RIGHT_BRACE, "Expect '}' after block.")
        return statements

    def _if_statement(self) -> Stmt:
        keyword = self._previous()
        self._consume(T.LEFT_PAREN, "Expect '(' after 'if'.")
        condition = self._expression()
        self._consume(T.RIGHT_PAREN, "Expect ')' after if condition.")
        then_branch = self._statement()
        else_branch = self._statement() if self._match(T.ELSE) else None
        return If(keyword, condition, then_branch, else_branch)

    def _loop_body(self, loop: Stmt) -> Stmt:
        self._loops.append(loop)
        try:
            return self._statement()
        finally:
            self._loops.pop()

    def _while_statement(self) -> Stmt:
        keyword = self._previous()
        self._consume(T.LEFT_PAREN, "Expect '(' after 'while'.")
        condition = self._expression()
        self._consume(T.RIGHT_PAREN, "Expect ')' after condition.")
        stmt = While(keyword, condition)
        stmt.body = self._loop_body(stmt)
        return stmt

    def _for_statement(self) -> Stmt:
        keyword = self._previous()
        self._consume(T.LEFT_PAREN, "Expect '(' after 'for'.")
        if self._match(T.SEMICOLON):
            initializer = None
        elif self._match(T.VAR):
            initializer = self._var_declaration()
        else:
            expr = self._expression()
            self._consume(T.SEMICOLON, "Expect ';' after loop initializer.")
            initializer = Expression(expr)
        condition = None if self._check(T.SEMICOLON) else self._expression()
        self._consume(T.SEMICOLON, "Expect ';' after loop condition.")
        increment = None if self._check(T.RIGHT_PAREN) else self._expression()
        self._consume(T.RIGHT_PAREN, "Expect ')' after for clauses.")
        stmt = For(keyword, initializer, condition, increment)
        stmt.body = self._loop_body(stmt)
        return stmt

    def _foreach_statement(self) -> Stmt:
        keyword = self._previous()
        has_paren = self._match(T.LEFT_PAREN)
        self._match(T.VAR)
        variables = [self._consume(T.IDENTIFIER, "Expect variable name after 'foreach'.")]
        while self._match(T.COMMA):
            variables.append(self._consume(T.IDENTIFIER, "Expect variable name."))
        self._consume(T.IN, "Expect 'in' after foreach variables.")
        iterable = self._expression()
        if has_paren:
            self._consume(T.RIGHT_PAREN, "Expect ')' after foreach clause.")
        brace = self._consume(T.LEFT_BRACE, "Expect '{' before foreach body.")
        stmt = Foreach(keyword, variables, iterable)
        self._loops.append(stmt)
        try:
            stmt.body = Block(brace, self._block())
        finally:
            self._loops.pop()
        return stmt

    def _in_statement(self) -> Stmt:
        keyword = self._previous()
        self._consume(T.LEFT_PAREN, "Expect '(' after 'in'.")
        target = self._expression()
        self._consume(T.RIGHT_PAREN, "Expect ')' after 'in' target.")
        self._consume(T.LEFT_BRACE, "Expect '{' before 'in' body.")
        stmt = In(keyword, target)
        enclosing = self._owner
        self._owner = stmt
        try:
            while not self._check(T.RIGHT_BRACE) and not self._is_at_end():
                if self._check(T.FUN) and self._check_next(T.IDENTIFIER):
                    self._advance()
                    stmt.body.append(self._function(FunctionType.METHOD, stmt))
                    continue
                member = self._declaration()
                if member is not None:
                    stmt.body.append(member)
        finally:
            self._owner = enclosing
        self._consume(T.RIGHT_BRACE, "Expect '}' after 'in' body.")
        return stmt

    def _try_statement(self) -> Stmt:
        keyword = self._previous()
        brace = self._consume(T.LEFT_BRACE, "Expect '{' after 'try'.")
        block = Block(brace, self._block())
        catches = []
        while self._match(T.CATCH):
            catch_kw = self._previous()
            self._consume(T.LEFT_PAREN, "Expect '(' after 'catch'.")
            match_expr = self._expression()
            variable = self._previous() if self._match(T.IDENTIFIER) else None
            self._consume(T.RIGHT_PAREN, "Expect ')' after catch clause.")
            catch_brace = self._consume(T.LEFT_BRACE, "Expect '{' before catch body.")
            catches.append(Catch(catch_kw, match_expr, variable, Block(catch_brace, self._block())))
        if not catches:
            self._error(self._peek(), "Expect 'catch' after try block.")
        return Try(keyword, block, catches)

    def _jump_statement(self) -> Stmt:
        keyword = self._previous()
        if not self._loops:
            self._error(keyword, f"Keyword '{keyword.lexeme}' can only be used inside a loop.")
        self._consume(T.SEMICOLON, f"Expect ';' after '{keyword.lexeme}'.")
        if keyword.kind is T.BREAK:
            return Break(keyword)
        return Continue(keyword)

    def _return_statement(self) -> Stmt:
        keyword = self._previous()
        value = None
        if not self._check(T.SEMICOLON):
            value = self._expression()
        self._consume(T.SEMICOLON, "Expect ';' after return value.")
        if self._fn_kind is FunctionType.NONE:
            self._error(keyword, "Can't return from top-level code.")
        elif self._fn_kind is FunctionType.INITIALIZER and value is not None:
            self._error(keyword, "Can't return a value from an initializer.")
        return Return(keyword, value)

    # --- Expressions ---

    def _expression(self) -> Expr:
        return self._assignment()

    def _assignment(self) -> Expr:
        expr = self._or()
        if self._match(T.EQUAL, T.PLUS_EQUAL, T.MINUS_EQUAL, T.STAR_EQUAL, T.SLASH_EQUAL):
            op = self._previous()
            value = self._assignment()
            if op.kind in COMPOUND_ASSIGN:
                op.rewrite(*COMPOUND_ASSIGN[op.kind])
                value = Binary(self._clone(expr), op, value)
            return self._assignment_target(expr, op, value)
        return expr

    def _clone(self, expr: Expr) -> Expr:
        # the read side of `a.b += 1` gets its own subtree; owners stay shared
        memo = {} if self._owner is None else {id(self._owner): self._owner}
        return copy.deepcopy(expr, memo)

    def _assignment_target(self, target: Expr, op: Token, value: Expr) -> Expr:
        match target:
            case Variable():
                return Assign(target.name, value)
            case PropAccess():
                return PropSet(target.left, target.property, value)
            case IndexedGet():
                return IndexedSet(target.bracket, target.left, target.index, value)
            case Super():
                return SuperSet(target.keyword, target.property, value, target.owner, target.in_class_method)
        self._error(op, "Invalid assignment target.")
        return target

    def _or(self) -> Expr:
        expr = self._and()
        while self._match(T.OR):
            op = self._previous()
            expr = Logical(expr, op, self._and())
        return expr

    def _and(self) -> Expr:
        expr = self._equality()
        while self._match(T.AND):
            op = self._previous()
            expr = Logical(expr, op, self._equality())
        return expr

    def _binary(self, operand, *kinds: TokenType) -> Expr:
        expr = operand()
        while self._match(*kinds):
            op = self._previous()
            expr = Binary(expr, op, operand())
        return expr

    def _equality(self) -> Expr:
        return self._binary(self._comparison, T.BANG_EQUAL, T.EQUAL_EQUAL)

    def _comparison(self) -> Expr:
        return self._binary(self._term, T.GREATER, T.GREATER_EQUAL, T.LESS, T.LESS_EQUAL)

    def _term(self) -> Expr:
        return self._binary(self._factor, T.MINUS, T.PLUS)

    def _factor(self) -> Expr:
        return self._binary(self._unary, T.SLASH, T.STAR)

    def _unary(self) -> Expr:
        if self._match(T.BANG, T.MINUS):
            op = self._previous()
            return Unary(op, self._unary())
        return self._call()

    def _call(self) -> Expr:
        expr = self._primary()
        while True:
            if self._match(T.LEFT_PAREN):
                expr = self._finish_call(expr)
            elif self._match(T.DOT):
                expr = PropAccess(expr, self._consume(T.IDENTIFIER, "Expect property name after '.'."))
            elif self._match(T.LEFT_BRACKET):
                bracket = self._previous()
                index = self._expression()
                self._consume(T.RIGHT_BRACKET, "Expect ']' after index.")
                expr = IndexedGet(bracket, expr, index)
            else:
                return expr

    def _finish_call(self, callee: Expr) -> Expr:
        args: List[Expr] = []
        seen_keyword = False
        if not self._check(T.RIGHT_PAREN):
            while True:
                if len(args) >= MAX_ARGS:
                    self._error(self._peek(), f"Can't have more than {MAX_ARGS} arguments.")
                if self._match(T.STAR):
                    star = self._previous()
                    args.append(SplatCall(star, self._expression()))
                elif self._check(T.IDENTIFIER) and self._check_next(T.COLON):
                    name = self._advance()
                    self._advance()
                    args.append(KeywordArg(name, self._expression()))
                    seen_keyword = True
                else:
                    if seen_keyword:
                        self._error(self._peek(), "Positional argument can't follow keyword arguments.")
                    args.append(self._expression())
                if not self._match(T.COMMA):
                    break
        paren = self._consume(T.RIGHT_PAREN, "Expect ')' after arguments.")
        return Call(callee, paren, args)

    def _primary(self) -> Expr:
        if self._match(T.FALSE):
            return Literal(False, self._previous())
        if self._match(T.TRUE):
            return Literal(True, self._previous())
        if self._match(T.NIL):
            return Literal(None, self._previous())
        if self._match(T.NUMBER, T.SQ_STRING, T.ST_STRING):
            return Literal(self._previous().literal, self._previous())
        if self._match(T.DQ_STRING):
            token = self._previous()
            if "${" in token.literal:
                self._splice_interpolation(token)
                return self._primary()
            return Literal(token.literal.replace(ESCAPED_DOLLAR, "$"), token)
        if self._match(T.THIS):
            return This(self._previous())
        if self._match(T.SUPER):
            keyword = self._previous()
            self._consume(T.DOT, "Expect '.' after 'super'.")
            name = self._consume(T.IDENTIFIER, "Expect superclass method name.")
            return Super(keyword, name, self._owner, self._fn_kind is FunctionType.CLASS_METHOD)
        if self._match(T.IDENTIFIER):
            return Variable(self._previous())
        if self._match(T.FUN):
            keyword = self._previous()
            self._consume(T.LEFT_PAREN, "Expect '(' after 'fun'.")
            params = self._parameters()
            self._consume(T.LEFT_BRACE, "Expect '{' before function body.")
            return AnonFn(keyword, params, self._function_body(FunctionType.FUNCTION, params))
        if self._match(T.LEFT_PAREN):
            expr = self._expression()
            self._consume(T.RIGHT_PAREN, "Expect ')' after expression.")
            return Grouping(expr)
        if self._match(T.LEFT_BRACKET):
            bracket = self._previous()
            elements = []
            if self._check(T.COMMA) and self._check_next(T.RIGHT_BRACKET):
                self._advance()
            while not self._check(T.RIGHT_BRACKET):
                elements.append(self._expression())
                if not self._match(T.COMMA):
                    break
            self._consume(T.RIGHT_BRACKET, "Expect ']' after array elements.")
            return ArrayLiteral(bracket, elements)
        raise self._error(self._peek(), "Expect expression.")

    def _splice_interpolation(self, token: Token):
        """Replaces an interpolated string token with ``( before + String(inner) + after )``."""
        text = token.literal
        start = text.index("${")
        end = _closing_brace(text, start + 2)
        if end < 0:
            raise self._error(token, "Unterminated interpolation in string.")
        before, inner, after = text[:start].replace(ESCAPED_DOLLAR, "$"), text[start + 2:end], text[end + 1:]
        inner_tokens = Scanner(inner, token.file, self.diagnostics, line=token.line).scan_tokens()[:-1]
        if not inner_tokens:
            raise self._error(token, "Empty interpolation in string.")

        def synth(kind: TokenType, lexeme: str, literal=None) -> Token:
            return Token(kind, lexeme, literal, token.file, token.line, token.column)

        spliced = [
            synth(T.LEFT_PAREN, "("),
            synth(T.SQ_STRING, f"'{before}'", before),
            synth(T.PLUS, "+"),
            synth(T.IDENTIFIER, "String"),
            synth(T.LEFT_PAREN, "("),
            *inner_tokens,
            synth(T.RIGHT_PAREN, ")"),
            synth(T.PLUS, "+"),
            synth(T.DQ_STRING, f'"{after}"', after),
            synth(T.RIGHT_PAREN, ")"),
        ]
        self.current -= 1
        self.tokens[self.current:self.current + 1] = spliced

    # --- Helpers ---

    def _match(self, *kinds: TokenType) -> bool:
        for kind in kinds:
            if self._check(kind):
                self._advance()
                return True
        return False

    def _consume(self, kind: TokenType, message: str) -> Token:
        if self._check(kind):
            return self._advance()
        raise self._error(self._peek(), message)

    def _check(self, kind: TokenType) -> bool:
        if self._is_at_end():
            return False
        return self._peek().kind is kind

    def _check_next(self, kind: TokenType) -> bool:
        if self.current + 1 >= len(self.tokens):
            return False
        return self.tokens[self.current + 1].kind is kind

    def _advance(self) -> Token:
        if not self._is_at_end():
            self.current += 1
        return self._previous()

    def _is_at_end(self) -> bool:
        return self._peek().kind is T.EOF

    def _peek(self) -> Token:
        return self.tokens[self.current]

    def _previous(self) -> Token:
        return self.tokens[self.current - 1]

    def _error(self, token: Token, message: str) -> ParseError:
        self.had_error = True
        self.diagnostics.error_at(token, message)
        return ParseError(message)

    def _synchronize(self):
        self._advance()
        while not self._is_at_end():
            if self._previous().kind is T.SEMICOLON:
                return
            if self._peek().kind in STATEMENT_STARTS:
                return
            self._advance()


def _closing_brace(text: str, i: int) -> int:
    depth = 1
    while i < len(text):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1

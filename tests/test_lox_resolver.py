import pytest

from lox.lox_ast import Variable
from lox.lox_errors import Diagnostics, LoxSyntaxError
from lox.lox_interpreter import Interpreter


@pytest.fixture
def interp():
    return Interpreter(diagnostics=Diagnostics(silent=True))

def resolve_errors(interp, src: str):
    with pytest.raises(LoxSyntaxError) as exc:
        interp.compile(src)
    return [m[2] for m in exc.value.messages]

def distances(interp, statements):
    """Maps each resolved variable name to the distances recorded for it, in source order."""
    found = {}
    for expr, depth in interp.locals.items():
        if isinstance(expr, Variable):
            found.setdefault(expr.name.lexeme, []).append(depth)
    return found


def test_globals_are_not_resolved(interp):
    statements = interp.compile("var a = 1; print a;")
    assert distances(interp, statements) == {}


def test_block_locals_get_their_distance(interp):
    statements = interp.compile("{ var a = 1; { print a; } }")
    assert distances(interp, statements) == {"a": [1]}


def test_function_parameters_and_body_scopes(interp):
    statements = interp.compile("fun f(x) { var y = x; return y; }")
    # parameters live one scope outside the body
    assert distances(interp, statements) == {"x": [1], "y": [0]}


def test_closure_captures_outer_local(interp):
    statements = interp.compile("""
    fun outer() {
      var n = 0;
      fun inner() { n = n + 1; return n; }
      return inner;
    }
    """)
    assert sorted(distances(interp, statements)["n"]) == [2, 2]


def test_defaults_can_see_earlier_parameters(interp):
    statements = interp.compile("fun f(a, b = a) { return b; }")
    assert distances(interp, statements)["a"] == [0]


@pytest.mark.parametrize("src, message", [
    ("{ var a = a; }", "Can't read local variable 'a' in its own initializer."),
    ("{ var a = 1; var a = 2; }", "Variable 'a' already declared in this scope."),
    ("print this;", "Can't use 'this' outside of a class or 'in' block."),
    ("fun f() { return this; }", "Can't use 'this' outside of a class or 'in' block."),
    ("fun f() { return super.x; }", "Can't use 'super' outside of a method."),
    ("class A { go() { return super.nothingHere(); } }", "Undefined super method 'nothingHere'."),
])
def test_static_errors(interp, src, message):
    assert message in resolve_errors(interp, src)


def test_redeclaring_globals_is_allowed(interp):
    interp.compile("var a = 1; var a = 2;")


def test_super_to_a_declared_ancestor_is_fine(interp):
    interp.compile("""
    class A { go() { return 1; } }
    class B < A { go() { return super.go(); } }
    """)


def test_super_to_a_native_method_is_fine(interp):
    interp.compile("class A { toString() { return super.toString(); } }")


def test_super_to_a_method_a_module_may_provide(interp):
    interp.compile("""
    module M { greet() { return "hi"; } }
    class A { greet() { return super.greet(); } }
    """)


def test_this_inside_in_block(interp):
    interp.compile("class A {} in (A) { fun go() { return this; } }")

import pytest

from lox.lox_errors import Diagnostics
from lox.lox_interpreter import Interpreter, Tracepoint, format_number
from lox.lox_runtime import ScriptRunner

async def run_lox(src: str):
    runner = ScriptRunner()
    return await runner.handle_script(src)

def assert_ok(res, output=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if output is not None:
        assert res.output == output

def assert_uncaught(res, text):
    assert res.status == 'error', res.output
    assert res.error_kind == 'uncaught_throw', res.error_message
    assert text in res.error_message


# --- Values and expressions ---

@pytest.mark.asyncio
async def test_arithmetic_and_string_concatenation():
    res = await run_lox('print 1+1; print "1"+"1"; var i=1.1; print i;')
    assert_ok(res, "2\n11\n1.1\n")


@pytest.mark.asyncio
async def test_last_expression_statement_is_the_value():
    res = await run_lox("var a = 20; a + 1;")
    assert_ok(res)
    assert res.value == 21.0


@pytest.mark.asyncio
async def test_value_is_nil_when_last_statement_is_not_an_expression():
    res = await run_lox("1 + 1; var a = 2;")
    assert_ok(res)
    assert res.value is None


@pytest.mark.asyncio
async def test_truthiness_and_logical_operators():
    res = await run_lox("""
    print nil or "default";
    print 0 and "zero is truthy";
    print false and boom();
    print !nil;
    """)
    assert_ok(res, "default\nzero is truthy\nfalse\ntrue\n")


@pytest.mark.asyncio
async def test_equality_and_comparison():
    res = await run_lox("""
    print 1 == 1.0;
    print "a" == "a";
    print nil == false;
    print "abc" < "abd";
    print 2 >= 3;
    """)
    assert_ok(res, "true\ntrue\nfalse\ntrue\nfalse\n")


@pytest.mark.asyncio
async def test_compound_assignment():
    res = await run_lox("var x = 1; x += 2; x *= 3; x -= 1; x /= 4; print x;")
    assert_ok(res, "2\n")


@pytest.mark.asyncio
async def test_string_interpolation():
    res = await run_lox('var name = "Lox"; print "hi ${name}, ${1 + 1}!";')
    assert_ok(res, "hi Lox, 2!\n")


@pytest.mark.asyncio
async def test_escaped_dollar_is_printed_literally():
    res = await run_lox(r'var x = 1; print "cost \${x} is ${x}"; print "\$";')
    assert_ok(res, "cost ${x} is 1\n$\n")


def test_format_number():
    assert format_number(2.0) == "2"
    assert format_number(-0.5) == "-0.5"
    assert format_number(1e20) == "1e+20"


# --- Variables and scope ---

@pytest.mark.asyncio
async def test_block_scoping_and_shadowing():
    res = await run_lox("""
    var a = "outer";
    {
      var a = "inner";
      print a;
    }
    print a;
    """)
    assert_ok(res, "inner\nouter\n")


@pytest.mark.asyncio
async def test_multi_var_destructures_an_array():
    res = await run_lox("var a, b, c = [1, 2]; print a; print b; print c;")
    assert_ok(res, "1\n2\nnil\n")


@pytest.mark.asyncio
async def test_multi_var_with_a_non_array_binds_only_the_first_name():
    res = await run_lox("var a, b = 5; print a; print b;")
    assert_ok(res, "5\nnil\n")


@pytest.mark.asyncio
async def test_multi_var_with_several_initializers():
    res = await run_lox("var a, b = 1, [2]; print a; print b;")
    assert_ok(res, "1\n[2]\n")


@pytest.mark.asyncio
async def test_undefined_variable_is_a_name_error():
    res = await run_lox("print nope;")
    assert_uncaught(res, "NameError: Undefined variable 'nope'.")


# --- Functions ---

@pytest.mark.asyncio
async def test_closures_keep_their_own_bindings():
    res = await run_lox("""
    fun multiplier(by) { return fun(n) { return by * n; }; }
    var tens = multiplier(10);
    var fives = multiplier(5);
    print tens(3);
    print fives(3);
    """)
    assert_ok(res, "30\n15\n")


@pytest.mark.asyncio
async def test_closure_counter_shares_state():
    res = await run_lox("""
    fun counter() {
      var n = 0;
      fun inc() { n = n + 1; return n; }
      return inc;
    }
    var c = counter();
    c(); c();
    print c();
    """)
    assert_ok(res, "3\n")


@pytest.mark.asyncio
async def test_default_parameters():
    res = await run_lox("fun f(a, b = 2) { return a + b; } print f(1); print f(1, 5);")
    assert_ok(res, "3\n6\n")


@pytest.mark.asyncio
async def test_wrong_argument_count():
    res = await run_lox("fun f(a, b = 2) {} f();")
    assert_uncaught(res, "ArgumentError: Wrong number of arguments to f: expected 1 to 2, got 0.")


@pytest.mark.asyncio
async def test_keyword_arguments():
    res = await run_lox("""
    fun greet(name, greeting: "hello", punct:) { return String(greeting, name, punct); }
    print greet("bob");
    print greet("bob", punct: "!", greeting: "hi");
    """)
    assert_ok(res, "hello bob nil\nhi bob !\n")


@pytest.mark.asyncio
async def test_unknown_keyword_is_an_argument_error():
    res = await run_lox("""
    fun g(a, key:) {}
    try { g(1, nope: 2); } catch (ArgumentError e) { print e.message; }
    """)
    assert_ok(res, "g got an unknown keyword argument 'nope'.\n")


@pytest.mark.asyncio
async def test_splat_arguments_and_parameters():
    res = await run_lox("""
    fun sum3(a, b, c) { return a + b + c; }
    fun count(first, *rest) { return rest.length; }
    var xs = [1, 2, 3];
    print sum3(*xs);
    print sum3(10, *[20, 30]);
    print count(1, 2, 3, 4);
    """)
    assert_ok(res, "6\n60\n3\n")


@pytest.mark.asyncio
async def test_map_splat_becomes_keyword_arguments():
    res = await run_lox("""
    fun h(key:) { return key; }
    print h(*Map("key", 5));
    """)
    assert_ok(res, "5\n")


@pytest.mark.asyncio
async def test_recursion():
    res = await run_lox("fun fib(n) { if (n < 2) return n; return fib(n - 1) + fib(n - 2); } print fib(15);")
    assert_ok(res, "610\n")


@pytest.mark.asyncio
async def test_calling_a_non_callable_is_a_type_error():
    res = await run_lox('"text"();')
    assert_uncaught(res, "TypeError: Can only call functions and classes, got string.")


# --- Control flow ---

@pytest.mark.asyncio
async def test_for_loop_with_break_and_continue():
    res = await run_lox("""
    var out = "";
    for (var i = 0; i < 5; i = i + 1) {
      if (i == 1) continue;
      if (i == 3) break;
      out = out + String(i);
    }
    print out;
    """)
    assert_ok(res, "02\n")


@pytest.mark.asyncio
async def test_while_loop_with_break_and_continue():
    res = await run_lox("""
    var i = 0;
    while (i < 5) {
      i = i + 1;
      if (i == 2) continue;
      if (i == 4) break;
      print i;
    }
    """)
    assert_ok(res, "1\n3\n")


@pytest.mark.asyncio
async def test_return_from_inside_a_loop():
    res = await run_lox("""
    fun find(xs, want) {
      foreach (x in xs) { if (x == want) return "found"; }
      return "missing";
    }
    print find([1, 2, 3], 2);
    print find([1, 2, 3], 9);
    """)
    assert_ok(res, "found\nmissing\n")


@pytest.mark.asyncio
async def test_foreach_over_array_and_map():
    res = await run_lox("""
    foreach (x in [1, 2]) { print x; }
    var m = Map();
    m["a"] = 1;
    m["b"] = 2;
    foreach (k, v in m) { print k + "=" + String(v); }
    """)
    assert_ok(res, "1\n2\na=1\nb=2\n")


@pytest.mark.asyncio
async def test_foreach_with_a_user_iterator():
    res = await run_lox("""
    class Countdown {
      init(n) { this.n = n; }
      iter() { return this; }
      hasNext() { return this.n > 0; }
      nextIter() { this.n = this.n - 1; return this.n + 1; }
    }
    foreach (x in Countdown(3)) { print x; }
    """)
    assert_ok(res, "3\n2\n1\n")


@pytest.mark.asyncio
async def test_foreach_tolerates_map_mutation():
    res = await run_lox("""
    var m = Map([["a", 1], ["b", 2], ["c", 3]]);
    foreach (k, v in m) { m.remove("b"); print k; }
    """)
    assert_ok(res, "a\nc\n")


@pytest.mark.asyncio
async def test_foreach_needs_an_iterable():
    res = await run_lox("foreach (x in 12) { }")
    assert_uncaught(res, "TypeError: foreach needs an object with an 'iter' method, got number.")


# --- Classes ---

@pytest.mark.asyncio
async def test_polymorphic_dispatch_through_this():
    res = await run_lox("""
    class A {
      describe() { return "I am " + this.name(); }
      name() { return "A"; }
    }
    class B < A { name() { return "B"; } }
    print A().describe();
    print B().describe();
    """)
    assert_ok(res, "I am A\nI am B\n")


@pytest.mark.asyncio
async def test_init_and_fields():
    res = await run_lox("""
    class Point {
      init(x, y) { this.x = x; this.y = y; }
      sum() { return this.x + this.y; }
    }
    var p = Point(1, 2);
    p.x = 10;
    print p.sum();
    """)
    assert_ok(res, "12\n")


@pytest.mark.asyncio
async def test_super_calls():
    res = await run_lox("""
    class A { greet() { return "A"; } }
    class B < A { greet() { return "B" + super.greet(); } }
    class C < B { greet() { return "C" + super.greet(); } }
    print C().greet();
    """)
    assert_ok(res, "CBA\n")


@pytest.mark.asyncio
async def test_getters_and_setters():
    res = await run_lox("""
    class Temp {
      init(c) { this.c = c; }
      f { return this.c * 9 / 5 + 32; }
      f=(v) { this.c = (v - 32) * 5 / 9; }
    }
    var t = Temp(100);
    print t.f;
    t.f = 32;
    print t.c;
    """)
    assert_ok(res, "212\n0\n")


@pytest.mark.asyncio
async def test_class_methods():
    res = await run_lox("""
    class P {
      init(v) { this.v = v; }
      class make() { return P(7); }
    }
    class Q < P {}
    print P.make().v;
    print Q.make().v;
    """)
    assert_ok(res, "7\n7\n")


@pytest.mark.asyncio
async def test_operator_protocol():
    res = await run_lox("""
    class V {
      init(x) { this.x = x; }
      opAdd(o) { return V(this.x + o.x); }
      opMul(n) { return V(this.x * n); }
    }
    print (V(1) + V(2)).x;
    print (V(2) * 5).x;
    """)
    assert_ok(res, "3\n10\n")


@pytest.mark.asyncio
async def test_operator_without_protocol_is_a_type_error():
    res = await run_lox("class W {} W() - 1;")
    assert_uncaught(res, "TypeError: Operands of '-' must be numbers, or the left operand must define opDiff")


@pytest.mark.asyncio
async def test_index_protocol():
    res = await run_lox("""
    class Box {
      indexGet(i) { return i * 2; }
      indexSet(i, v) { this.last = v; }
    }
    var b = Box();
    print b[21];
    b[0] = "x";
    print b.last;
    """)
    assert_ok(res, "42\nx\n")


@pytest.mark.asyncio
async def test_property_missing_hook():
    res = await run_lox("""
    class D { propertyMissing(name) { return "missing " + name; } }
    print D().foo;
    """)
    assert_ok(res, "missing foo\n")


@pytest.mark.asyncio
async def test_undefined_method_is_no_such_method_error():
    res = await run_lox("class A {} A().nope();")
    assert_uncaught(res, "NoSuchMethodError: Undefined method 'nope' for instance.")


@pytest.mark.asyncio
async def test_superclass_must_be_a_class():
    res = await run_lox("var NotAClass = 1; class A < NotAClass {}")
    assert_uncaught(res, "TypeError: Superclass of A must be a class.")


@pytest.mark.asyncio
async def test_classes_are_reflective_values():
    res = await run_lox("""
    class A { one() {} }
    class B < A { two() {} }
    print B.name;
    print B.superClass;
    print B.methodNames(false);
    print B._class;
    print typeof(B);
    """)
    assert_ok(res, "B\n<class A>\n[two]\n<class Class>\nclass\n")


# --- Modules ---

@pytest.mark.asyncio
async def test_module_inclusion():
    res = await run_lox("""
    module M { greet() { return "hi from " + this._class.name; } }
    class C {}
    C.include(M);
    print C().greet();
    print C().ancestors();
    """)
    assert_ok(res, "hi from C\n[<class C>,<module M>,<class Object>]\n")


@pytest.mark.asyncio
async def test_module_inclusion_keeps_prior_ancestors():
    res = await run_lox("""
    module M {}
    module N {}
    class A {}
    class B < A {}
    B.include(M);
    B.include(N);
    print B.ancestors();
    print B.superClass;
    """)
    assert_ok(res, "[<class B>,<module N>,<module M>,<class A>,<class Object>]\n<class A>\n")


@pytest.mark.asyncio
async def test_double_inclusion_is_a_noop():
    res = await run_lox("""
    module M {}
    class C {}
    C.include(M);
    C.include(M);
    print C.ancestors();
    """)
    assert_ok(res, "[<class C>,<module M>,<class Object>]\n")


@pytest.mark.asyncio
async def test_nested_module_inclusion():
    res = await run_lox("""
    module Inner { inner() { return "inner"; } }
    module Outer { outer() { return "outer"; } }
    Outer.include(Inner);
    class C {}
    C.include(Outer);
    var c = C();
    print c.outer() + " " + c.inner();
    print c.isA(Inner);
    """)
    assert_ok(res, "outer inner\ntrue\n")


@pytest.mark.asyncio
async def test_only_modules_can_be_included():
    res = await run_lox("class A {} class B {} B.include(A);")
    assert_uncaught(res, "ArgumentError: Only modules may be included")


@pytest.mark.asyncio
async def test_super_from_a_module_method():
    res = await run_lox("""
    class Base { hello() { return "base"; } }
    module Loud { hello() { return super.hello() + "!"; } }
    class C < Base {}
    C.include(Loud);
    print C().hello();
    """)
    assert_ok(res, "base!\n")


@pytest.mark.asyncio
async def test_modules_cannot_be_instantiated():
    res = await run_lox("module M {} M();")
    assert_uncaught(res, "TypeError: Can only call functions and classes, got module.")


@pytest.mark.asyncio
async def test_in_block_reopens_a_class():
    res = await run_lox("""
    class A {}
    in (A) {
      fun shout() { return "A!"; }
      print this.name;
    }
    print A().shout();
    """)
    assert_ok(res, "A\nA!\n")


@pytest.mark.asyncio
async def test_in_block_methods_see_block_locals():
    res = await run_lox("""
    var suffix = "?";
    class A { init(n) { this.n = n; } }
    in (A) {
      var prefix = "n=";
      fun show() { return prefix + String(this.n) + suffix; }
      fun label() { return prefix; }
    }
    print A(3).show();
    print A(1).label();
    """)
    assert_ok(res, "n=3?\nn=\n")


@pytest.mark.asyncio
async def test_extend_adds_singleton_methods():
    res = await run_lox("""
    module Greeter { greet() { return "hello"; } }
    class P {}
    var special = P();
    special.extend(Greeter);
    print special.greet();
    print special.isA(Greeter);
    print P().isA(Greeter);
    """)
    assert_ok(res, "hello\ntrue\nfalse\n")


# --- Exceptions ---

@pytest.mark.asyncio
async def test_catch_by_class_uses_is_a():
    res = await run_lox("""
    class MyError < Error {}
    try {
      throw MyError("x");
    } catch ("x") {
      print "literal";
    } catch (MyError e) {
      print "isa " + e.message;
    }
    """)
    assert_ok(res, "isa x\n")


@pytest.mark.asyncio
async def test_literal_catch_does_not_match_an_error_instance():
    res = await run_lox("""
    class MyError < Error {}
    try { throw MyError("x"); } catch ("x") { print "wrong"; }
    """)
    assert_uncaught(res, "Uncaught error: MyError: x")
    assert res.output == ""


@pytest.mark.asyncio
async def test_any_value_can_be_thrown():
    res = await run_lox("""
    try { throw "plain"; } catch ("plain") { print "string"; }
    try { throw 42; } catch (42 n) { print n; }
    """)
    assert_ok(res, "string\n42\n")


@pytest.mark.asyncio
async def test_native_errors_are_catchable_as_error():
    res = await run_lox("""
    try { -"a"; } catch (Error e) { print e; }
    """)
    assert_ok(res, "TypeError: Operand of '-' must be a number, got string.\n")


@pytest.mark.asyncio
async def test_unmatched_catch_rethrows_to_outer_try():
    res = await run_lox("""
    try {
      try { throw "inner"; } catch ("other") { print "no"; }
    } catch ("inner") {
      print "outer caught";
    }
    """)
    assert_ok(res, "outer caught\n")


@pytest.mark.asyncio
async def test_try_unwinds_the_call_stack():
    runner = ScriptRunner()
    res = await runner.handle_script("""
    fun f() { throw "x"; }
    fun g() { f(); }
    try { g(); } catch ("x") { }
    """)
    assert_ok(res)
    assert runner.interpreter.call_stack == []


@pytest.mark.asyncio
async def test_division_by_zero_is_a_runtime_error():
    res = await run_lox("print 1 / 0;")
    assert res.status == 'error'
    assert res.error_kind == 'runtime_error'
    assert "RuntimeError: Division by zero." in res.error_message


@pytest.mark.asyncio
async def test_frozen_objects_reject_writes():
    res = await run_lox("""
    class P {}
    var p = P();
    p.freeze();
    try { p.x = 1; } catch (FrozenObjectError e) { print e.message; }
    print p.isFrozen();
    """)
    assert_ok(res, "Can't modify frozen instance.\ntrue\n")


@pytest.mark.asyncio
async def test_static_strings_are_frozen_and_pooled():
    res = await run_lox("""
    print s"a".objectId == s"a".objectId;
    print "a".objectId == "a".objectId;
    try { s"abc".push("d"); } catch (FrozenObjectError e) { print "frozen"; }
    """)
    assert_ok(res, "true\nfalse\nfrozen\n")


# --- Dynamic evaluation ---

@pytest.mark.asyncio
async def test_eval_sees_the_callers_scope():
    res = await run_lox("""
    var x = 10;
    print eval("x + 1;");
    fun f() { var y = 2; return eval("y * 3;"); }
    print f();
    """)
    assert_ok(res, "11\n6\n")


@pytest.mark.asyncio
async def test_eval_syntax_errors_are_catchable():
    res = await run_lox("""
    try { eval("1 +;"); } catch (SyntaxError e) { print "bad syntax"; }
    """)
    assert_ok(res, "bad syntax\n")


# --- Interpreter API ---

def test_sessions_are_independent():
    first = Interpreter(diagnostics=Diagnostics(silent=True))
    second = Interpreter(diagnostics=Diagnostics(silent=True))
    first.interpret(first.compile("class Only {}"))
    assert "Only" in first.classes
    assert "Only" not in second.classes
    assert first.classes["Object"] is not second.classes["Object"]


def test_print_goes_to_stdout_without_buffering(capsys):
    interp = Interpreter(diagnostics=Diagnostics(silent=True))
    interp.interpret(interp.compile('print "direct";'))
    assert capsys.readouterr().out == "direct\n"
    assert interp.side_effects == []


def test_tracepoint_sees_every_node():
    class Recorder(Tracepoint):
        def __init__(self):
            super().__init__()
            self.before_nodes = []
            self.after_values = []

        def before(self, node, position):
            self.before_nodes.append((type(node).__name__, position))

        def after(self, node, position, value):
            self.after_values.append((type(node).__name__, value))

    interp = Interpreter(diagnostics=Diagnostics(silent=True))
    interp.tracepoint = Recorder()
    interp.interpret(interp.compile("1 + 2;"))
    recorder = interp.tracepoint
    assert recorder.before_nodes == [
        ("Expression", (1, 0)),
        ("Binary", (2, 0)),
        ("Literal", (3, 0)),
        ("Literal", (3, 1)),
    ]
    assert ("Binary", 3.0) in recorder.after_values


def test_tracepoint_pause_and_resume():
    tp = Tracepoint()
    assert not tp.paused
    tp.pause()
    assert tp.paused
    assert tp.wait(0.01) is False
    tp.resume()
    assert tp.wait(0.01) is True

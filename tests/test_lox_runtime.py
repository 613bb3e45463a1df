import pytest

from lox.lox_config import LoxConfig
from lox.lox_errors import Diagnostics
from lox.lox_interpreter import Interpreter, Tracepoint
from lox.lox_runtime import ExecutionResult, ScriptRunner

async def run_lox(src: str, runner: ScriptRunner = None):
    runner = runner or ScriptRunner()
    return await runner.handle_script(src)

def assert_ok(res, output=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if output is not None:
        assert res.output == output


# --- Array ---

@pytest.mark.asyncio
async def test_array_basics():
    res = await run_lox("""
    var a = Array(1, 2);
    a.push(3, 4);
    print a;
    print a.length;
    print a.pop();
    print a.pop(2);
    print a.shift();
    a.unshift(0);
    print a;
    print a.contains(2);
    print a.get(9);
    """)
    assert_ok(res, "[1,2,3,4]\n4\n4\n[3,2]\n1\n[0]\nfalse\nnil\n")


@pytest.mark.asyncio
async def test_array_set_grows_with_nil():
    res = await run_lox('var a = []; a.set(2, "x"); print a; a[0] = 1; print a[0];')
    assert_ok(res, "[nil,nil,x]\n1\n")


@pytest.mark.asyncio
async def test_array_set_rejects_negative_index():
    res = await run_lox("try { [].set(-1, 0); } catch (ArgumentError e) { print e.message; }")
    assert_ok(res, "Array#set: negative index -1.\n")


@pytest.mark.asyncio
async def test_array_operators_and_higher_order_methods():
    res = await run_lox("""
    print [1, 2] + [3];
    print [0] * 3;
    print [1, 2].map(fun(x) { return x * 2; });
    var total = 0;
    [1, 2, 3].each(fun(x) { total = total + x; });
    print total;
    print [1, 2].join(", ");
    """)
    assert_ok(res, "[1,2,3]\n[0,0,0]\n[2,4]\n6\n1, 2\n")


@pytest.mark.asyncio
async def test_self_referencing_array_prints():
    res = await run_lox("var a = [1]; a.push(a); print a;")
    assert_ok(res, "[1,[instance...]]\n")


@pytest.mark.asyncio
async def test_frozen_array_rejects_push():
    res = await run_lox("""
    var a = [1].freeze();
    try { a.push(2); } catch (FrozenObjectError e) { print e.message; }
    """)
    assert_ok(res, "Array#push called on frozen array.\n")


# --- Map ---

@pytest.mark.asyncio
async def test_map_basics():
    res = await run_lox("""
    var m = Map();
    m["a"] = 1;
    m[1] = "one";
    print m[1.0];
    print m.length;
    print m.keys();
    print m.values();
    print m;
    print m.remove("a", "zz");
    """)
    assert_ok(res, "one\n2\n[a,1]\n[1,one]\n{a => 1, 1 => one}\n[1,nil]\n")


@pytest.mark.asyncio
async def test_map_constructors():
    res = await run_lox("""
    print Map("k", "v");
    print Map(["k", "v"]);
    print Map([["a", 1], ["b", 2]]);
    """)
    assert_ok(res, "{k => v}\n{k => v}\n{a => 1, b => 2}\n")


@pytest.mark.asyncio
async def test_map_rejects_bad_pairs():
    res = await run_lox("try { Map([1, 2, 3]); } catch (ArgumentError e) { print e.message; }")
    assert_ok(res, "Map#init: element 1 of the given Array must be an Array of size 2.\n")


@pytest.mark.asyncio
async def test_map_default_value():
    res = await run_lox('var m = Map(); print m["missing"]; m.default = 0; print m["missing"];')
    assert_ok(res, "nil\n0\n")


@pytest.mark.asyncio
async def test_map_each_passes_key_and_value():
    res = await run_lox("""
    var m = Map([["a", 1], ["b", 2]]);
    m.each(fun(k, v) { print k + String(v); });
    m.each(fun(pair) { print pair; });
    """)
    assert_ok(res, "a1\nb2\n[a,1]\n[b,2]\n")


@pytest.mark.asyncio
async def test_string_keys_compare_by_text():
    res = await run_lox('var m = Map(); var k = "key"; m[k] = 1; print m["k" + "ey"];')
    assert_ok(res, "1\n")


# --- String ---

@pytest.mark.asyncio
async def test_string_methods():
    res = await run_lox("""
    print "abc".length;
    print "ab" * 3;
    print "abc"[1];
    print "abc"[5];
    var s = "a";
    s.push("b", "c");
    print s;
    print String(1, "a", nil);
    """)
    assert_ok(res, "3\nababab\nb\nnil\nabc\n1 a nil\n")


@pytest.mark.asyncio
async def test_string_concatenation_needs_a_string():
    res = await run_lox('try { "a" + 1; } catch (ArgumentError e) { print e.message; }')
    assert_ok(res, "String#opAdd: expected argument 1 to be a String, got number.\n")


# --- Number ---

@pytest.mark.asyncio
async def test_number_parse():
    res = await run_lox("""
    print Number.parse("3.5") + 1;
    try { Number.parse("abc"); } catch (ArgumentError e) { print e.message; }
    """)
    assert_ok(res, "4.5\nNumber.parse: 'abc' is not a number.\n")


# --- Error ---

@pytest.mark.asyncio
async def test_error_message_and_to_string():
    res = await run_lox("""
    print Error("boom").message;
    print Error();
    print TypeError("bad type");
    print TypeError("x").isA(Error);
    """)
    assert_ok(res, "boom\nError\nTypeError: bad type\ntrue\n")


@pytest.mark.asyncio
async def test_error_records_a_stacktrace():
    src = "\n".join([
        'fun boom() { return Error("bad"); }',
        "fun outer() { return boom(); }",
        "print outer().stacktrace;",
    ])
    res = await run_lox(src)
    assert_ok(res, "[at boom (<script>:2),at outer (<script>:3)]\n")


@pytest.mark.asyncio
async def test_error_message_must_be_a_string():
    res = await run_lox("try { Error(1); } catch (ArgumentError e) { print e.message; }")
    assert_ok(res, "Error#init: expected argument 1 to be a String, got number.\n")


# --- Object ---

@pytest.mark.asyncio
async def test_object_properties_and_del_prop():
    res = await run_lox("""
    class P {
      init() { this.a = 1; }
      double { return this.a * 2; }
    }
    var p = P();
    print p.properties();
    print p.properties(includeGetters: true);
    print p.delProp("a");
    print p.delProp("a");
    print p.a;
    """)
    assert_ok(res, "{a => 1}\n{a => 1, double => 2}\ntrue\nfalse\nnil\n")


@pytest.mark.asyncio
async def test_object_identity_helpers():
    res = await run_lox("""
    class P {}
    var p = P();
    print p.equals(p);
    print p.equals(P());
    print "ab".hashCode() == "ab".hashCode();
    print p.hashCode() == p.objectId;
    print p._class;
    """)
    assert_ok(res, "true\nfalse\ntrue\ntrue\n<class P>\n")


@pytest.mark.asyncio
async def test_dup_is_a_shallow_unfrozen_copy():
    res = await run_lox("""
    var a = [1].freeze();
    var b = a.dup();
    b.push(2);
    print a;
    print b;
    print b.isFrozen();
    """)
    assert_ok(res, "[1]\n[1,2]\nfalse\n")


@pytest.mark.asyncio
async def test_singleton_class_is_per_object():
    res = await run_lox("""
    class P {}
    var p = P();
    print p._singletonClass.superClass;
    print P().ancestors();
    """)
    assert_ok(res, "<class P>\n[<class P>,<class Object>]\n")


# --- Class and Module objects ---

@pytest.mark.asyncio
async def test_classes_and_modules_can_be_built_at_runtime():
    res = await run_lox("""
    class A { hi() { return "hi"; } }
    var K = Class(A);
    var Named = Module("Named");
    print K().hi();
    print K.superClass;
    print Named;
    print Class.getByName("A");
    print Class.getByName("Nope");
    """)
    assert_ok(res, "hi\n<class A>\n<module Named>\n<class A>\nnil\n")


@pytest.mark.asyncio
async def test_class_alias_copies_a_method():
    res = await run_lox("""
    class A { greet() { return "hi"; } }
    A.alias("greet", "hello");
    print A().hello();
    try { A.alias("nope", "x"); } catch (NoSuchMethodError e) { print e.message; }
    """)
    assert_ok(res, "hi\nClass#alias: no method 'nope' in A.\n")


@pytest.mark.asyncio
async def test_global_alias():
    res = await run_lox("""
    fun f() { return 1; }
    alias(f, "g");
    alias("f", "h");
    print g() + h();
    try { alias(fun() {}, "anon"); } catch (ArgumentError e) { print e.message; }
    """)
    assert_ok(res, "2\nalias: can't alias anonymous functions.\n")


@pytest.mark.asyncio
async def test_class_is_an_instance_of_class():
    res = await run_lox("""
    class A {}
    print A.isA(Class);
    print A.isA(Module);
    print Class.superClass;
    print Module.superClass;
    """)
    assert_ok(res, "true\ntrue\n<class Module>\n<class Object>\n")


# --- Global functions ---

@pytest.mark.asyncio
async def test_typeof_and_len():
    res = await run_lox("""
    class A {}
    module M {}
    print typeof(1);
    print typeof("s");
    print typeof([]);
    print typeof(Map());
    print typeof(nil);
    print typeof(true);
    print typeof(A);
    print typeof(M);
    print typeof(A());
    print typeof(clock);
    print len("abc") + len([1]) + len(Map("a", 1));
    """)
    assert_ok(res, "number\nstring\narray\nmap\nnil\nbool\nclass\nmodule\ninstance\nfunction\n5\n")


@pytest.mark.asyncio
async def test_len_rejects_numbers():
    res = await run_lox("try { len(1); } catch (ArgumentError e) { print e.message; }")
    assert_ok(res, "len: expected argument 1 to be a String, Array or Map, got number.\n")


@pytest.mark.asyncio
async def test_assert():
    res = await run_lox('assert(true); assert(1 == 2, "math is broken");')
    assert res.status == 'error'
    assert "AssertionError: Assertion failure: math is broken" in res.error_message


@pytest.mark.asyncio
async def test_is_callable():
    res = await run_lox("print isCallable(clock); print isCallable(Object); print isCallable(1);")
    assert_ok(res, "true\ntrue\nfalse\n")


@pytest.mark.asyncio
async def test_system_captures_output():
    res = await run_lox('var out = system("echo hi"); print out[0].length; print out[1];')
    assert_ok(res, "3\n\n")


# --- Loading scripts ---

@pytest.mark.asyncio
async def test_load_script_searches_load_path(tmp_path):
    (tmp_path / "lib.lox").write_text('var fromLib = 42; var libFile = __FILE__;\n', encoding="utf-8")
    runner = ScriptRunner(LoxConfig(load_path=[str(tmp_path)], use_print_buf=True))
    res = await runner.handle_script("""
    print loadScript("lib");
    print fromLib;
    print __FILE__;
    """)
    assert_ok(res, "true\n42\n\n")
    lib_file = runner.interpreter.globals.get("libFile")
    assert runner.stringify(lib_file) == str((tmp_path / "lib.lox").resolve())


@pytest.mark.asyncio
async def test_load_script_once(tmp_path):
    (tmp_path / "counter.lox").write_text("count = count + 1;\n", encoding="utf-8")
    runner = ScriptRunner(LoxConfig(load_path=[str(tmp_path)], use_print_buf=True))
    res = await runner.handle_script("""
    var count = 0;
    print loadScriptOnce("counter.lox");
    print loadScriptOnce("counter");
    loadScript("counter");
    print count;
    """)
    assert_ok(res, "true\nfalse\n2\n")


@pytest.mark.asyncio
async def test_load_path_can_be_changed_by_scripts(tmp_path):
    (tmp_path / "extra.lox").write_text('print "extra loaded";\n', encoding="utf-8")
    runner = ScriptRunner(LoxConfig(load_path=["."], use_print_buf=True))
    runner.interpreter.globals.define("extraDir", runner.interpreter.new_string(str(tmp_path)))
    res = await runner.handle_script('LOAD_PATH.push(extraDir); loadScript("extra");')
    assert_ok(res, "extra loaded\n")


@pytest.mark.asyncio
async def test_missing_script_is_an_argument_error():
    res = await run_lox('try { loadScript("no/such/file"); } catch (ArgumentError e) { print e.message; }')
    assert_ok(res, "Can't find script 'no/such/file' in LOAD_PATH.\n")


@pytest.mark.asyncio
async def test_loaded_syntax_errors_are_catchable(tmp_path):
    (tmp_path / "broken.lox").write_text("var = ;\n", encoding="utf-8")
    runner = ScriptRunner(LoxConfig(load_path=[str(tmp_path)], use_print_buf=True))
    res = await runner.handle_script('try { loadScript("broken"); } catch (SyntaxError e) { print "broken"; }')
    assert_ok(res, "broken\n")


# --- System ---

@pytest.mark.asyncio
async def test_system_exit_runs_at_exit_hooks():
    res = await run_lox("""
    System.atExit(fun() { print "bye"; });
    print "before";
    System.exit(3);
    print "never";
    """)
    assert res.status == 'exit'
    assert res.exit_code == 3
    assert res.output == "before\nbye\n"


@pytest.mark.asyncio
async def test_system_exit_can_skip_hooks():
    res = await run_lox('System.atExit(fun() { print "bye"; }); System.exit(2, false);')
    assert res.status == 'exit'
    assert res.exit_code == 2
    assert res.output == ""


@pytest.mark.asyncio
async def test_at_exit_hooks_run_when_asked():
    runner = ScriptRunner()
    res = await runner.handle_script('System.atExit(fun() { print "later"; }); print "now";')
    assert_ok(res, "now\n")
    hooks = runner.run_exit_hooks()
    assert hooks.status == 'success'
    assert hooks.output == "now\nlater\n"
    assert runner.interpreter.at_exit_hooks == []


@pytest.mark.asyncio
async def test_run_file_runs_hooks(tmp_path):
    script = tmp_path / "main.lox"
    script.write_text('System.atExit(fun() { print "done"; }); print __FILE__ == "' + str(script.resolve()) + '";\n',
                      encoding="utf-8")
    runner = ScriptRunner()
    res = await runner.run_file(script)
    assert_ok(res, "true\ndone\n")


@pytest.mark.asyncio
async def test_argv_is_visible_to_scripts():
    runner = ScriptRunner(LoxConfig(argv=["a", "b"], use_print_buf=True))
    res = await runner.handle_script("print System.ARGV; print System.ARGC;")
    assert_ok(res, "[a,b]\n2\n")


@pytest.mark.asyncio
async def test_unknown_signal_is_an_argument_error():
    res = await run_lox("""
    try { Signal.handle("NOPE", fun() {}); } catch (ArgumentError e) { print e.message; }
    """)
    assert_ok(res, "Signal.handle: Unknown signal 'NOPE'.\n")


def test_debugger_pauses_the_attached_tracepoint():
    interp = Interpreter(LoxConfig(use_print_buf=True), Diagnostics(silent=True))
    interp.interpret(interp.compile("System.debugger();"))
    interp.tracepoint = Tracepoint()
    interp.interpret(interp.compile("System.debugger();"))
    assert interp.tracepoint.paused


# --- ExecutionResult ---

def test_execution_result_exit_codes():
    assert ExecutionResult(status='success').exit_code == 0
    assert ExecutionResult(status='exit', exit_status=4).exit_code == 4
    assert ExecutionResult(status='error', error_kind='parse_error').exit_code == 65
    assert ExecutionResult(status='error', error_kind='uncaught_throw').exit_code == 70


def test_format_error_adds_the_line():
    res = ExecutionResult(status='error', error_message="boom", error_token={'line': 3})
    assert res.format_error() == "Error on line 3: boom"
    assert ExecutionResult(status='success').format_error() == ""

import inspect
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from lox.lox_config import LoxConfig
from lox.lox_datatypes import (
    VARIADIC, LoxCallable, LoxClass, LoxFunction, LoxInstance, LoxModule, NativeFunction,
)
from lox.lox_environment import UndefinedVariable
from lox.lox_errors import Diagnostics, LoxRuntimeError, LoxSyntaxError, LoxThrow, SystemExitRequest
from lox.lox_interpreter import Interpreter

RECURSION_LIMIT = 10000

ERROR_CLASSES = [
    ("ArgumentError", "Error"),
    ("TypeError", "Error"),
    ("AssertionError", "Error"),
    ("FrozenObjectError", "Error"),
    ("LogicError", "Error"),
    ("NameError", "Error"),
    ("SyntaxError", "Error"),
    ("NoSuchFunctionError", "Error"),
    ("NoSuchMethodError", "NoSuchFunctionError"),
]

# getters every object has; left out of Object#properties(includeGetters: true)
OBJECT_GETTERS = ("_class", "_singletonClass", "objectId")


def native(owner: Optional[str], name: str, arity=(0, 0), kind: str = "method", keywords=()):
    """Marks a StdLib method as a native callable.

    ``owner`` is a class or module name, or None for a global function.
    ``kind`` is one of "method", "getter" or "static". The decorator can be
    stacked to install one implementation under several owners.
    """
    def mark(func):
        func.__dict__.setdefault("_lox_native", []).append((owner, name, arity, kind, tuple(keywords)))
        return func
    return mark


# ===================================================================
# 1. The Standard Library
# ===================================================================

class StdLib:
    """Native classes, modules and global functions.

    Every native is called as ``fn(this, *args, **kwargs)``; ``this`` is None
    for global functions and the class or module for static methods.
    """

    def __init__(self, interp: Interpreter):
        self.interp = interp

    def install(self):
        interp = self.interp
        obj_class = LoxClass("Object", None)
        mod_class = LoxClass("Module", obj_class)
        class_class = LoxClass("Class", mod_class)
        for klass in (obj_class, mod_class, class_class):
            klass.klass = class_class
            self._register_class(klass)
        mod_class.allocator = lambda cls: LoxModule(None, klass=cls)
        class_class.allocator = lambda cls: LoxClass(None, interp.classes["Object"], klass=cls)

        for name in ("Array", "ArrayIterator", "Map", "MapIterator", "String", "Number", "Error"):
            self._register_class(LoxClass(name, obj_class, klass=class_class))
        for name, parent in ERROR_CLASSES:
            self._register_class(LoxClass(name, interp.classes[parent], klass=class_class))
        interp.classes["Array"].allocator = lambda cls: self._allocate(cls, "ary", [])
        interp.classes["Map"].allocator = lambda cls: self._allocate(cls, "map", {})
        interp.classes["String"].allocator = lambda cls: self._allocate(cls, "buf", "")

        for name in ("System", "Signal"):
            module = LoxModule(name, klass=mod_class)
            interp.globals.define(name, module)
            interp.modules[name] = module

        for _, member in inspect.getmembers(self):
            for owner, name, (low, high), kind, keywords in getattr(member, "_lox_native", ()):
                fn = NativeFunction(name, member, low, high, keywords)
                if owner is None:
                    interp.globals.define(name, fn)
                    continue
                target = interp.classes.get(owner) or interp.modules[owner]
                match kind:
                    case "getter":
                        target.getters[name] = fn
                    case "static":
                        target.define_singleton_method(name, fn)
                    case _:
                        target.methods[name] = fn

        interp.globals.define("LOAD_PATH", interp.new_array(interp.new_string(p) for p in interp.config.load_path))
        interp.globals.define("__FILE__", interp.new_string(""))
        interp.globals.define("__DIR__", interp.new_string(""))
        system = interp.modules["System"]
        system.properties["ARGV"] = interp.new_array(interp.new_string(a) for a in interp.config.argv)
        system.properties["ARGC"] = float(len(interp.config.argv))

    def _register_class(self, klass: LoxClass):
        self.interp.classes[klass.name] = klass
        self.interp.globals.define(klass.name, klass)

    @staticmethod
    def _allocate(cls: LoxClass, slot: str, value) -> LoxInstance:
        instance = LoxInstance(cls)
        instance.hidden[slot] = value
        return instance

    # --- Argument checks ---

    def _fail(self, fn: str, pos: int, expected: str, value: Any):
        self.interp.throw_error(
            "ArgumentError",
            f"{fn}: expected argument {pos} to be {expected}, got {self.interp.type_name(value)}.",
        )

    def _string(self, value: Any, fn: str, pos: int = 1) -> str:
        if not self.interp.is_string(value):
            self._fail(fn, pos, "a String", value)
        return value.hidden["buf"]

    def _number(self, value: Any, fn: str, pos: int = 1) -> float:
        if not self.interp.is_number(value):
            self._fail(fn, pos, "a number", value)
        return value

    def _int(self, value: Any, fn: str, pos: int = 1) -> int:
        return int(self._number(value, fn, pos))

    def _callable(self, value: Any, fn: str, pos: int = 1) -> LoxCallable:
        if not isinstance(value, LoxCallable):
            self._fail(fn, pos, "a function", value)
        return value

    def _array(self, value: Any, fn: str, pos: int = 1) -> list:
        if not self.interp.is_array(value):
            self._fail(fn, pos, "an Array", value)
        return value.hidden["ary"]

    def _module(self, value: Any, fn: str, pos: int = 1) -> LoxModule:
        if not isinstance(value, LoxModule):
            self._fail(fn, pos, "a Module or Class", value)
        return value

    def _mutable(self, this: LoxInstance, fn: str):
        if this.is_frozen:
            self.interp.throw_error("FrozenObjectError", f"{fn} called on frozen {self.interp.type_name(this)}.")

    def _call(self, fn: LoxCallable, *args) -> Any:
        return self.interp.call_callable(fn, list(args), {}, None)

    @staticmethod
    def _max_arity(fn: LoxCallable) -> int:
        high = fn.arity()[1]
        return 2 if high == VARIADIC else high

    # --- Global functions ---

    @native(None, "clock")
    def global_clock(self, this):
        return time.time()

    @native(None, "typeof", (1, 1))
    def global_typeof(self, this, value):
        return self.interp.new_string(self.interp.type_name(value))

    @native(None, "len", (1, 1))
    def global_len(self, this, value):
        interp = self.interp
        if interp.is_string(value):
            return float(len(value.hidden["buf"]))
        if interp.is_array(value):
            return float(len(value.hidden["ary"]))
        if interp.is_map(value):
            return float(len(value.hidden["map"]))
        self._fail("len", 1, "a String, Array or Map", value)

    @native(None, "assert", (1, 2))
    def global_assert(self, this, cond, message=None):
        if self.interp.is_truthy(cond):
            return None
        text = "Assertion failure"
        if message is not None:
            text += ": " + self._string(message, "assert", 2)
        self.interp.throw_error("AssertionError", text)

    @native(None, "loadScript", (1, VARIADIC))
    def global_load_script(self, this, *paths):
        return all([self.interp.load_script(self._string(p, "loadScript", i + 1)) for i, p in enumerate(paths)])

    @native(None, "loadScriptOnce", (1, VARIADIC))
    def global_load_script_once(self, this, *paths):
        return all([self.interp.load_script(self._string(p, "loadScriptOnce", i + 1), once=True)
                    for i, p in enumerate(paths)])

    @native(None, "eval", (1, 1))
    def global_eval(self, this, source):
        return self.interp.eval_source(self._string(source, "eval"))

    @native(None, "isCallable", (1, 1))
    def global_is_callable(self, this, value):
        return isinstance(value, LoxCallable)

    @native(None, "alias", (2, 2))
    def global_alias(self, this, target, new_name):
        interp = self.interp
        if interp.is_string(target):
            try:
                target = interp.environment.get(target.hidden["buf"])
            except UndefinedVariable as e:
                interp.throw_error("NameError", f"alias: {e}")
        if not isinstance(target, LoxCallable) or isinstance(target, LoxModule):
            self._fail("alias", 1, "a function", target)
        name = self._string(new_name, "alias", 2)
        if target.name == "(anon)":
            interp.throw_error("ArgumentError", "alias: can't alias anonymous functions.")
        if not name.isidentifier():
            interp.throw_error("ArgumentError", f"alias: invalid identifier '{name}'.")
        interp.environment.define(name, target)
        return None

    @native(None, "system", (1, 1))
    def global_system(self, this, command):
        interp = self.interp
        argv = shlex.split(self._string(command, "system"))
        try:
            proc = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            return interp.new_array([interp.new_string(""), interp.new_string(str(e))])
        return interp.new_array([interp.new_string(proc.stdout), interp.new_string(proc.stderr)])

    # --- Object ---

    @native("Object", "equals", (1, 1))
    def object_equals(self, this, other):
        return this is other

    @native("Object", "delProp", (1, 1))
    def object_del_prop(self, this, name):
        self._mutable(this, "Object#delProp")
        key = self._string(name, "Object#delProp")
        if key not in this.properties:
            return False
        del this.properties[key]
        return True

    @native("Object", "properties", (0, 0), keywords=("includeGetters",))
    def object_properties(self, this, includeGetters=False):
        interp = self.interp
        result = interp.new_map((interp.new_string(k), v) for k, v in this.properties.items())
        if interp.is_truthy(includeGetters):
            klass = this.dispatch_class()
            while klass is not None:
                for name, getter in klass.getters.items():
                    key = interp.new_string(name)
                    if name in OBJECT_GETTERS or interp.map_key(key) in result.hidden["map"]:
                        continue
                    result.hidden["map"][interp.map_key(key)] = (key, self._call(getter.bind(this)))
                klass = klass.superclass
        return result

    @native("Object", "_class", kind="getter")
    def object_class(self, this):
        return this.get_class()

    @native("Object", "_singletonClass", kind="getter")
    def object_singleton_class(self, this):
        return this.get_singleton_class()

    @native("Object", "objectId", kind="getter")
    def object_id(self, this):
        return float(this.object_id)

    @native("Object", "freeze")
    def object_freeze(self, this):
        this.freeze()
        return this

    @native("Object", "isFrozen")
    def object_is_frozen(self, this):
        return this.is_frozen

    @native("Object", "hashCode")
    def object_hash_code(self, this):
        if self.interp.is_string(this):
            return float(hash(this.hidden["buf"]) & 0xFFFFFFFF)
        return float(this.object_id)

    @native("Object", "dup")
    def object_dup(self, this):
        if isinstance(this, LoxModule):
            self.interp.throw_error("TypeError", f"Can't dup {self.interp.stringify(this)}.")
        return this.dup()

    @native("Object", "toString")
    def object_to_string(self, this):
        if isinstance(this, LoxModule):
            return self.interp.new_string(repr(this))
        return self.interp.new_string(f"<instance {this.get_class().display_name}>")

    @native("Object", "propertyMissing", (1, 1))
    def object_property_missing(self, this, name):
        return None

    @native("Object", "extend", (1, VARIADIC))
    def object_extend(self, this, *modules):
        for i, module in enumerate(modules):
            self._module(module, "Object#extend", i + 1).include_in(this.get_singleton_class())
        return this

    @native("Object", "isA", (1, 1))
    def object_is_a(self, this, module):
        return this.is_a(self._module(module, "Object#isA"))

    @native("Object", "ancestors")
    @native("Class", "ancestors")
    def object_ancestors(self, this):
        klass = this if isinstance(this, LoxModule) else this.get_class()
        return self.interp.new_array(klass.ancestors())

    # --- Module ---

    @native("Module", "init", (0, 1))
    def module_init(self, this, name=None):
        if name is not None:
            this.name = self._string(name, "Module#init")
            self.interp.modules[this.name] = this
        return None

    @native("Module", "include", (1, VARIADIC))
    def module_include(self, this, *modules):
        for i, module in enumerate(modules):
            if isinstance(module, LoxClass) or not isinstance(module, LoxModule):
                self.interp.throw_error(
                    "ArgumentError",
                    f"Only modules may be included ({self.interp.stringify(this)} tried to include "
                    f"{self.interp.stringify(module)}).",
                )
            module.include_in(this)
        return None

    @native("Module", "name", kind="getter")
    def module_name(self, this):
        return self.interp.new_string(this.name) if this.name is not None else None

    @native("Module", "methodNames", (0, 1))
    def module_method_names(self, this, include_ancestors=True):
        names = this.method_names(self.interp.is_truthy(include_ancestors))
        return self.interp.new_array(self.interp.new_string(n) for n in names)

    @native("Module", "all", kind="static")
    def module_all(self, this):
        interp = self.interp
        return interp.new_array(list(interp.classes.values()) + list(interp.modules.values()))

    # --- Class ---

    @native("Class", "init", (0, 1))
    def class_init(self, this, superclass=None):
        if superclass is not None:
            if not isinstance(superclass, LoxClass) or superclass.module is not None:
                self._fail("Class#init", 1, "a Class", superclass)
            this.superclass = superclass
        return None

    @native("Class", "alias", (2, 2))
    def class_alias(self, this, old, new):
        old_name = self._string(old, "Class#alias", 1).rstrip("=")
        new_name = self._string(new, "Class#alias", 2).rstrip("=")
        found = False
        for table, lookup in (("methods", this.find_method), ("getters", this.find_getter),
                              ("setters", this.find_setter)):
            fn = lookup(old_name)
            if fn is not None:
                getattr(this, table)[new_name] = fn
                found = True
        if not found:
            self.interp.throw_error("NoSuchMethodError", f"Class#alias: no method '{old_name}' in {this.display_name}.")
        return None

    @native("Class", "superClass", kind="getter")
    def class_superclass(self, this):
        return this.real_superclass()

    @native("Class", "all", kind="static")
    def class_all(self, this):
        return self.interp.new_array(self.interp.classes.values())

    @native("Class", "getByName", (1, 1), kind="static")
    def class_get_by_name(self, this, name):
        return self.interp.classes.get(self._string(name, "Class.getByName"))

    # --- Array ---

    @native("Array", "init", (0, VARIADIC))
    def array_init(self, this, *elements):
        this.hidden["ary"] = list(elements)
        return None

    @native("Array", "length", kind="getter")
    def array_length(self, this):
        return float(len(this.hidden["ary"]))

    @native("Array", "opAdd", (1, 1))
    def array_op_add(self, this, other):
        return self.interp.new_array(this.hidden["ary"] + self._array(other, "Array#opAdd"))

    @native("Array", "opMul", (1, 1))
    def array_op_mul(self, this, times):
        return self.interp.new_array(this.hidden["ary"] * max(self._int(times, "Array#opMul"), 0))

    @native("Array", "push", (1, VARIADIC))
    def array_push(self, this, *elements):
        self._mutable(this, "Array#push")
        this.hidden["ary"].extend(elements)
        return this

    def _take(self, this, count, fn: str, from_front: bool):
        self._mutable(this, fn)
        ary = this.hidden["ary"]
        n = 1 if count is None else self._int(count, fn)
        taken = []
        while len(taken) < n and ary:
            taken.append(ary.pop(0) if from_front else ary.pop())
        if n > 1:
            return self.interp.new_array(taken)
        return taken[0] if taken else None

    @native("Array", "pop", (0, 1))
    def array_pop(self, this, count=None):
        return self._take(this, count, "Array#pop", from_front=False)

    @native("Array", "shift", (0, 1))
    def array_shift(self, this, count=None):
        return self._take(this, count, "Array#shift", from_front=True)

    @native("Array", "unshift", (1, 1))
    def array_unshift(self, this, element):
        self._mutable(this, "Array#unshift")
        this.hidden["ary"].insert(0, element)
        return this

    @native("Array", "contains", (1, 1))
    def array_contains(self, this, element):
        return any(self.interp.is_equal(item, element) for item in this.hidden["ary"])

    @native("Array", "get", (1, 1))
    def array_get(self, this, index):
        i = self._int(index, "Array#get")
        ary = this.hidden["ary"]
        if i < 0 or i >= len(ary):
            return None
        return ary[i]

    @native("Array", "set", (2, 2))
    def array_set(self, this, index, value):
        self._mutable(this, "Array#set")
        i = self._int(index, "Array#set")
        if i < 0:
            self.interp.throw_error("ArgumentError", f"Array#set: negative index {i}.")
        ary = this.hidden["ary"]
        if i >= len(ary):
            ary.extend([None] * (i + 1 - len(ary)))
        ary[i] = value
        return this

    @native("Array", "indexGet", (1, 1))
    def array_index_get(self, this, index):
        return self.interp.call_method(this, "get", [index])

    @native("Array", "indexSet", (2, 2))
    def array_index_set(self, this, index, value):
        return self.interp.call_method(this, "set", [index, value])

    @native("Array", "each", (1, 1))
    def array_each(self, this, fn):
        fn = self._callable(fn, "Array#each")
        takes_arg = self._max_arity(fn) != 0
        for item in list(this.hidden["ary"]):
            if takes_arg:
                self._call(fn, item)
            else:
                self._call(fn)
        return this

    @native("Array", "map", (1, 1))
    def array_map(self, this, fn):
        fn = self._callable(fn, "Array#map")
        takes_arg = self._max_arity(fn) != 0
        return self.interp.new_array([self._call(fn, item) if takes_arg else self._call(fn)
                                      for item in list(this.hidden["ary"])])

    @native("Array", "iter")
    def array_iter(self, this):
        return self.interp.call_callable(self.interp.classes["ArrayIterator"], [this], {}, None)

    @native("Array", "join", (0, 1))
    def array_join(self, this, sep=None):
        separator = "" if sep is None else self._string(sep, "Array#join")
        return self.interp.new_string(separator.join(self.interp.stringify(v) for v in this.hidden["ary"]))

    @native("Array", "toString")
    def array_to_string(self, this):
        parts = ["[instance...]" if item is this else self.interp.stringify(item) for item in this.hidden["ary"]]
        return self.interp.new_string("[" + ",".join(parts) + "]")

    # --- ArrayIterator ---

    @native("ArrayIterator", "init", (1, 1))
    def array_iterator_init(self, this, array):
        this.properties["iterable"] = array
        this.hidden["items"] = list(self._array(array, "ArrayIterator#init"))
        this.hidden["pos"] = 0
        return None

    @native("ArrayIterator", "hasNext")
    def array_iterator_has_next(self, this):
        return this.hidden["pos"] < len(this.hidden["items"])

    @native("ArrayIterator", "nextIter")
    def array_iterator_next(self, this):
        pos = this.hidden["pos"]
        if pos >= len(this.hidden["items"]):
            return None
        this.hidden["pos"] = pos + 1
        return this.hidden["items"][pos]

    # --- Map ---

    @native("Map", "init", (0, 2))
    def map_init(self, this, *args):
        interp = self.interp
        entries = this.hidden["map"] = {}
        if len(args) == 2:
            entries[interp.map_key(args[0])] = (args[0], args[1])
            return None
        if not args:
            return None
        pairs = self._array(args[0], "Map#init")
        if len(pairs) == 2 and not (interp.is_array(pairs[0]) or interp.is_array(pairs[1])):
            return self.map_init(this, pairs[0], pairs[1])
        for n, pair in enumerate(pairs, 1):
            if not interp.is_array(pair) or len(pair.hidden["ary"]) != 2:
                interp.throw_error("ArgumentError", f"Map#init: element {n} of the given Array must be an Array of size 2.")
            key, value = pair.hidden["ary"]
            entries[interp.map_key(key)] = (key, value)
        return None

    @native("Map", "length", kind="getter")
    def map_length(self, this):
        return float(len(this.hidden["map"]))

    @native("Map", "get", (1, 1))
    def map_get(self, this, key):
        entry = this.hidden["map"].get(self.interp.map_key(key))
        if entry is None:
            return this.properties.get("default")
        return entry[1]

    @native("Map", "put", (2, 2))
    def map_put(self, this, key, value):
        self._mutable(this, "Map#put")
        this.hidden["map"][self.interp.map_key(key)] = (key, value)
        return this

    @native("Map", "indexGet", (1, 1))
    def map_index_get(self, this, key):
        return self.interp.call_method(this, "get", [key])

    @native("Map", "indexSet", (2, 2))
    def map_index_set(self, this, key, value):
        return self.interp.call_method(this, "put", [key, value])

    @native("Map", "remove", (1, VARIADIC))
    def map_remove(self, this, *keys):
        self._mutable(this, "Map#remove")
        removed = []
        for key in keys:
            entry = this.hidden["map"].pop(self.interp.map_key(key), None)
            removed.append(entry[1] if entry is not None else None)
        if len(removed) == 1:
            return removed[0]
        return self.interp.new_array(removed)

    @native("Map", "keys")
    def map_keys(self, this):
        return self.interp.new_array(k for k, _ in this.hidden["map"].values())

    @native("Map", "values")
    def map_values(self, this):
        return self.interp.new_array(v for _, v in this.hidden["map"].values())

    @native("Map", "each", (1, 1))
    def map_each(self, this, fn):
        fn = self._callable(fn, "Map#each")
        arity = self._max_arity(fn)
        for key, value in list(this.hidden["map"].values()):
            if arity == 0:
                self._call(fn)
            elif arity == 1:
                self._call(fn, self.interp.new_array([key, value]))
            else:
                self._call(fn, key, value)
        return this

    @native("Map", "clear")
    def map_clear(self, this):
        self._mutable(this, "Map#clear")
        this.hidden["map"].clear()
        return this

    @native("Map", "iter")
    def map_iter(self, this):
        return self.interp.call_callable(self.interp.classes["MapIterator"], [this], {}, None)

    @native("Map", "toString")
    def map_to_string(self, this):
        def show(v):
            return "{instance...}" if v is this else self.interp.stringify(v)
        parts = [f"{show(k)} => {show(v)}" for k, v in this.hidden["map"].values()]
        return self.interp.new_string("{" + ", ".join(parts) + "}")

    # --- MapIterator ---

    @native("MapIterator", "init", (1, 1))
    def map_iterator_init(self, this, mapping):
        if not self.interp.is_map(mapping):
            self._fail("MapIterator#init", 1, "a Map", mapping)
        this.properties["iterable"] = mapping
        this.hidden["keys"] = list(mapping.hidden["map"])
        this.hidden["pos"] = 0
        return None

    def _skip_removed(self, this):
        entries = this.properties["iterable"].hidden["map"]
        keys = this.hidden["keys"]
        while this.hidden["pos"] < len(keys) and keys[this.hidden["pos"]] not in entries:
            this.hidden["pos"] += 1

    @native("MapIterator", "hasNext")
    def map_iterator_has_next(self, this):
        self._skip_removed(this)
        return this.hidden["pos"] < len(this.hidden["keys"])

    @native("MapIterator", "nextIter")
    def map_iterator_next(self, this):
        self._skip_removed(this)
        pos = this.hidden["pos"]
        if pos >= len(this.hidden["keys"]):
            return None
        this.hidden["pos"] = pos + 1
        key, value = this.properties["iterable"].hidden["map"][this.hidden["keys"][pos]]
        return self.interp.new_array([key, value])

    @native("MapIterator", "toString")
    def map_iterator_to_string(self, this):
        done = "" if self.map_iterator_has_next(this) else " (done)"
        return self.interp.new_string(f"<MapIterator instance {self.interp.stringify(this.properties['iterable'])}{done}>")

    # --- String ---

    @native("String", "init", (0, VARIADIC))
    def string_init(self, this, *args):
        this.hidden["buf"] = " ".join(self.interp.stringify(a) for a in args)
        return None

    @native("String", "length", kind="getter")
    def string_length(self, this):
        return float(len(this.hidden["buf"]))

    @native("String", "opAdd", (1, 1))
    def string_op_add(self, this, other):
        return self.interp.new_string(this.hidden["buf"] + self._string(other, "String#opAdd"))

    @native("String", "opMul", (1, 1))
    def string_op_mul(self, this, times):
        return self.interp.new_string(this.hidden["buf"] * max(self._int(times, "String#opMul"), 0))

    @native("String", "push", (0, VARIADIC))
    def string_push(self, this, *others):
        self._mutable(this, "String#push")
        this.hidden["buf"] += "".join(self._string(s, "String#push", i + 1) for i, s in enumerate(others))
        return this

    @native("String", "indexGet", (1, 1))
    def string_index_get(self, this, index):
        i = self._int(index, "String#indexGet")
        buf = this.hidden["buf"]
        if i < 0 or i >= len(buf):
            return None
        return self.interp.new_string(buf[i])

    @native("String", "toString")
    def string_to_string(self, this):
        return this

    # --- Number ---

    @native("Number", "parse", (1, 1), kind="static")
    def number_parse(self, this, text):
        raw = self._string(text, "Number.parse")
        try:
            return float(raw)
        except ValueError:
            self.interp.throw_error("ArgumentError", f"Number.parse: '{raw}' is not a number.")

    # --- Error ---

    @native("Error", "init", (0, 1))
    def error_init(self, this, message=None):
        interp = self.interp
        if message is not None:
            self._string(message, "Error#init")
        this.properties["message"] = message
        # the innermost frame is this init call
        frames = [str(frame) for frame in reversed(interp.call_stack[:-1])]
        this.properties["stacktrace"] = interp.new_array(interp.new_string(f) for f in frames)
        return None

    @native("Error", "toString")
    def error_to_string(self, this):
        text = this.get_class().display_name
        message = this.properties.get("message")
        if message is not None:
            text += ": " + self.interp.stringify(message)
        return self.interp.new_string(text)

    # --- System ---

    @native("System", "exit", (0, 2), kind="static")
    def system_exit(self, this, status=0.0, run_hooks=True):
        code = self._int(status, "System.exit")
        if self.interp.is_truthy(run_hooks):
            self.interp.run_at_exit_hooks()
        raise SystemExitRequest(code)

    @native("System", "atExit", (1, 1), kind="static")
    def system_at_exit(self, this, fn):
        self.interp.at_exit_hooks.append(self._callable(fn, "System.atExit"))
        return None

    @native("System", "sleep", (1, 1), kind="static")
    def system_sleep(self, this, seconds):
        time.sleep(max(self._number(seconds, "System.sleep"), 0))
        return None

    @native("System", "debugger", kind="static")
    def system_debugger(self, this):
        tracepoint = self.interp.tracepoint
        self.interp._dbg("call", "debugger", "tracepoint" if tracepoint else "no tracepoint attached")
        if tracepoint is not None:
            tracepoint.pause()
        return None

    # --- Signal ---

    @native("Signal", "handle", (2, 2), kind="static")
    def signal_handle(self, this, name, fn):
        signame = self._string(name, "Signal.handle", 1)
        fn = self._callable(fn, "Signal.handle", 2)
        try:
            self.interp.signals.register(signame, fn)
        except ValueError as e:
            self.interp.throw_error("ArgumentError", f"Signal.handle: {e}")
        return None


# ===================================================================
# 2. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error', 'exit']
    value: Any = None
    error_kind: Optional[Literal['parse_error', 'runtime_error', 'uncaught_throw']] = None
    error_message: Optional[str] = None
    error_token: Optional[Dict[str, Any]] = None
    exit_status: Optional[int] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with its line if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            if not msg.startswith("Error on line "):
                return f"Error on line {self.error_token['line']}: {msg}"
        return msg

    @property
    def output(self) -> str:
        """Everything the script printed to stdout."""
        return "".join(e['message'] for e in self.side_effects if 'stdout' in e['topics'])

    @property
    def exit_code(self) -> int:
        if self.status == 'exit':
            return self.exit_status or 0
        if self.status == 'success':
            return 0
        return 65 if self.error_kind == 'parse_error' else 70


class ScriptRunner:
    """Scans, parses, resolves and executes Lox source in one interpreter session."""

    def __init__(self, config: Optional[LoxConfig] = None):
        if config is None:
            config = LoxConfig(use_print_buf=True, silence_errors=True).apply_env()
        self.config = config
        self.diagnostics = Diagnostics(silent=True)
        self.interpreter = Interpreter(config, self.diagnostics)
        self._current_script_source = ""
        self._current_filename: Optional[str] = None
        if sys.getrecursionlimit() < RECURSION_LIMIT:
            sys.setrecursionlimit(RECURSION_LIMIT)

    def _source_context(self, source: str, line: int, col: Optional[int] = None, radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _token_info(self, token) -> Optional[Dict[str, Any]]:
        if token is None:
            return None
        return {'line': token.line, 'file': token.file, 'lexeme': token.lexeme}

    def _describe(self, value: Any) -> str:
        try:
            return self.interpreter.stringify(value)
        except LoxThrow:
            return repr(value)

    def _format_runtime_error(self, msg: str, token) -> str:
        if token is not None and token.file == self._current_filename:
            context = self._source_context(self._current_script_source, token.line, token.column or None)
            if context:
                msg = f"{msg}\n{context}"
        st = self.interpreter.format_stacktrace()
        if st:
            msg += "\n" + st
        return msg

    def _error(self, kind: str, msg: str, token=None) -> ExecutionResult:
        interp = self.interpreter
        interp.side_effects.append({'topics': ['stderr'], 'message': msg})
        if not self.config.use_print_buf and not self.config.silence_errors:
            print(msg, file=sys.stderr)
        return ExecutionResult(
            status='error',
            error_kind=kind,
            error_message=msg,
            error_token=self._token_info(token),
            side_effects=interp.side_effects,
        )

    def _guarded(self, run) -> ExecutionResult:
        interp = self.interpreter
        try:
            value = run()
        except SystemExitRequest as e:
            return ExecutionResult(status='exit', exit_status=e.status, side_effects=interp.side_effects)
        except LoxThrow as e:
            msg = self._format_runtime_error(f"Uncaught error: {self._describe(e.value)}", e.token)
            return self._error('uncaught_throw', msg, e.token)
        except LoxRuntimeError as e:
            msg = self._format_runtime_error(f"RuntimeError: {e.message}", e.token)
            return self._error('runtime_error', msg, e.token)
        except RecursionError:
            token = interp.call_stack[-1].token if interp.call_stack else None
            msg = self._format_runtime_error("RuntimeError: Stack overflow.", token)
            return self._error('runtime_error', msg, token)
        return ExecutionResult(status='success', value=value, side_effects=interp.side_effects)

    async def handle_script(self, source_code: str, filename: Optional[str] = None) -> ExecutionResult:
        """The main entry point to execute a script."""
        interp = self.interpreter
        interp.side_effects = []
        interp.call_stack.clear()
        self._current_script_source = source_code
        self._current_filename = filename
        try:
            statements = interp.compile(source_code, filename)
        except LoxSyntaxError as e:
            token = {'line': e.line, 'file': filename, 'lexeme': None} if e.line is not None else None
            result = self._error('parse_error', f"ParseError:\n{e}")
            result.error_token = token
            return result
        return self._guarded(lambda: interp.interpret(statements))

    async def run_file(self, path) -> ExecutionResult:
        """Runs a script file, then its at-exit hooks."""
        interp = self.interpreter
        resolved = Path(path).resolve()
        source = resolved.read_text(encoding="utf-8")
        interp.loaded_files.add(str(resolved))
        interp.globals.define("__FILE__", interp.new_string(str(resolved)))
        interp.globals.define("__DIR__", interp.new_string(str(resolved.parent)))
        result = await self.handle_script(source, str(resolved))
        if result.status == 'exit':
            return result
        hooks = self.run_exit_hooks()
        if result.status == 'success' and hooks.status != 'success':
            return hooks
        return result

    def run_exit_hooks(self) -> ExecutionResult:
        """Runs pending ``System.atExit`` hooks; their output joins the current side effects."""
        return self._guarded(self.interpreter.run_at_exit_hooks)

    def stringify(self, value: Any) -> str:
        return self.interpreter.stringify(value)

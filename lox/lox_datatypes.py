import itertools
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from lox.lox_ast import AnonFn, FunctionType
from lox.lox_environment import Environment

_object_ids = itertools.count(1)

# max arity for callables that take any number of positional arguments
VARIADIC = -1


# --- Completion signals ---

class Completion:
    """Result of a statement that leaves its enclosing block early."""


class ReturnSignal(Completion):
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self):
        return f"ReturnSignal({self.value!r})"


class BreakSignal(Completion):
    def __repr__(self):
        return "BREAK"


class ContinueSignal(Completion):
    def __repr__(self):
        return "CONTINUE"


BREAK = BreakSignal()
CONTINUE = ContinueSignal()


# --- Callables ---

class LoxCallable(ABC):
    """The calling contract shared by functions, native functions and classes."""
    name: Optional[str] = None

    @abstractmethod
    def arity(self) -> Tuple[int, int]:
        """(minimum, maximum) positional argument count; maximum is VARIADIC when unbounded."""

    def keyword_names(self) -> frozenset:
        return frozenset()

    @abstractmethod
    def call(self, interpreter, args: List[Any], kwargs: Dict[str, Any], call_token=None) -> Any:
        ...


class LoxFunction(LoxCallable):
    """A user-defined function, method, getter or setter and its closure."""

    def __init__(self, declaration, closure: Environment, is_initializer: bool = False):
        self.declaration = declaration
        self.closure = closure
        self.is_initializer = is_initializer
        self.name = "(anon)" if isinstance(declaration, AnonFn) else declaration.name.lexeme
        self.owner: Optional['LoxModule'] = None
        self.receiver: Any = None

    @property
    def kind(self) -> FunctionType:
        return self.declaration.kind

    def arity(self) -> Tuple[int, int]:
        positional = [p for p in self.declaration.params if not p.is_kwarg]
        required = sum(1 for p in positional if p.must_receive_argument())
        if any(p.is_splatted for p in positional):
            return required, VARIADIC
        return required, len(positional)

    def keyword_names(self) -> frozenset:
        return frozenset(p.name for p in self.declaration.params if p.is_kwarg)

    def bind(self, instance: Any) -> 'LoxFunction':
        env = Environment(self.closure)
        env.define("this", instance)
        bound = LoxFunction(self.declaration, env, self.is_initializer)
        bound.name = self.name
        bound.owner = self.owner
        bound.receiver = instance
        return bound

    def call(self, interpreter, args, kwargs, call_token=None):
        interpreter.push_frame(self.name, call_token)
        env = Environment(self.closure)
        previous = interpreter.environment
        # defaults are evaluated in the parameter scope so they can see earlier parameters
        interpreter.environment = env
        try:
            position = 0
            for param in self.declaration.params:
                if param.is_kwarg:
                    if param.name in kwargs:
                        value = kwargs[param.name]
                    else:
                        value = interpreter.evaluate(param.default) if param.default is not None else None
                elif param.is_splatted:
                    value = interpreter.new_array(args[position:])
                    position = len(args)
                elif position < len(args):
                    value = args[position]
                    position += 1
                else:
                    value = interpreter.evaluate(param.default)
                env.define(param.name, value)
        finally:
            interpreter.environment = previous

        signal = interpreter.execute_block(self.declaration.body, Environment(env))
        interpreter.pop_frame()
        if self.is_initializer:
            return self.closure.get_at(0, "this")
        if isinstance(signal, ReturnSignal):
            return signal.value
        return None

    def __repr__(self):
        return f"<fn {self.name}>"


class NativeFunction(LoxCallable):
    """A host function exposed to scripts.

    ``fn`` is called as ``fn(receiver, *args, **kwargs)``; the receiver is None
    for global functions.
    """

    def __init__(self, name: str, fn: Callable, min_arity: int = 0, max_arity: int = 0,
                 keywords: Tuple[str, ...] = (), receiver: Any = None):
        self.name = name
        self.fn = fn
        self.min_arity = min_arity
        self.max_arity = max_arity
        self.keywords = frozenset(keywords)
        self.receiver = receiver

    def arity(self) -> Tuple[int, int]:
        return self.min_arity, self.max_arity

    def keyword_names(self) -> frozenset:
        return self.keywords

    def bind(self, receiver: Any) -> 'NativeFunction':
        return NativeFunction(self.name, self.fn, self.min_arity, self.max_arity, tuple(self.keywords), receiver)

    def call(self, interpreter, args, kwargs, call_token=None):
        interpreter.push_frame(self.name, call_token)
        result = self.fn(self.receiver, *args, **kwargs)
        interpreter.pop_frame()
        return result

    def __repr__(self):
        return f"<native fn {self.name}>"


# --- Objects ---

class LoxInstance:
    """A runtime object.

    ``properties`` are visible to scripts; ``hidden`` holds native storage such
    as an array's backing list or a string's text and is never reached by
    property dispatch.
    """

    def __init__(self, klass: Optional['LoxClass'], klass_name: Optional[str] = None):
        self.klass = klass
        self.klass_name = klass_name or (klass.name if klass is not None else None)
        self.properties: Dict[str, Any] = {}
        self.hidden: Dict[str, Any] = {}
        self.is_frozen = False
        self.singleton_class: Optional['LoxClass'] = None
        self.object_id = next(_object_ids)

    def get_class(self) -> 'LoxClass':
        if self.klass is None:
            self.klass = LoxClass(self.klass_name or "Object", None)
        return self.klass

    def get_singleton_class(self) -> 'LoxClass':
        if self.singleton_class is None:
            klass = self.get_class()
            self.singleton_class = LoxClass(f"(singleton {klass.name})", klass, klass=klass.klass, is_singleton=True)
            self.singleton_class.singleton_of = self
        return self.singleton_class

    def dispatch_class(self) -> 'LoxClass':
        """The class method lookup starts from."""
        if self.singleton_class is not None:
            return self.singleton_class
        return self.get_class()

    def is_a(self, module: 'LoxModule') -> bool:
        klass = self.dispatch_class()
        while klass is not None:
            if klass is module or klass.module is module:
                return True
            klass = klass.superclass
        return False

    def freeze(self):
        self.is_frozen = True

    def unfreeze(self):
        self.is_frozen = False

    def dup(self) -> 'LoxInstance':
        copy = LoxInstance(self.klass, self.klass_name)
        copy.properties = dict(self.properties)
        copy.hidden = {k: (list(v) if isinstance(v, list) else dict(v) if isinstance(v, dict) else v)
                       for k, v in self.hidden.items()}
        return copy

    def __repr__(self):
        return f"<instance {self.klass_name}>"


class LoxModule(LoxInstance):
    """A named bag of methods that can be included into classes but not instantiated."""

    def __init__(self, name: Optional[str], klass: Optional['LoxClass'] = None,
                 methods: Optional[Dict[str, LoxCallable]] = None,
                 getters: Optional[Dict[str, LoxCallable]] = None,
                 setters: Optional[Dict[str, LoxCallable]] = None):
        super().__init__(klass, "Module")
        self.name = name
        self.methods: Dict[str, LoxCallable] = methods if methods is not None else {}
        self.getters: Dict[str, LoxCallable] = getters if getters is not None else {}
        self.setters: Dict[str, LoxCallable] = setters if setters is not None else {}
        self.included_modules: List['LoxModule'] = []

    @property
    def display_name(self) -> str:
        return self.name if self.name is not None else "(anon)"

    def get_singleton_class(self) -> 'LoxClass':
        if self.singleton_class is None:
            self.singleton_class = LoxClass(f"(meta {self.display_name})", self._singleton_superclass(),
                                            klass=self.klass, is_singleton=True)
            self.singleton_class.singleton_of = self
        return self.singleton_class

    def dispatch_class(self) -> 'LoxClass':
        return self.get_singleton_class()

    def _singleton_superclass(self) -> Optional['LoxClass']:
        return self.get_class()

    def define_singleton_method(self, name: str, fn: LoxCallable):
        self.get_singleton_class().methods[name] = fn

    def responds_to(self, name: str) -> bool:
        if name in self.methods or name in self.getters or name in self.setters:
            return True
        return any(mod.responds_to(name) for mod in self.included_modules)

    def include_in(self, target: 'LoxModule') -> bool:
        """Splices this module into ``target``'s ancestry.

        Returns False without changing anything when the module is already
        part of it.
        """
        if isinstance(target, LoxClass):
            if target.includes(self):
                return False
            mixin = LoxClass(self.name, target.superclass, self.methods, self.getters, self.setters,
                             klass=target.klass)
            mixin.module = self
            target.superclass = mixin
            for inner in self.included_modules:
                inner.include_in(mixin)
            return True
        if self is target or self in target.included_modules:
            return False
        target.included_modules.append(self)
        return True

    def method_names(self, include_ancestors: bool = True) -> List[str]:
        names = [n for n in self.methods if n != "init"]
        if include_ancestors:
            for mod in self.included_modules:
                names.extend(n for n in mod.method_names(True) if n not in names)
        return names

    def ancestors(self) -> List['LoxModule']:
        return [self]

    def __repr__(self):
        return f"<module {self.display_name}>"


class LoxClass(LoxModule, LoxCallable):
    """A class: a module that can be instantiated and has a superclass.

    Classes created by module inclusion carry the included module in
    ``module``; singleton classes hold the per-object methods of
    ``singleton_of``.
    """

    def __init__(self, name: Optional[str], superclass: Optional['LoxClass'],
                 methods: Optional[Dict[str, LoxCallable]] = None,
                 getters: Optional[Dict[str, LoxCallable]] = None,
                 setters: Optional[Dict[str, LoxCallable]] = None,
                 klass: Optional['LoxClass'] = None, is_singleton: bool = False):
        super().__init__(name, klass, methods, getters, setters)
        self.klass_name = "Class"
        self.superclass = superclass
        self.module: Optional[LoxModule] = None
        self.is_singleton = is_singleton
        self.singleton_of: Optional[LoxInstance] = None
        # builds the bare instance before init runs; inherited through the chain
        self.allocator: Optional[Callable[['LoxClass'], LoxInstance]] = None

    def _singleton_superclass(self) -> Optional['LoxClass']:
        if self.superclass is not None:
            return self.superclass.get_singleton_class()
        return self.get_class()

    def _find(self, table: str, name: str) -> Optional[LoxCallable]:
        klass = self
        while klass is not None:
            found = getattr(klass, table).get(name)
            if found is not None:
                return found
            klass = klass.superclass
        return None

    def find_method(self, name: str) -> Optional[LoxCallable]:
        return self._find("methods", name)

    def find_getter(self, name: str) -> Optional[LoxCallable]:
        return self._find("getters", name)

    def find_setter(self, name: str) -> Optional[LoxCallable]:
        return self._find("setters", name)

    def responds_to(self, name: str) -> bool:
        if self.find_method(name) or self.find_getter(name) or self.find_setter(name):
            return True
        meta = self.singleton_class
        return meta is not None and meta.find_method(name) is not None

    def includes(self, module: LoxModule) -> bool:
        klass = self.superclass
        while klass is not None:
            if klass.module is module:
                return True
            klass = klass.superclass
        return False

    def real_superclass(self) -> Optional['LoxClass']:
        """The nearest ancestor that is neither a mixin nor a singleton class."""
        klass = self.superclass
        while klass is not None and (klass.module is not None or klass.is_singleton):
            klass = klass.superclass
        return klass

    def ancestors(self) -> List[LoxModule]:
        result: List[LoxModule] = []
        klass = self
        while klass is not None:
            if not klass.is_singleton:
                entry = klass.module if klass.module is not None else klass
                if not any(entry is seen for seen in result):
                    result.append(entry)
            klass = klass.superclass
        return result

    def method_names(self, include_ancestors: bool = True) -> List[str]:
        names = [n for n in self.methods if n != "init"]
        if include_ancestors:
            klass = self.superclass
            while klass is not None:
                names.extend(n for n in klass.methods if n != "init" and n not in names)
                klass = klass.superclass
        return names

    def find_allocator(self) -> Optional[Callable[['LoxClass'], LoxInstance]]:
        klass = self
        while klass is not None:
            if klass.allocator is not None:
                return klass.allocator
            klass = klass.superclass
        return None

    def arity(self) -> Tuple[int, int]:
        init = self.find_method("init")
        if init is None:
            return 0, 0
        return init.arity()

    def keyword_names(self) -> frozenset:
        init = self.find_method("init")
        return init.keyword_names() if init is not None else frozenset()

    def call(self, interpreter, args, kwargs, call_token=None):
        if self.module is not None or self.is_singleton:
            interpreter.throw_error("TypeError", f"Can't instantiate {interpreter.stringify(self)}.", call_token)
        allocator = self.find_allocator()
        instance = allocator(self) if allocator is not None else LoxInstance(self)
        init = self.find_method("init")
        if init is not None:
            init.bind(instance).call(interpreter, args, kwargs, call_token)
        return instance

    def __repr__(self):
        if self.module is not None:
            return f"<module {self.module.display_name}>"
        return f"<class {self.display_name}>"

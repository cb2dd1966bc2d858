#!/usr/bin/env python3
"""
MonitorGuard front end: classes, slots and symbol resolution

Collects the mutable-state slots of each class from the Python AST,
resolves names and attribute accesses to Symbol handles and recognises
lock guards, condition waits and condition signals.

License: MIT
Version: 1.0.0
"""

import ast
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from monitorguard_model import Symbol, SymbolKind

logger = logging.getLogger(__name__)

# Factories of threading / multiprocessing / asyncio synchronization objects
LOCK_FACTORIES = {"Lock", "RLock", "Condition", "Semaphore", "BoundedSemaphore"}
CONDITION_FACTORIES = {"Condition"}

# Fallback when the origin of a guard is unknown (parameters, injected fields)
LOCK_NAME_PATTERN = re.compile(r"(lock|mutex|cond|cv|monitor|sync|guard)", re.IGNORECASE)

CONSTRUCTORS = {"__init__", "__new__", "__post_init__"}

ACCESSOR_DECORATORS = {"property", "cached_property"}
ACCESSOR_ATTRIBUTES = {"getter", "setter", "deleter"}

WAIT_METHODS = {"wait": "wait", "wait_for": "wait_for"}
SIGNAL_METHODS = {"notify": False, "notify_all": True, "notifyAll": True}

# Builtins that do not hide a state access of their own inside a predicate
PURE_BUILTINS = {"len", "bool", "any", "all", "min", "max", "abs", "sum", "int", "float"}

# Methods that mutate the container held by a slot
MUTATING_METHODS = {
    "add",
    "append",
    "appendleft",
    "clear",
    "difference_update",
    "discard",
    "extend",
    "extendleft",
    "get_nowait",
    "insert",
    "intersection_update",
    "pop",
    "popitem",
    "popleft",
    "put",
    "put_nowait",
    "remove",
    "reverse",
    "rotate",
    "setdefault",
    "sort",
    "symmetric_difference_update",
    "update",
}

MODULE_OWNER = "<module>"


class MonitorCall(Enum):
    """Classification of an invocation by the wait/signal recognizer"""

    NONE = "none"
    WAIT = "wait"
    WAIT_FOR = "wait_for"
    SIGNAL = "signal"
    BROADCAST = "broadcast"


def dotted_name(node: ast.AST) -> Optional[str]:
    """Return 'a.b.c' for a chain of names and attributes"""
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        return ".".join(reversed(parts))
    return None


def factory_name(value: Optional[ast.AST]) -> Optional[str]:
    """Name of the callable that produced a value, e.g. 'Condition' for threading.Condition()"""
    if isinstance(value, ast.Call):
        name = dotted_name(value.func)
        if name:
            return name.rsplit(".", 1)[-1]
    return None


def subscript_slice(node: ast.Subscript) -> ast.AST:
    """Index expression of a subscript; Python 3.8 wraps it in ast.Index"""
    inner = node.slice
    if type(inner).__name__ == "Index":
        inner = inner.value
    return inner


def is_constructor(name: str) -> bool:
    return name in CONSTRUCTORS


def is_public_member(name: str) -> bool:
    if name.startswith("__") and name.endswith("__"):
        return not is_constructor(name)
    return not name.startswith("_")


def _decorator_names(func: ast.AST) -> List[str]:
    names = []
    for decorator in getattr(func, "decorator_list", []):
        target = decorator.func if isinstance(decorator, ast.Call) else decorator
        name = dotted_name(target)
        if name:
            names.append(name)
    return names


def is_accessor(func: ast.AST) -> bool:
    for name in _decorator_names(func):
        parts = name.split(".")
        if parts[-1] in ACCESSOR_DECORATORS:
            return True
        if len(parts) == 2 and parts[-1] in ACCESSOR_ATTRIBUTES:
            return True
    return False


def is_static(func: ast.AST) -> bool:
    return any(name.split(".")[-1] == "staticmethod" for name in _decorator_names(func))


def _is_final_annotation(annotation: Optional[ast.AST]) -> bool:
    if annotation is None:
        return False
    if isinstance(annotation, ast.Subscript):
        annotation = annotation.value
    if isinstance(annotation, ast.Constant) and isinstance(annotation.value, str):
        return annotation.value.split("[", 1)[0].rsplit(".", 1)[-1] == "Final"
    name = dotted_name(annotation)
    return bool(name) and name.rsplit(".", 1)[-1] == "Final"


def _iter_stores(node: ast.AST) -> Iterator[ast.AST]:
    """Walk a function body without entering nested classes"""
    for child in ast.iter_child_nodes(node):
        if isinstance(child, ast.ClassDef):
            continue
        yield child
        yield from _iter_stores(child)


def _local_names(body: List[ast.stmt]) -> Set[str]:
    """Names bound in a function body, excluding nested function scopes"""
    names: Set[str] = set()
    declared_outer: Set[str] = set()
    stack: List[ast.AST] = list(body)
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
            continue
        if isinstance(node, ast.Lambda):
            continue
        if isinstance(node, (ast.Global, ast.Nonlocal)):
            declared_outer.update(node.names)
        elif isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            names.add(node.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                names.add((alias.asname or alias.name).split(".")[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        stack.extend(ast.iter_child_nodes(node))
    return names - declared_outer


def _parameters(args: ast.arguments) -> List[ast.arg]:
    params = list(getattr(args, "posonlyargs", [])) + list(args.args)
    if args.vararg:
        params.append(args.vararg)
    params.extend(args.kwonlyargs)
    if args.kwarg:
        params.append(args.kwarg)
    return params


@dataclass
class FunctionScope:
    """Lexical scope of a method, nested function or lambda"""

    owner: str
    params: Dict[str, Optional[ast.expr]] = field(default_factory=dict)
    local_names: Set[str] = field(default_factory=set)
    instance_name: Optional[str] = None
    parent: Optional["FunctionScope"] = None

    @classmethod
    def for_function(
        cls,
        node: ast.AST,
        owner: str,
        parent: Optional["FunctionScope"] = None,
        is_method: bool = False,
    ) -> "FunctionScope":
        params = _parameters(node.args)
        positional = list(getattr(node.args, "posonlyargs", [])) + list(node.args.args)
        instance_name = None
        if is_method and not is_static(node) and positional:
            instance_name = positional[0].arg
            params = [p for p in params if p is not positional[0]]
        return cls(
            owner=owner,
            params={p.arg: p.annotation for p in params},
            local_names=_local_names(node.body) if isinstance(node.body, list) else set(),
            instance_name=instance_name,
            parent=parent,
        )

    def lookup(self, name: str) -> Tuple[Optional[SymbolKind], Optional["FunctionScope"]]:
        scope = self
        while scope is not None:
            if name == scope.instance_name:
                return SymbolKind.INSTANCE, scope
            if name in scope.params:
                return SymbolKind.PARAMETER, scope
            if name in scope.local_names:
                return SymbolKind.LOCAL, scope
            scope = scope.parent
        return None, None


class ClassModel:
    """Slots and members of one class declaration"""

    def __init__(self, node: ast.ClassDef, qualname: str):
        self.node = node
        self.qualname = qualname
        self.name = node.name
        self.methods: Set[str] = set()
        self.fields: Dict[str, Symbol] = {}
        self._collect()

    def _collect(self):
        order: List[str] = []
        class_level: Dict[str, Tuple[Optional[ast.AST], Optional[ast.AST]]] = {}
        self_stores: Dict[str, List[bool]] = {}
        init_values: Dict[str, ast.AST] = {}
        final_in_init: Set[str] = set()

        for stmt in self.node.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self.methods.add(stmt.name)
            elif isinstance(stmt, ast.Assign):
                for target in stmt.targets:
                    for name in self._target_names(target):
                        class_level.setdefault(name, (stmt.value, None))
                        order.append(name)
                        if name == "__slots__":
                            for slot in self._slot_names(stmt.value):
                                order.append(slot)
                                self_stores.setdefault(slot, [])
            elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                class_level.setdefault(stmt.target.id, (stmt.value, stmt.annotation))
                order.append(stmt.target.id)

        for stmt in self.node.body:
            if not isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            positional = list(getattr(stmt.args, "posonlyargs", [])) + list(stmt.args.args)
            if is_static(stmt) or not positional:
                continue
            instance = positional[0].arg
            in_constructor = is_constructor(stmt.name)
            for node in _iter_stores(stmt):
                if (
                    isinstance(node, ast.Attribute)
                    and isinstance(node.ctx, (ast.Store, ast.Del))
                    and isinstance(node.value, ast.Name)
                    and node.value.id == instance
                ):
                    order.append(node.attr)
                    self_stores.setdefault(node.attr, []).append(in_constructor)
                elif in_constructor and isinstance(node, (ast.Assign, ast.AnnAssign)):
                    targets = node.targets if isinstance(node, ast.Assign) else [node.target]
                    for target in targets:
                        if not (
                            isinstance(target, ast.Attribute)
                            and isinstance(target.value, ast.Name)
                            and target.value.id == instance
                        ):
                            continue
                        if node.value is not None:
                            init_values.setdefault(target.attr, node.value)
                        if isinstance(node, ast.AnnAssign) and _is_final_annotation(node.annotation):
                            final_in_init.add(target.attr)

        seen: Set[str] = set()
        for name in order:
            if name in seen or name in self.methods or (name.startswith("__") and name.endswith("__")):
                continue
            seen.add(name)
            value, annotation = class_level.get(name, (None, None))
            stores = self_stores.get(name, [])
            is_const = name in class_level and not stores and (
                _is_final_annotation(annotation) or (name.isupper() and any(c.isalpha() for c in name))
            )
            self.fields[name] = Symbol(
                kind=SymbolKind.FIELD,
                name=name,
                owner=self.qualname,
                is_const=is_const,
                # read-only means declared Final and never rebound after construction
                is_readonly=(name in final_in_init or _is_final_annotation(annotation)) and all(stores),
                factory=factory_name(init_values.get(name)) or factory_name(value),
                order=len(self.fields),
            )
        logger.debug("class %s: %d slots, %d methods", self.qualname, len(self.fields), len(self.methods))

    @staticmethod
    def _target_names(target: ast.AST) -> List[str]:
        if isinstance(target, ast.Name):
            return [target.id]
        if isinstance(target, (ast.Tuple, ast.List)):
            return [n for elt in target.elts for n in ClassModel._target_names(elt)]
        return []

    @staticmethod
    def _slot_names(value: ast.AST) -> List[str]:
        if isinstance(value, ast.Constant) and isinstance(value.value, str):
            return [value.value]
        if isinstance(value, (ast.Tuple, ast.List)):
            return [e.value for e in value.elts if isinstance(e, ast.Constant) and isinstance(e.value, str)]
        return []

    @property
    def slots(self) -> List[Symbol]:
        return list(self.fields.values())

    def instance_symbol(self) -> Symbol:
        return Symbol(SymbolKind.INSTANCE, "self", self.qualname)

    def member(self, name: str) -> Optional[Symbol]:
        if name in self.fields:
            return self.fields[name]
        if name in self.methods:
            return Symbol(SymbolKind.METHOD, name, self.qualname)
        return None


def iter_classes(tree: ast.AST) -> Iterator[Tuple[ast.ClassDef, str]]:
    """Yield every class of a module with its qualified name, in source order"""

    def _walk(node: ast.AST, prefix: str):
        for child in ast.iter_child_nodes(node):
            if isinstance(child, ast.ClassDef):
                qualname = f"{prefix}{child.name}"
                yield child, qualname
                yield from _walk(child, qualname + ".")
            elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                yield from _walk(child, f"{prefix}{child.name}.<locals>.")
            else:
                yield from _walk(child, prefix)

    yield from _walk(tree, "")


def module_factories(tree: ast.Module) -> Dict[str, Optional[str]]:
    """Module-level names and the factory they were created from"""
    factories: Dict[str, Optional[str]] = {}
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    factories.setdefault(target.id, factory_name(stmt.value))
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            factories.setdefault(stmt.target.id, factory_name(stmt.value))
    return factories


class SymbolResolver:
    """resolve(node, scope) -> Symbol | None for one class"""

    def __init__(self, model: ClassModel, globals_: Optional[Dict[str, Optional[str]]] = None):
        self.model = model
        self.globals = globals_ or {}

    def resolve(self, node: ast.AST, scope: Optional[FunctionScope]) -> Optional[Symbol]:
        if isinstance(node, ast.Name):
            return self._resolve_name(node.id, scope)
        if isinstance(node, ast.Attribute):
            receiver = self.resolve(node.value, scope)
            if receiver is None:
                return None
            return self._resolve_member(receiver, node.attr, scope)
        return None

    def _resolve_name(self, name: str, scope: Optional[FunctionScope]) -> Symbol:
        kind, owner_scope = scope.lookup(name) if scope is not None else (None, None)
        if kind is SymbolKind.INSTANCE:
            return self.model.instance_symbol()
        if kind is not None:
            return Symbol(kind, name, owner_scope.owner)
        return Symbol(SymbolKind.GLOBAL, name, MODULE_OWNER, factory=self.globals.get(name))

    def _resolve_member(self, receiver: Symbol, attr: str, scope: Optional[FunctionScope]) -> Optional[Symbol]:
        if receiver.kind is SymbolKind.INSTANCE:
            return self.model.member(attr)
        if receiver.kind is SymbolKind.PARAMETER:
            annotation = self._annotation_of(receiver, scope)
            if self._is_own_type(annotation):
                return self.model.member(attr)
            member = self.model.member(attr)
            # untyped receivers only match the class's own lock slots
            if annotation is None and member is not None and member.factory in LOCK_FACTORIES:
                return member
            return None
        if receiver.kind is SymbolKind.GLOBAL and receiver.name == self.model.name:
            return self.model.member(attr)
        return None

    @staticmethod
    def _annotation_of(symbol: Symbol, scope: Optional[FunctionScope]) -> Optional[ast.expr]:
        while scope is not None:
            if scope.owner == symbol.owner:
                return scope.params.get(symbol.name)
            scope = scope.parent
        return None

    def _is_own_type(self, annotation: Optional[ast.expr]) -> bool:
        if annotation is None:
            return False
        if isinstance(annotation, ast.Constant) and isinstance(annotation.value, str):
            text = annotation.value.strip()
            for wrapper in ("Optional[", "typing.Optional["):
                if text.startswith(wrapper) and text.endswith("]"):
                    text = text[len(wrapper) : -1]
            return text.rsplit(".", 1)[-1] == self.model.name
        if isinstance(annotation, ast.Subscript) and dotted_name(annotation.value) in ("Optional", "typing.Optional"):
            return self._is_own_type(subscript_slice(annotation))
        name = dotted_name(annotation)
        return bool(name) and name.rsplit(".", 1)[-1] == self.model.name

    def root_receiver(self, expr: ast.AST) -> ast.AST:
        """Follow member accesses down to the receiver, e.g. other for other._lock"""
        while isinstance(expr, ast.Attribute):
            expr = expr.value
        return expr

    def resolve_root(self, expr: ast.AST, scope: Optional[FunctionScope]) -> Optional[Symbol]:
        return self.resolve(self.root_receiver(expr), scope)

    # -- recognizers -------------------------------------------------------

    def is_lock_guard(self, expr: ast.AST, symbol: Optional[Symbol]) -> bool:
        """Decide whether a with-item context expression acquires a lock"""
        if isinstance(expr, ast.Call):
            return factory_name(expr) in LOCK_FACTORIES
        if symbol is None:
            if isinstance(expr, ast.Attribute):
                return bool(LOCK_NAME_PATTERN.search(expr.attr))
            return False
        if symbol.kind in (SymbolKind.METHOD, SymbolKind.INSTANCE):
            return False
        if symbol.factory is not None:
            return symbol.factory in LOCK_FACTORIES
        return bool(LOCK_NAME_PATTERN.search(symbol.name))

    def classify_monitor_call(
        self,
        call: ast.Call,
        guard_symbol: Optional[Symbol],
        held_guards: FrozenSet[Symbol] = frozenset(),
    ) -> MonitorCall:
        if not isinstance(call.func, ast.Attribute) or guard_symbol is None:
            return MonitorCall.NONE
        attr = call.func.attr
        if attr not in WAIT_METHODS and attr not in SIGNAL_METHODS:
            return MonitorCall.NONE
        if guard_symbol.kind in (SymbolKind.METHOD, SymbolKind.INSTANCE):
            return MonitorCall.NONE
        if guard_symbol.factory is not None:
            if guard_symbol.factory not in CONDITION_FACTORIES:
                return MonitorCall.NONE
        elif guard_symbol not in held_guards and not LOCK_NAME_PATTERN.search(guard_symbol.name):
            return MonitorCall.NONE
        if attr == "wait":
            return MonitorCall.WAIT
        if attr == "wait_for":
            return MonitorCall.WAIT_FOR
        return MonitorCall.BROADCAST if SIGNAL_METHODS[attr] else MonitorCall.SIGNAL

    @staticmethod
    def monitor_guard(call: ast.Call) -> Optional[ast.expr]:
        if isinstance(call.func, ast.Attribute):
            return call.func.value
        return None

    @staticmethod
    def wait_for_predicate(call: ast.Call) -> Optional[ast.expr]:
        if call.args:
            return call.args[0]
        for keyword in call.keywords:
            if keyword.arg == "predicate":
                return keyword.value
        return None

    # -- predicate analysis --------------------------------------------------

    def analyze_predicate(
        self, expr: ast.expr, scope: Optional[FunctionScope]
    ) -> Tuple[Optional[FrozenSet[Symbol]], bool]:
        """Return (monitored slots or None if unanalyzable, parameter dependent)"""
        if isinstance(expr, ast.Lambda):
            scope = FunctionScope.for_function(expr, f"{scope.owner if scope else MODULE_OWNER}.<lambda>", scope)
            expr = expr.body

        parameter_dependent = False
        analyzable = True
        slots: Set[Symbol] = set()
        for node in ast.walk(expr):
            if isinstance(node, ast.Name):
                symbol = self.resolve(node, scope)
                if symbol.kind is SymbolKind.PARAMETER:
                    parameter_dependent = True
                if symbol.kind is SymbolKind.INSTANCE:
                    continue
                if symbol.kind is SymbolKind.GLOBAL and symbol.name in PURE_BUILTINS:
                    continue
                analyzable = False
            elif isinstance(node, ast.Attribute):
                receiver = self.resolve(node.value, scope) if isinstance(node.value, ast.Name) else None
                symbol = self.resolve(node, scope) if receiver is not None else None
                if receiver is None or receiver.kind is not SymbolKind.INSTANCE or symbol is None or not symbol.is_field:
                    analyzable = False
                else:
                    slots.add(symbol)
            elif isinstance(node, ast.Call):
                if not (isinstance(node.func, ast.Name) and node.func.id in PURE_BUILTINS):
                    analyzable = False
            elif isinstance(node, (ast.Lambda, ast.Await, ast.NamedExpr, ast.Yield, ast.YieldFrom)):
                analyzable = False

        if not analyzable or not slots:
            return None, parameter_dependent
        return frozenset(slots), parameter_dependent

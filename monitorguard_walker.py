#!/usr/bin/env python3
"""
MonitorGuard traversal: scope/critical-section tracker and access recorder

One depth-first walk per class. The walk threads an immutable
TraversalContext (activation frames, critical sections, loops enclosed by a
critical section, lexical scopes) through the visitor and fills a TypeFacts
instance with access records and the critical-section, wait, signal and
write tables the inference algorithms consume afterwards.

License: MIT
Version: 1.0.0
"""

import ast
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import FrozenSet, Iterable, Optional, Set, Tuple

from monitorguard_model import (
    AccessRecord,
    ActivationFrame,
    CancellationToken,
    ConditionSignal,
    ConditionWait,
    CriticalSection,
    FrameKind,
    SlotWrite,
    Symbol,
    TypeFacts,
)
from monitorguard_symbols import (
    MUTATING_METHODS,
    ClassModel,
    FunctionScope,
    MonitorCall,
    SymbolResolver,
    is_accessor,
    is_constructor,
    is_public_member,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopFrame:
    """A while loop entered while at least one critical section was active"""

    node: ast.While
    sections: Tuple[CriticalSection, ...]


@dataclass(frozen=True)
class TraversalContext:
    """Immutable walk state; every push yields a new context"""

    frames: Tuple[Optional[ActivationFrame], ...] = ()
    sections: Tuple[CriticalSection, ...] = ()
    loops: Tuple[LoopFrame, ...] = ()
    scope: Optional[FunctionScope] = None

    @property
    def has_enclosing_frame(self) -> bool:
        return bool(self.frames) and self.frames[-1] is not None

    @property
    def current_frame(self) -> Optional[ActivationFrame]:
        return self.frames[-1] if self.frames else None

    @property
    def is_inside_lock(self) -> bool:
        return self.lock_depth > 0

    @property
    def lock_depth(self) -> int:
        return len(self.sections)

    @property
    def current_lock(self) -> Optional[CriticalSection]:
        return self.sections[-1] if self.sections else None

    @property
    def is_inside_loop_enclosed_by_lock(self) -> bool:
        return bool(self.loops)

    @property
    def current_loop_enclosed_by_lock(self) -> Optional[LoopFrame]:
        return self.loops[-1] if self.loops else None

    @property
    def held_guards(self) -> FrozenSet[Symbol]:
        return frozenset(s.guard_symbol for s in self.sections if s.guard_symbol is not None)

    def enter_frame(self, frame: Optional[ActivationFrame]) -> "TraversalContext":
        # None marks a body whose accesses are never recorded (closures,
        # constructors, non-public members)
        return replace(self, frames=self.frames + (frame,))

    def enter_section(self, section: CriticalSection) -> "TraversalContext":
        return replace(self, sections=self.sections + (section,))

    def enter_loop(self, loop: ast.While) -> "TraversalContext":
        return replace(self, loops=self.loops + (LoopFrame(loop, self.sections),))

    def enter_scope(self, scope: FunctionScope) -> "TraversalContext":
        return replace(self, scope=scope)


class TypeWalker(ast.NodeVisitor):
    """Walks one class body and accumulates its TypeFacts"""

    def __init__(
        self,
        model: ClassModel,
        resolver: SymbolResolver,
        fields_to_track: Optional[Iterable[Symbol]] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.model = model
        self.resolver = resolver
        self.cancellation = cancellation
        self.fields_to_track: Set[Symbol] = set(model.slots if fields_to_track is None else fields_to_track)
        self.facts = TypeFacts(type_name=model.qualname, node=model.node, slots=model.slots)
        self.context = TraversalContext()
        self._compound_targets: Set[int] = set()
        self._recorded: Set[Tuple[int, bool]] = set()

    def walk(self) -> TypeFacts:
        for stmt in self.model.node.body:
            self.visit(stmt)
        logger.debug(
            "class %s: %d accesses, %d critical sections, %d waits, %d signals",
            self.model.qualname,
            len(self.facts.accesses),
            len(self.facts.critical_sections),
            len(self.facts.waits),
            len(self.facts.signals),
        )
        return self.facts

    def visit(self, node):
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()
        return super().visit(node)

    @contextmanager
    def _entered(self, context: TraversalContext):
        outer = self.context
        self.context = context
        try:
            yield
        finally:
            self.context = outer

    # -- frames and scopes ---------------------------------------------------

    def visit_FunctionDef(self, node):
        outer_scope = self.context.scope
        is_member = outer_scope is None
        if is_member:
            owner = f"{self.model.qualname}.{node.name}"
        else:
            owner = f"{outer_scope.owner}.<locals>.{node.name}"
        scope = FunctionScope.for_function(node, owner, outer_scope, is_method=is_member)

        frame = None
        if is_member and is_public_member(node.name) and not is_constructor(node.name):
            kind = FrameKind.ACCESSOR if is_accessor(node) else FrameKind.METHOD
            frame = ActivationFrame(node, node.name, kind)

        with self._entered(self.context.enter_scope(scope).enter_frame(frame)):
            for stmt in node.body:
                self.visit(stmt)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node):
        outer_scope = self.context.scope
        owner = f"{outer_scope.owner if outer_scope else self.model.qualname}.<lambda>"
        scope = FunctionScope.for_function(node, owner, outer_scope)
        with self._entered(self.context.enter_scope(scope).enter_frame(None)):
            self.visit(node.body)

    def visit_ClassDef(self, node):
        # Nested classes are analysed on their own
        return

    # -- critical sections and loops -----------------------------------------

    def visit_With(self, node):
        context = self.context
        for item in node.items:
            guard = item.context_expr
            symbol = self.resolver.resolve(guard, context.scope)
            if self.resolver.is_lock_guard(guard, symbol):
                section = CriticalSection(
                    node=node,
                    guard=guard,
                    guard_symbol=symbol,
                    root_symbol=self.resolver.resolve_root(guard, context.scope),
                    parent=context.current_lock,
                    index=len(self.facts.critical_sections),
                )
                self._register_section(section)
                context = context.enter_section(section)
            else:
                with self._entered(context):
                    self.visit(guard)
            if item.optional_vars is not None:
                with self._entered(context):
                    self.visit(item.optional_vars)
        with self._entered(context):
            for stmt in node.body:
                self.visit(stmt)

    visit_AsyncWith = visit_With

    def _register_section(self, section: CriticalSection):
        self.facts.critical_sections.append(section)
        self.facts.lock_tree.add_node(section)
        if section.parent is not None:
            self.facts.lock_tree.add_edge(section.parent, section)

    def visit_While(self, node):
        if self.context.is_inside_lock:
            with self._entered(self.context.enter_loop(node)):
                self.generic_visit(node)
        else:
            self.generic_visit(node)

    # -- accesses --------------------------------------------------------------

    def visit_AugAssign(self, node):
        self._compound_targets.add(id(node.target))
        self.generic_visit(node)

    def visit_Attribute(self, node):
        symbol = self.resolver.resolve(node, self.context.scope)
        if symbol is not None and symbol.is_field:
            self._track_access(symbol, node)
        self.generic_visit(node)

    def visit_Subscript(self, node):
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            symbol = self.resolver.resolve(node.value, self.context.scope)
            if symbol is not None and symbol.is_field:
                self.facts.writes.append(SlotWrite(symbol, node, self.context.current_lock, in_place=True))
        self.generic_visit(node)

    def _track_access(self, slot: Symbol, node: ast.Attribute):
        context = self.context
        writing = isinstance(node.ctx, (ast.Store, ast.Del))
        if writing:
            self.facts.writes.append(SlotWrite(slot, node, context.current_lock))
        if not context.has_enclosing_frame or slot not in self.fields_to_track:
            return
        if writing:
            self._add_access(slot, node, True)
            if id(node) in self._compound_targets:
                self._add_access(slot, node, False)
        else:
            self._add_access(slot, node, False)

    def _add_access(self, slot: Symbol, node: ast.AST, writing: bool):
        key = (id(node), writing)
        if key in self._recorded:
            return
        self._recorded.add(key)
        self.facts.accesses.append(
            AccessRecord(
                slot=slot,
                node=node,
                frame=self.context.current_frame,
                critical_section=self.context.current_lock,
                is_write=writing,
            )
        )

    # -- condition waits and signals -------------------------------------------

    def visit_Call(self, node):
        if isinstance(node.func, ast.Attribute):
            context = self.context
            symbol = self.resolver.resolve(self.resolver.monitor_guard(node), context.scope)
            if symbol is not None and symbol.is_field and node.func.attr in MUTATING_METHODS:
                self.facts.writes.append(SlotWrite(symbol, node, context.current_lock, in_place=True))
            kind = self.resolver.classify_monitor_call(node, symbol, context.held_guards)
            if kind in (MonitorCall.WAIT, MonitorCall.WAIT_FOR):
                self._track_wait(node, symbol, kind)
            elif kind in (MonitorCall.SIGNAL, MonitorCall.BROADCAST):
                self._track_signal(node, symbol, kind is MonitorCall.BROADCAST)
        self.generic_visit(node)

    def _track_wait(self, node: ast.Call, guard: Symbol, kind: MonitorCall):
        context = self.context
        loop = None
        predicate = None
        if kind is MonitorCall.WAIT_FOR:
            predicate = self.resolver.wait_for_predicate(node)
        elif context.is_inside_loop_enclosed_by_lock:
            candidate = context.current_loop_enclosed_by_lock
            if any(section.guard_symbol == guard for section in candidate.sections):
                loop = candidate.node
                predicate = loop.test

        monitored, parameter_dependent = None, False
        if predicate is not None:
            monitored, parameter_dependent = self.resolver.analyze_predicate(predicate, context.scope)
        self.facts.waits.append(
            ConditionWait(
                node=node,
                guard_symbol=guard,
                loop=loop,
                predicate=predicate,
                monitored_slots=monitored,
                parameter_dependent=parameter_dependent,
                active_sections=context.sections,
                is_wait_for=kind is MonitorCall.WAIT_FOR,
            )
        )

    def _track_signal(self, node: ast.Call, guard: Symbol, broadcast: bool):
        section = next(
            (s for s in reversed(self.context.sections) if s.guard_symbol == guard),
            None,
        )
        self.facts.signals.append(ConditionSignal(node, guard, section, broadcast))


def collect_type_facts(
    model: ClassModel,
    resolver: SymbolResolver,
    fields_to_track: Optional[Iterable[Symbol]] = None,
    cancellation: Optional[CancellationToken] = None,
) -> TypeFacts:
    """Run the single walk over one class"""
    return TypeWalker(model, resolver, fields_to_track, cancellation).walk()

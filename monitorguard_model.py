#!/usr/bin/env python3
"""
MonitorGuard data model

Symbols, activation frames, critical sections, access records and the
condition wait/signal tables collected while walking one class, plus the
cooperative cancellation token shared by the walker and the inference
algorithms.

License: MIT
Version: 1.0.0
"""

import ast
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

import networkx as nx


class MonitorGuardError(Exception):
    """Base class for all errors raised by MonitorGuard"""


class AnalysisCancelled(MonitorGuardError):
    """Raised when the host cancels a running analysis"""


class SourceError(MonitorGuardError):
    """A compilation unit could not be read or parsed"""


class CancellationToken:
    """Cooperative cancellation flag checked between node visits"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise AnalysisCancelled("analysis cancelled")


class SymbolKind(Enum):
    """Kinds of symbols the resolver distinguishes"""

    FIELD = "field"
    PARAMETER = "parameter"
    LOCAL = "local"
    INSTANCE = "instance"  # self / cls
    METHOD = "method"
    GLOBAL = "global"


@dataclass(frozen=True)
class Symbol:
    """Opaque symbol handle; equality is (kind, owner, name), never the bare name"""

    kind: SymbolKind
    name: str
    owner: str
    is_const: bool = field(default=False, compare=False)
    is_readonly: bool = field(default=False, compare=False)
    is_volatile: bool = field(default=False, compare=False)
    factory: Optional[str] = field(default=None, compare=False)
    order: int = field(default=0, compare=False)

    @property
    def is_field(self) -> bool:
        return self.kind is SymbolKind.FIELD

    @property
    def is_parameter(self) -> bool:
        return self.kind is SymbolKind.PARAMETER

    def __str__(self):
        return self.name


class FrameKind(Enum):
    METHOD = "method"
    ACCESSOR = "accessor"


@dataclass(eq=False)
class ActivationFrame:
    """A public method or accessor body treated as one sequential unit"""

    node: ast.AST
    name: str
    kind: FrameKind = FrameKind.METHOD

    def __repr__(self):
        return f"ActivationFrame({self.name!r}, {self.kind.value})"


@dataclass(eq=False)
class CriticalSection:
    """One guarded item of a with statement"""

    node: ast.AST
    guard: ast.expr
    guard_symbol: Optional[Symbol]
    root_symbol: Optional[Symbol]
    parent: Optional["CriticalSection"] = None
    index: int = 0

    @property
    def line(self) -> int:
        return getattr(self.node, "lineno", 0)

    @property
    def column(self) -> int:
        return getattr(self.node, "col_offset", 0) + 1

    def __repr__(self):
        guard = self.guard_symbol.name if self.guard_symbol else "?"
        return f"CriticalSection({guard!r}, line={self.line})"


@dataclass(frozen=True)
class AccessRecord:
    """One read or write of a tracked slot"""

    slot: Symbol
    node: ast.AST
    frame: ActivationFrame
    critical_section: Optional[CriticalSection]
    is_write: bool

    @property
    def is_inside_lock(self) -> bool:
        return self.critical_section is not None

    @property
    def line(self) -> int:
        return getattr(self.node, "lineno", 0)

    def __str__(self):
        mode = "write" if self.is_write else "read"
        return (
            f"[slot={self.slot.name}, line={self.line}, {mode}, "
            f"frame={self.frame.name}, locked={self.is_inside_lock}]"
        )


@dataclass(frozen=True)
class SlotWrite:
    """A mutation of a slot, recorded regardless of the enclosing frame"""

    slot: Symbol
    node: ast.AST
    critical_section: Optional[CriticalSection]
    in_place: bool = False  # container mutation such as self.items.append(x)


@dataclass(eq=False)
class ConditionWait:
    """A blocking wait bound to a guard symbol"""

    node: ast.Call
    guard_symbol: Symbol
    loop: Optional[ast.AST]
    predicate: Optional[ast.expr]
    monitored_slots: Optional[FrozenSet[Symbol]]
    parameter_dependent: bool
    active_sections: Tuple[CriticalSection, ...]
    is_wait_for: bool = False

    @property
    def is_conditional(self) -> bool:
        """True when the wait re-checks a predicate (loop or wait_for)"""
        return self.predicate is not None

    @property
    def line(self) -> int:
        return getattr(self.node, "lineno", 0)


@dataclass(eq=False)
class ConditionSignal:
    """A notify / notify_all bound to a guard symbol"""

    node: ast.Call
    guard_symbol: Symbol
    critical_section: Optional[CriticalSection]
    is_broadcast: bool

    @property
    def line(self) -> int:
        return getattr(self.node, "lineno", 0)


@dataclass(frozen=True)
class Finding:
    """Raw result of an inference algorithm, formatted later by a rule"""

    node: ast.AST
    args: Tuple = ()
    slot: Optional[Symbol] = None

    @property
    def line(self) -> int:
        return getattr(self.node, "lineno", 0)

    @property
    def column(self) -> int:
        return getattr(self.node, "col_offset", 0) + 1


@dataclass
class TypeFacts:
    """Everything the single walk over one class accumulates"""

    type_name: str
    node: Optional[ast.ClassDef] = None
    slots: List[Symbol] = field(default_factory=list)
    accesses: List[AccessRecord] = field(default_factory=list)
    critical_sections: List[CriticalSection] = field(default_factory=list)
    lock_tree: nx.DiGraph = field(default_factory=nx.DiGraph)
    waits: List[ConditionWait] = field(default_factory=list)
    signals: List[ConditionSignal] = field(default_factory=list)
    writes: List[SlotWrite] = field(default_factory=list)

    def accesses_for_slot(self, slot: Symbol) -> List[AccessRecord]:
        return [a for a in self.accesses if a.slot == slot]

    def accesses_in_frame(self, frame: ActivationFrame) -> List[AccessRecord]:
        return [a for a in self.accesses if a.frame is frame]

    def accesses_in_section(self, section: CriticalSection) -> List[AccessRecord]:
        return [a for a in self.accesses if a.critical_section is section]

    def nested_sections(self, section: CriticalSection) -> List[CriticalSection]:
        """Sections lexically nested in section, directly or indirectly, in walk order"""
        if section not in self.lock_tree:
            return []
        return sorted(nx.descendants(self.lock_tree, section), key=lambda s: s.index)

    def waits_by_guard(self) -> Dict[Symbol, List[ConditionWait]]:
        grouped: Dict[Symbol, List[ConditionWait]] = {}
        for wait in self.waits:
            grouped.setdefault(wait.guard_symbol, []).append(wait)
        return grouped

    def signals_by_guard(self) -> Dict[Symbol, List[ConditionSignal]]:
        grouped: Dict[Symbol, List[ConditionSignal]] = {}
        for signal in self.signals:
            grouped.setdefault(signal.guard_symbol, []).append(signal)
        return grouped

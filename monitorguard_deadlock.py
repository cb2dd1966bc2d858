#!/usr/bin/env python3
"""
MonitorGuard deadlock risk detection

Nested critical sections on the same declared lock slot reached through two
different instances (self._lock then other._lock) can be entered in opposite
order by two threads. The nesting graph built during the walk is searched
with networkx, ignoring frame boundaries.

License: MIT
Version: 1.0.0
"""

import logging
from typing import List, Optional

from monitorguard_model import CancellationToken, CriticalSection, Finding, TypeFacts

logger = logging.getLogger(__name__)


def _field_guard(section: CriticalSection):
    symbol = section.guard_symbol
    if symbol is None or not symbol.is_field:
        return None
    return symbol


def _use_different_instances(outer: CriticalSection, inner: CriticalSection) -> bool:
    roots = (outer.root_symbol, inner.root_symbol)
    if any(root is None for root in roots):
        return False
    # Two parameters may be ordered by the caller, so only the self/other shape counts
    return sum(1 for root in roots if root.is_parameter) == 1


def can_deadlock(outer: CriticalSection, inner: CriticalSection) -> bool:
    outer_guard = _field_guard(outer)
    inner_guard = _field_guard(inner)
    if outer_guard is None or inner_guard is None:
        return False
    return outer_guard == inner_guard and _use_different_instances(outer, inner)


def find_deadlock_risks(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    """One finding per outer critical section with a risky nested section"""
    findings = []
    for section in facts.critical_sections:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if _field_guard(section) is None:
            continue
        for inner in facts.nested_sections(section):
            if can_deadlock(section, inner):
                logger.debug(
                    "%s: %s at line %d nests %s at line %d through another instance",
                    facts.type_name,
                    section.guard_symbol,
                    section.line,
                    inner.guard_symbol,
                    inner.line,
                )
                findings.append(Finding(section.node, (section.guard_symbol.name,), section.guard_symbol))
                break
    return findings


def find_guard_reassignments(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    """Report the first rebinding of a guard slot inside the section it guards"""
    findings = []
    for section in facts.critical_sections:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        guard = _field_guard(section)
        if guard is None:
            continue
        inside = {section, *facts.nested_sections(section)}
        for write in facts.writes:
            if not write.in_place and write.slot == guard and write.critical_section in inside:
                findings.append(Finding(write.node, (guard.name,), guard))
                break
    return findings

#!/usr/bin/env python3
"""
MonitorGuard wait/signal correlation

Checks that condition signals can actually wake their waiters: the signaling
critical section must mutate a slot the waiter re-checks, unicast signals
must not serve parameter-dependent or multiple waiters, and waits must not
hold foreign locks or skip the re-check loop.

License: MIT
Version: 1.0.0
"""

import logging
from typing import Dict, List, Optional, Set

from monitorguard_model import (
    CancellationToken,
    ConditionSignal,
    ConditionWait,
    CriticalSection,
    Finding,
    Symbol,
    TypeFacts,
)

logger = logging.getLogger(__name__)


def _checkpoint(cancellation: Optional[CancellationToken]):
    if cancellation is not None:
        cancellation.raise_if_cancelled()


def mutated_slots(facts: TypeFacts, section: CriticalSection) -> Set[Symbol]:
    """Slots written lexically inside section, nested sections included"""
    inside = {section, *facts.nested_sections(section)}
    return {write.slot for write in facts.writes if write.critical_section in inside}


def find_ineffective_signals(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    """
    Report a signal once per waiter whose predicate cannot be affected by the
    signaling critical section. The finding carries the waiter's line.
    """
    waits = facts.waits_by_guard()
    changes: Dict[CriticalSection, Set[Symbol]] = {}
    findings = []
    for signal in facts.signals:
        _checkpoint(cancellation)
        if signal.critical_section is None:
            continue
        section = signal.critical_section
        if section not in changes:
            changes[section] = mutated_slots(facts, section)
        for wait in waits.get(signal.guard_symbol, []):
            if wait.monitored_slots is None:
                continue
            if not wait.monitored_slots & changes[section]:
                logger.debug(
                    "%s: signal at line %d does not touch %s watched at line %d",
                    facts.type_name,
                    signal.line,
                    sorted(s.name for s in wait.monitored_slots),
                    wait.line,
                )
                findings.append(Finding(signal.node, (wait.line,), signal.guard_symbol))
    return findings


def _unicast_signals(facts: TypeFacts, guards: Set[Symbol]) -> List[Finding]:
    return [
        Finding(signal.node, (signal.guard_symbol.name,), signal.guard_symbol)
        for signal in facts.signals
        if not signal.is_broadcast and signal.guard_symbol in guards
    ]


def find_single_signal_variable_waits(
    facts: TypeFacts, cancellation: Optional[CancellationToken] = None
) -> List[Finding]:
    """Unicast signals on a guard with two or more conditional waits, one of them parameter dependent"""
    guards = set()
    for guard, waits in facts.waits_by_guard().items():
        _checkpoint(cancellation)
        conditional = [w for w in waits if w.is_conditional]
        if len(conditional) >= 2 and any(w.parameter_dependent for w in conditional):
            guards.add(guard)
    return _unicast_signals(facts, guards)


def find_single_signal_multiple_waits(
    facts: TypeFacts, cancellation: Optional[CancellationToken] = None
) -> List[Finding]:
    """Unicast signals on a guard that has more than one wait of any shape"""
    guards = set()
    for guard, waits in facts.waits_by_guard().items():
        _checkpoint(cancellation)
        if len(waits) >= 2:
            guards.add(guard)
    return _unicast_signals(facts, guards)


def find_mixed_signals(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    """Unicast signals on a guard that is also broadcast somewhere"""
    broadcast: Set[Symbol] = set()
    for signal in facts.signals:
        _checkpoint(cancellation)
        if signal.is_broadcast:
            broadcast.add(signal.guard_symbol)
    return _unicast_signals(facts, broadcast)


def _holds_foreign_lock(wait: ConditionWait) -> bool:
    guards = {s.guard_symbol for s in wait.active_sections if s.guard_symbol is not None}
    return len(wait.active_sections) >= 2 and len(guards) > 1


def find_waits_in_nested_locks(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    """Waits that release only their own guard while other locks stay held"""
    findings = []
    for wait in facts.waits:
        _checkpoint(cancellation)
        if _holds_foreign_lock(wait):
            findings.append(Finding(wait.node, (wait.guard_symbol.name,), wait.guard_symbol))
    return findings


def find_waits_without_loop(facts: TypeFacts, cancellation: Optional[CancellationToken] = None) -> List[Finding]:
    findings = []
    for wait in facts.waits:
        _checkpoint(cancellation)
        # wait_for re-checks its predicate itself
        if wait.is_wait_for or wait.loop is not None or not wait.active_sections:
            continue
        findings.append(Finding(wait.node, (wait.guard_symbol.name,), wait.guard_symbol))
    return findings


def signal_summary(signals: List[ConditionSignal]) -> Dict[str, int]:
    """Counts used in report metrics"""
    broadcast = sum(1 for s in signals if s.is_broadcast)
    return {"signals": len(signals) - broadcast, "broadcasts": broadcast}

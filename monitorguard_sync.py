#!/usr/bin/env python3
"""
MonitorGuard missing-synchronization inference

Pure functions over the access records of one class. A slot that is written
under a lock somewhere, or that is normally accessed as a unit under a lock,
is expected to be protected everywhere; unlocked accesses that break that
expectation are reported.

License: MIT
Version: 1.0.0
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from monitorguard_model import (
    AccessRecord,
    ActivationFrame,
    CancellationToken,
    CriticalSection,
    Finding,
    Symbol,
    TypeFacts,
)

logger = logging.getLogger(__name__)


def select_single_slots(slots: Iterable[Symbol], include_volatile: bool = False) -> Set[Symbol]:
    """Slots checked by the single-slot rule: never const, volatile only on request"""
    return {s for s in slots if not s.is_const and (include_volatile or not s.is_volatile)}


def select_multi_slots(
    slots: Iterable[Symbol], include_volatile: bool = False, include_readonly: bool = False
) -> Set[Symbol]:
    """Slots checked by the multi-slot rule; read-only slots are skipped unless requested"""
    return {
        s
        for s in select_single_slots(slots, include_volatile)
        if include_readonly or not s.is_readonly
    }


def _checkpoint(cancellation: Optional[CancellationToken]):
    if cancellation is not None:
        cancellation.raise_if_cancelled()


def _unlocked_groups_by_frame(
    accesses: List[AccessRecord], cancellation: Optional[CancellationToken]
) -> Dict[ActivationFrame, List[AccessRecord]]:
    groups: Dict[ActivationFrame, List[AccessRecord]] = {}
    for access in accesses:
        _checkpoint(cancellation)
        if not access.is_inside_lock:
            groups.setdefault(access.frame, []).append(access)
    return {frame: group for frame, group in groups.items() if len(group) >= 2}


def _locked_groups_by_section(
    accesses: List[AccessRecord], cancellation: Optional[CancellationToken]
) -> Dict[CriticalSection, List[AccessRecord]]:
    groups: Dict[CriticalSection, List[AccessRecord]] = {}
    for access in accesses:
        _checkpoint(cancellation)
        if access.is_inside_lock:
            groups.setdefault(access.critical_section, []).append(access)
    return {section: group for section, group in groups.items() if len(group) >= 2}


def _to_findings(reported: Iterable[AccessRecord]) -> List[Finding]:
    """Deduplicate by (slot, node) and order by source position"""
    unique: Dict[Tuple[Symbol, int], AccessRecord] = {}
    for access in reported:
        unique.setdefault((access.slot, id(access.node)), access)
    ordered = sorted(
        unique.values(),
        key=lambda a: (a.line, getattr(a.node, "col_offset", 0), a.slot.order, a.slot.name),
    )
    return [Finding(a.node, (a.slot.name,), a.slot) for a in ordered]


def find_unsynchronized_slot_accesses(
    facts: TypeFacts,
    include_volatile: bool = False,
    cancellation: Optional[CancellationToken] = None,
) -> List[Finding]:
    """
    Single-slot rule.

    1. Unlocked accesses of one slot inside one frame (at least two of them)
       are reported when the slot is written under some lock.
    2. A slot accessed at least twice under one critical section has its
       unlocked writes reported.
    """
    tracked = select_single_slots(facts.slots, include_volatile)
    accesses = [a for a in facts.accesses if a.slot in tracked]

    written_under_lock = {a.slot for a in accesses if a.is_inside_lock and a.is_write}

    groups: Dict[Tuple[Symbol, ActivationFrame], List[AccessRecord]] = {}
    for access in accesses:
        _checkpoint(cancellation)
        if not access.is_inside_lock:
            groups.setdefault((access.slot, access.frame), []).append(access)

    reported: List[AccessRecord] = []
    for (slot, _frame), group in groups.items():
        if len(group) >= 2 and slot in written_under_lock:
            reported.extend(group)

    per_section: Dict[Tuple[Symbol, CriticalSection], int] = {}
    for access in accesses:
        _checkpoint(cancellation)
        if access.is_inside_lock:
            key = (access.slot, access.critical_section)
            per_section[key] = per_section.get(key, 0) + 1
    protected = {slot for (slot, _section), count in per_section.items() if count >= 2}

    reported.extend(a for a in accesses if a.slot in protected and a.is_write and not a.is_inside_lock)

    findings = _to_findings(reported)
    logger.debug("%s: %d unsynchronized single-slot accesses", facts.type_name, len(findings))
    return findings


def find_unsynchronized_invariant_accesses(
    facts: TypeFacts,
    include_volatile: bool = False,
    include_readonly: bool = False,
    cancellation: Optional[CancellationToken] = None,
) -> List[Finding]:
    """
    Multi-slot rule for invariants spanning several slots.

    Unlocked frame groups touching two or more distinct slots that also meet
    under a lock are reported when either the lock group or the frame group
    writes. Only slots with at least one locked access are reported.
    """
    tracked = select_multi_slots(facts.slots, include_volatile, include_readonly)
    accesses = [a for a in facts.accesses if a.slot in tracked]

    synchronized = {a.slot for a in accesses if a.is_inside_lock}
    frame_groups = _unlocked_groups_by_frame(accesses, cancellation)
    lock_groups = _locked_groups_by_section(accesses, cancellation)

    slots_in_writing_locks: Set[Symbol] = set()
    slots_in_locks: Set[Symbol] = set()
    for group in lock_groups.values():
        members = {a.slot for a in group}
        slots_in_locks |= members
        if any(a.is_write for a in group):
            slots_in_writing_locks |= members

    reported: List[AccessRecord] = []
    for group in frame_groups.values():
        _checkpoint(cancellation)
        distinct = {a.slot for a in group}
        if len(distinct & slots_in_writing_locks) >= 2:
            reported.extend(group)
        elif any(a.is_write for a in group) and len(distinct & slots_in_locks) >= 2:
            reported.extend(group)

    findings = _to_findings(a for a in reported if a.slot in synchronized)
    logger.debug("%s: %d unsynchronized multi-slot accesses", facts.type_name, len(findings))
    return findings

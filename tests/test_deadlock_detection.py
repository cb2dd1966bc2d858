"""
Test file: test_deadlock_detection.py
Purpose: Tests for detecting nested locks on the same slot of two instances
         and guards rebound inside their own critical section.
"""
from monitorguard_deadlock import can_deadlock, find_deadlock_risks, find_guard_reassignments
from monitorguard_model import SlotWrite, Symbol, SymbolKind
from tests.test_utils import TestData, line_of, make_facts, make_section, make_slot, node_at

SELF = Symbol(SymbolKind.INSTANCE, "self", "Sample")
OTHER = Symbol(SymbolKind.PARAMETER, "other", "Sample.transfer")
SECOND = Symbol(SymbolKind.PARAMETER, "second", "Sample.transfer")


class TestDeadlockRules:
    """Hand-built critical sections."""

    def test_self_then_other_is_reported_once(self):
        g = make_slot("g")
        outer = make_section(3, g, root=SELF)
        inner = make_section(4, g, parent=outer, index=1, root=OTHER)
        innermost = make_section(5, g, parent=inner, index=2, root=SELF)
        facts = make_facts([g], [], [outer, inner, innermost])
        findings = find_deadlock_risks(facts)
        # outer matches inner first; inner matches innermost as well
        assert [f.line for f in findings] == [3, 4]

    def test_same_root_is_reentrant(self):
        g = make_slot("g")
        outer = make_section(3, g, root=SELF)
        inner = make_section(4, g, parent=outer, index=1, root=SELF)
        assert find_deadlock_risks(make_facts([g], [], [outer, inner])) == []

    def test_two_parameters_are_not_reported(self):
        g = make_slot("g")
        outer = make_section(3, g, root=OTHER)
        inner = make_section(4, g, parent=outer, index=1, root=SECOND)
        assert not can_deadlock(outer, inner)

    def test_different_slots_are_not_reported(self):
        g, h = make_slot("g"), make_slot("h", order=1)
        outer = make_section(3, g, root=SELF)
        inner = make_section(4, h, parent=outer, index=1, root=OTHER)
        assert not can_deadlock(outer, inner)

    def test_unresolved_guard_or_root_is_skipped(self):
        g = make_slot("g")
        assert not can_deadlock(make_section(3, None, root=SELF), make_section(4, g, root=OTHER))
        assert not can_deadlock(make_section(3, g, root=None), make_section(4, g, root=OTHER))

    def test_local_guard_is_not_a_slot(self):
        local = Symbol(SymbolKind.LOCAL, "lock", "Sample.run")
        outer = make_section(3, local, root=local)
        inner = make_section(4, local, parent=outer, index=1, root=OTHER)
        assert not can_deadlock(outer, inner)


class TestDeadlockDetection:
    """End-to-end detection through the analyzer."""

    def test_detect_transfer_deadlock(self, analyzer, rule_ids):
        source = TestData.get_transfer()
        result = analyzer.analyze_source(source)
        deadlocks = [d for d in result.diagnostics if d.rule.id == "MG201"]
        assert len(deadlocks) == 1
        assert deadlocks[0].line == line_of(source, "with self._lock:")
        assert deadlocks[0].column == 9
        assert rule_ids(result) == ["MG201"]

    def test_unannotated_other_instance(self, analyzer, rule_ids):
        source = """
import threading


class Account:
    def __init__(self):
        self._lock = threading.Lock()
        self.balance = 0

    def transfer(self, other, amount):
        with self._lock:
            with other._lock:
                self.balance -= amount

    def swap(self, a, b):
        with a._lock:
            with b._lock:
                pass
"""
        result = analyzer.analyze_source(source)
        assert rule_ids(result) == ["MG201"]
        assert result.diagnostics[0].line == line_of(source, "with self._lock:")

    def test_properly_separated_locks(self, analyzer):
        result = analyzer.analyze_source(
            """
import threading


class Ledger:
    def __init__(self):
        self._lock = threading.Lock()
        self._audit_lock = threading.Lock()
        self.entries = []

    def record(self, other: "Ledger", entry):
        with self._lock:
            self.entries.append(entry)
        with other._lock:
            other.entries.append(entry)
"""
        )
        assert result.diagnostics == []


class TestGuardReassignment:
    def test_first_rebinding_reported(self, analyzer):
        source = TestData.get_guard_swap()
        result = analyzer.analyze_source(source)
        assert [(d.rule.id, d.line) for d in result.diagnostics] == [
            ("MG401", line_of(source, "self._lock = threading.Lock()", 2))
        ]
        assert "'_lock'" in result.diagnostics[0].message

    def test_rebinding_outside_section_not_reported(self):
        g = make_slot("g")
        section = make_section(3, g, root=SELF)
        facts = make_facts([g], [], [section])
        facts.writes.append(SlotWrite(g, node_at(10), None))
        facts.writes.append(SlotWrite(g, node_at(4), section, in_place=True))
        assert find_guard_reassignments(facts) == []

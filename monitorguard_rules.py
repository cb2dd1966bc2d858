#!/usr/bin/env python3
"""
MonitorGuard rule registry

Each rule wraps one inference algorithm with an id, title, message format,
category and severity, and turns its findings into diagnostics.

License: MIT
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from monitorguard_deadlock import find_deadlock_risks, find_guard_reassignments
from monitorguard_model import CancellationToken, Finding, TypeFacts
from monitorguard_monitor import (
    find_ineffective_signals,
    find_mixed_signals,
    find_single_signal_multiple_waits,
    find_single_signal_variable_waits,
    find_waits_in_nested_locks,
    find_waits_without_loop,
)
from monitorguard_sync import find_unsynchronized_invariant_accesses, find_unsynchronized_slot_accesses

logger = logging.getLogger(__name__)

CATEGORY = "Concurrency"


class SeverityLevel(Enum):
    """Diagnostic severity"""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"  # Data corruption or deadlock risk
    MEDIUM = "MEDIUM"  # Lost wake-ups, fragile signaling
    LOW = "LOW"  # Code quality issue
    INFO = "INFO"


@dataclass(frozen=True)
class Rule:
    id: str
    title: str
    message: str
    severity: SeverityLevel
    check: Callable[..., List[Finding]]
    category: str = CATEGORY

    def format(self, finding: Finding) -> str:
        return self.message.format(*finding.args)


@dataclass(frozen=True)
class Diagnostic:
    """A rule finding located in a file"""

    rule: Rule
    file: str
    line: int
    column: int
    message: str
    type_name: str = ""

    @property
    def severity(self) -> SeverityLevel:
        return self.rule.severity

    def to_dict(self) -> Dict[str, object]:
        return {
            "rule": self.rule.id,
            "title": self.rule.title,
            "category": self.rule.category,
            "severity": self.rule.severity.value,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "class": self.type_name,
            "message": self.message,
        }

    def __str__(self):
        return f"{self.file}:{self.line}:{self.column}: {self.rule.id} {self.message}"


_MISSING_LOCK = "The access to the slot '{0}' is probably missing an enclosing lock."

RULES: List[Rule] = [
    Rule(
        "MG101",
        "Missing lock on single slot",
        _MISSING_LOCK,
        SeverityLevel.HIGH,
        lambda facts, options, token: find_unsynchronized_slot_accesses(
            facts, options.include_volatile, token
        ),
    ),
    Rule(
        "MG102",
        "Missing lock on multiple slots",
        _MISSING_LOCK,
        SeverityLevel.HIGH,
        lambda facts, options, token: find_unsynchronized_invariant_accesses(
            facts, options.include_volatile, options.include_readonly, token
        ),
    ),
    Rule(
        "MG201",
        "Possible deadlock",
        "The nested locks on '{0}' may lead to a deadlock when two instances lock each other.",
        SeverityLevel.HIGH,
        lambda facts, options, token: find_deadlock_risks(facts, token),
    ),
    Rule(
        "MG301",
        "Signal without effect on wait condition",
        "The changes in the enclosing critical section do not affect the condition of the wait on line {0}.",
        SeverityLevel.MEDIUM,
        lambda facts, options, token: find_ineffective_signals(facts, token),
    ),
    Rule(
        "MG302",
        "Single signal for variable wait conditions",
        "At least one wait on '{0}' depends on a parameter; notify_all() might be more suitable here.",
        SeverityLevel.MEDIUM,
        lambda facts, options, token: find_single_signal_variable_waits(facts, token),
    ),
    Rule(
        "MG303",
        "Wait inside nested locks",
        "Waiting on '{0}' inside nested locks only releases '{0}'; the outer locks stay held.",
        SeverityLevel.HIGH,
        lambda facts, options, token: find_waits_in_nested_locks(facts, token),
    ),
    Rule(
        "MG304",
        "Wait without conditional loop",
        "Enclose the wait on '{0}' in a loop that re-checks its condition, or use wait_for().",
        SeverityLevel.LOW,
        lambda facts, options, token: find_waits_without_loop(facts, token),
    ),
    Rule(
        "MG305",
        "Single signal with multiple waits",
        "'{0}' has multiple waits; notify_all() is usually required.",
        SeverityLevel.LOW,
        lambda facts, options, token: find_single_signal_multiple_waits(facts, token),
    ),
    Rule(
        "MG306",
        "Mixed notify and notify_all",
        "Using notify() together with notify_all() on '{0}' indicates an error.",
        SeverityLevel.LOW,
        lambda facts, options, token: find_mixed_signals(facts, token),
    ),
    Rule(
        "MG401",
        "Guard reassigned inside its critical section",
        "Rebinding the guard '{0}' inside its own critical section is discouraged.",
        SeverityLevel.MEDIUM,
        lambda facts, options, token: find_guard_reassignments(facts, token),
    ),
]

RULES_BY_ID: Dict[str, Rule] = {rule.id: rule for rule in RULES}


def select_rules(select: Optional[Iterable[str]] = None, ignore: Optional[Iterable[str]] = None) -> List[Rule]:
    """Rules enabled by the select/ignore lists; ids match by prefix (MG3 selects MG301..MG306)"""
    selected = [r for r in RULES if not select or any(r.id.startswith(p) for p in select)]
    ignored = list(ignore or [])
    return [r for r in selected if not any(r.id.startswith(p) for p in ignored)]


def run_rules(
    facts: TypeFacts,
    filename: str,
    options,
    rules: Optional[List[Rule]] = None,
    cancellation: Optional[CancellationToken] = None,
) -> List[Diagnostic]:
    """Run every enabled rule over one class and return its diagnostics"""
    diagnostics = []
    for rule in rules if rules is not None else select_rules(options.select, options.ignore):
        findings = rule.check(facts, options, cancellation)
        if findings:
            logger.debug("%s: %s produced %d finding(s)", facts.type_name, rule.id, len(findings))
        for finding in findings:
            diagnostics.append(
                Diagnostic(
                    rule=rule,
                    file=filename,
                    line=finding.line,
                    column=finding.column,
                    message=rule.format(finding),
                    type_name=facts.type_name,
                )
            )
    return diagnostics

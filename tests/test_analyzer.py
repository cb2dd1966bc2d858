"""Unit tests for MonitorGuard analyzer functionality."""

import json
import os
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from monitorguard import (
    AnalyzerOptions,
    MonitorGuardAnalyzer,
    build_json_report,
    format_analysis_report,
)
from monitorguard_model import AnalysisCancelled, CancellationToken
from monitorguard_rules import SeverityLevel
from tests.test_utils import TestData, cleanup_temp_file, create_temp_py_file, line_of

READONLY_SOURCE = textwrap.dedent(
    """\
    import threading
    from typing import Final


    class Config:
        def __init__(self, name):
            self._lock = threading.Lock()
            self.name: Final[str] = name
            self.hits = 0

        def lookup(self):
            with self._lock:
                self.hits += 1
                return self.name

        def describe(self):
            return f"{self.name}: {self.hits}"
    """
)


class TestMonitorGuardAnalyzer(unittest.TestCase):
    """Test cases for MonitorGuardAnalyzer class."""

    def setUp(self):
        """Set up test fixtures."""
        self.analyzer = MonitorGuardAnalyzer()
        self.test_files = []

    def tearDown(self):
        """Clean up test fixtures."""
        for filepath in self.test_files:
            cleanup_temp_file(filepath)

    def _create_test_file(self, content: str, suffix: str = ".py") -> str:
        """Create a test file and track it for cleanup."""
        filepath = create_temp_py_file(content, suffix)
        self.test_files.append(filepath)
        return filepath

    def test_detect_flag_and_balance(self):
        """The unlocked check-then-act in set_balance is reported, the locked getter is not."""
        code = TestData.get_account()
        filepath = self._create_test_file(code)

        result = self.analyzer.analyze_file(Path(filepath))

        self.assertEqual(result.errors, [])
        self.assertEqual([d.rule.id for d in result.diagnostics], ["MG102", "MG102"])
        self.assertEqual(
            [d.line for d in result.diagnostics],
            [line_of(code, "if not self.closed:"), line_of(code, "self.balance = value")],
        )
        self.assertEqual(result.diagnostics[0].message, "The access to the slot 'closed' is probably missing an enclosing lock.")
        self.assertEqual(result.diagnostics[1].message, "The access to the slot 'balance' is probably missing an enclosing lock.")
        getter_lines = range(line_of(code, "def get_balance"), line_of(code, "return self.balance") + 1)
        self.assertFalse(any(d.line in getter_lines for d in result.diagnostics))
        self.assertTrue(all(d.type_name == "Account" for d in result.diagnostics))
        self.assertEqual(result.file_analyzed, filepath)

    def test_detect_unlocked_reads(self):
        """Two unlocked reads of a slot written under a lock."""
        code = TestData.get_cache()
        result = self.analyzer.analyze_source(code, "cache.py")

        self.assertEqual([d.rule.id for d in result.diagnostics], ["MG101", "MG101"])
        self.assertEqual(
            [d.line for d in result.diagnostics],
            [line_of(code, "print(self.size)"), line_of(code, "return self.size")],
        )
        self.assertEqual(str(result.diagnostics[0]).split(" ")[0], f"cache.py:{line_of(code, 'print(self.size)')}:15:")

    def test_no_lock_no_finding(self):
        """Classes that never lock are not reported."""
        result = self.analyzer.analyze_source(TestData.get_unlocked())
        self.assertEqual(result.diagnostics, [])
        self.assertEqual(result.errors, [])

    def test_metrics(self):
        result = self.analyzer.analyze_source(TestData.get_account())
        self.assertEqual(result.metrics["classes"], 1)
        self.assertEqual(result.metrics["slots"], 3)
        self.assertEqual(result.metrics["critical_sections"], 1)
        self.assertEqual(result.metrics["high_issues"], 2)
        self.assertEqual(result.metrics["total_issues"], 2)
        self.assertEqual(len(result.by_severity(SeverityLevel.HIGH)), 2)

    def test_signal_metrics(self):
        result = self.analyzer.analyze_source(TestData.get_queue())
        self.assertEqual(result.metrics["waits"], 2)
        self.assertEqual(result.metrics["signals"], 1)
        self.assertEqual(result.metrics["broadcasts"], 1)

    def test_analyze_nonexistent_file(self):
        """Missing files are recorded as errors."""
        missing = Path(tempfile.gettempdir()) / "monitorguard_does_not_exist.py"
        result = self.analyzer.analyze_file(missing)
        self.assertEqual(result.diagnostics, [])
        self.assertIn(f"File does not exist: {missing}", result.errors)

    def test_analyze_directory(self):
        result = self.analyzer.analyze_file(Path(tempfile.gettempdir()))
        self.assertTrue(result.errors[0].startswith("Path is not a file"))

    def test_syntax_error(self):
        filepath = self._create_test_file("class Broken(:\n    pass\n")
        result = self.analyzer.analyze_file(Path(filepath))
        self.assertEqual(result.diagnostics, [])
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Syntax error", result.errors[0])
        self.assertEqual(result.metrics["errors"], 1)

    def test_latin1_source(self):
        filepath = self._create_test_file("")
        with open(filepath, "wb") as f:
            f.write(b"# caf\xe9\n" + TestData.get_cache().encode("utf-8"))
        result = self.analyzer.analyze_file(Path(filepath))
        self.assertEqual(result.errors, [])
        self.assertEqual(len(result.diagnostics), 2)

    def test_cancellation(self):
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(AnalysisCancelled):
            self.analyzer.analyze_source(TestData.get_account(), cancellation=token)


class TestAnalyzerOptions(unittest.TestCase):
    """Rule selection and slot filtering."""

    def test_select_by_prefix(self):
        analyzer = MonitorGuardAnalyzer(AnalyzerOptions(select=["MG3"]))
        result = analyzer.analyze_source(TestData.get_queue() + TestData.get_account())
        self.assertTrue(result.diagnostics)
        self.assertTrue(all(d.rule.id.startswith("MG3") for d in result.diagnostics))

    def test_select_single_rule(self):
        analyzer = MonitorGuardAnalyzer(AnalyzerOptions(select=["MG101"]))
        self.assertEqual(analyzer.analyze_source(TestData.get_account()).diagnostics, [])

    def test_ignore(self):
        analyzer = MonitorGuardAnalyzer(AnalyzerOptions(ignore=["MG1"]))
        self.assertEqual(analyzer.analyze_source(TestData.get_account()).diagnostics, [])
        self.assertNotIn("MG101", [r.id for r in analyzer.rules])

    def test_unknown_rule_is_logged(self):
        with self.assertLogs("monitorguard", level="WARNING") as logs:
            MonitorGuardAnalyzer(AnalyzerOptions(select=["XX9"]))
        self.assertIn("XX9", logs.output[0])

    def test_readonly_slots(self):
        """Final slots join the multi-slot rule only on request."""
        default = MonitorGuardAnalyzer().analyze_source(READONLY_SOURCE)
        self.assertEqual(default.diagnostics, [])

        analyzer = MonitorGuardAnalyzer(AnalyzerOptions(include_readonly=True))
        result = analyzer.analyze_source(READONLY_SOURCE)
        describe_line = line_of(READONLY_SOURCE, 'return f"{self.name}: {self.hits}"')
        self.assertEqual([(d.rule.id, d.line) for d in result.diagnostics], [("MG102", describe_line)] * 2)
        self.assertIn("'name'", result.diagnostics[0].message)
        self.assertIn("'hits'", result.diagnostics[1].message)


class TestReports(unittest.TestCase):
    def setUp(self):
        self.analyzer = MonitorGuardAnalyzer()

    def test_text_report(self):
        result = self.analyzer.analyze_source(TestData.get_account(), "account.py")
        report = format_analysis_report(result, "account.py")
        self.assertIn("MonitorGuard Analysis Report", report)
        self.assertIn("File: account.py", report)
        self.assertIn("2 HIGH SEVERITY ISSUE(S) DETECTED", report)
        self.assertIn("[MG102] Missing lock on multiple slots", report)
        self.assertIn("(Account)", report)

    def test_clean_report(self):
        result = self.analyzer.analyze_source(TestData.get_unlocked())
        self.assertIn("NO CONCURRENCY ISSUES DETECTED", format_analysis_report(result, "plain.py"))

    def test_report_with_errors(self):
        result = self.analyzer.analyze_source("def broken(:\n", "broken.py")
        report = format_analysis_report(result, "broken.py")
        self.assertIn("ANALYSIS INCOMPLETE: 1 error(s)", report)
        self.assertIn("ERRORS", report)

    def test_json_report(self):
        results = [
            self.analyzer.analyze_source(TestData.get_account(), "account.py"),
            self.analyzer.analyze_source(TestData.get_unlocked(), "plain.py"),
        ]
        report = json.loads(json.dumps(build_json_report(results)))
        summary = report["analysis_summary"]
        self.assertEqual(summary["total_files"], 2)
        self.assertEqual(summary["total_issues"], 2)
        self.assertEqual(summary["total_high_issues"], 2)
        self.assertEqual(summary["total_errors"], 0)
        first = report["files"][0]["diagnostics"][0]
        self.assertEqual(first["rule"], "MG102")
        self.assertEqual(first["severity"], "HIGH")
        self.assertEqual(first["category"], "Concurrency")
        self.assertEqual(first["class"], "Account")
        self.assertEqual(report["files"][1]["diagnostics"], [])


if __name__ == "__main__":
    unittest.main()

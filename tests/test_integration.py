"""Integration tests for MonitorGuard analyzer over files and directories."""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from monitorguard import MonitorGuardAnalyzer, collect_python_files
from tests.test_utils import TestData


def summary(result):
    return [(d.rule.id, d.line, d.column) for d in result.diagnostics]


class TestMonitorGuardIntegration(unittest.TestCase):
    """Integration tests for MonitorGuard analyzer."""

    @classmethod
    def setUpClass(cls):
        """Set up test fixtures for the test case."""
        cls.test_dir = tempfile.mkdtemp(prefix="monitorguard_test_")
        cls.analyzer = MonitorGuardAnalyzer()

        snippets = {
            "account.py": TestData.get_account(),
            "queue_mod.py": TestData.get_queue(),
            os.path.join("pkg", "cache.py"): TestData.get_cache(),
            os.path.join("pkg", "transfer.py"): TestData.get_transfer(),
            os.path.join("pkg", "plain.py"): TestData.get_unlocked(),
        }
        os.makedirs(os.path.join(cls.test_dir, "pkg"))
        for name, source in snippets.items():
            with open(os.path.join(cls.test_dir, name), "w", encoding="utf-8") as f:
                f.write(source)
        with open(os.path.join(cls.test_dir, "notes.txt"), "w", encoding="utf-8") as f:
            f.write("not python\n")

    @classmethod
    def tearDownClass(cls):
        """Clean up test fixtures."""
        shutil.rmtree(cls.test_dir, ignore_errors=True)

    def test_collect_directory(self):
        files, missing = collect_python_files([self.test_dir])
        self.assertEqual(missing, [])
        names = [p.relative_to(self.test_dir).as_posix() for p in files]
        self.assertEqual(sorted(names), ["account.py", "pkg/cache.py", "pkg/plain.py", "pkg/transfer.py", "queue_mod.py"])

    def test_collect_reports_missing_paths(self):
        missing_path = os.path.join(self.test_dir, "nope.py")
        files, missing = collect_python_files([os.path.join(self.test_dir, "account.py"), missing_path])
        self.assertEqual(len(files), 1)
        self.assertEqual(missing, [missing_path])

    def test_parallel_results_match_sequential(self):
        files, _ = collect_python_files([self.test_dir])
        sequential = self.analyzer.analyze_files(files)
        parallel = self.analyzer.analyze_files(files, jobs=4)
        self.assertEqual([r.file_analyzed for r in parallel], [str(p) for p in files])
        self.assertEqual([summary(r) for r in parallel], [summary(r) for r in sequential])

    def test_repeated_runs_are_identical(self):
        path = Path(self.test_dir) / "queue_mod.py"
        first = summary(self.analyzer.analyze_file(path))
        for _ in range(3):
            self.assertEqual(summary(self.analyzer.analyze_file(path)), first)

    def test_rules_per_file(self):
        files, _ = collect_python_files([self.test_dir])
        results = {Path(r.file_analyzed).name: r for r in self.analyzer.analyze_files(files, jobs=2)}
        self.assertEqual({d.rule.id for d in results["account.py"].diagnostics}, {"MG102"})
        self.assertEqual({d.rule.id for d in results["cache.py"].diagnostics}, {"MG101"})
        self.assertEqual({d.rule.id for d in results["transfer.py"].diagnostics}, {"MG201"})
        self.assertEqual(
            {d.rule.id for d in results["queue_mod.py"].diagnostics}, {"MG301", "MG304", "MG305", "MG306"}
        )
        self.assertEqual(results["plain.py"].diagnostics, [])

    def test_independent_classes_in_one_module(self):
        source = TestData.get_account() + "\n\n" + TestData.get_cache()
        result = self.analyzer.analyze_source(source)
        self.assertEqual({d.type_name for d in result.diagnostics}, {"Account", "Cache"})
        self.assertEqual(result.metrics["classes"], 2)


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""
MonitorGuard: Static Analysis of Lock and Condition Usage in Python Classes

Detects missing synchronization around shared instance state, nested-lock
deadlocks between instances of the same class and condition wait/signal
mismatches in code built on threading.Lock / RLock / Condition.

License: MIT
Version: 1.0.0

Key Features:
- One walk per class over the Python AST
- Single-slot and multi-slot missing-lock inference
- Deadlock detection on nested critical sections
- Wait/notify effectiveness checks
- Text and JSON reports, CI exit codes, parallel file analysis
"""

import argparse
import ast
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from monitorguard_model import AnalysisCancelled, CancellationToken, SourceError
from monitorguard_monitor import signal_summary
from monitorguard_rules import RULES_BY_ID, Diagnostic, SeverityLevel, run_rules, select_rules
from monitorguard_symbols import ClassModel, SymbolResolver, iter_classes, module_factories
from monitorguard_walker import collect_type_facts

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


@dataclass
class AnalyzerOptions:
    """Analysis configuration"""

    include_volatile: bool = False
    include_readonly: bool = False
    select: List[str] = field(default_factory=list)  # rule ids or prefixes, empty = all
    ignore: List[str] = field(default_factory=list)


@dataclass
class AnalysisResult:
    """Complete analysis results for one compilation unit"""

    diagnostics: List[Diagnostic] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metrics: Dict[str, int] = field(default_factory=dict)
    analysis_time: float = 0.0
    file_analyzed: str = ""

    def by_severity(self, severity: SeverityLevel) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == severity]


class MonitorGuardAnalyzer:
    """
    Static analyzer for lock and condition usage in Python source.

    Each call analyses one compilation unit independently, so a single
    analyzer can be shared by worker threads.
    """

    SOURCE_SUFFIXES = {".py", ".pyw"}

    def __init__(self, options: Optional[AnalyzerOptions] = None):
        self.options = options or AnalyzerOptions()
        unknown = [i for i in self.options.select + self.options.ignore if not any(r.startswith(i) for r in RULES_BY_ID)]
        if unknown:
            logger.warning("Unknown rule id(s): %s", ", ".join(unknown))
        self.rules = select_rules(self.options.select, self.options.ignore)

    def analyze_source(
        self,
        source: str,
        filename: str = "<string>",
        cancellation: Optional[CancellationToken] = None,
    ) -> AnalysisResult:
        """
        Analyze Python source text

        Args:
            source: module source code
            filename: name used in diagnostics
            cancellation: token checked between node visits

        Returns:
            AnalysisResult with every diagnostic of the unit

        Raises:
            AnalysisCancelled: if the token is cancelled; no partial result is returned
        """
        start_time = time.time()
        result = AnalysisResult(file_analyzed=filename)
        counts = {"classes": 0, "slots": 0, "accesses": 0, "critical_sections": 0, "waits": 0, "signals": 0, "broadcasts": 0}

        try:
            tree = self._parse(source, filename)
            globals_ = module_factories(tree)
            for class_node, qualname in iter_classes(tree):
                if cancellation is not None:
                    cancellation.raise_if_cancelled()
                model = ClassModel(class_node, qualname)
                facts = collect_type_facts(model, SymbolResolver(model, globals_), cancellation=cancellation)
                result.diagnostics.extend(run_rules(facts, filename, self.options, self.rules, cancellation))

                counts["classes"] += 1
                counts["slots"] += len(facts.slots)
                counts["accesses"] += len(facts.accesses)
                counts["critical_sections"] += len(facts.critical_sections)
                counts["waits"] += len(facts.waits)
                for key, value in signal_summary(facts.signals).items():
                    counts[key] += value
        except AnalysisCancelled:
            logger.info("Analysis of %s cancelled", filename)
            raise
        except SourceError as e:
            result.errors.append(str(e))
        except Exception as e:
            logger.debug("Analysis of %s failed", filename, exc_info=True)
            result.errors.append(f"ERROR during analysis of {filename}: {e}")

        result.diagnostics.sort(key=lambda d: (d.line, d.column, d.rule.id))
        result.analysis_time = time.time() - start_time
        result.metrics = self._calculate_metrics(result, counts)
        return result

    @staticmethod
    def _parse(source: str, filename: str) -> ast.Module:
        try:
            return ast.parse(source, filename=filename)
        except SyntaxError as e:
            raise SourceError(f"Syntax error in {filename}, line {e.lineno}: {e.msg}") from e
        except ValueError as e:
            # null bytes in source
            raise SourceError(f"Cannot parse {filename}: {e}") from e

    def analyze_file(self, filepath: Path, cancellation: Optional[CancellationToken] = None) -> AnalysisResult:
        """
        Analyze a Python source file

        Missing, unreadable and unparsable files are reported in
        AnalysisResult.errors instead of raising.
        """
        filepath = Path(filepath)
        result = AnalysisResult(file_analyzed=str(filepath))

        if not self._validate_file(filepath, result):
            return result

        try:
            source = self._read_file_safely(filepath)
        except SourceError as e:
            result.errors.append(str(e))
            return result

        return self.analyze_source(source, str(filepath), cancellation)

    def _validate_file(self, filepath: Path, result: AnalysisResult) -> bool:
        if not filepath.exists():
            result.errors.append(f"File does not exist: {filepath}")
            return False

        if not filepath.is_file():
            result.errors.append(f"Path is not a file: {filepath}")
            return False

        if filepath.suffix.lower() not in self.SOURCE_SUFFIXES:
            logger.warning("Unusual file extension '%s' for Python file %s", filepath.suffix, filepath)
        return True

    @staticmethod
    def _read_file_safely(filepath: Path) -> str:
        """Read source with the encodings Python files commonly use"""
        for encoding in ("utf-8", "utf-8-sig", "latin1"):
            try:
                return filepath.read_text(encoding=encoding)
            except UnicodeDecodeError:
                continue
            except OSError as e:
                raise SourceError(f"Error reading file {filepath}: {e}") from e
        raise SourceError(f"Could not decode file {filepath} with any supported encoding")

    def analyze_files(
        self,
        paths: Iterable[Path],
        jobs: int = 1,
        cancellation: Optional[CancellationToken] = None,
    ) -> List[AnalysisResult]:
        """Analyze several files, in parallel when jobs > 1; results keep the input order"""
        paths = list(paths)
        if jobs <= 1 or len(paths) <= 1:
            return [self.analyze_file(p, cancellation) for p in paths]
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            return list(executor.map(lambda p: self.analyze_file(p, cancellation), paths))

    @staticmethod
    def _calculate_metrics(result: AnalysisResult, counts: Dict[str, int]) -> Dict[str, int]:
        metrics = dict(counts)
        metrics.update(
            {
                "total_issues": len(result.diagnostics),
                "critical_issues": len(result.by_severity(SeverityLevel.CRITICAL)),
                "high_issues": len(result.by_severity(SeverityLevel.HIGH)),
                "medium_issues": len(result.by_severity(SeverityLevel.MEDIUM)),
                "low_issues": len(result.by_severity(SeverityLevel.LOW)),
                "errors": len(result.errors),
                "analysis_time_seconds": round(result.analysis_time, 3),
            }
        )
        return metrics


def collect_python_files(paths: Sequence[str]) -> Tuple[List[Path], List[str]]:
    """Expand directories to the *.py files below them; returns (files, missing paths)"""
    files: List[Path] = []
    missing: List[str] = []
    for name in paths:
        path = Path(name)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*.py") if p.is_file()))
        elif path.exists():
            files.append(path)
        else:
            missing.append(name)
    return files, missing


def format_analysis_report(result: AnalysisResult, filename: str) -> str:
    """Human-readable report for one file"""
    report = []

    report.append("=" * 100)
    report.append("MonitorGuard Analysis Report")
    report.append("=" * 100)
    report.append(f"File: {filename}")
    report.append(f"Analysis Time: {result.analysis_time:.3f} seconds")
    report.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    high_count = result.metrics.get("high_issues", 0)
    total = len(result.diagnostics)

    report.append("\nSUMMARY")
    report.append("-" * 50)
    if result.errors:
        report.append(f"ANALYSIS INCOMPLETE: {len(result.errors)} error(s)")
    elif total == 0:
        report.append("NO CONCURRENCY ISSUES DETECTED")
    elif high_count > 0:
        report.append(f"{high_count} HIGH SEVERITY ISSUE(S) DETECTED")
        report.append("   Review and fix recommended before production deployment.")
    else:
        report.append("Minor concurrency issues detected - review recommended.")

    report.append("\nAnalysis Metrics:")
    report.append(f"  - Classes: {result.metrics.get('classes', 0)}")
    report.append(f"  - Slots: {result.metrics.get('slots', 0)}")
    report.append(f"  - Recorded Accesses: {result.metrics.get('accesses', 0)}")
    report.append(f"  - Critical Sections: {result.metrics.get('critical_sections', 0)}")
    report.append(
        f"  - Waits / Signals / Broadcasts: {result.metrics.get('waits', 0)} / "
        f"{result.metrics.get('signals', 0)} / {result.metrics.get('broadcasts', 0)}"
    )

    for severity in (SeverityLevel.CRITICAL, SeverityLevel.HIGH, SeverityLevel.MEDIUM, SeverityLevel.LOW):
        diagnostics = result.by_severity(severity)
        if not diagnostics:
            continue
        report.append(f"\n{severity.value} SEVERITY ISSUES")
        report.append("-" * 50)
        for i, diagnostic in enumerate(diagnostics, 1):
            report.append(f"{i}. [{diagnostic.rule.id}] {diagnostic.rule.title}")
            report.append(f"   Location: Line {diagnostic.line}, Column {diagnostic.column} ({diagnostic.type_name})")
            report.append(f"   {diagnostic.message}")
            report.append("")

    if result.errors:
        report.append("\nERRORS")
        report.append("-" * 50)
        for i, error in enumerate(result.errors, 1):
            report.append(f"{i}. {error}")

    report.append("\n" + "=" * 100)
    return "\n".join(report)


def build_json_report(results: List[AnalysisResult]) -> Dict[str, object]:
    return {
        "analysis_summary": {
            "total_files": len(results),
            "total_issues": sum(len(r.diagnostics) for r in results),
            "total_high_issues": sum(r.metrics.get("high_issues", 0) for r in results),
            "total_errors": sum(len(r.errors) for r in results),
            "analysis_timestamp": datetime.now().isoformat(),
            "monitorguard_version": __version__,
        },
        "files": [
            {
                "file": r.file_analyzed,
                "metrics": r.metrics,
                "diagnostics": [d.to_dict() for d in r.diagnostics],
                "errors": r.errors,
                "analysis_time": r.analysis_time,
            }
            for r in results
        ],
    }


def _split_ids(values: Optional[List[str]]) -> List[str]:
    ids = []
    for value in values or []:
        ids.extend(part.strip().upper() for part in value.split(",") if part.strip())
    return ids


def main(argv: Optional[List[str]] = None):
    """Command line entry point"""
    parser = argparse.ArgumentParser(
        description="MonitorGuard: static analyzer for lock and condition usage in Python",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  monitorguard module.py
  monitorguard --output report.txt src/
  monitorguard --json results.json --ci-mode src/
  monitorguard --select MG1,MG201 --jobs 4 src/

Exit Codes:
  0: Success
  1: High severity issues above --max-high (CI mode)
  3: Analysis error (CI mode)
""",
    )

    parser.add_argument("files", nargs="*", help="Python files or directories to analyze")
    parser.add_argument("--output", "-o", help="Output file for the report")
    parser.add_argument("--json", help="Output JSON report to file")
    parser.add_argument("--ci-mode", action="store_true", help="Run in CI mode with non-zero exit on issues")
    parser.add_argument("--max-high", type=int, default=0, help="Maximum allowed high severity issues (CI mode)")
    parser.add_argument("--jobs", "-j", type=int, default=1, help="Number of files analyzed in parallel")
    parser.add_argument(
        "--include-volatile",
        action="store_true",
        help="Also check slots marked volatile (only affects symbols from other front ends; "
        "Python slots are never volatile)",
    )
    parser.add_argument(
        "--include-readonly", action="store_true", help="Also check read-only slots in the multi-slot rule"
    )
    parser.add_argument("--select", action="append", help="Comma separated rule ids or prefixes to run")
    parser.add_argument("--ignore", action="append", help="Comma separated rule ids or prefixes to skip")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-essential output")
    parser.add_argument("--version", action="version", version=f"MonitorGuard {__version__}")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.files:
        parser.print_help()
        sys.exit(1)

    files, missing = collect_python_files(args.files)
    for name in missing:
        print(f"Error: File not found: {name}", file=sys.stderr)
    if missing and args.ci_mode:
        sys.exit(3)

    options = AnalyzerOptions(
        include_volatile=args.include_volatile,
        include_readonly=args.include_readonly,
        select=_split_ids(args.select),
        ignore=_split_ids(args.ignore),
    )
    analyzer = MonitorGuardAnalyzer(options)

    if not args.quiet:
        print(f"Analyzing {len(files)} file(s)...")
    results = analyzer.analyze_files(files, jobs=args.jobs)

    reports = []
    for result in results:
        for error in result.errors:
            print(error, file=sys.stderr)
        reports.append(format_analysis_report(result, result.file_analyzed))

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write("\n\n".join(reports))
        if not args.quiet:
            print(f"Report saved to {args.output}")
    else:
        for report in reports:
            print(report)

    if args.json:
        with open(args.json, "w", encoding="utf-8") as f:
            json.dump(build_json_report(results), f, indent=2)
        if not args.quiet:
            print(f"JSON report saved to {args.json}")

    if args.ci_mode:
        total_high = sum(r.metrics.get("high_issues", 0) for r in results)
        if any(r.errors for r in results):
            print("CI FAILURE: analysis errors occurred", file=sys.stderr)
            sys.exit(3)
        if total_high > args.max_high:
            print(f"CI WARNING: {total_high} high severity issues found (max allowed: {args.max_high})")
            sys.exit(1)
        print("CI PASSED: No blocking concurrency issues found")
    sys.exit(0)


if __name__ == "__main__":
    main()

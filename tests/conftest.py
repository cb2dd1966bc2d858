"""Pytest configuration and fixtures for MonitorGuard tests."""
import sys
from pathlib import Path

import pytest

# Add the parent directory to the path so we can import the monitorguard modules
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def analyzer():
    """Create a new MonitorGuardAnalyzer instance for testing."""
    from monitorguard import MonitorGuardAnalyzer

    return MonitorGuardAnalyzer()


@pytest.fixture
def rule_ids():
    """Rule ids of a result's diagnostics, in report order."""

    def _ids(result):
        return [d.rule.id for d in result.diagnostics]

    return _ids

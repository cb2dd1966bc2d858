"""Test package for MonitorGuard static analysis tool.

This package contains unit and integration tests for the MonitorGuard
lock and condition usage analyzer.
"""

__all__ = ["test_analyzer", "test_cli", "test_integration", "test_utils"]

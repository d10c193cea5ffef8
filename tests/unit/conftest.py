"""
Pytest configuration for the unit test suite.
"""
import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: Slow tests that should not run by default (deselect with '-m \"not slow\"')"
    )

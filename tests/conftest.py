"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For unittest base classes and SQLite helpers, see tests/__init__.py
"""

import pytest

from core.config_loader import NotificationConfig
from tests import FIXED_NOW


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "db: marks tests as using the in-memory SQLite store"
    )


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def notification_config():
    return NotificationConfig(
        dashboard_base_url="https://app.example.com/dashboard",
        use_async_queue=False,
    )

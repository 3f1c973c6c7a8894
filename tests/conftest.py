"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before anything imports ``app.core.config`` so
the global settings object is built from them.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from app.core import rate_limit  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_global_limiter(monkeypatch: pytest.MonkeyPatch):
    """Give every test its own process-wide limiter."""
    monkeypatch.setattr(rate_limit, "_limiter", None)
    monkeypatch.setattr(rate_limit, "_limiter_options", None)
    yield
    rate_limit.stop_rate_limiters()

"""Shared test fixtures."""

import os

import pytest

from brokerlease.app.config import get_settings

_ENV_PREFIXES = (
    "BROKERLEASE_",
    "DATABASE_",
    "BROKER_",
    "LEASE_",
    "IO_HANDLER_",
    "METRICS_",
    "LOGGING_",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove brokerlease env vars so every test starts from defaults."""
    for key in list(os.environ.keys()):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

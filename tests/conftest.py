"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["SEALEDLOG_DB"] = ":memory:"
for _var in ("SEALEDLOG_URL", "SEALEDLOG_PATH", "SEALEDLOG_TRANSCRIPT_LIMIT"):
    os.environ.pop(_var, None)


import pytest

from sealedlog import api

# Register the shared fixtures (record_log, keystore, clock, alice, bob, carol)
from sealedlog.testing import alice, bob, carol, clock, keystore, record_log  # noqa: F401


@pytest.fixture(autouse=True)
def reset_server_log():
    """Give every test a fresh server-side record log."""
    api.reset_log()
    yield
    api.reset_log()


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep config and data files inside the test's tmp_path."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

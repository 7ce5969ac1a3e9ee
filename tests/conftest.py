"""Configuration for pytest testing framework."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep UNIBROKER_* variables of the developer shell out of settings."""
    for name in list(os.environ):
        if name.upper().startswith("UNIBROKER_"):
            monkeypatch.delenv(name)

"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

# Variables read by the settings loader and the update helper.
_ENV_PREFIXES = ("UIXCTL_", "UIX_", "HOMEBRIDGE_", "CONFIG_UI_")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip process-spawning tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Hide bridge and uixctl variables inherited from the developer's shell."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    yield

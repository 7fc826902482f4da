"""uixctl package bootstrap.

Exposes lightweight metadata relied upon by the CLI, the settings payload and
packaging machinery.
"""
from __future__ import annotations

__all__ = ["PACKAGE_NAME", "__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.3.0"

PACKAGE_NAME = "uixctl"


def get_version() -> str:
    """Return the current package version."""
    return __version__

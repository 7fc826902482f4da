"""Provider interfaces for uixctl.

``update_launcher`` depends on :mod:`uixctl.orchestrator`, which itself uses
the npm locators, so it is imported from its module rather than re-exported
here.
"""
from __future__ import annotations

from .npm import (
    PackageManagerLocator,
    PosixNpmLocator,
    WindowsNpmLocator,
    build_update_command,
    select_locator,
)

__all__ = [
    "PackageManagerLocator",
    "PosixNpmLocator",
    "WindowsNpmLocator",
    "build_update_command",
    "select_locator",
]

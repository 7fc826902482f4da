"""Locate the npm executable used for offline updates.

Each platform family gets its own locator strategy; callers pick one with
:func:`select_locator` and stay platform-agnostic otherwise.
"""
from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

NO_UPDATE_NOTIFIER = "--no-update-notifier"


class PackageManagerLocator(Protocol):
    """Strategy returning the argv prefix that invokes the package manager."""

    def locate(self) -> list[str]:
        """Return the executable followed by its fixed leading arguments."""


@dataclass(slots=True)
class PosixNpmLocator:
    """Linux and macOS resolve ``npm`` through ``PATH``."""

    npm_bin: str = "npm"

    def locate(self) -> list[str]:
        """Return the npm prefix for POSIX hosts."""
        return [self.npm_bin, NO_UPDATE_NOTIFIER]


@dataclass(slots=True)
class WindowsNpmLocator:
    """Windows needs the full path to ``npm.cmd``."""

    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    def candidates(self) -> list[Path]:
        """Return the well-known npm.cmd locations, most specific first."""
        paths: list[Path] = []
        appdata = self.env.get("APPDATA")
        if appdata:
            paths.append(Path(appdata) / "npm" / "npm.cmd")
        program_files = self.env.get("ProgramFiles")
        if program_files:
            paths.append(Path(program_files) / "nodejs" / "npm.cmd")
        return paths

    def locate(self) -> list[str]:
        """Return the first existing npm.cmd, or fall back to ``npm``."""
        for candidate in self.candidates():
            if candidate.exists():
                return [str(candidate), NO_UPDATE_NOTIFIER]
        LOGGER.error(
            "Cannot find npm binary. You will not be able to manage plugins or "
            "update homebridge."
        )
        LOGGER.error("You might be able to fix this problem by running: npm install -g npm")
        return ["npm", NO_UPDATE_NOTIFIER]


def select_locator(
    platform_name: str | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> PackageManagerLocator:
    """Return the locator for *platform_name* (defaults to ``sys.platform``)."""
    name = platform_name or sys.platform
    if name.startswith("win"):
        return WindowsNpmLocator(env=dict(os.environ if env is None else env))
    return PosixNpmLocator()


def build_update_command(prefix: Sequence[str], package: str) -> list[str]:
    """Return the global install command for *package*."""
    return [*prefix, "install", "-g", "--unsafe-perm", package]


__all__ = [
    "NO_UPDATE_NOTIFIER",
    "PackageManagerLocator",
    "PosixNpmLocator",
    "WindowsNpmLocator",
    "build_update_command",
    "select_locator",
]

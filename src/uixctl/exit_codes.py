"""Enumerations for process exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes shared by the CLI and the update orchestrator."""

    OK = 0
    FAILURE = 1
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4

"""Start offline updates as detached helper processes.

The lock file is the admission signal: while it exists an update is running
and further requests are refused. The launcher creates the lock, writes a
single-use script that runs :func:`uixctl.orchestrator.main`, and starts it
detached so the update survives the UI restarting underneath it. The helper
removes both files when it exits.
"""
from __future__ import annotations

import json
import os
import subprocess
import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..config import UpdateFilesConfig
from ..orchestrator import UpdateJob, validate_package


class UpdateInProgressError(RuntimeError):
    """Raised when the update lock file already exists."""


class UpdateLaunchError(RuntimeError):
    """Raised when the update helper cannot be started."""


@dataclass(frozen=True, slots=True)
class UpdateLaunch:
    """Details of a started update."""

    package: str
    pid: int
    lock_path: Path
    log_path: Path
    launcher_path: Path
    started_at: str


@dataclass(frozen=True, slots=True)
class UpdateStatus:
    """Snapshot of the update lock and log."""

    in_progress: bool
    lock_path: Path
    log_path: Path
    lock: dict[str, object] | None
    log_tail: list[str]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "in_progress": self.in_progress,
            "lock_path": str(self.lock_path),
            "log_path": str(self.log_path),
            "lock": self.lock,
            "log_tail": list(self.log_tail),
        }


def render_launcher_script(package: str) -> str:
    """Return the source of the single-use launcher artifact."""
    return textwrap.dedent(
        f"""\
        # Generated by uixctl to update {package}. Removed once the update ends.
        import sys

        from uixctl.orchestrator import main

        if __name__ == "__main__":
            sys.exit(main())
        """
    )


class UpdateLauncher:
    """Create the lock and launcher artifact, then spawn the update helper."""

    def __init__(
        self,
        storage_path: Path,
        files: UpdateFilesConfig | None = None,
        *,
        python_bin: str | None = None,
    ) -> None:
        """Bind the launcher to one bridge storage directory."""
        self.storage_path = storage_path
        self.files = files or UpdateFilesConfig()
        self.python_bin = python_bin or sys.executable

    @property
    def lock_path(self) -> Path:
        """Return the update lock file location."""
        return self.files.lock_path(self.storage_path)

    @property
    def log_path(self) -> Path:
        """Return the update log location."""
        return self.files.log_path(self.storage_path)

    @property
    def launcher_path(self) -> Path:
        """Return the launcher artifact location."""
        return self.files.launcher_path(self.storage_path)

    def job_for(self, package: str) -> UpdateJob:
        """Return the :class:`UpdateJob` describing an update of *package*."""
        return UpdateJob(
            package_name=package,
            storage_path=self.storage_path,
            lock_file_path=self.lock_path,
            self_artifact_path=self.launcher_path,
            log_path=self.log_path,
        )

    def launch(self, package: str, *, env: Mapping[str, str] | None = None) -> UpdateLaunch:
        """Start a detached update of *package*."""
        package = validate_package(package)
        started_at = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        self._acquire_lock(package, started_at)

        job = self.job_for(package)
        try:
            self.launcher_path.write_text(render_launcher_script(package), encoding="utf-8")
            self.log_path.unlink(missing_ok=True)
            env_vars = os.environ.copy()
            if env:
                env_vars.update(env)
            env_vars.update(job.to_env())
            process = self._spawn([self.python_bin, str(self.launcher_path)], env=env_vars)
        except OSError as exc:
            self._discard()
            raise UpdateLaunchError(f"Unable to start update of {package}: {exc}") from exc

        return UpdateLaunch(
            package=package,
            pid=process.pid,
            lock_path=self.lock_path,
            log_path=self.log_path,
            launcher_path=self.launcher_path,
            started_at=started_at,
        )

    def status(self, *, tail: int = 20) -> UpdateStatus:
        """Return whether an update is running plus the last log lines."""
        lock: dict[str, object] | None = None
        in_progress = self.lock_path.exists()
        if in_progress:
            try:
                payload = json.loads(self.lock_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                payload = None
            lock = dict(payload) if isinstance(payload, dict) else None

        log_tail: list[str] = []
        try:
            lines = self.log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except FileNotFoundError:
            lines = []
        if tail > 0:
            log_tail = lines[-tail:]

        return UpdateStatus(
            in_progress=in_progress,
            lock_path=self.lock_path,
            log_path=self.log_path,
            lock=lock,
            log_tail=log_tail,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _acquire_lock(self, package: str, started_at: str) -> None:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise UpdateInProgressError(
                f"An update is already in progress (lock file {self.lock_path})."
            ) from exc
        except OSError as exc:
            raise UpdateLaunchError(
                f"Unable to create update lock {self.lock_path}: {exc}"
            ) from exc
        payload = {"pid": os.getpid(), "package": package, "started_at": started_at}
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle)

    def _discard(self) -> None:
        for path in (self.lock_path, self.launcher_path):
            path.unlink(missing_ok=True)

    def _spawn(self, cmd: Sequence[str], *, env: Mapping[str, str]) -> subprocess.Popen[bytes]:
        """Start the helper detached from this process (isolated for testing)."""
        kwargs: dict[str, object] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
            "cwd": str(self.storage_path),
            "env": dict(env),
        }
        if sys.platform.startswith("win"):
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
            )
        else:
            kwargs["start_new_session"] = True
        return subprocess.Popen(list(cmd), **kwargs)  # type: ignore[call-overload]  # noqa: S603


__all__ = [
    "UpdateInProgressError",
    "UpdateLaunch",
    "UpdateLaunchError",
    "UpdateLauncher",
    "UpdateStatus",
    "render_launcher_script",
]

"""Offline package update helper.

This module runs as its own short-lived process, normally started detached
by :class:`~uixctl.providers.update_launcher.UpdateLauncher` through a
single-use launcher script. It installs one allow-listed npm package globally,
appends the child's stdout and stderr to a log file as they arrive, and then
removes the update lock file and the launcher script.

Parameters arrive through the environment::

    UIX_OFFLINE_UPDATE_PACKAGE       package to install (allow-listed)
    UIX_OFFLINE_UPDATE_STORAGE_PATH  bridge storage directory (working dir)
    UIX_OFFLINE_UPDATE_LOCKFILE      lock file to remove on exit
    UIX_OFFLINE_UPDATE_SELF          launcher script to remove on exit
    UIX_OFFLINE_UPDATE_LOG           log file (appended)

Exit status is ``0`` once the child has run to completion, whatever its own
status, and ``1`` when the package is not allow-listed, when anything fails
before the child finishes, or when the helper is asked to terminate. Cleanup
runs exactly once on every one of those paths.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from .exit_codes import ExitCode
from .providers.npm import PackageManagerLocator, build_update_command, select_locator

LOGGER = logging.getLogger(__name__)

ALLOWED_PACKAGES = (
    "homebridge-hue",
    "homebridge-config-ui-x",
    "homebridge",
)

ENV_PACKAGE = "UIX_OFFLINE_UPDATE_PACKAGE"
ENV_STORAGE_PATH = "UIX_OFFLINE_UPDATE_STORAGE_PATH"
ENV_LOCKFILE = "UIX_OFFLINE_UPDATE_LOCKFILE"
ENV_SELF = "UIX_OFFLINE_UPDATE_SELF"
ENV_LOG = "UIX_OFFLINE_UPDATE_LOG"

READ_CHUNK_SIZE = 65536
TERMINATE_GRACE_SECONDS = 10.0
_TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGHUP") if hasattr(signal, name)
)
_LOOP_HANDLER = object()


class UpdateValidationError(RuntimeError):
    """Raised when an update names a package outside the allow-list."""


def validate_package(package: str | None) -> str:
    """Return *package* if it is allow-listed, else raise."""
    if package in ALLOWED_PACKAGES:
        return package
    allowed = ", ".join(ALLOWED_PACKAGES)
    raise UpdateValidationError(
        f"Refusing to update {package!r}: package must be one of {allowed}."
    )


class UpdateState(Enum):
    """Lifecycle of one orchestrator run."""

    START = "start"
    VALIDATING = "validating"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    CLEANUP = "cleanup"
    EXIT = "exit"


@dataclass(frozen=True, slots=True)
class UpdateJob:
    """Parameters of a single offline update."""

    package_name: str | None
    storage_path: Path | None
    lock_file_path: Path | None
    self_artifact_path: Path | None
    log_path: Path | None

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> UpdateJob:
        """Build a job from the ``UIX_OFFLINE_UPDATE_*`` variables."""

        def _path(key: str) -> Path | None:
            value = env.get(key)
            return Path(value) if value else None

        return cls(
            package_name=env.get(ENV_PACKAGE) or None,
            storage_path=_path(ENV_STORAGE_PATH),
            lock_file_path=_path(ENV_LOCKFILE),
            self_artifact_path=_path(ENV_SELF),
            log_path=_path(ENV_LOG),
        )

    def to_env(self) -> dict[str, str]:
        """Return the environment variables describing this job."""
        values = {
            ENV_PACKAGE: self.package_name,
            ENV_STORAGE_PATH: self.storage_path,
            ENV_LOCKFILE: self.lock_file_path,
            ENV_SELF: self.self_artifact_path,
            ENV_LOG: self.log_path,
        }
        return {key: str(value) for key, value in values.items() if value is not None}


class UpdateCleanup:
    """Removes the lock file and launcher artifact exactly once."""

    def __init__(self, *paths: Path | None) -> None:
        """Record the files to remove, in order."""
        self._paths = [path for path in paths if path is not None]
        self._performed = False
        self.errors: list[str] = []

    @property
    def performed(self) -> bool:
        """Return True once cleanup has been attempted."""
        return self._performed

    def run(self) -> list[str]:
        """Remove each file independently; repeated calls do nothing."""
        if self._performed:
            return []
        self._performed = True
        for path in self._paths:
            try:
                path.unlink()
            except FileNotFoundError:
                LOGGER.warning("Cleanup: %s was already removed", path)
            except OSError as exc:
                message = f"Cleanup: unable to remove {path}: {exc}"
                LOGGER.error(message)
                self.errors.append(message)
            else:
                LOGGER.debug("Cleanup: removed %s", path)
        return list(self.errors)


class _LogFileHandler(logging.Handler):
    """Routes diagnostics into the update log alongside child output."""

    def __init__(self, write: Callable[[bytes], None]) -> None:
        super().__init__(level=logging.INFO)
        self._write = write
        self.setFormatter(logging.Formatter("[uixctl] %(levelname)s %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._write((self.format(record) + "\n").encode("utf-8", "replace"))
        except Exception:  # noqa: BLE001 - logging must never break the update
            self.handleError(record)


class UpdateOrchestrator:
    """Runs one :class:`UpdateJob` to completion."""

    def __init__(
        self,
        job: UpdateJob,
        *,
        locator: PackageManagerLocator | None = None,
    ) -> None:
        """Prepare the run; nothing touches the filesystem until :meth:`run`."""
        self.job = job
        self.locator = locator or select_locator()
        self.cleanup = UpdateCleanup(job.lock_file_path, job.self_artifact_path)
        self.state = UpdateState.START
        self.child_pid: int | None = None
        self.child_returncode: int | None = None
        self.termination_signal: int | None = None
        self.spawned = threading.Event()
        self._log: BinaryIO | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._terminate: asyncio.Event | None = None
        self._termination_requested = False
        self._previous_handlers: dict[int, object] = {}
        self._handler: logging.Handler | None = None
        self._previous_level = logging.NOTSET

    def run(self) -> int:
        """Execute the update and return the process exit code."""
        try:
            return int(asyncio.run(self._run()))
        except Exception:  # noqa: BLE001 - every failure funnels into cleanup
            LOGGER.exception("Offline update aborted")
            return int(ExitCode.FAILURE)
        finally:
            self._finish()

    def request_termination(self, signum: int | None = None) -> None:
        """Ask a running update to stop; safe to call from any thread."""
        self._termination_requested = True
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_termination, signum)
        except RuntimeError:
            LOGGER.debug("Termination requested after the event loop closed")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self) -> int:
        self._loop = asyncio.get_running_loop()
        self._terminate = asyncio.Event()
        self._install_signal_handlers()
        try:
            if self._termination_requested:
                self._terminate.set()
            self.state = UpdateState.VALIDATING
            if self.job.log_path is not None:
                self._open_log(self.job.log_path)
            try:
                package = validate_package(self.job.package_name)
            except UpdateValidationError as exc:
                LOGGER.error("%s", exc)
                return ExitCode.FAILURE
            if self._log is None:
                raise RuntimeError(f"{ENV_LOG} is not set; refusing to run without a log file.")
            return await self._update(package)
        finally:
            self._remove_signal_handlers()

    async def _update(self, package: str) -> int:
        self.state = UpdateState.SPAWNING
        assert self._terminate is not None
        if self._terminate.is_set():
            LOGGER.warning("Termination requested before the update started")
            return ExitCode.FAILURE
        command = build_update_command(self.locator.locate(), package)
        self._write(f"Running update command: {' '.join(command)}\n".encode())

        cwd = self.job.storage_path if self.job.storage_path and self.job.storage_path.is_dir() else None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except OSError as exc:
            LOGGER.error("Unable to start %s: %s", command[0], exc)
            LOGGER.error("Check that npm is installed and on PATH, e.g. npm install -g npm")
            return ExitCode.FAILURE
        self.child_pid = process.pid
        self.state = UpdateState.STREAMING
        self.spawned.set()

        assert process.stdout is not None and process.stderr is not None
        pumps = [
            asyncio.create_task(self._pump(process.stdout)),
            asyncio.create_task(self._pump(process.stderr)),
        ]
        completion = asyncio.create_task(self._wait_for_child(process, pumps))
        termination = asyncio.create_task(self._terminate.wait())
        try:
            done, _ = await asyncio.wait(
                {completion, termination},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if completion in done:
                self.child_returncode = completion.result()
                LOGGER.info("Update command exited with code %s", self.child_returncode)
                return ExitCode.OK
            LOGGER.warning("Update interrupted (signal %s); cleaning up", self.termination_signal)
            return ExitCode.FAILURE
        finally:
            # Cleanup removes the lock next; no child may survive past here.
            termination.cancel()
            completion.cancel()
            await self._stop_child(process)
            for task in pumps:
                task.cancel()
            await asyncio.gather(completion, termination, *pumps, return_exceptions=True)

    async def _wait_for_child(
        self,
        process: asyncio.subprocess.Process,
        pumps: list[asyncio.Task[None]],
    ) -> int:
        await asyncio.gather(*pumps)
        return await process.wait()

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            self._write(chunk)

    async def _stop_child(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            LOGGER.warning("Update command ignored termination; killing pid %s", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
        self.child_returncode = process.returncode

    def _on_termination(self, signum: int | None) -> None:
        if self.termination_signal is None:
            self.termination_signal = signum
        if self._terminate is not None and not self._terminate.is_set():
            LOGGER.warning("Termination requested (signal %s)", signum)
            self._terminate.set()

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        assert loop is not None
        for signum in _TERMINATION_SIGNALS:
            try:
                loop.add_signal_handler(signum, self.request_termination, signum)
            except NotImplementedError:
                # Proactor loops (Windows) only support the classic handlers.
                if threading.current_thread() is threading.main_thread():
                    self._previous_handlers[signum] = signal.signal(
                        signum, lambda received, _frame: self.request_termination(received)
                    )
            except (RuntimeError, ValueError):
                LOGGER.debug("Signal %s cannot be handled from this thread", signum)
            else:
                self._previous_handlers[signum] = _LOOP_HANDLER

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        for signum, previous in self._previous_handlers.items():
            if previous is _LOOP_HANDLER:
                if loop is not None:
                    loop.remove_signal_handler(signum)
            else:
                signal.signal(signum, previous)  # type: ignore[arg-type]
        self._previous_handlers.clear()

    def _open_log(self, path: Path) -> None:
        self._log = open(path, "ab", buffering=0)  # noqa: SIM115 - closed in _finish
        handler = _LogFileHandler(self._write)
        package_logger = logging.getLogger("uixctl")
        package_logger.addHandler(handler)
        self._handler = handler
        self._previous_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)

    def _write(self, data: bytes) -> None:
        if self._log is None or self._log.closed:
            return
        view = memoryview(data)
        while view:
            written = self._log.write(view)
            view = view[written:]

    def _finish(self) -> None:
        self.state = UpdateState.CLEANUP
        self.cleanup.run()
        if self._handler is not None:
            package_logger = logging.getLogger("uixctl")
            package_logger.removeHandler(self._handler)
            package_logger.setLevel(self._previous_level)
            self._handler = None
        if self._log is not None:
            self._log.close()
        self.state = UpdateState.EXIT


def run_update(job: UpdateJob, *, locator: PackageManagerLocator | None = None) -> int:
    """Run *job* and return its exit code."""
    return UpdateOrchestrator(job, locator=locator).run()


def main(env: Mapping[str, str] | None = None) -> int:
    """Console entry point reading its parameters from the environment."""
    return run_update(UpdateJob.from_env(os.environ if env is None else env))


if __name__ == "__main__":  # pragma: no cover - exercised via subprocess tests
    raise SystemExit(main())


__all__ = [
    "ALLOWED_PACKAGES",
    "UpdateCleanup",
    "UpdateJob",
    "UpdateOrchestrator",
    "UpdateState",
    "UpdateValidationError",
    "main",
    "run_update",
    "validate_package",
]

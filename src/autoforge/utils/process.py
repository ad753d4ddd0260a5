"""Safe subprocess execution for package-script and provider tooling.

Every external tool (npm, npx, node, docker, vercel, netlify, aws) is run
through this module:
- Never uses shell=True
- Enforces a timeout on every invocation
- Resolves the binary on PATH before running it
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import structlog

from autoforge.utils.async_helpers import FrameworkError
from autoforge.utils.security import strip_terminal_codes

log = structlog.get_logger()


class CommandError(FrameworkError):
    """Base exception for external command failures."""


class CommandNotFoundError(CommandError):
    """The executable is not installed or not on PATH."""


class CommandTimeoutError(CommandError):
    """Raised when a command times out."""


class CommandFailedError(CommandError):
    """Raised by ``check=True`` when a command exits non-zero."""

    def __init__(self, result: CommandResult) -> None:
        super().__init__(
            f"Command {' '.join(result.command)} exited with {result.return_code}: "
            f"{result.output_tail()}"
        )
        self.result = result


@dataclass
class CommandResult:
    """Result of an external command execution."""

    stdout: str
    stderr: str
    return_code: int
    command: list[str]
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def json(self) -> Any:
        """Parse stdout as JSON.

        Raises:
            ValueError: If stdout is not valid JSON.
        """
        return json.loads(self.stdout)

    def output_tail(self, lines: int = 20) -> str:
        """Return the last ``lines`` lines of combined output, without colour codes."""
        return "\n".join(strip_terminal_codes(self.output).splitlines()[-lines:])


def which(executable: str) -> str | None:
    """Find an executable on PATH."""
    return shutil.which(executable)


def _merged_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    return {**os.environ, **env}


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float,
    env: Mapping[str, str] | None = None,
    check: bool = False,
) -> CommandResult:
    """Run an external command safely.

    Args:
        args: Executable followed by its arguments.
        cwd: Working directory.
        timeout: Timeout in seconds.
        env: Extra environment variables layered over the current environment.
        check: If True, raise CommandFailedError on a non-zero exit.

    Returns:
        CommandResult with stdout, stderr, and return code. A non-zero exit
        is a normal result unless ``check`` is set.

    Raises:
        CommandNotFoundError: If the executable cannot be found.
        CommandTimeoutError: If the command times out.
        CommandFailedError: If check=True and the command fails.
    """
    cmd = list(args)
    executable = which(cmd[0])
    if executable is None:
        raise CommandNotFoundError(f"{cmd[0]} not found on PATH")

    log.debug("executing_command", command=cmd, cwd=str(cwd) if cwd else None, timeout=timeout)
    started = time.perf_counter()

    def run_sync() -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [executable, *cmd[1:]],
            cwd=cwd,
            env=_merged_env(env),
            capture_output=True,
            text=True,
            timeout=timeout,
            shell=False,
        )

    try:
        proc = await asyncio.wait_for(
            asyncio.to_thread(run_sync),
            timeout=timeout + 5,  # Extra buffer for thread overhead
        )
    except (subprocess.TimeoutExpired, TimeoutError) as e:
        msg = f"Command timed out after {timeout}s: {' '.join(cmd)}"
        log.error("command_timeout", command=cmd, timeout=timeout)
        raise CommandTimeoutError(msg) from e
    except FileNotFoundError as e:
        raise CommandNotFoundError(f"{cmd[0]} could not be executed: {e}") from e

    result = CommandResult(
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        return_code=proc.returncode,
        command=cmd,
        duration=time.perf_counter() - started,
    )
    log.debug(
        "command_finished",
        command=cmd,
        return_code=result.return_code,
        duration=round(result.duration, 3),
    )

    if check and not result.success:
        raise CommandFailedError(result)

    return result


class ManagedProcess:
    """A long-running child process such as a dev server.

    The child runs in its own process group so that stopping it also stops
    anything it spawned (npm starts node, node starts watchers).

    Example:
        server = ManagedProcess(["npm", "run", "dev"], cwd=app.root / "backend")
        server.start()
        try:
            ...
        finally:
            await server.stop()
    """

    def __init__(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str,
        env: Mapping[str, str] | None = None,
        log_file: Path | None = None,
    ) -> None:
        self._args = list(args)
        self._cwd = cwd
        self._env = env
        self._log_file = log_file
        self._proc: subprocess.Popen[bytes] | None = None
        self._output: IO[bytes] | None = None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def start(self) -> None:
        """Start the process.

        Raises:
            CommandNotFoundError: If the executable cannot be found.
        """
        executable = which(self._args[0])
        if executable is None:
            raise CommandNotFoundError(f"{self._args[0]} not found on PATH")

        if self._log_file is not None:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            self._output = self._log_file.open("ab")

        self._proc = subprocess.Popen(
            [executable, *self._args[1:]],
            cwd=self._cwd,
            env=_merged_env(self._env),
            stdout=self._output or subprocess.DEVNULL,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            shell=False,
        )
        log.info("process_started", command=self._args, cwd=str(self._cwd), pid=self._proc.pid)

    async def stop(self, timeout: float = 10.0) -> None:
        """Terminate the process group, escalating to SIGKILL after ``timeout``."""
        proc = self._proc
        if proc is None:
            return

        try:
            if proc.poll() is None:
                self._signal_group(proc, signal.SIGTERM)
                try:
                    await asyncio.to_thread(proc.wait, timeout)
                except subprocess.TimeoutExpired:
                    log.warning("process_kill", pid=proc.pid)
                    self._signal_group(proc, signal.SIGKILL)
                    await asyncio.to_thread(proc.wait, timeout)
            log.info("process_stopped", command=self._args, pid=proc.pid)
        finally:
            self._proc = None
            if self._output is not None:
                self._output.close()
                self._output = None

    @staticmethod
    def _signal_group(proc: subprocess.Popen[bytes], sig: signal.Signals) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except ProcessLookupError:
            pass

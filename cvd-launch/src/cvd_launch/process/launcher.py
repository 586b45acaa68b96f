"""Process launcher.

Starts an ordered batch of Commands as independent OS processes. A batch is
all-or-nothing: if any command fails to spawn, or exits with a non-zero status
within its startup grace period, the processes already started from the batch
are terminated, the rest are never started, and LaunchError names the
offending command.

Processes that survive the grace period keep running on their own; watching
them afterwards is the caller's business.
"""

from __future__ import annotations

import logging
import subprocess
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from cvd_launch.command import Command, OutputTarget

logger = logging.getLogger(__name__)


class ProcessLauncherError(RuntimeError):
    pass


class LaunchError(ProcessLauncherError):
    def __init__(
        self,
        message: str,
        *,
        command_name: str,
        returncode: Optional[int] = None,
        terminated: Sequence[str] = (),
        not_started: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.command_name = command_name
        self.returncode = returncode
        self.terminated = tuple(terminated)
        self.not_started = tuple(not_started)


@dataclass
class LaunchedProcess:
    command: Command
    process: Any

    @property
    def name(self) -> str:
        return self.command.name

    @property
    def pid(self) -> int:
        return int(self.process.pid)

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def terminate(self, *, timeout_s: float = 5.0) -> Optional[int]:
        """SIGTERM, then SIGKILL if the process is still around after ``timeout_s``."""

        if self.process.poll() is not None:
            return self.process.returncode
        self.process.terminate()
        try:
            return self.process.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning("%s (pid %s) ignored SIGTERM, killing", self.name, self.pid)
            self.process.kill()
            return self.process.wait(timeout=timeout_s)


def _open_target(target: OutputTarget, stack: ExitStack) -> Any:
    if target is None:
        return None
    if isinstance(target, Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        return stack.enter_context(target.open("ab"))
    return target.fileno()


class ProcessLauncher:
    def __init__(self, *, startup_grace_s: float = 1.0, terminate_timeout_s: float = 5.0) -> None:
        self._startup_grace_s = float(startup_grace_s)
        self._terminate_timeout_s = float(terminate_timeout_s)

    def _spawn(self, command: Command) -> Any:
        with ExitStack() as stack:
            stdout = _open_target(command.stdout, stack)
            stderr = _open_target(command.stderr, stack)
            logger.debug("spawning %s: %s", command.name, command.argv())
            return subprocess.Popen(
                command.argv(),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                pass_fds=command.pass_fds(),
                env=dict(command.env) if command.env is not None else None,
                start_new_session=True,
            )

    def _wait_startup(self, process: Any) -> Optional[int]:
        try:
            return process.wait(timeout=self._startup_grace_s)
        except subprocess.TimeoutExpired:
            return None

    def _rollback(self, started: List[LaunchedProcess]) -> List[str]:
        terminated: List[str] = []
        for launched in reversed(started):
            logger.info("terminating %s (pid %s)", launched.name, launched.pid)
            try:
                launched.terminate(timeout_s=self._terminate_timeout_s)
            except OSError as e:
                logger.error("failed to terminate %s: %s", launched.name, e)
            terminated.append(launched.name)
        return terminated

    def launch(self, commands: Sequence[Command]) -> List[LaunchedProcess]:
        started: List[LaunchedProcess] = []
        for idx, command in enumerate(commands):
            error: Optional[str] = None
            returncode: Optional[int] = None
            cause: Optional[BaseException] = None
            try:
                process = self._spawn(command)
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                # Bad argv/env (embedded NUL), closed fd targets, exec failures.
                error = f"failed to start {command.name}: {e}"
                cause = e
            else:
                # The child holds its own copies of everything it was handed.
                command.close()
                returncode = self._wait_startup(process)
                if returncode is None or returncode == 0:
                    started.append(LaunchedProcess(command=command, process=process))
                    logger.info("started %s (pid %s)", command.name, process.pid)
                    continue
                error = f"{command.name} exited immediately with status {returncode}"

            logger.error("%s; rolling back %d started process(es)", error, len(started))
            rest = list(commands[idx:])
            for pending in rest:
                pending.close()
            terminated = self._rollback(started)
            raise LaunchError(
                error,
                command_name=command.name,
                returncode=returncode,
                terminated=terminated,
                not_started=[c.name for c in rest[1:]],
            ) from cause
        return started

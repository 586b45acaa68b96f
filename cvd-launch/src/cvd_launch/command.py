"""Launchable command objects.

A :class:`Command` is the unit handed to the process launcher: the binary, its
ordered arguments, the OS resources it owns (pipe ends, tap devices, ...) and
where its stdout/stderr go. Commands are assembled with a
:class:`CommandBuilder` and are immutable afterwards.

Ownership rules:
  * a resource added to a builder belongs to the command built from it
  * the launcher closes the parent's copy once the child process holds it
  * a command that is never launched releases its resources via ``close()``
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable


@runtime_checkable
class OwnedResource(Protocol):
    """Anything a command can own. ``fileno()`` is optional."""

    def close(self) -> None: ...


class OwnedFd:
    """A raw file descriptor (usually one end of a pipe) owned by a command."""

    def __init__(self, fd: int, *, name: str = "") -> None:
        self._fd: Optional[int] = int(fd)
        self.name = name or f"fd{fd}"

    def fileno(self) -> int:
        if self._fd is None:
            raise ValueError(f"file descriptor already closed: {self.name}")
        return self._fd

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError:
            pass

    def __repr__(self) -> str:
        return f"OwnedFd(name={self.name!r}, fd={self._fd})"


OutputTarget = Union[OwnedFd, Path, None]


def _resource_fd(resource: Any) -> Optional[int]:
    fileno = getattr(resource, "fileno", None)
    if fileno is None:
        return None
    if getattr(resource, "is_open", True) is False:
        return None
    return int(fileno())


@dataclass(frozen=True)
class Command:
    name: str
    binary: str
    args: Tuple[str, ...] = ()
    resources: Tuple[OwnedResource, ...] = ()
    stdout: OutputTarget = None
    stderr: OutputTarget = None
    env: Optional[Mapping[str, str]] = field(default=None, compare=False)

    def argv(self) -> list[str]:
        return [self.binary, *self.args]

    def pass_fds(self) -> Tuple[int, ...]:
        """File descriptors the child must inherit (stdio redirections excluded)."""

        fds: list[int] = []
        for res in self.resources:
            if res is self.stdout or res is self.stderr:
                continue
            fd = _resource_fd(res)
            if fd is not None and fd not in fds:
                fds.append(fd)
        return tuple(fds)

    def close(self) -> None:
        for res in self.resources:
            res.close()

    def describe(self) -> Dict[str, Any]:
        def _target(t: OutputTarget) -> Optional[str]:
            if t is None:
                return None
            if isinstance(t, Path):
                return str(t)
            return f"pipe:{t.name}"

        return {
            "name": self.name,
            "binary": self.binary,
            "args": list(self.args),
            "stdout": _target(self.stdout),
            "stderr": _target(self.stderr),
        }


class CommandBuilderError(RuntimeError):
    pass


class CommandBuilder:
    """Accumulates the pieces of a :class:`Command`.

    ``add_parameter`` concatenates its parts into a single argv entry, so
    ``add_parameter("--socket=", path)`` yields ``--socket=/some/path``.
    """

    def __init__(self, binary: str | Path | None = None, *, name: str | None = None) -> None:
        self._binary: Optional[str] = str(binary) if binary is not None else None
        self._name = name
        self._args: list[str] = []
        self._resources: list[OwnedResource] = []
        self._stdout: OutputTarget = None
        self._stderr: OutputTarget = None
        self._env: Optional[Dict[str, str]] = None
        self._built = False

    def _check_open(self) -> None:
        if self._built:
            raise CommandBuilderError(f"command already built: {self.name}")

    @property
    def binary(self) -> Optional[str]:
        return self._binary

    @property
    def name(self) -> str:
        if self._name:
            return self._name
        if self._binary:
            return Path(self._binary).name
        return "<unnamed>"

    @property
    def args(self) -> Tuple[str, ...]:
        return tuple(self._args)

    def set_binary(self, binary: str | Path) -> "CommandBuilder":
        self._check_open()
        self._binary = str(binary)
        return self

    def set_name(self, name: str) -> "CommandBuilder":
        self._check_open()
        self._name = name
        return self

    def add_parameter(self, *parts: Any) -> "CommandBuilder":
        self._check_open()
        if not parts:
            raise CommandBuilderError("add_parameter requires at least one part")
        self._args.append("".join(str(p) for p in parts))
        return self

    def add_parameters(self, params: Sequence[Any]) -> "CommandBuilder":
        for p in params:
            self.add_parameter(p)
        return self

    def add_resource(self, resource: OwnedResource) -> OwnedResource:
        self._check_open()
        if not any(resource is r for r in self._resources):
            self._resources.append(resource)
        return resource

    def redirect_stdout(self, target: OutputTarget) -> "CommandBuilder":
        self._check_open()
        self._stdout = target
        return self

    def redirect_stderr(self, target: OutputTarget) -> "CommandBuilder":
        self._check_open()
        self._stderr = target
        return self

    def set_env(self, env: Mapping[str, str]) -> "CommandBuilder":
        self._check_open()
        self._env = dict(env)
        return self

    def build(self) -> Command:
        self._check_open()
        if not self._binary:
            raise CommandBuilderError("command binary is not set")
        for target in (self._stdout, self._stderr):
            if isinstance(target, OwnedFd):
                self.add_resource(target)
        self._built = True
        return Command(
            name=self.name,
            binary=self._binary,
            args=tuple(self._args),
            resources=tuple(self._resources),
            stdout=self._stdout,
            stderr=self._stderr,
            env=self._env,
        )

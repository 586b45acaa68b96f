"""Control environment: forward operator commands to running instance services.

The host gRPC services of a running instance (access point control, wmediumd
and the like) listen on unix sockets in the instance's ``grpc_socket/``
directory. The launcher creates that directory but never binds or removes
anything in it; the hypervisor control sockets live in ``internal/``.
This module enumerates those endpoints and drives the ``grpc_cli`` tool
against them:

  ls                      -> {"services": [...]}
  ls <service>            -> {"methods": [...]}
  ls <service> <method>   -> {"request_type": ..., "response_type": ...}
  type <service> <method> <type_name>
  call <service> <method> <json payload>

Service names may be given as a suffix of the fully qualified name
(``OpenwrtControlService`` for ``openwrtcontrolserver.OpenwrtControlService``).
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Sequence

logger = logging.getLogger(__name__)

SERVICE_SERVER_REFLECTION = "grpc.reflection.v1alpha.ServerReflection"
SERVICE_HEALTH = "grpc.health.v1.Health"
_HIDDEN_SERVICES = {SERVICE_SERVER_REFLECTION, SERVICE_HEALTH}

# Passed on every call; options given after these win.
_DEFAULT_OPTIONS = ("-l=false", "--json_input=true", "--json_output=true")


class ControlEnvError(RuntimeError):
    pass


class NotFoundError(ControlEnvError):
    pass


class AmbiguousError(ControlEnvError):
    pass


class TooManyArgumentsError(ControlEnvError):
    pass


class UnsupportedCommandError(ControlEnvError):
    pass


class GrpcCommandError(ControlEnvError):
    pass


@dataclass(frozen=True)
class GrpcCliResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


def server_addresses(grpc_socket_dir: Path) -> List[str]:
    """``unix:`` addresses of every endpoint in the socket directory (sorted)."""

    grpc_socket_dir = Path(grpc_socket_dir)
    if not grpc_socket_dir.is_dir():
        raise NotFoundError(f"gRPC socket directory not found: {grpc_socket_dir}")
    addresses = []
    for entry in sorted(grpc_socket_dir.iterdir()):
        logger.debug("loading %s", entry)
        addresses.append(f"unix:{entry}")
    return addresses


def _single(candidates: Sequence[str], what: str) -> str:
    if not candidates:
        raise NotFoundError(f"{what} is not found.")
    if len(candidates) > 1:
        raise AmbiguousError(f"{what} is ambiguous.")
    return candidates[0]


def _split_signature(text: str) -> List[str]:
    return re.split(r"[()]", text)


class GrpcServiceHandler:
    def __init__(
        self,
        server_address_list: Sequence[str],
        *,
        grpc_cli: str = "grpc_cli",
        timeout_s: float = 30.0,
    ) -> None:
        self._servers = list(server_address_list)
        self._grpc_cli = grpc_cli
        self._timeout_s = timeout_s

    # ------------------------------- grpc_cli ---------------------------------

    def run_grpc_command(self, arguments: Sequence[str], options: Sequence[str] = ()) -> str:
        cmd = [self._grpc_cli, *arguments, *_DEFAULT_OPTIONS, *options]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout_s)
        except FileNotFoundError as e:
            raise GrpcCommandError(f"grpc_cli not found: {self._grpc_cli}") from e
        except subprocess.TimeoutExpired as e:
            raise GrpcCommandError(f"gRPC command timed out: {' '.join(cmd)}") from e

        result = GrpcCliResult(
            args=cmd, stdout=proc.stdout, stderr=proc.stderr, returncode=proc.returncode
        )
        if not result.ok():
            raise GrpcCommandError(
                f"gRPC command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stderr: {result.stderr}"
            )
        return result.stdout

    def service_list(self, server_address: str) -> List[str]:
        out = self.run_grpc_command(["ls", server_address])
        return [
            line.strip()
            for line in out.splitlines()
            if line.strip() and line.strip() not in _HIDDEN_SERVICES
        ]

    # ------------------------------- resolution -------------------------------

    def server_address(self, service_name: str) -> str:
        candidates = [
            address
            for address in self._servers
            if any(full.endswith(service_name) for full in self.service_list(address))
        ]
        return _single(candidates, service_name)

    def full_service_name(self, server_address: str, service_name: str) -> str:
        candidates = [s for s in self.service_list(server_address) if s.endswith(service_name)]
        return _single(candidates, service_name)

    def full_method_name(self, server_address: str, service_name: str, method_name: str) -> str:
        return f"{self.full_service_name(server_address, service_name)}/{method_name}"

    def full_type_name(
        self, server_address: str, service_name: str, method_name: str, type_name: str
    ) -> str:
        # `ls -l <method>` prints e.g.
        #   rpc OpenwrtIpaddr(google.protobuf.Empty) returns (openwrtcontrolserver.OpenwrtIpaddrReply) {}
        full_method = self.full_method_name(server_address, service_name, method_name)
        out = self.run_grpc_command(["ls", server_address, full_method], ["-l"])
        candidates = [part for part in _split_signature(out) if part.endswith(type_name)]
        return _single(candidates, type_name)

    # -------------------------------- commands --------------------------------

    def handle_ls(self, args: Sequence[str]) -> str:
        if len(args) == 0:
            services: List[str] = []
            for address in self._servers:
                services += [s.split(".")[-1] for s in self.service_list(address)]
            return json.dumps({"services": services}, indent=2) + "\n"

        if len(args) == 1:
            service_name = args[0]
            address = self.server_address(service_name)
            full_service = self.full_service_name(address, service_name)
            out = self.run_grpc_command(["ls", address, full_service])
            methods = [line.strip() for line in out.strip().splitlines() if line.strip()]
            return json.dumps({"methods": methods}, indent=2) + "\n"

        if len(args) == 2:
            service_name, method_name = args
            address = self.server_address(service_name)
            full_method = self.full_method_name(address, service_name, method_name)
            out = self.run_grpc_command(["ls", address, full_method], ["-l"])
            parts = _split_signature(out.strip())
            if len(parts) != 5:
                raise GrpcCommandError(f"Unexpected parsing result: {out.strip()!r}")
            return (
                json.dumps(
                    {
                        "request_type": parts[1].split(".")[-1],
                        "response_type": parts[3].split(".")[-1],
                    },
                    indent=2,
                )
                + "\n"
            )

        raise TooManyArgumentsError("too many arguments")

    def handle_type(self, args: Sequence[str]) -> str:
        if len(args) < 3:
            raise ControlEnvError("need to specify a service name, a method name, and type_name")
        if len(args) > 3:
            raise TooManyArgumentsError("too many arguments")
        service_name, method_name, type_name = args
        address = self.server_address(service_name)
        full_type = self.full_type_name(address, service_name, method_name, type_name)
        return self.run_grpc_command(["type", address, full_type])

    def handle_call(self, args: Sequence[str]) -> str:
        if len(args) < 3:
            raise ControlEnvError(
                "need to specify a service name, a method name, and json-formatted proto"
            )
        if len(args) > 3:
            raise TooManyArgumentsError("too many arguments")
        service_name, method_name, json_payload = args
        address = self.server_address(service_name)
        full_method = self.full_method_name(address, service_name, method_name)
        return self.run_grpc_command(["call", address, full_method, json_payload])

    def handle(self, cmd: str, args: Sequence[str]) -> str:
        handlers: Dict[str, Callable[[Sequence[str]], str]] = {
            "call": self.handle_call,
            "ls": self.handle_ls,
            "type": self.handle_type,
        }
        handler = handlers.get(cmd)
        if handler is None:
            raise UnsupportedCommandError(f"{cmd} isn't supported")
        return handler(list(args))


def handle_cmds(
    grpc_socket_dir: Path,
    cmd: str,
    args: Sequence[str],
    *,
    grpc_cli: str = "grpc_cli",
) -> str:
    handler = GrpcServiceHandler(server_addresses(grpc_socket_dir), grpc_cli=grpc_cli)
    return handler.handle(cmd, args)

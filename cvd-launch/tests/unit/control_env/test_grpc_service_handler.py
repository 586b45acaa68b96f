from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Dict, List

import pytest

from cvd_launch.control_env import grpc_service_handler as handler_mod
from cvd_launch.control_env import (
    AmbiguousError,
    GrpcCommandError,
    NotFoundError,
    TooManyArgumentsError,
    UnsupportedCommandError,
    handle_cmds,
)

SIGNATURE = (
    "  rpc OpenwrtIpaddr(google.protobuf.Empty) returns "
    "(openwrtcontrolserver.OpenwrtIpaddrReply) {}\n"
)


class _FakeGrpcCli:
    """Answers ``grpc_cli`` invocations from a table keyed by the non-option args."""

    def __init__(self, services: Dict[str, List[str]]) -> None:
        self.services = services
        self.calls: List[List[str]] = []

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        args = [a for a in cmd[1:] if not a.startswith("-")]
        verb, address, rest = args[0], args[1], args[2:]
        out = ""
        rc = 0
        if verb == "ls" and not rest:
            out = "\n".join(self.services[address]) + "\n"
        elif verb == "ls" and "/" not in rest[0]:
            out = "OpenwrtIpaddr\nWmediumdCommand\n"
        elif verb == "ls":
            out = SIGNATURE
        elif verb == "type":
            out = "message OpenwrtIpaddrReply {\n  string ipaddr = 1;\n}\n"
        elif verb == "call":
            out = json.dumps({"ipaddr": "192.168.96.2"}) + "\n"
        else:
            rc = 1
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr="" if rc == 0 else "boom")


@pytest.fixture
def socket_dir(tmp_path: Path) -> Path:
    d = tmp_path / "grpc_socket"
    d.mkdir()
    (d / "OpenwrtControlServer.sock").write_text("", encoding="utf-8")
    (d / "WmediumdServer.sock").write_text("", encoding="utf-8")
    return d


@pytest.fixture
def grpc_cli(monkeypatch, socket_dir: Path) -> _FakeGrpcCli:
    fake = _FakeGrpcCli(
        {
            f"unix:{socket_dir / 'OpenwrtControlServer.sock'}": [
                "openwrtcontrolserver.OpenwrtControlService",
                "grpc.reflection.v1alpha.ServerReflection",
                "grpc.health.v1.Health",
            ],
            f"unix:{socket_dir / 'WmediumdServer.sock'}": [
                "wmediumdserver.WmediumdService",
                "grpc.health.v1.Health",
            ],
        }
    )
    monkeypatch.setattr(handler_mod.subprocess, "run", fake)
    return fake


def test_ls_lists_services_without_reflection(socket_dir: Path, grpc_cli) -> None:
    out = json.loads(handle_cmds(socket_dir, "ls", []))
    assert out == {"services": ["OpenwrtControlService", "WmediumdService"]}
    for call in grpc_cli.calls:
        assert call[-3:] == ["-l=false", "--json_input=true", "--json_output=true"]


def test_ls_service_lists_methods(socket_dir: Path, grpc_cli) -> None:
    out = json.loads(handle_cmds(socket_dir, "ls", ["OpenwrtControlService"]))
    assert out == {"methods": ["OpenwrtIpaddr", "WmediumdCommand"]}
    assert grpc_cli.calls[-1][1:4] == [
        "ls",
        f"unix:{socket_dir / 'OpenwrtControlServer.sock'}",
        "openwrtcontrolserver.OpenwrtControlService",
    ]


def test_ls_method_describes_signature(socket_dir: Path, grpc_cli) -> None:
    out = json.loads(handle_cmds(socket_dir, "ls", ["OpenwrtControlService", "OpenwrtIpaddr"]))
    assert out == {"request_type": "Empty", "response_type": "OpenwrtIpaddrReply"}
    assert grpc_cli.calls[-1][-1] == "-l"


def test_type_resolves_full_type_name(socket_dir: Path, grpc_cli) -> None:
    out = handle_cmds(
        socket_dir, "type", ["OpenwrtControlService", "OpenwrtIpaddr", "OpenwrtIpaddrReply"]
    )
    assert "string ipaddr" in out
    assert grpc_cli.calls[-1][3] == "openwrtcontrolserver.OpenwrtIpaddrReply"


def test_call_forwards_json_payload(socket_dir: Path, grpc_cli) -> None:
    out = handle_cmds(socket_dir, "call", ["OpenwrtControlService", "OpenwrtIpaddr", "{}"])
    assert json.loads(out) == {"ipaddr": "192.168.96.2"}
    assert grpc_cli.calls[-1][1:5] == [
        "call",
        f"unix:{socket_dir / 'OpenwrtControlServer.sock'}",
        "openwrtcontrolserver.OpenwrtControlService/OpenwrtIpaddr",
        "{}",
    ]


def test_errors(socket_dir: Path, grpc_cli) -> None:
    with pytest.raises(NotFoundError):
        handle_cmds(socket_dir, "ls", ["NoSuchService"])
    with pytest.raises(AmbiguousError):
        handle_cmds(socket_dir, "ls", ["Service"])
    with pytest.raises(TooManyArgumentsError):
        handle_cmds(socket_dir, "ls", ["a", "b", "c"])
    with pytest.raises(UnsupportedCommandError):
        handle_cmds(socket_dir, "rm", [])
    with pytest.raises(NotFoundError):
        handle_cmds(socket_dir.parent / "absent", "ls", [])


def test_grpc_cli_failure(socket_dir: Path, monkeypatch) -> None:
    def _fail(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="connection refused")

    monkeypatch.setattr(handler_mod.subprocess, "run", _fail)
    with pytest.raises(GrpcCommandError) as excinfo:
        handle_cmds(socket_dir, "ls", [])
    assert "connection refused" in str(excinfo.value)

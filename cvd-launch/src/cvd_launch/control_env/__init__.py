"""Operator access to the gRPC services of a running instance."""

from __future__ import annotations

from cvd_launch.control_env.grpc_service_handler import (
    AmbiguousError,
    ControlEnvError,
    GrpcCommandError,
    GrpcServiceHandler,
    NotFoundError,
    TooManyArgumentsError,
    UnsupportedCommandError,
    handle_cmds,
    server_addresses,
)

__all__ = [
    "AmbiguousError",
    "ControlEnvError",
    "GrpcCommandError",
    "GrpcServiceHandler",
    "NotFoundError",
    "TooManyArgumentsError",
    "UnsupportedCommandError",
    "handle_cmds",
    "server_addresses",
]

from __future__ import annotations

import os
from pathlib import Path

import pytest

from cvd_launch.command import CommandBuilder, CommandBuilderError, OwnedFd


def test_add_parameter_concatenates_parts() -> None:
    cmd = (
        CommandBuilder("/usr/bin/crosvm")
        .add_parameter("run")
        .add_parameter("--socket=", Path("/tmp/x.sock"))
        .add_parameter("--cpus=", 4)
        .build()
    )
    assert cmd.name == "crosvm"
    assert cmd.argv() == ["/usr/bin/crosvm", "run", "--socket=/tmp/x.sock", "--cpus=4"]


def test_builder_is_single_use() -> None:
    builder = CommandBuilder("true")
    builder.build()
    with pytest.raises(CommandBuilderError):
        builder.add_parameter("--late")
    with pytest.raises(CommandBuilderError):
        builder.build()


def test_build_requires_binary() -> None:
    with pytest.raises(CommandBuilderError):
        CommandBuilder(name="nothing").build()


def test_redirect_fd_is_owned_but_not_passed() -> None:
    read_fd, write_fd = os.pipe()
    read_end = OwnedFd(read_fd, name="r")
    write_end = OwnedFd(write_fd, name="w")
    try:
        primary = CommandBuilder("primary").redirect_stdout(write_end).build()
        tee = CommandBuilder("tee")
        tee.add_resource(read_end)
        tee_cmd = tee.build()

        assert primary.resources == (write_end,)
        assert primary.pass_fds() == ()
        assert tee_cmd.pass_fds() == (read_fd,)
        assert primary.describe()["stdout"] == "pipe:w"

        primary.close()
        tee_cmd.close()
        assert not write_end.is_open
        assert not read_end.is_open
        assert tee_cmd.pass_fds() == ()
    finally:
        read_end.close()
        write_end.close()


def test_owned_fd_close_is_idempotent() -> None:
    read_fd, write_fd = os.pipe()
    os.close(write_fd)
    owned = OwnedFd(read_fd)
    owned.close()
    owned.close()
    with pytest.raises(ValueError):
        owned.fileno()

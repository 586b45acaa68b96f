from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

import pytest

import cvd_launch
from cvd_launch.command import CommandBuilder
from cvd_launch.launch.log_tee import LogTeeCreator
from cvd_launch.process.launcher import LaunchError, ProcessLauncher
from cvd_launch.resources.allocator import ResourceAllocator

pytestmark = pytest.mark.skipif(
    not sys.platform.startswith("linux") or shutil.which("sh") is None,
    reason="needs a POSIX shell",
)


@pytest.fixture
def importable_package(monkeypatch) -> None:
    # The relay runs as `python -m cvd_launch.tools.log_tee` in a fresh interpreter.
    package_root = str(Path(cvd_launch.__file__).resolve().parents[1])
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH", os.pathsep.join([package_root, existing]) if existing else package_root
    )


def test_tee_and_primary_share_a_real_pipe(make_config, importable_package) -> None:
    cfg = make_config()
    allocator = ResourceAllocator(cfg)
    primary = CommandBuilder(shutil.which("sh"), name="hello")
    primary.add_parameters(["-c", "echo hello"])
    tee = LogTeeCreator(cfg, allocator).create_log_tee(primary, "hello")
    hello = primary.build()

    launched = ProcessLauncher(startup_grace_s=0.2).launch([tee, hello])
    assert [p.name for p in launched] == ["log_tee_hello", "hello"]

    # Parent copies are gone, so the relay sees EOF once the shell exits.
    assert not tee.resources[0].is_open
    assert not hello.stdout.is_open
    assert launched[0].process.wait(timeout=30) == 0
    assert (cfg.logs_dir / "hello.log").read_bytes() == b"hello\n"


def test_unspawnable_argv_rolls_back_real_processes(monkeypatch) -> None:
    real_popen = subprocess.Popen
    spawned: List[subprocess.Popen] = []

    def _recording_popen(*args, **kwargs):
        proc = real_popen(*args, **kwargs)
        spawned.append(proc)
        return proc

    monkeypatch.setattr(subprocess, "Popen", _recording_popen)

    sleeper = CommandBuilder(shutil.which("sleep") or "sleep", name="sleeper")
    sleeper.add_parameter(30)
    broken = CommandBuilder(shutil.which("echo") or "echo", name="broken")
    broken.add_parameter("a\x00b")
    never = CommandBuilder(shutil.which("true") or "true", name="never")

    try:
        with pytest.raises(LaunchError) as excinfo:
            ProcessLauncher(startup_grace_s=0.1, terminate_timeout_s=5).launch(
                [sleeper.build(), broken.build(), never.build()]
            )
    finally:
        for proc in spawned:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    err = excinfo.value
    assert err.command_name == "broken"
    assert err.terminated == ("sleeper",)
    assert err.not_started == ("never",)
    assert isinstance(err.__cause__, ValueError)
    assert len(spawned) == 1
    assert spawned[0].returncode is not None

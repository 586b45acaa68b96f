from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from cvd_launch.config.instance_config import InstanceConfig, instance_config_from_dict


class FakeTap:
    """Stands in for an opened tap interface; never touches /dev/net/tun."""

    def __init__(self, name: str, fd: int) -> None:
        self.name = name
        self.fd = fd
        self.is_open = True
        self.frames: List[bytes] = []

    def fileno(self) -> int:
        if not self.is_open:
            raise ValueError(f"tap device is closed: {self.name}")
        return self.fd

    def write_frame(self, frame: bytes) -> int:
        self.frames.append(frame)
        return len(frame)

    def close(self) -> None:
        self.is_open = False


class FakeTapOpener:
    def __init__(self) -> None:
        self.opened: Dict[str, FakeTap] = {}
        self._next_fd = 100

    def __call__(self, name: str) -> FakeTap:
        tap = FakeTap(name, self._next_fd)
        self._next_fd += 1
        self.opened[name] = tap
        return tap


@pytest.fixture
def tap_opener() -> FakeTapOpener:
    return FakeTapOpener()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., InstanceConfig]:
    def _make(**overrides: Any) -> InstanceConfig:
        data: Dict[str, Any] = {
            "instance_num": 1,
            "runtime_root": str(tmp_path / "runtime"),
            "instance_dir": str(tmp_path / "cvd-1"),
            "leases_dir": str(tmp_path / "run"),
            "kernel_path": str(tmp_path / "images" / "kernel"),
            "ap_kernel_image": str(tmp_path / "images" / "openwrt_kernel"),
            "seccomp_policy_dir": str(tmp_path / "seccomp"),
        }
        for key, value in overrides.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        return instance_config_from_dict(data, where="test")

    return _make

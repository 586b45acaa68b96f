from __future__ import annotations

from pathlib import Path
from typing import List, Mapping

from cvd_launch.command import Command, CommandBuilder
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.tap import TapDevice
from cvd_launch.vm_manager.base import (
    ARCH_X86_64,
    COMPOSITE_IMAGE,
    CONSOLE_LOG,
    KERNEL_LOG,
    OVERLAY_IMAGE,
    LogTee,
    VmManager,
    VmManagerError,
)

CONTROL_SOCKET = "crosvm_control.sock"


class CrosvmBuilder:
    """crosvm ``run`` flag vocabulary on top of a CommandBuilder."""

    def __init__(self, binary: str | Path = "crosvm", *, name: str = "crosvm") -> None:
        self._cmd = CommandBuilder(binary, name=name)
        self._cmd.add_parameter("run")
        self._hvc_num = 0
        self._serial_num = 0

    def cmd(self) -> CommandBuilder:
        return self._cmd

    def set_binary(self, binary: str | Path) -> None:
        self._cmd.set_binary(binary)

    def add_control_socket(self, path: Path) -> None:
        self._cmd.add_parameter("--socket=", path)

    def add_tap(self, tap: TapDevice) -> TapDevice:
        self._cmd.add_resource(tap)
        self._cmd.add_parameter("--net=tap-fd=", tap.fileno())
        return tap

    def set_sandbox(self, enabled: bool, seccomp_policy_dir: Path) -> None:
        if enabled:
            self._cmd.add_parameter("--seccomp-policy-dir=", seccomp_policy_dir)
        else:
            self._cmd.add_parameter("--disable-sandbox")

    def add_read_write_disk(self, path: Path) -> None:
        self._cmd.add_parameter("--rwdisk=", path)

    def add_read_only_disk(self, path: Path) -> None:
        self._cmd.add_parameter("--disk=", path)

    def add_serial_console_read_only(self, log_path: Path) -> None:
        self._serial_num += 1
        self._cmd.add_parameter(
            "--serial=hardware=serial,num=",
            self._serial_num,
            ",type=file,path=",
            log_path,
            ",console=true",
        )

    def add_hvc_read_only(self, log_path: Path) -> None:
        self._hvc_num += 1
        self._cmd.add_parameter(
            "--serial=hardware=virtio-console,num=",
            self._hvc_num,
            ",type=file,path=",
            log_path,
        )


def _gpu_flag(gpu_mode: str) -> List[str]:
    if gpu_mode == "drm_virgl":
        return ["--gpu=backend=virglrenderer,egl=true,gles=true"]
    if gpu_mode == "gfxstream":
        return ["--gpu=backend=gfxstream,egl=true,gles=true,glx=false,vulkan=true"]
    if gpu_mode in {"guest_swiftshader", "auto"}:
        return ["--gpu=backend=2D"]
    if gpu_mode == "none":
        return []
    raise VmManagerError(f"unsupported gpu mode for crosvm: {gpu_mode!r}")


class CrosvmManager(VmManager):
    name = "crosvm"

    def __init__(self, arch: str, *, binary: str = "crosvm") -> None:
        super().__init__(arch)
        self._binary = binary

    def binary(self) -> str:
        return self._binary

    def configure_boot_devices(self, num_disks: int) -> List[str]:
        if self.arch == ARCH_X86_64:
            # PCI slot 0 is the host bridge; disks come right after it.
            return [f"androidboot.boot_devices=pci0000:00/0000:00:{num_disks + 1:02x}.0"]
        return ["androidboot.boot_devices=10000.pci"]

    def start_commands(
        self,
        config: InstanceConfig,
        *,
        allocator: ResourceAllocator,
        taps: Mapping[str, TapDevice],
        log_tee: LogTee,
    ) -> List[Command]:
        crosvm = CrosvmBuilder(self._binary)
        cmd = crosvm.cmd()

        crosvm.add_control_socket(allocator.per_instance_internal_path(CONTROL_SOCKET))
        cmd.add_parameter("--cpus=", config.cpus)
        cmd.add_parameter("--mem=", config.memory_mb)
        for flag in _gpu_flag(config.gpu_mode):
            cmd.add_parameter(flag)

        for tap in taps.values():
            crosvm.add_tap(tap)

        crosvm.set_sandbox(config.enable_sandbox, config.seccomp_policy_dir)

        disks = 2
        crosvm.add_read_write_disk(allocator.per_instance_path(OVERLAY_IMAGE))
        crosvm.add_read_only_disk(allocator.per_instance_path(COMPOSITE_IMAGE))

        crosvm.add_serial_console_read_only(allocator.per_instance_log_path(KERNEL_LOG))
        crosvm.add_hvc_read_only(allocator.per_instance_log_path(CONSOLE_LOG))

        for arg in self.bootconfig_args(config, num_disks=disks):
            cmd.add_parameter("--params=", arg)

        cmd.add_parameter(config.kernel_path)

        tee = log_tee.create_log_tee(cmd, "crosvm")
        return [tee, cmd.build()]

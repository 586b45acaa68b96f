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

MONITOR_SOCKET = "qemu_monitor.sock"

_SANDBOX_ON = "on,obsolete=deny,elevateprivileges=deny,spawn=deny,resourcecontrol=deny"


class QemuBuilder:
    """qemu-system flag vocabulary on top of a CommandBuilder."""

    def __init__(self, binary: str | Path, *, name: str = "qemu") -> None:
        self._cmd = CommandBuilder(binary, name=name)
        self._net_num = 0
        self._disk_num = 0
        self._hvc_num = 0
        self._serial_num = 0

    def cmd(self) -> CommandBuilder:
        return self._cmd

    def add_control_socket(self, path: Path) -> None:
        self._cmd.add_parameter("-qmp")
        self._cmd.add_parameter("unix:", path, ",server=on,wait=off")

    def add_tap(self, tap: TapDevice) -> TapDevice:
        self._cmd.add_resource(tap)
        n = self._net_num
        self._net_num += 1
        self._cmd.add_parameter("-netdev")
        self._cmd.add_parameter("tap,id=hostnet", n, ",fd=", tap.fileno())
        self._cmd.add_parameter("-device")
        self._cmd.add_parameter("virtio-net-pci-non-transitional,netdev=hostnet", n, ",id=net", n)
        return tap

    def set_sandbox(self, enabled: bool) -> None:
        self._cmd.add_parameter("-sandbox")
        self._cmd.add_parameter(_SANDBOX_ON if enabled else "off")

    def _add_disk(self, path: Path, *, read_only: bool) -> None:
        n = self._disk_num
        self._disk_num += 1
        ro = ",read-only=on" if read_only else ""
        self._cmd.add_parameter("-drive")
        self._cmd.add_parameter(
            "file=", path, ",if=none,id=drive-virtio-disk", n, ",aio=threads,format=raw", ro
        )
        self._cmd.add_parameter("-device")
        self._cmd.add_parameter(
            "virtio-blk-pci-non-transitional,drive=drive-virtio-disk", n, ",id=virtio-disk", n
        )

    def add_read_write_disk(self, path: Path) -> None:
        self._add_disk(path, read_only=False)

    def add_read_only_disk(self, path: Path) -> None:
        self._add_disk(path, read_only=True)

    def add_serial_console_read_only(self, log_path: Path) -> None:
        n = self._serial_num
        self._serial_num += 1
        self._cmd.add_parameter("-chardev")
        self._cmd.add_parameter("file,id=serial", n, ",path=", log_path, ",append=on")
        self._cmd.add_parameter("-serial")
        self._cmd.add_parameter("chardev:serial", n)

    def add_hvc_read_only(self, log_path: Path) -> None:
        n = self._hvc_num
        self._hvc_num += 1
        if n == 0:
            self._cmd.add_parameter("-device")
            self._cmd.add_parameter("virtio-serial-pci-non-transitional,max_ports=31")
        self._cmd.add_parameter("-chardev")
        self._cmd.add_parameter("file,id=hvc", n, ",path=", log_path, ",append=on")
        self._cmd.add_parameter("-device")
        self._cmd.add_parameter("virtconsole,bus=virtio-serial.0,chardev=hvc", n)


def _gpu_device(gpu_mode: str) -> List[str]:
    if gpu_mode in {"drm_virgl", "gfxstream"}:
        return ["-device", "virtio-gpu-gl-pci", "-display", "egl-headless"]
    if gpu_mode in {"guest_swiftshader", "auto"}:
        return ["-device", "virtio-gpu-pci", "-display", "none"]
    if gpu_mode == "none":
        return ["-display", "none"]
    raise VmManagerError(f"unsupported gpu mode for qemu: {gpu_mode!r}")


class QemuManager(VmManager):
    """Starts the guest with qemu-system-<arch> directly."""

    name = "qemu_cli"

    def __init__(self, arch: str, *, binary_dir: Path = Path("/usr/bin")) -> None:
        super().__init__(arch)
        self._binary_dir = Path(binary_dir)

    def binary(self) -> str:
        suffix = "x86_64" if self.arch == ARCH_X86_64 else "aarch64"
        return str(self._binary_dir / f"qemu-system-{suffix}")

    def configure_boot_devices(self, num_disks: int) -> List[str]:
        if self.arch == ARCH_X86_64:
            # Slots 0/1 are the host bridge and ISA bridge.
            return [f"androidboot.boot_devices=pci0000:00/0000:00:{num_disks + 2:02x}.0"]
        return ["androidboot.boot_devices=4010000000.pcie"]

    def _machine(self) -> str:
        if self.arch == ARCH_X86_64:
            return "pc,accel=kvm"
        return "virt,gic-version=3,accel=kvm"

    def start_commands(
        self,
        config: InstanceConfig,
        *,
        allocator: ResourceAllocator,
        taps: Mapping[str, TapDevice],
        log_tee: LogTee,
    ) -> List[Command]:
        qemu = QemuBuilder(self.binary())
        cmd = qemu.cmd()

        cmd.add_parameters(["-name", f"guest=cvd-{config.instance_suffix},debug-threads=on"])
        cmd.add_parameters(["-machine", self._machine()])
        cmd.add_parameters(["-m", config.memory_mb])
        cmd.add_parameters(["-smp", f"{config.cpus},cores={config.cpus}"])
        cmd.add_parameters(["-no-user-config", "-nodefaults", "-no-shutdown"])
        cmd.add_parameters(["-rtc", "base=utc"])

        qemu.add_control_socket(allocator.per_instance_internal_path(MONITOR_SOCKET))
        cmd.add_parameters(_gpu_device(config.gpu_mode))

        for tap in taps.values():
            qemu.add_tap(tap)

        qemu.set_sandbox(config.enable_sandbox)

        disks = 2
        qemu.add_read_write_disk(allocator.per_instance_path(OVERLAY_IMAGE))
        qemu.add_read_only_disk(allocator.per_instance_path(COMPOSITE_IMAGE))

        qemu.add_serial_console_read_only(allocator.per_instance_log_path(KERNEL_LOG))
        qemu.add_hvc_read_only(allocator.per_instance_log_path(CONSOLE_LOG))

        bootconfig = self.bootconfig_args(config, num_disks=disks)
        if bootconfig:
            cmd.add_parameters(["-append", " ".join(bootconfig)])

        cmd.add_parameters(["-kernel", config.kernel_path])

        tee = log_tee.create_log_tee(cmd, "qemu")
        return [tee, cmd.build()]

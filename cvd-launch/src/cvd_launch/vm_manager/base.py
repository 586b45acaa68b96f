"""Hypervisor backend interface.

A VmManager turns an InstanceConfig (plus the taps and paths handed out by the
ResourceAllocator) into the Commands that start the guest. Backends differ in
binary and flag vocabulary only; what gets attached, and in which order, is the
same for all of them:

  control socket -> taps -> sandbox -> rw overlay -> ro composite ->
  consoles -> bootconfig -> kernel (last)
"""

from __future__ import annotations

import os
import platform
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Mapping, Protocol, Sequence

from cvd_launch.command import Command, CommandBuilder
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.tap import TapDevice

ARCH_X86_64 = "x86_64"
ARCH_ARM64 = "arm64"

# VK_API_VERSION_1_2
_CPU_VULKAN_VERSION = (1 << 22) | (2 << 12)

OVERLAY_IMAGE = "overlay.img"
COMPOSITE_IMAGE = "os_composite.img"
KERNEL_LOG = "kernel.log"
CONSOLE_LOG = "console.log"


class VmManagerError(RuntimeError):
    pass


class UnsupportedBackendError(VmManagerError):
    def __init__(self, message: str, *, backend: str) -> None:
        super().__init__(message)
        self.backend = backend


class LogTee(Protocol):
    def create_log_tee(self, builder: CommandBuilder, process_name: str) -> Command: ...


def host_arch() -> str:
    machine = platform.machine().lower()
    if machine in {"x86_64", "amd64"}:
        return ARCH_X86_64
    if machine in {"aarch64", "arm64"}:
        return ARCH_ARM64
    return machine


def binary_available(binary: str | Path) -> bool:
    candidate = str(binary)
    if os.sep in candidate:
        return os.path.isfile(candidate) and os.access(candidate, os.X_OK)
    return shutil.which(candidate) is not None


def gpu_mode_bootconfig(gpu_mode: str) -> List[str]:
    """Guest-side bootconfig entries for a GPU mode (shared by all backends)."""

    if gpu_mode == "guest_swiftshader":
        return [
            f"androidboot.cpuvulkan.version={_CPU_VULKAN_VERSION}",
            "androidboot.hardware.gralloc=minigbm",
            "androidboot.hardware.hwcomposer=ranchu",
            "androidboot.hardware.egl=angle",
            "androidboot.hardware.vulkan=pastel",
        ]
    if gpu_mode == "drm_virgl":
        return [
            "androidboot.cpuvulkan.version=0",
            "androidboot.hardware.gralloc=minigbm",
            "androidboot.hardware.hwcomposer=ranchu",
            "androidboot.hardware.egl=mesa",
        ]
    if gpu_mode == "gfxstream":
        return [
            "androidboot.cpuvulkan.version=0",
            "androidboot.hardware.gralloc=minigbm",
            "androidboot.hardware.hwcomposer=ranchu",
            "androidboot.hardware.egl=emulation",
            "androidboot.hardware.vulkan=ranchu",
        ]
    if gpu_mode in {"auto", "none"}:
        return []
    raise VmManagerError(f"unsupported gpu mode: {gpu_mode!r}")


class VmManager(ABC):
    """Backend-specific command construction for one guest architecture."""

    name: str = "vm_manager"
    supported_arches: Sequence[str] = (ARCH_X86_64, ARCH_ARM64)

    def __init__(self, arch: str) -> None:
        self.arch = arch

    @abstractmethod
    def binary(self) -> str:
        raise NotImplementedError

    def is_supported(self) -> bool:
        """The backend binary is present and the guest arch is one it runs."""

        if self.arch not in self.supported_arches:
            return False
        return binary_available(self.binary())

    def configure_gpu_mode(self, gpu_mode: str) -> List[str]:
        return gpu_mode_bootconfig(gpu_mode)

    @abstractmethod
    def configure_boot_devices(self, num_disks: int) -> List[str]:
        raise NotImplementedError

    def tap_names(self, config: InstanceConfig, *, include_wifi: bool = True) -> List[str]:
        names = [config.mobile_tap_name, config.ethernet_tap_name]
        if include_wifi:
            names.append(config.wifi_tap_name)
        return names

    def bootconfig_args(self, config: InstanceConfig, *, num_disks: int) -> List[str]:
        args = self.configure_gpu_mode(config.gpu_mode)
        args += self.configure_boot_devices(num_disks)
        args += list(config.extra_bootconfig_args)
        return args

    @abstractmethod
    def start_commands(
        self,
        config: InstanceConfig,
        *,
        allocator: ResourceAllocator,
        taps: Mapping[str, TapDevice],
        log_tee: LogTee,
    ) -> List[Command]:
        raise NotImplementedError

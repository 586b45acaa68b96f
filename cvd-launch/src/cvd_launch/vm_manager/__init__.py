"""Hypervisor backend registry.

Adding a backend should not require touching the launcher: a backend module
registers a factory here and ``get_vm_manager`` picks it up by name.
"""

from __future__ import annotations

from typing import Callable, Dict

from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.vm_manager.base import UnsupportedBackendError, VmManager, VmManagerError
from cvd_launch.vm_manager.crosvm import CrosvmManager
from cvd_launch.vm_manager.qemu import QemuManager

VmManagerFactory = Callable[[InstanceConfig], VmManager]

_REGISTRY: Dict[str, VmManagerFactory] = {}


def register_vm_manager(name: str) -> Callable[[VmManagerFactory], VmManagerFactory]:
    """Decorator to register a backend factory."""

    def _decorator(factory: VmManagerFactory) -> VmManagerFactory:
        if name in _REGISTRY:
            raise ValueError(f"duplicate vm manager: {name}")
        _REGISTRY[name] = factory
        return factory

    return _decorator


def available_vm_managers() -> Dict[str, VmManagerFactory]:
    return dict(_REGISTRY)


@register_vm_manager(CrosvmManager.name)
def _make_crosvm(config: InstanceConfig) -> VmManager:
    return CrosvmManager(config.arch, binary=config.crosvm_binary)


@register_vm_manager(QemuManager.name)
def _make_qemu(config: InstanceConfig) -> VmManager:
    return QemuManager(config.arch, binary_dir=config.qemu_binary_dir)


def get_vm_manager(config: InstanceConfig) -> VmManager:
    """Return the configured backend, or raise UnsupportedBackendError.

    Called while the feature graph is assembled, so an unusable backend is
    reported before anything is set up or launched.
    """

    factory = _REGISTRY.get(config.vm_manager)
    if factory is None:
        raise UnsupportedBackendError(
            f"unknown vm manager: {config.vm_manager!r} (available: {sorted(_REGISTRY)})",
            backend=config.vm_manager,
        )
    manager = factory(config)
    if not manager.is_supported():
        raise UnsupportedBackendError(
            f"vm manager {manager.name!r} is not supported on this host "
            f"(arch={manager.arch}, binary={manager.binary()})",
            backend=manager.name,
        )
    return manager


__all__ = [
    "CrosvmManager",
    "QemuManager",
    "UnsupportedBackendError",
    "VmManager",
    "VmManagerError",
    "available_vm_managers",
    "get_vm_manager",
    "register_vm_manager",
]

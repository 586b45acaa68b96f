"""cvd-launch: host-side launcher for virtual device instances.

- per-instance resource allocation (paths, tap devices, DHCP lease cleanup)
- a dependency graph of setup features
- hypervisor backends (crosvm, qemu) that turn a config into commands
- an all-or-nothing process launcher
"""

__all__ = [
    "cli",
    "command",
    "config",
    "control_env",
    "features",
    "launch",
    "process",
    "resources",
    "tools",
    "vm_manager",
]

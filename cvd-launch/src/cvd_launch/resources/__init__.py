"""Per-instance host resources: paths, tap interfaces and DHCP leases."""

from __future__ import annotations

from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.dhcp import dhcp_server_ip
from cvd_launch.resources.errors import NetworkSetupError, ResourceAllocationError
from cvd_launch.resources.leases import release_stale_leases
from cvd_launch.resources.tap import TapDevice, open_tap_interface

__all__ = [
    "NetworkSetupError",
    "ResourceAllocationError",
    "ResourceAllocator",
    "TapDevice",
    "dhcp_server_ip",
    "open_tap_interface",
    "release_stale_leases",
]

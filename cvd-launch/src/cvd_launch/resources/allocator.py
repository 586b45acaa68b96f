from __future__ import annotations

import logging
from ipaddress import IPv4Address
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.resources.dhcp import dhcp_server_ip
from cvd_launch.resources.errors import ResourceAllocationError
from cvd_launch.resources.leases import release_stale_leases
from cvd_launch.resources.tap import TapDevice, open_tap_interface

logger = logging.getLogger(__name__)

TapOpener = Callable[[str], TapDevice]

LEASE_FILE_PREFIX = "cuttlefish-dnsmasq-cvd-wbr-"


class ResourceAllocator:
    """Per-instance paths and network resources.

    Every path is a pure function of the instance config and a role string, so
    two instances never collide and the same instance always gets the same
    paths back across restarts.
    """

    def __init__(self, config: InstanceConfig, *, tap_opener: Optional[TapOpener] = None) -> None:
        self._config = config
        self._tap_opener = tap_opener or open_tap_interface

    @property
    def config(self) -> InstanceConfig:
        return self._config

    # ---------------------------------- paths ----------------------------------

    def for_current_instance(self, prefix: str) -> str:
        return f"{prefix}{self._config.instance_suffix}"

    def per_instance_path(self, name: str) -> Path:
        return self._config.instance_dir / name

    def per_instance_internal_path(self, name: str) -> Path:
        return self._config.internal_dir / name

    def per_instance_log_path(self, name: str) -> Path:
        return self._config.logs_dir / name

    def per_instance_grpc_socket_path(self, name: str) -> Path:
        return self._config.grpc_socket_dir / name

    def allocate_path(self, role: str) -> Path:
        """Path for ``role`` inside this instance's directory tree.

        ``internal/<name>``, ``logs/<name>`` and ``grpc/<name>`` land in the
        matching sub-directory; anything else is relative to the instance dir.
        The parent directory is created if missing.
        """

        rel = PurePosixPath(role)
        if not role or rel.is_absolute() or ".." in rel.parts:
            raise ResourceAllocationError(f"invalid path role: {role!r}")

        head, rest = rel.parts[0], rel.parts[1:]
        if head == "internal" and rest:
            path = self.per_instance_internal_path(str(PurePosixPath(*rest)))
        elif head == "logs" and rest:
            path = self.per_instance_log_path(str(PurePosixPath(*rest)))
        elif head == "grpc" and rest:
            path = self.per_instance_grpc_socket_path(str(PurePosixPath(*rest)))
        else:
            path = self.per_instance_path(str(rel))

        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    # --------------------------------- network ---------------------------------

    def allocate_tap(self, name: str) -> TapDevice:
        """Open the named tap interface (NetworkSetupError when it cannot be)."""

        tap = self._tap_opener(name)
        logger.info("attached to tap %s", name)
        return tap

    def dhcp_server_ip(self) -> IPv4Address:
        return dhcp_server_ip(self._config.instance_num, self._config.dhcp_subnet_prefix)

    def lease_file_path(self) -> Path:
        return self._config.leases_dir / (self.for_current_instance(LEASE_FILE_PREFIX) + ".leases")

    def release_stale_leases(self, tap: TapDevice) -> Optional[bool]:
        """Run the stale lease workaround for ``tap`` when it applies.

        Returns None when the workaround does not apply (legacy bridge lease
        file present, or the tap is not open), otherwise the result of the
        release attempt.
        """

        if self._config.legacy_bridge_lease_file.exists():
            logger.debug(
                "legacy bridge lease file %s present, skipping lease release",
                self._config.legacy_bridge_lease_file,
            )
            return None
        if not getattr(tap, "is_open", False):
            return None

        try:
            ok = release_stale_leases(self.lease_file_path(), tap, self.dhcp_server_ip())
        except Exception:
            logger.exception("stale lease release raised for tap %s", getattr(tap, "name", tap))
            ok = False
        if not ok:
            logger.error(
                "Failed to release wifi DHCP leases. Connecting to the wifi network may not work."
            )
        return ok

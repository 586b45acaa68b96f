from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from cvd_launch.command import Command
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.features.feature import CommandSource, SetupFeature
from cvd_launch.launch.log_tee import LogTeeCreator
from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.tap import TapDevice
from cvd_launch.vm_manager.base import VmManager


class VmManagerFeature(SetupFeature, CommandSource):
    """The guest itself, started by the selected hypervisor backend.

    When an access point VM runs it owns the wifi tap, so the guest only
    attaches to the mobile and ethernet taps.
    """

    def __init__(
        self,
        config: InstanceConfig,
        allocator: ResourceAllocator,
        log_tee: LogTeeCreator,
        vm_manager: VmManager,
        *,
        dependencies: Iterable[SetupFeature] = (),
        access_point: Optional[SetupFeature] = None,
    ) -> None:
        self._config = config
        self._allocator = allocator
        self._log_tee = log_tee
        self._vm_manager = vm_manager
        self._dependencies = list(dependencies)
        self._access_point = access_point
        self._taps: Dict[str, TapDevice] = {}
        self._set_up = False

    @property
    def name(self) -> str:
        return "VmManager"

    @property
    def vm_manager(self) -> VmManager:
        return self._vm_manager

    def dependencies(self) -> Iterable[SetupFeature]:
        deps = list(self._dependencies)
        if self._access_point is not None:
            deps.append(self._access_point)
        return deps

    def _guest_owns_wifi(self) -> bool:
        return self._access_point is None or not self._access_point.enabled()

    def setup(self) -> bool:
        names = self._vm_manager.tap_names(self._config, include_wifi=self._guest_owns_wifi())
        for tap_name in names:
            self._taps[tap_name] = self._allocator.allocate_tap(tap_name)
        self._set_up = True
        return True

    def commands(self) -> List[Command]:
        if not self._set_up:
            raise RuntimeError("VmManager commands requested before setup")
        return self._vm_manager.start_commands(
            self._config,
            allocator=self._allocator,
            taps=dict(self._taps),
            log_tee=self._log_tee,
        )

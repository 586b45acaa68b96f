"""OpenWrt access point VM.

The wifi side of the device is an OpenWrt guest running in its own crosvm
instance, bridged to the host through the instance's wifi tap. Only used with
crosvm and only when mac80211_hwsim is enforced for the build.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from cvd_launch.command import Command
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.features.feature import CommandSource, SetupFeature
from cvd_launch.launch.log_tee import LogTeeCreator
from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.tap import TapDevice
from cvd_launch.vm_manager.crosvm import CrosvmBuilder, CrosvmManager

AP_CONTROL_SOCKET = "ap_control.sock"
AP_OVERLAY_IMAGE = "ap_overlay.img"
PERSISTENT_COMPOSITE_IMAGE = "persistent_composite.img"
AP_BOOT_LOG = "crosvm_openwrt_boot.log"
AP_LOG = "crosvm_openwrt.log"


class OpenWrtFeature(SetupFeature, CommandSource):
    def __init__(
        self,
        config: InstanceConfig,
        allocator: ResourceAllocator,
        log_tee: LogTeeCreator,
        *,
        dependencies: Iterable[SetupFeature] = (),
    ) -> None:
        self._config = config
        self._allocator = allocator
        self._log_tee = log_tee
        self._dependencies = list(dependencies)
        self._wifi_tap: Optional[TapDevice] = None

    @property
    def name(self) -> str:
        return "OpenWrt"

    def enabled(self) -> bool:
        cfg = self._config
        return (
            cfg.enforce_mac80211_hwsim
            and cfg.start_ap
            and cfg.vm_manager == CrosvmManager.name
        )

    def dependencies(self) -> Iterable[SetupFeature]:
        return list(self._dependencies)

    def setup(self) -> bool:
        self._wifi_tap = self._allocator.allocate_tap(self._config.wifi_tap_name)
        self._allocator.release_stale_leases(self._wifi_tap)
        return True

    def commands(self) -> List[Command]:
        if self._wifi_tap is None:
            raise RuntimeError("OpenWrt commands requested before setup")

        cfg = self._config
        alloc = self._allocator

        ap_cmd = CrosvmBuilder(cfg.crosvm_binary, name="crosvm_openwrt")
        ap_cmd.add_control_socket(alloc.per_instance_internal_path(AP_CONTROL_SOCKET))

        if cfg.vhost_user_mac80211_hwsim:
            ap_cmd.cmd().add_parameter("--vhost-user-mac80211-hwsim=", cfg.vhost_user_mac80211_hwsim)

        ap_cmd.add_tap(self._wifi_tap)
        ap_cmd.set_sandbox(cfg.enable_sandbox, cfg.seccomp_policy_dir)

        ap_cmd.add_read_write_disk(alloc.per_instance_path(AP_OVERLAY_IMAGE))
        ap_cmd.add_read_only_disk(alloc.per_instance_path(PERSISTENT_COMPOSITE_IMAGE))

        ap_cmd.cmd().add_parameter('--params="root=', cfg.ap_image_dev_path, '"')

        ap_cmd.add_serial_console_read_only(alloc.per_instance_log_path(AP_BOOT_LOG))
        ap_cmd.add_hvc_read_only(alloc.per_instance_log_path(AP_LOG))

        ap_cmd.cmd().add_parameter(cfg.ap_kernel_image)

        tee = self._log_tee.create_log_tee(ap_cmd.cmd(), "openwrt")
        return [tee, ap_cmd.cmd().build()]

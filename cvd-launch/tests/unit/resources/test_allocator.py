from __future__ import annotations

import logging
from ipaddress import IPv4Address
from pathlib import Path

import pytest

from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.resources.errors import NetworkSetupError, ResourceAllocationError
from cvd_launch.resources.tap import open_tap_interface

LEASES = "1700000000 02:11:22:33:44:55 192.168.96.2 guest *\n"


def test_paths_are_per_instance_and_stable(make_config, tap_opener) -> None:
    cfg = make_config(instance_num=3, instance_dir=None)
    alloc = ResourceAllocator(cfg, tap_opener=tap_opener)
    again = ResourceAllocator(cfg, tap_opener=tap_opener)
    other = ResourceAllocator(make_config(instance_num=4, instance_dir=None))

    assert alloc.for_current_instance("cvd-wtap-") == "cvd-wtap-03"
    assert alloc.allocate_path("logs/kernel.log") == again.allocate_path("logs/kernel.log")
    assert alloc.allocate_path("logs/kernel.log") != other.allocate_path("logs/kernel.log")
    assert cfg.instance_dir.name == "cvd-3"


def test_allocate_path_routes_roles(make_config, tmp_path: Path) -> None:
    cfg = make_config()
    alloc = ResourceAllocator(cfg)

    assert alloc.allocate_path("internal/crosvm_control.sock") == cfg.internal_dir / "crosvm_control.sock"
    assert alloc.allocate_path("logs/launcher.log") == cfg.logs_dir / "launcher.log"
    assert alloc.allocate_path("grpc/openwrt.sock") == cfg.grpc_socket_dir / "openwrt.sock"
    assert alloc.allocate_path("overlay.img") == cfg.instance_dir / "overlay.img"
    assert cfg.logs_dir.is_dir()
    assert cfg.grpc_socket_dir.is_dir()


@pytest.mark.parametrize("role", ["", "/etc/passwd", "../escape", "logs/../../escape"])
def test_allocate_path_rejects_escaping_roles(make_config, role: str) -> None:
    with pytest.raises(ResourceAllocationError):
        ResourceAllocator(make_config()).allocate_path(role)


def test_dhcp_server_and_lease_file(make_config, tmp_path: Path) -> None:
    alloc = ResourceAllocator(make_config(instance_num=5, instance_dir=None))
    assert alloc.dhcp_server_ip() == IPv4Address("192.168.96.17")
    assert alloc.lease_file_path() == tmp_path / "run" / "cuttlefish-dnsmasq-cvd-wbr-05.leases"


def test_allocate_tap_uses_opener(make_config, tap_opener) -> None:
    alloc = ResourceAllocator(make_config(), tap_opener=tap_opener)
    tap = alloc.allocate_tap("cvd-wtap-01")
    assert tap is tap_opener.opened["cvd-wtap-01"]


def test_open_tap_interface_reports_missing_tun_device(tmp_path: Path) -> None:
    with pytest.raises(NetworkSetupError) as excinfo:
        open_tap_interface("cvd-wtap-01", tun_device=str(tmp_path / "no-tun"))
    assert excinfo.value.tap_name == "cvd-wtap-01"


def test_open_tap_interface_rejects_long_names() -> None:
    with pytest.raises(NetworkSetupError):
        open_tap_interface("x" * 16)


def test_stale_leases_released_without_legacy_file(make_config, tap_opener) -> None:
    cfg = make_config()
    alloc = ResourceAllocator(cfg, tap_opener=tap_opener)
    lease_file = alloc.lease_file_path()
    lease_file.parent.mkdir(parents=True)
    lease_file.write_text(LEASES, encoding="utf-8")

    tap = alloc.allocate_tap(cfg.wifi_tap_name)
    assert alloc.release_stale_leases(tap) is True
    assert len(tap.frames) == 1
    assert lease_file.read_text(encoding="utf-8") == ""


def test_legacy_lease_file_disables_workaround(make_config, tap_opener) -> None:
    cfg = make_config()
    alloc = ResourceAllocator(cfg, tap_opener=tap_opener)
    lease_file = alloc.lease_file_path()
    lease_file.parent.mkdir(parents=True)
    lease_file.write_text(LEASES, encoding="utf-8")
    cfg.legacy_bridge_lease_file.write_text("", encoding="utf-8")

    tap = alloc.allocate_tap(cfg.wifi_tap_name)
    assert alloc.release_stale_leases(tap) is None
    assert tap.frames == []
    assert lease_file.read_text(encoding="utf-8") == LEASES


def test_closed_tap_skips_workaround(make_config, tap_opener) -> None:
    cfg = make_config()
    alloc = ResourceAllocator(cfg, tap_opener=tap_opener)
    tap = alloc.allocate_tap(cfg.wifi_tap_name)
    tap.close()
    assert alloc.release_stale_leases(tap) is None


def test_unexpected_release_error_is_logged_not_raised(make_config, tap_opener, caplog) -> None:
    cfg = make_config()
    alloc = ResourceAllocator(cfg, tap_opener=tap_opener)
    lease_file = alloc.lease_file_path()
    lease_file.parent.mkdir(parents=True)
    lease_file.write_text(LEASES, encoding="utf-8")

    tap = alloc.allocate_tap(cfg.wifi_tap_name)

    def _broken(frame: bytes) -> int:
        raise RuntimeError("driver bug")

    tap.write_frame = _broken
    with caplog.at_level(logging.ERROR, logger="cvd_launch.resources.allocator"):
        assert alloc.release_stale_leases(tap) is False
    assert "driver bug" in caplog.text
    assert lease_file.read_text(encoding="utf-8") == LEASES

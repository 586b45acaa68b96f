from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from cvd_launch.config import ConfigValidationError, load_instance_config


def _write_yaml(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_yaml_config_with_derived_defaults(tmp_path: Path) -> None:
    path = _write_yaml(
        tmp_path / "instance.yaml",
        {"instance_num": 7, "runtime_root": str(tmp_path / "rt"), "gpu_mode": "drm_virgl"},
    )
    cfg = load_instance_config(path, env={})

    assert cfg.instance_num == 7
    assert cfg.instance_dir == tmp_path / "rt" / "instances" / "cvd-7"
    assert cfg.internal_dir == cfg.instance_dir / "internal"
    assert cfg.wifi_tap_name == "cvd-wtap-07"
    assert cfg.mobile_tap_name == "cvd-mtap-07"
    assert cfg.ethernet_tap_name == "cvd-etap-07"
    assert cfg.vm_manager == "crosvm"
    assert cfg.enable_sandbox is True
    assert cfg.gpu_mode == "drm_virgl"
    assert cfg.legacy_bridge_lease_file == Path("/var/run/cuttlefish-dnsmasq-cvd-wbr.leases")


def test_json_config_and_to_dict(tmp_path: Path) -> None:
    path = tmp_path / "instance.json"
    path.write_text(
        json.dumps(
            {
                "instance_dir": str(tmp_path / "cvd"),
                "extra_bootconfig_args": ["androidboot.foo=1"],
            }
        ),
        encoding="utf-8",
    )
    cfg = load_instance_config(path, env={})
    assert cfg.extra_bootconfig_args == ("androidboot.foo=1",)

    out = cfg.to_dict()
    assert out["instance_dir"] == str(tmp_path / "cvd")
    assert out["extra_bootconfig_args"] == ["androidboot.foo=1"]
    json.dumps(out)


def test_environment_overrides_file(tmp_path: Path) -> None:
    path = _write_yaml(
        tmp_path / "instance.yaml",
        {"instance_num": 1, "runtime_root": str(tmp_path), "vm_manager": "crosvm"},
    )
    cfg = load_instance_config(
        path,
        env={
            "CUTTLEFISH_INSTANCE": "3",
            "CVD_VM_MANAGER": "qemu_cli",
            "CVD_ENABLE_SANDBOX": "false",
        },
    )
    assert cfg.instance_num == 3
    assert cfg.vm_manager == "qemu_cli"
    assert cfg.enable_sandbox is False

    cfg = load_instance_config(path, instance_num=9, env={"CUTTLEFISH_INSTANCE": "3"})
    assert cfg.instance_num == 9


def test_schema_errors_are_collected(tmp_path: Path) -> None:
    path = _write_yaml(
        tmp_path / "bad.yaml",
        {"instance_num": 0, "vm_manager": "bochs", "unknown_knob": True},
    )
    with pytest.raises(ConfigValidationError) as excinfo:
        load_instance_config(path, env={})

    msg = str(excinfo.value)
    assert f"- {path}:instance_num:" in msg
    assert f"- {path}:vm_manager:" in msg
    assert "unknown_knob" in msg


def test_bad_environment_values(tmp_path: Path) -> None:
    path = _write_yaml(tmp_path / "instance.yaml", {"runtime_root": str(tmp_path)})
    with pytest.raises(ConfigValidationError):
        load_instance_config(path, env={"CUTTLEFISH_INSTANCE": "one"})
    with pytest.raises(ConfigValidationError):
        load_instance_config(path, env={"CVD_ENABLE_SANDBOX": "maybe"})


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_instance_config(path, env={})


def test_unreadable_files_name_the_instance_config(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="instance config not found"):
        load_instance_config(tmp_path / "absent.yaml", env={})

    broken = tmp_path / "broken.yaml"
    broken.write_text("instance_num: [1\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError, match="is not valid yaml"):
        load_instance_config(broken, env={})

    toml = tmp_path / "instance.toml"
    toml.write_text("instance_num = 1\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError, match=r"\.yaml, \.yml or \.json"):
        load_instance_config(toml, env={})


def test_schema_error_header_counts_problems(tmp_path: Path) -> None:
    path = _write_yaml(tmp_path / "bad.yaml", {"instance_num": 0, "cpus": 0})
    with pytest.raises(ConfigValidationError) as excinfo:
        load_instance_config(path, env={})
    assert str(excinfo.value).splitlines()[0] == f"instance config {path} has 2 problem(s):"

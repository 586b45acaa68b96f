from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft202012Validator

SCHEMA_PATH = Path(__file__).with_name("instance_config.schema.json")

VM_MANAGERS = ("crosvm", "qemu_cli")
ARCHES = ("x86_64", "arm64")
GPU_MODES = ("auto", "none", "guest_swiftshader", "drm_virgl", "gfxstream")

LEGACY_BRIDGE_LEASE_FILE = "cuttlefish-dnsmasq-cvd-wbr.leases"

_ENV_INSTANCE = "CUTTLEFISH_INSTANCE"
_ENV_VM_MANAGER = "CVD_VM_MANAGER"
_ENV_ENABLE_SANDBOX = "CVD_ENABLE_SANDBOX"


class ConfigValidationError(RuntimeError):
    pass


@dataclass(frozen=True)
class InstanceConfig:
    """Everything the launcher needs to know about one device instance.

    Built once at launch time and never mutated. Locations that other tools
    usually treat as ambient (the dnsmasq leases directory, the seccomp
    policy directory) are explicit fields here.
    """

    instance_num: int
    instance_dir: Path
    vm_manager: str = "crosvm"
    arch: str = "x86_64"

    crosvm_binary: str = "crosvm"
    qemu_binary_dir: Path = Path("/usr/bin")
    log_tee_binary: Optional[str] = None

    kernel_path: Path = Path("kernel")
    gpu_mode: str = "auto"
    cpus: int = 2
    memory_mb: int = 2048

    enable_sandbox: bool = True
    seccomp_policy_dir: Path = Path("/usr/share/crosvm/seccomp")

    start_ap: bool = True
    enforce_mac80211_hwsim: bool = True
    vhost_user_mac80211_hwsim: str = ""
    ap_kernel_image: Path = Path("openwrt_kernel")
    ap_image_dev_path: str = "/dev/vda2"

    wifi_tap_name: str = ""
    mobile_tap_name: str = ""
    ethernet_tap_name: str = ""

    leases_dir: Path = Path("/var/run")
    dhcp_subnet_prefix: str = "192.168.96"

    extra_bootconfig_args: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def instance_suffix(self) -> str:
        return f"{self.instance_num:02d}"

    @property
    def internal_dir(self) -> Path:
        return self.instance_dir / "internal"

    @property
    def logs_dir(self) -> Path:
        return self.instance_dir / "logs"

    @property
    def grpc_socket_dir(self) -> Path:
        return self.instance_dir / "grpc_socket"

    @property
    def legacy_bridge_lease_file(self) -> Path:
        return self.leases_dir / LEGACY_BRIDGE_LEASE_FILE

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key, value in list(out.items()):
            if isinstance(value, Path):
                out[key] = str(value)
            elif isinstance(value, tuple):
                out[key] = list(value)
        return out


_MAX_REPORTED_ERRORS = 20


def read_config_file(path: Path) -> Dict[str, Any]:
    """Parse an instance config file; ``.yaml``/``.yml`` or ``.json`` by suffix.

    An empty file is an empty config. Anything that cannot become a mapping is
    a ConfigValidationError naming the file.
    """

    suffix = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise ConfigValidationError(f"instance config must be .yaml, .yml or .json: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(f"instance config not found: {path}") from e

    try:
        data = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigValidationError(f"instance config {path} is not valid {suffix[1:]}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"instance config {path} must be a mapping, got {type(data).__name__}"
        )
    return data


@lru_cache(maxsize=1)
def instance_config_schema() -> Dict[str, Any]:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def check_instance_config(
    data: Mapping[str, Any],
    schema: Mapping[str, Any],
    *,
    where: str,
) -> None:
    """Raise ConfigValidationError listing every schema violation in ``data``.

    One ``- <where>:<field path>: <message>`` line per problem, ordered by field
    path and capped at ``_MAX_REPORTED_ERRORS``.
    """

    errors = sorted(
        Draft202012Validator(schema).iter_errors(dict(data)), key=lambda e: list(e.path)
    )
    if not errors:
        return
    lines = [f"instance config {where} has {len(errors)} problem(s):"]
    for error in errors[:_MAX_REPORTED_ERRORS]:
        field_path = "/".join(str(p) for p in error.path)
        lines.append(f"- {where}:{field_path}: {error.message}")
    if len(errors) > _MAX_REPORTED_ERRORS:
        lines.append(f"... ({len(errors) - _MAX_REPORTED_ERRORS} more)")
    raise ConfigValidationError("\n".join(lines))


def _env_bool(raw: str) -> bool:
    s = raw.strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off"}:
        return False
    raise ConfigValidationError(f"invalid boolean value in environment: {raw!r}")


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> None:
    raw_instance = env.get(_ENV_INSTANCE)
    if raw_instance:
        try:
            data["instance_num"] = int(raw_instance)
        except ValueError as e:
            raise ConfigValidationError(
                f"{_ENV_INSTANCE} must be an integer, got {raw_instance!r}"
            ) from e
    if env.get(_ENV_VM_MANAGER):
        data["vm_manager"] = env[_ENV_VM_MANAGER].strip()
    if env.get(_ENV_ENABLE_SANDBOX):
        data["enable_sandbox"] = _env_bool(env[_ENV_ENABLE_SANDBOX])


def default_instance_dir(runtime_root: Path, instance_num: int) -> Path:
    return runtime_root / "instances" / f"cvd-{instance_num}"


def instance_config_from_dict(
    data: Mapping[str, Any],
    *,
    where: str = "instance_config",
    schema: Optional[Mapping[str, Any]] = None,
) -> InstanceConfig:
    """Validate a raw mapping and derive per-instance defaults."""

    check_instance_config(data, schema or instance_config_schema(), where=where)

    instance_num = int(data.get("instance_num", 1))
    suffix = f"{instance_num:02d}"

    runtime_root = Path(data.get("runtime_root") or Path.home() / "cuttlefish").expanduser()
    instance_dir = data.get("instance_dir")
    resolved_instance_dir = (
        Path(instance_dir).expanduser()
        if instance_dir
        else default_instance_dir(runtime_root, instance_num)
    )

    kwargs: Dict[str, Any] = {
        "instance_num": instance_num,
        "instance_dir": resolved_instance_dir,
        "wifi_tap_name": data.get("wifi_tap_name") or f"cvd-wtap-{suffix}",
        "mobile_tap_name": data.get("mobile_tap_name") or f"cvd-mtap-{suffix}",
        "ethernet_tap_name": data.get("ethernet_tap_name") or f"cvd-etap-{suffix}",
    }

    passthrough = (
        "vm_manager",
        "arch",
        "crosvm_binary",
        "log_tee_binary",
        "gpu_mode",
        "cpus",
        "memory_mb",
        "enable_sandbox",
        "start_ap",
        "enforce_mac80211_hwsim",
        "vhost_user_mac80211_hwsim",
        "ap_image_dev_path",
        "dhcp_subnet_prefix",
    )
    for key in passthrough:
        if key in data and data[key] is not None:
            kwargs[key] = data[key]

    path_keys = (
        "qemu_binary_dir",
        "kernel_path",
        "seccomp_policy_dir",
        "ap_kernel_image",
        "leases_dir",
    )
    for key in path_keys:
        if data.get(key):
            kwargs[key] = Path(data[key]).expanduser()

    if data.get("extra_bootconfig_args"):
        kwargs["extra_bootconfig_args"] = tuple(str(a) for a in data["extra_bootconfig_args"])

    return InstanceConfig(**kwargs)


def load_instance_config(
    path: Path,
    *,
    instance_num: Optional[int] = None,
    env: Optional[Mapping[str, str]] = None,
) -> InstanceConfig:
    """Load a YAML/JSON instance config file.

    Precedence (highest first): ``instance_num`` argument, environment
    (``CUTTLEFISH_INSTANCE``, ``CVD_VM_MANAGER``, ``CVD_ENABLE_SANDBOX``),
    file contents, built-in defaults.
    """

    data = read_config_file(Path(path))
    _apply_env_overrides(data, os.environ if env is None else env)
    if instance_num is not None:
        data["instance_num"] = int(instance_num)
    return instance_config_from_dict(data, where=str(path))

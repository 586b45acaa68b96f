"""Instance configuration (immutable, loaded once per launch)."""

from __future__ import annotations

from cvd_launch.config.instance_config import (
    ConfigValidationError,
    InstanceConfig,
    instance_config_from_dict,
    load_instance_config,
)

__all__ = [
    "ConfigValidationError",
    "InstanceConfig",
    "instance_config_from_dict",
    "load_instance_config",
]

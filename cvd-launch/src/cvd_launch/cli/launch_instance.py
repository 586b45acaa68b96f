from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from cvd_launch.config.instance_config import ConfigValidationError, load_instance_config
from cvd_launch.features.graph import FeatureGraphError
from cvd_launch.launch.instance import launch_instance
from cvd_launch.process.launcher import ProcessLauncher, ProcessLauncherError
from cvd_launch.resources.errors import ResourceAllocationError
from cvd_launch.vm_manager.base import VmManagerError


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Set up and start the host processes of one device instance."
    )
    parser.add_argument(
        "--config", type=Path, required=True, help="Instance config (YAML or JSON)."
    )
    parser.add_argument(
        "--instance_num",
        type=int,
        default=None,
        help="Override the instance number (default: config / CUTTLEFISH_INSTANCE).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Run setup and print the resolved commands as JSON without starting them.",
    )
    parser.add_argument(
        "--print_config",
        action="store_true",
        help="Print the resolved instance config as JSON and exit.",
    )
    parser.add_argument(
        "--startup_grace_s",
        type=float,
        default=1.0,
        help="Seconds each process must survive before the next one starts (default: 1.0).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging.")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    if args.startup_grace_s < 0:
        parser.error("--startup_grace_s must be >= 0")

    try:
        config = load_instance_config(args.config, instance_num=args.instance_num)
    except (OSError, ConfigValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.print_config:
        print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
        return 0

    try:
        launched = launch_instance(
            config,
            launcher=ProcessLauncher(startup_grace_s=args.startup_grace_s),
            dry_run=bool(args.dry_run),
        )
    except (
        FeatureGraphError,
        ResourceAllocationError,
        VmManagerError,
        ProcessLauncherError,
        OSError,
    ) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if launched.dry_run:
        print(json.dumps(launched.commands, indent=2))
        return 0

    for proc in launched.processes:
        print(f"{proc.name}: pid {proc.pid}")
    print(f"Wrote manifest -> {launched.manifest_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

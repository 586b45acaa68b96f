from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from cvd_launch.config.instance_config import ConfigValidationError, load_instance_config
from cvd_launch.control_env.grpc_service_handler import ControlEnvError, handle_cmds


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Talk to the gRPC services of a running device instance."
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument(
        "--socket_dir", type=Path, default=None, help="Instance gRPC socket directory."
    )
    target.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Instance config (YAML or JSON); the socket directory is derived from it.",
    )
    parser.add_argument("--instance_num", type=int, default=None)
    parser.add_argument("--grpc_cli", type=str, default="grpc_cli", help="grpc_cli binary.")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging.")
    parser.add_argument("cmd", choices=["ls", "type", "call"])
    parser.add_argument("args", nargs="*")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    if args.socket_dir is not None:
        socket_dir = args.socket_dir
    else:
        try:
            config = load_instance_config(args.config, instance_num=args.instance_num)
        except (OSError, ConfigValidationError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        socket_dir = config.grpc_socket_dir

    try:
        out = handle_cmds(socket_dir, args.cmd, args.args, grpc_cli=args.grpc_cli)
    except ControlEnvError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(out)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Log tee relay.

Reads a process's output from an inherited file descriptor and writes it,
byte for byte, both to a log file and to stdout. Exits when the writer side
of the pipe is closed (the teed process exited).
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import BinaryIO, Optional, Sequence

_CHUNK = 64 * 1024


def relay(fd_in: int, log_file: BinaryIO, out: Optional[BinaryIO]) -> int:
    """Copy ``fd_in`` to ``log_file`` and ``out`` until EOF. Returns bytes copied."""

    total = 0
    while True:
        try:
            chunk = os.read(fd_in, _CHUNK)
        except InterruptedError:
            continue
        if not chunk:
            return total
        total += len(chunk)
        log_file.write(chunk)
        log_file.flush()
        if out is not None:
            try:
                out.write(chunk)
                out.flush()
            except BrokenPipeError:
                # Nobody is watching live any more; keep the durable log going.
                out = None


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Copy a process's output to a log file and stdout.")
    parser.add_argument("--process_name", type=str, required=True)
    parser.add_argument("--log_fd_in", type=int, required=True)
    parser.add_argument("--log_file", type=Path, required=True)
    args = parser.parse_args(argv)

    args.log_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        with args.log_file.open("ab") as log_file:
            relay(args.log_fd_in, log_file, sys.stdout.buffer)
    finally:
        os.close(args.log_fd_in)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

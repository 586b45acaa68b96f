"""Import shim for the src/ layout.

The real package lives under `cvd-launch/src/cvd_launch/`. The launcher starts
its log tee relay as `python -m cvd_launch.tools.log_tee`; from a source
checkout that only resolves if this directory can stand in for the package.
"""

from __future__ import annotations

from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
_REAL_PKG = _REPO_ROOT / "cvd-launch" / "src" / "cvd_launch"
if _REAL_PKG.is_dir():
    __path__.append(str(_REAL_PKG))  # type: ignore[name-defined]

__all__ = [
    "cli",
    "command",
    "config",
    "control_env",
    "features",
    "launch",
    "process",
    "resources",
    "tools",
    "vm_manager",
]

from __future__ import annotations

from cvd_launch.process.launcher import (
    LaunchError,
    LaunchedProcess,
    ProcessLauncher,
    ProcessLauncherError,
)

__all__ = ["LaunchError", "LaunchedProcess", "ProcessLauncher", "ProcessLauncherError"]

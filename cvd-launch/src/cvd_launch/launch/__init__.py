"""Launch-time features of one device instance and their assembly."""

from __future__ import annotations

from cvd_launch.launch.instance import LaunchedInstance, build_instance_graph, launch_instance

__all__ = ["LaunchedInstance", "build_instance_graph", "launch_instance"]

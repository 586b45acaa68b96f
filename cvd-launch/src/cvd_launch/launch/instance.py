"""Instance assembly: wire the features of one instance and launch them.

  config -> allocator -> features -> graph.run() -> graph.collect_commands()
         -> launcher_manifest.json -> ProcessLauncher.launch()

Collaborators are passed in explicitly; nothing is looked up at runtime.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from cvd_launch.command import Command
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.features.graph import FeatureGraph, SetupReport
from cvd_launch.launch.instance_dirs import InstanceDirsFeature
from cvd_launch.launch.log_tee import LogTeeCreator
from cvd_launch.launch.open_wrt import OpenWrtFeature
from cvd_launch.launch.vm_manager_feature import VmManagerFeature
from cvd_launch.process.launcher import LaunchedProcess, ProcessLauncher
from cvd_launch.resources.allocator import ResourceAllocator
from cvd_launch.vm_manager import get_vm_manager
from cvd_launch.vm_manager.base import VmManager

logger = logging.getLogger(__name__)

LAUNCHER_MANIFEST = "launcher_manifest.json"


def write_launcher_manifest(path: Path, manifest: Mapping[str, Any]) -> Path:
    """Replace ``path`` with ``manifest`` as one line of canonical JSON.

    Readers never see a half-written manifest: the content goes to a hidden
    sibling first and is renamed into place.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(manifest, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    staging = path.with_name(f".{path.name}.partial")
    staging.write_text(text + "\n", encoding="utf-8")
    staging.replace(path)
    return path


def build_instance_graph(
    config: InstanceConfig,
    *,
    allocator: Optional[ResourceAllocator] = None,
    log_tee: Optional[LogTeeCreator] = None,
    vm_manager: Optional[VmManager] = None,
) -> FeatureGraph:
    """Register every feature of the instance.

    Raises UnsupportedBackendError here, before any setup runs, when the
    configured backend cannot be used on this host.
    """

    allocator = allocator or ResourceAllocator(config)
    log_tee = log_tee or LogTeeCreator(config, allocator)
    vm_manager = vm_manager or get_vm_manager(config)

    graph = FeatureGraph()
    dirs = graph.register(InstanceDirsFeature(config))
    access_point = graph.register(
        OpenWrtFeature(config, allocator, log_tee, dependencies=[dirs])
    )
    graph.register(
        VmManagerFeature(
            config,
            allocator,
            log_tee,
            vm_manager,
            dependencies=[dirs],
            access_point=access_point,
        )
    )
    return graph


def launcher_manifest(
    config: InstanceConfig, report: SetupReport, commands: Sequence[Command]
) -> dict[str, Any]:
    return {
        "instance_num": config.instance_num,
        "vm_manager": config.vm_manager,
        "setup_order": list(report.order),
        "commands": [c.describe() for c in commands],
    }


@dataclass
class LaunchedInstance:
    config: InstanceConfig
    report: SetupReport
    commands: List[dict[str, Any]]
    manifest_path: Path
    processes: List[LaunchedProcess] = field(default_factory=list)
    dry_run: bool = False


def launch_instance(
    config: InstanceConfig,
    *,
    graph: Optional[FeatureGraph] = None,
    launcher: Optional[ProcessLauncher] = None,
    dry_run: bool = False,
) -> LaunchedInstance:
    """Set up and start one instance.

    Setup failures raise FeatureSetupError before any command is collected;
    launch failures raise LaunchError after rolling the batch back. With
    ``dry_run`` the commands are resolved and recorded but never started.
    """

    graph = graph or build_instance_graph(config)
    report = graph.run()
    commands = graph.collect_commands()

    described = [c.describe() for c in commands]
    try:
        manifest_path = write_launcher_manifest(
            config.instance_dir / LAUNCHER_MANIFEST, launcher_manifest(config, report, commands)
        )
    except OSError:
        for command in commands:
            command.close()
        raise
    logger.info(
        "instance %d: %d feature(s) set up, %d command(s) collected",
        config.instance_num,
        len(report.completed),
        len(commands),
    )

    if dry_run:
        for command in commands:
            command.close()
        return LaunchedInstance(
            config=config,
            report=report,
            commands=described,
            manifest_path=manifest_path,
            dry_run=True,
        )

    launcher = launcher or ProcessLauncher()
    processes = launcher.launch(commands)
    return LaunchedInstance(
        config=config,
        report=report,
        commands=described,
        manifest_path=manifest_path,
        processes=processes,
    )

from __future__ import annotations

import logging
import os
import sys

from cvd_launch.command import Command, CommandBuilder, OwnedFd
from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.resources.allocator import ResourceAllocator

logger = logging.getLogger(__name__)

LOG_TEE_MODULE = "cvd_launch.tools.log_tee"


class LogTeeCreator:
    """Builds relay commands that copy a process's output into a log file.

    The relay reads the other end of a pipe that replaces the teed process's
    stdout/stderr, writes every byte to ``logs/<process_name>.log`` and echoes
    it on its own stdout. It has to be launched before the process it tees;
    callers put it first in their command list.
    """

    def __init__(self, config: InstanceConfig, allocator: ResourceAllocator) -> None:
        self._config = config
        self._allocator = allocator

    def _relay_builder(self, process_name: str) -> CommandBuilder:
        name = f"log_tee_{process_name}"
        if self._config.log_tee_binary:
            return CommandBuilder(self._config.log_tee_binary, name=name)
        builder = CommandBuilder(sys.executable, name=name)
        builder.add_parameters(["-m", LOG_TEE_MODULE])
        return builder

    def create_log_tee(self, builder: CommandBuilder, process_name: str) -> Command:
        read_fd, write_fd = os.pipe()
        write_end = OwnedFd(write_fd, name=f"{process_name}_out_w")
        read_end = OwnedFd(read_fd, name=f"{process_name}_out_r")

        builder.redirect_stdout(write_end)
        builder.redirect_stderr(write_end)

        log_path = self._allocator.allocate_path(f"logs/{process_name}.log")
        tee = self._relay_builder(process_name)
        tee.add_parameter("--process_name=", process_name)
        tee.add_parameter("--log_fd_in=", read_fd)
        tee.add_parameter("--log_file=", log_path)
        tee.add_resource(read_end)
        logger.debug("log tee for %s reads fd %d into %s", process_name, read_fd, log_path)
        return tee.build()

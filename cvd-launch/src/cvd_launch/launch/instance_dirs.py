from __future__ import annotations

import logging

from cvd_launch.config.instance_config import InstanceConfig
from cvd_launch.features.feature import SetupFeature

logger = logging.getLogger(__name__)


class InstanceDirsFeature(SetupFeature):
    """Creates the per-instance directory tree and clears stale sockets.

    Hypervisors bind their control sockets in ``internal/`` fresh on every
    start, so sockets left behind by a previous run of the same slot must be
    gone first. ``grpc_socket/`` is only created here; its endpoints belong to
    the host gRPC services and are never touched.
    """

    def __init__(self, config: InstanceConfig) -> None:
        self._config = config

    @property
    def name(self) -> str:
        return "InstanceDirs"

    def setup(self) -> bool:
        cfg = self._config
        for path in (cfg.instance_dir, cfg.internal_dir, cfg.logs_dir, cfg.grpc_socket_dir):
            path.mkdir(parents=True, exist_ok=True)

        for stale in cfg.internal_dir.glob("*.sock"):
            logger.debug("removing stale socket %s", stale)
            stale.unlink(missing_ok=True)
        return True

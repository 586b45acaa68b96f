"""Setup features and the dependency graph that schedules them."""

from __future__ import annotations

from cvd_launch.features.feature import CommandSource, SetupFeature
from cvd_launch.features.graph import (
    CommandCollectionError,
    CycleError,
    DuplicateNameError,
    FeatureGraph,
    FeatureGraphError,
    FeatureSetupError,
    MissingDependencyError,
    SetupReport,
)

__all__ = [
    "CommandCollectionError",
    "CommandSource",
    "CycleError",
    "DuplicateNameError",
    "FeatureGraph",
    "FeatureGraphError",
    "FeatureSetupError",
    "MissingDependencyError",
    "SetupFeature",
    "SetupReport",
]

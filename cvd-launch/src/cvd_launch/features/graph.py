"""Feature dependency graph.

The graph owns every SetupFeature of one instance. It

  1. resolves a setup order over the enabled features (dependencies first,
     registration order among independent features),
  2. runs ``setup()`` on each feature in that order on the calling thread,
     stopping at the first failure,
  3. collects the commands of the command-producing features, in the same
     order, once every setup succeeded.

A dependency on a disabled feature is treated as satisfied. Disabled features
are never inspected further, so a cycle among disabled features is harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from cvd_launch.command import Command
from cvd_launch.features.feature import CommandSource, SetupFeature

logger = logging.getLogger(__name__)


class FeatureGraphError(RuntimeError):
    pass


class DuplicateNameError(FeatureGraphError):
    def __init__(self, name: str) -> None:
        super().__init__(f"feature already registered: {name}")
        self.feature = name


class MissingDependencyError(FeatureGraphError):
    def __init__(self, feature: str, dependency: str) -> None:
        super().__init__(f"feature {feature} depends on unregistered feature {dependency}")
        self.feature = feature
        self.dependency = dependency


class CycleError(FeatureGraphError):
    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__("dependency cycle among enabled features: " + " -> ".join(cycle))
        self.cycle = tuple(cycle)


@dataclass(frozen=True)
class SetupReport:
    order: Tuple[str, ...]
    completed: Tuple[str, ...]
    failed: Optional[str] = None
    not_attempted: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.failed is None


class FeatureSetupError(FeatureGraphError):
    """Setup stopped at ``feature``; ``report`` tells what ran and what did not."""

    def __init__(self, feature: str, report: SetupReport, cause: Optional[BaseException]) -> None:
        reason = f"{type(cause).__name__}: {cause}" if cause is not None else "setup returned False"
        super().__init__(f"setup failed for feature {feature}: {reason}")
        self.feature = feature
        self.report = report
        self.cause = cause


class CommandCollectionError(FeatureGraphError):
    """``commands()`` of ``feature`` raised; commands gathered so far were closed."""

    def __init__(self, feature: str, cause: BaseException) -> None:
        super().__init__(
            f"collecting commands failed for feature {feature}: {type(cause).__name__}: {cause}"
        )
        self.feature = feature
        self.cause = cause


class FeatureGraph:
    def __init__(self) -> None:
        self._features: Dict[str, SetupFeature] = {}
        self._command_sources: set[str] = set()
        self._report: Optional[SetupReport] = None

    @property
    def features(self) -> List[SetupFeature]:
        return list(self._features.values())

    @property
    def report(self) -> Optional[SetupReport]:
        return self._report

    def register(self, feature: SetupFeature) -> SetupFeature:
        name = feature.name
        if name in self._features:
            raise DuplicateNameError(name)
        if self._report is not None:
            raise FeatureGraphError(f"cannot register {name}: setup already ran")
        self._features[name] = feature
        if isinstance(feature, CommandSource):
            self._command_sources.add(name)
        return feature

    def get(self, name: str) -> SetupFeature:
        return self._features[name]

    def resolve(self) -> List[SetupFeature]:
        """Enabled features in setup order.

        Raises MissingDependencyError or CycleError. Deterministic: the same
        registrations always resolve to the same order.
        """

        enabled: Dict[str, SetupFeature] = {
            name: f for name, f in self._features.items() if f.enabled()
        }

        deps: Dict[str, List[str]] = {}
        for name, feature in enabled.items():
            wanted: List[str] = []
            for dep in feature.dependencies():
                dep_name = dep.name
                if dep_name not in self._features:
                    raise MissingDependencyError(name, dep_name)
                if dep_name in enabled and dep_name not in wanted:
                    wanted.append(dep_name)
            deps[name] = wanted

        order: List[str] = []
        placed: set[str] = set()
        remaining = list(enabled)  # registration order
        while remaining:
            for name in remaining:
                if all(d in placed for d in deps[name]):
                    order.append(name)
                    placed.add(name)
                    remaining.remove(name)
                    break
            else:
                raise CycleError(_find_cycle(remaining, deps, placed))

        return [enabled[name] for name in order]

    def run(self) -> SetupReport:
        """Run setup for every enabled feature, stopping at the first failure.

        Features that already finished are not rolled back; each feature owns
        (and eventually releases) whatever it allocated.
        """

        if self._report is not None:
            raise FeatureGraphError("setup already ran for this graph")

        resolved = self.resolve()
        order = tuple(f.name for f in resolved)
        completed: List[str] = []
        for idx, feature in enumerate(resolved):
            logger.info("setting up %s", feature.name)
            cause: Optional[BaseException] = None
            try:
                ok = feature.setup() is not False
            except Exception as e:
                cause = e
                ok = False
            if not ok:
                report = SetupReport(
                    order=order,
                    completed=tuple(completed),
                    failed=feature.name,
                    not_attempted=order[idx + 1 :],
                )
                self._report = report
                logger.error(
                    "setup failed for %s; completed=%s not_attempted=%s",
                    feature.name,
                    list(report.completed),
                    list(report.not_attempted),
                )
                raise FeatureSetupError(feature.name, report, cause) from cause
            completed.append(feature.name)

        self._report = SetupReport(order=order, completed=tuple(completed))
        return self._report

    def collect_commands(self) -> List[Command]:
        if self._report is None or not self._report.ok:
            raise FeatureGraphError("commands are only available after a successful setup run")

        commands: List[Command] = []
        for name in self._report.order:
            if name not in self._command_sources:
                continue
            feature = self._features[name]
            try:
                produced = list(feature.commands())  # type: ignore[attr-defined]
            except Exception as e:
                logger.error("%s failed to produce commands: %s", name, e)
                for command in commands:
                    command.close()
                raise CommandCollectionError(name, e) from e
            logger.debug("%s produced %d command(s)", name, len(produced))
            commands.extend(produced)
        return commands


def _find_cycle(remaining: List[str], deps: Dict[str, List[str]], placed: set[str]) -> List[str]:
    # Every remaining feature has an unplaced dependency, so following the
    # first one must eventually revisit a feature.
    path: List[str] = []
    seen: Dict[str, int] = {}
    current = remaining[0]
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = next(d for d in deps[current] if d not in placed)
    return path[seen[current] :] + [current]

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List

from cvd_launch.command import Command


class SetupFeature(ABC):
    """A named unit of host-side setup.

    ``enabled()`` decides whether the feature takes part in this launch,
    ``dependencies()`` lists features whose setup must finish first, and
    ``setup()`` does the work. ``setup()`` signals failure by returning False
    or raising; any other return value counts as success.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    def enabled(self) -> bool:
        return True

    def dependencies(self) -> Iterable["SetupFeature"]:
        return ()

    @abstractmethod
    def setup(self) -> bool | None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class CommandSource(ABC):
    """Optional facet of a SetupFeature that contributes launchable commands."""

    @abstractmethod
    def commands(self) -> List[Command]:
        raise NotImplementedError

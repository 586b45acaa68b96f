from __future__ import annotations


class ResourceAllocationError(RuntimeError):
    """Raised when a per-instance host resource cannot be allocated."""


class NetworkSetupError(ResourceAllocationError):
    """Raised when a tap interface cannot be opened."""

    def __init__(self, message: str, *, tap_name: str) -> None:
        super().__init__(message)
        self.tap_name = tap_name

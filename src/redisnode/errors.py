"""Error taxonomy raised by the Redis node orchestrator.

Every error derives from :class:`NodeError` so callers can branch on the
specific failure or catch the whole family at a boundary.
"""
from __future__ import annotations

from collections.abc import Iterable


class NodeError(RuntimeError):
    """Base class for node lifecycle failures."""


class PlanInvalidError(NodeError):
    """Raised when a request targets a plan this node does not serve."""

    def __init__(self, plan: object) -> None:
        """Record the rejected *plan*."""
        super().__init__(f"Invalid plan '{plan}'.")
        self.plan = plan


class InstanceNotFoundError(NodeError):
    """Raised when no instance record exists for a name."""

    def __init__(self, name: str) -> None:
        """Record the missing instance *name*."""
        super().__init__(f"Instance '{name}' not found.")
        self.name = name


class StartInstanceFailedError(NodeError):
    """Raised when directory setup or process launch fails."""


class PortsExhaustedError(StartInstanceFailedError):
    """Raised when the port pool has no free port left."""


class CapacityExhaustedError(StartInstanceFailedError):
    """Raised when the node has no capacity left for another instance."""


class SaveInstanceFailedError(NodeError):
    """Raised when the instance store rejects a write."""


class InstanceExistsError(SaveInstanceFailedError):
    """Raised when a record with the same name is already persisted."""

    def __init__(self, name: str) -> None:
        """Record the duplicate instance *name*."""
        super().__init__(f"Instance '{name}' already exists.")
        self.name = name


class DeleteInstanceFailedError(NodeError):
    """Raised when the instance store fails to delete a record."""


class CleanupFailedError(NodeError):
    """Aggregate of the errors collected while tearing an instance down."""

    def __init__(self, name: str, errors: Iterable[str]) -> None:
        """Record the instance *name* and the collected *errors*."""
        self.name = name
        self.errors = tuple(errors)
        joined = "; ".join(self.errors) or "unknown error"
        super().__init__(f"Cleanup of instance '{name}' failed: {joined}")


class RestoreFileNotFoundError(NodeError):
    """Raised when the snapshot expected by ``restore`` is missing."""

    def __init__(self, path: object) -> None:
        """Record the missing snapshot *path*."""
        super().__init__(f"Restore file not found: {path}")
        self.path = path


__all__ = [
    "CapacityExhaustedError",
    "CleanupFailedError",
    "DeleteInstanceFailedError",
    "InstanceExistsError",
    "InstanceNotFoundError",
    "NodeError",
    "PlanInvalidError",
    "PortsExhaustedError",
    "RestoreFileNotFoundError",
    "SaveInstanceFailedError",
    "StartInstanceFailedError",
]

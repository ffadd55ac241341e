"""
Error taxonomy for the process lifecycle manager.

Failures are scoped to a single request: none of these is fatal to the
manager process, and nothing is retried automatically.
"""
from dataclasses import dataclass


class PortkeeperError(Exception):
    """Base class for all Portkeeper errors."""


class ProbeError(PortkeeperError):
    """Enumerating the owners of a port failed. The port state is unknown, not free."""

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"Could not determine owners of port {port}: {reason}")
        self.port = port
        self.reason = reason


class LaunchError(PortkeeperError):
    """Spawning a command failed (missing file, permission denied, missing interpreter)."""

    def __init__(self, command_path: str, reason: str) -> None:
        super().__init__(f"Failed to launch '{command_path}': {reason}")
        self.command_path = command_path
        self.reason = reason


class OperationTimeout(PortkeeperError, TimeoutError):
    """A lifecycle operation exceeded its overall deadline."""

    def __init__(self, operation: str, deadline: float) -> None:
        super().__init__(f"Operation '{operation}' did not finish within {deadline:.1f}s")
        self.operation = operation
        self.deadline = deadline


class EntryStoreError(PortkeeperError):
    """An entry file could not be read or parsed."""


@dataclass(frozen=True)
class TerminationPartialFailure:
    """A pid that could not be signalled. Carried in a TerminationReport, never raised."""
    pid: int
    reason: str

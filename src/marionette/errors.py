from __future__ import annotations

import builtins
from typing import Optional


class ProvisionError(Exception):
    """Base class for every error raised by Marionette."""


class InventoryError(ProvisionError):
    """Malformed or conflicting host definitions."""


class GraphError(ProvisionError):
    """Malformed task graph: cycles, unknown references, invalid actions."""


class ConnectionError(ProvisionError, builtins.ConnectionError):
    """The transport to a host could not be opened or broke mid-run."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class TaskError(ProvisionError):
    """A task failed on one host."""

    def __init__(self, message: str, task: Optional[str] = None):
        super().__init__(message)
        self.task = task


class TimeoutError(TaskError, builtins.TimeoutError):
    """A remote command exceeded its time budget."""


class IndeterminateStateError(TaskError):
    """A non-idempotent task failed after it may have changed the host."""


class ProbeError(TaskError):
    """A state probe attempted to mutate the host."""

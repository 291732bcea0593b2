"""Error taxonomy for workflow runs.

Node failures never abort a run; they are recorded per node in the results
map. Only graph-level validation errors are raised out of ``run_workflow``.
"""

from __future__ import annotations
from typing import Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(WorkflowError):
    """Node or graph configuration is unusable. Never retried."""

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class ExecutionError(WorkflowError):
    """A runner raised or an external call failed after all attempts."""

    def __init__(self, message: str, node_id: Optional[str] = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.attempts = attempts


class RemoteExecutionError(WorkflowError):
    """The remote execution service failed or returned an unusable response."""

"""
Error taxonomy for the breakdown run.

ConfigurationError and GroupNotFound are fatal for a run. NonConvergence is
fatal only for the global fit; per-group failures are recorded and the run
moves on.
"""

from typing import Optional


class BreakdownError(Exception):
    """Base class for all breakdown failures."""

    def __init__(self, message: str, entity: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity = entity

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BreakdownError):
    """Raised when a required input (workspace, dataset, document, ...) is missing or malformed."""
    pass


class GroupNotFound(BreakdownError):
    """Raised when a requested group is absent, empty or ambiguous."""
    pass


class NonConvergence(BreakdownError):
    """Raised when the optimizer or the sigma search fails to converge."""
    pass

"""Exception types raised by the tracking engine."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for tracking failures."""


class HostError(TrackerError):
    """The browser could not answer a query (tab already closed, permission denied)."""


class CommitError(TrackerError):
    """An accrual change could not be persisted after retrying."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        message = f"Failed to persist {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause

"""Lifecycle state shared by the result builders."""

from enum import StrEnum


class LifecycleError(Exception):
    """Raised when a builder operation is called out of order."""


class Lifecycle(StrEnum):
    """State of a builder: not started, started, or ended.

    Transitions only move forward. Each transition method returns the next
    state or raises LifecycleError when the transition is illegal.
    """

    NEW = "new"
    STARTED = "started"
    ENDED = "ended"

    def start(self) -> "Lifecycle":
        """Move from NEW to STARTED."""
        if self is not Lifecycle.NEW:
            raise LifecycleError("Start already called.")
        return Lifecycle.STARTED

    def end(self) -> "Lifecycle":
        """Move from STARTED to ENDED."""
        if self is Lifecycle.NEW:
            raise LifecycleError("Start was not called.")
        if self is Lifecycle.ENDED:
            raise LifecycleError("End already called.")
        return Lifecycle.ENDED

    def require_started(self, operation: str) -> None:
        """Ensure start was called, regardless of whether end was."""
        if self is Lifecycle.NEW:
            raise LifecycleError(f"Start must be called before {operation}.")

    def require_running(self, operation: str) -> None:
        """Ensure the builder is between start and end."""
        self.require_started(operation)
        if self is Lifecycle.ENDED:
            raise LifecycleError(f"Cannot {operation} after end was called.")

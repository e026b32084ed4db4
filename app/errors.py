from __future__ import annotations


class RouteError(Exception):
    """Base class for failures surfaced to callers as a single message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RouteError, ValueError):
    """Raised when a request is rejected before any state is mutated."""


class RecordNotFound(RouteError, LookupError):
    """Raised when a referenced employee, branch, job or template does not exist."""


class StoreError(RouteError):
    """Raised when a read or write against the relational store fails."""

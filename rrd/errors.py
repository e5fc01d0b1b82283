"""
Error taxonomy for the round-robin store.

Storage errors carry the operation name and the key or range involved so the
caller sees where a failure happened without parsing the message.
"""

from typing import Optional


class RRDError(Exception):
    """Base class for all store errors."""

    def __init__(self, operation: str, detail: str = "", target: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        self.target = target
        message = operation
        if target:
            message = f"{message} [{target}]"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class Cancelled(RRDError):
    """The caller's context was cancelled or its deadline expired."""


class BackendUnavailable(RRDError):
    """The backing store could not be reached or set up."""


class BackendError(RRDError):
    """An operation on the backing store failed (bad filter, decode or reduction failure)."""


class RecordNotCreated(RRDError):
    """Uniform failure returned to writers."""


class RangeQueryFailed(RRDError):
    """Uniform failure returned to readers."""

"""
Cancellable operation context.

Every storage operation receives an OperationContext. A context that is
already cancelled or past its deadline fails the operation with Cancelled
before any I/O happens; a deadline also bounds the awaited backend call.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from .errors import Cancelled

T = TypeVar("T")


class OperationContext:
    """Cancellation flag plus an optional monotonic deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = False
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def background(cls) -> "OperationContext":
        """A context that is never cancelled and has no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "OperationContext":
        return cls(timeout=seconds)

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def done(self) -> bool:
        return self._cancelled or self.expired()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self, operation: str, target: Optional[str] = None):
        """Raise Cancelled if the context is done."""
        if self._cancelled:
            raise Cancelled(operation, "context cancelled", target)
        if self.expired():
            raise Cancelled(operation, "context deadline exceeded", target)

    async def run(self, operation: str, awaitable: Awaitable[T], target: Optional[str] = None) -> T:
        """Await `awaitable`, bounded by the remaining deadline."""
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise Cancelled(operation, "context deadline exceeded", target) from e

    def __repr__(self) -> str:
        return f"OperationContext(cancelled={self._cancelled}, remaining={self.remaining()})"

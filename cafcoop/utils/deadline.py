"""
Deadline Racing.

Reusable "race a task against a deadline" combinator used for the
session pull, the profile lookup and every provisioning call.

The operation is **abandoned, not cancelled**, when the deadline wins:
the provider's own cancellation surfaces as a confusing error, so the
underlying call is left to finish on its own and its late outcome is
discarded.  Callers that mutate state must guard their continuations
with their own liveness check.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Generic, TypeVar, Union

from cafcoop.errors import TransientKind, TransientNetworkError

__all__ = ["Completed", "TimedOut", "DeadlineResult", "race_with_deadline", "call_with_deadline"]

T = TypeVar("T")


class Completed(Generic[T]):
    """The operation settled before the deadline."""

    __slots__ = ("value",)

    def __init__(self, value: T) -> None:
        self.value: T = value

    def __repr__(self) -> str:
        return f"Completed({self.value!r})"


class TimedOut:
    """The deadline elapsed first."""

    __slots__ = ("timeout",)

    def __init__(self, timeout: float) -> None:
        self.timeout: float = timeout

    def __repr__(self) -> str:
        return f"TimedOut({self.timeout}s)"


DeadlineResult = Union[Completed[T], TimedOut]


def _discard_outcome(task: "asyncio.Future[object]") -> None:
    # Retrieve the late result so asyncio does not report it as unhandled.
    if not task.cancelled():
        task.exception()


async def race_with_deadline(operation: Awaitable[T], timeout: float) -> DeadlineResult[T]:
    """Run *operation* against a *timeout* second deadline.

    Returns:
        ``Completed(value)`` when the operation finished first, or
        ``TimedOut`` when the deadline elapsed.

    Raises:
        Whatever *operation* raised, when it failed before the deadline.
    """
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.add_done_callback(_discard_outcome)
        raise

    if task in done:
        return Completed(task.result())

    task.add_done_callback(_discard_outcome)
    return TimedOut(timeout)


async def call_with_deadline(operation: Awaitable[T], timeout: float, context: str) -> T:
    """Like :func:`race_with_deadline` but raise on timeout.

    Raises:
        TransientNetworkError: kind ``timeout`` when the deadline elapsed.
    """
    result = await race_with_deadline(operation, timeout)
    if isinstance(result, TimedOut):
        raise TransientNetworkError(
            f"{context} timeout after {timeout:g}s", kind=TransientKind.TIMEOUT,
        )
    return result.value

"""
Cancellation tokens for long-running sync and KPI loads.

A token is created by whoever starts an operation (a screen, a scheduler
job) and passed down through every awaited call. Cancelling it aborts the
in-flight awaitables started through `token.run` instead of only discarding
their results afterwards.

Usage:
    token = CancellationToken()
    task = asyncio.create_task(service.get_kpis("kivos", ["ANNA"], cancel=token))
    ...
    token.cancel()  # in-flight sheet fetches are cancelled
"""
import asyncio
from typing import Any, Awaitable, Optional, Set

from salesync.exceptions import OperationCancelled


class CancellationToken:
    """Cooperative cancellation shared by one operation and its children."""

    def __init__(self):
        self._cancelled = False
        self._tasks: Set[asyncio.Future] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Mark the token cancelled and abort every awaitable running under it."""
        if self._cancelled:
            return
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    def raise_if_cancelled(self, operation: Optional[str] = None) -> None:
        if self._cancelled:
            raise OperationCancelled(operation)

    async def run(self, awaitable: Awaitable[Any], operation: Optional[str] = None) -> Any:
        """
        Await `awaitable` as a task that is cancelled together with the token.

        Raises:
            OperationCancelled: If the token is (or becomes) cancelled
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(operation)

        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise OperationCancelled(operation) from None
            raise
        finally:
            self._tasks.discard(task)


async def cancellable(
    awaitable: Awaitable[Any],
    cancel: Optional[CancellationToken],
    operation: Optional[str] = None,
) -> Any:
    """Await through `cancel` when a token is given, directly otherwise."""
    if cancel is None:
        return await awaitable
    return await cancel.run(awaitable, operation)


def checkpoint(cancel: Optional[CancellationToken], operation: Optional[str] = None) -> None:
    """Raise OperationCancelled between steps if the token fired."""
    if cancel is not None:
        cancel.raise_if_cancelled(operation)

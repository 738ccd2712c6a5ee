"""Single-assignment outcome shared by competing completion sources."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class Settlement(Generic[T]):
    """A result or an error that can be written exactly once.

    Later ``resolve``/``reject`` calls return ``False`` and are otherwise
    ignored, so whichever source finishes first decides the outcome.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    def follow(self, task: asyncio.Task[T]) -> None:
        """Settle from ``task`` once it finishes, unless already settled."""

        def _done(t: asyncio.Task[T]) -> None:
            if t.cancelled():
                self.reject(asyncio.CancelledError())
                return
            exc = t.exception()
            if exc is not None:
                self.reject(exc)
            else:
                self.resolve(t.result())

        task.add_done_callback(_done)

    async def wait(self) -> T:
        return await asyncio.shield(self._future)

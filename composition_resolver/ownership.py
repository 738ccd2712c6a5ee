"""Owned vs. borrowed resources.

Whether a resource is stopped at the end of a resolution is decided by its
variant: ``Owned`` carries the teardown, ``Borrowed`` has none to call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Owned(Generic[T]):
    resource: T
    teardown: Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Borrowed(Generic[T]):
    resource: T


Ownership = Union[Owned[T], Borrowed[T]]


async def release(held: Ownership) -> None:
    if isinstance(held, Owned):
        await held.teardown()

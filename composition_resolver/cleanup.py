"""Ordered, run-once teardown of everything a resolution acquired."""

from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Union

import structlog

logger = structlog.get_logger(__name__)

CleanupFn = Callable[[], Union[None, Awaitable[None]]]


class CleanupChain:
    """Teardown actions executed in registration order, exactly once.

    A failing action is logged and the remaining actions still run. The
    chain never raises, so it cannot mask the outcome that triggered it.
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, CleanupFn]] = []
        self._ran = False

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def ran(self) -> bool:
        return self._ran

    def register(self, action: CleanupFn, name: str | None = None) -> None:
        if self._ran:
            raise RuntimeError("cannot register cleanup after the chain has run")
        self._actions.append((name or getattr(action, "__name__", "cleanup"), action))

    async def run_all(self) -> None:
        if self._ran:
            return
        self._ran = True
        actions, self._actions = self._actions, []

        for name, action in actions:
            try:
                res = action()
                if inspect.isawaitable(res):
                    await res
            except Exception as exc:
                logger.warning("Cleanup action failed", action=name, error=f"{type(exc).__name__}: {exc}")

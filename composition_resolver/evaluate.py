"""Calling into the page: readiness wait and entry-point invocation."""

from __future__ import annotations

import time
from typing import Any, Sequence

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from composition_resolver.errors import NotReadyError, RemoteInvocationError
from composition_resolver.log import LogConfig, verbose_advanced
from composition_resolver.sourcemaps import SourceMapContext

logger = structlog.get_logger(__name__)

READY_MARKER = "remotion_renderReady"
CANCELLED_MARKER = "remotion_cancelledError"

_CALL_ENTRY_POINT = """([name, args]) => {
    const fn = window[name];
    if (typeof fn !== 'function') {
        throw new TypeError(`window.${name} is not a function. Is the bundle loaded?`);
    }
    return fn(...args);
}"""

_READY_OR_CANCELLED = f"() => window.{READY_MARKER} === true || window.{CANCELLED_MARKER} !== undefined"


def _split_error(exc: PlaywrightError) -> tuple[str, str | None, str | None]:
    message = str(getattr(exc, "message", None) or exc)
    return message, getattr(exc, "name", None), getattr(exc, "stack", None)


async def evaluate_with_catch(
    page: Page,
    entry_point: str,
    args: Sequence[Any] = (),
    *,
    frame: Frame | None = None,
    source_map: SourceMapContext | None = None,
) -> Any:
    """Call ``window[entry_point](*args)`` in the page and return its JSON result.

    ``frame=None`` marks a call that is not scoped to a frame and runs in the
    page's main frame. Exceptions thrown by the page come back as
    ``RemoteInvocationError`` with the page's message and stack.
    """
    target: Page | Frame = frame if frame is not None else page
    try:
        return await target.evaluate(_CALL_ENTRY_POINT, [entry_point, list(args)])
    except PlaywrightError as exc:
        message, name, stack = _split_error(exc)
        if source_map is not None:
            stack = source_map.symbolicate(stack)
        raise RemoteInvocationError(message, entry_point=entry_point, name=name, stack=stack) from exc


async def invoke_timed(
    page: Page,
    entry_point: str,
    args: Sequence[Any],
    log: LogConfig,
    *,
    label: str | None = None,
    source_map: SourceMapContext | None = None,
) -> Any:
    label = label or entry_point
    verbose_advanced(log, f"Running {label}()...")
    started = time.perf_counter()
    result = await evaluate_with_catch(page, entry_point, args, frame=None, source_map=source_map)
    elapsed_ms = round((time.perf_counter() - started) * 1000.0)
    verbose_advanced(log, f"{label}() took {elapsed_ms}ms")
    return result


async def wait_for_ready(page: Page) -> None:
    """Block until the bundle marks itself ready; a reported load failure raises NotReadyError.

    No timeout of its own: the page default timeout set during injection applies.
    """
    try:
        await page.wait_for_function(_READY_OR_CANCELLED)
        cancelled = await page.evaluate(f"() => window.{CANCELLED_MARKER}")
    except PlaywrightTimeoutError as exc:
        raise NotReadyError(f"bundle did not become ready: {exc.message}") from exc
    except PlaywrightError as exc:
        message, name, stack = _split_error(exc)
        raise NotReadyError(message, name=name, stack=stack) from exc

    if cancelled is not None:
        text = str(cancelled)
        raise NotReadyError(text.splitlines()[0] if text else "bundle failed to load", stack=text)

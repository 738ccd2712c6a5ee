"""Out-of-band exceptions: errors the page raises outside a direct evaluate() call."""

from __future__ import annotations

from typing import Any, Callable

import structlog
from playwright.async_api import Frame, Page

from composition_resolver.errors import OutOfBandError
from composition_resolver.sourcemaps import SourceMapContext

logger = structlog.get_logger(__name__)


def _to_out_of_band_error(err: Any, source_map: SourceMapContext | None) -> OutOfBandError:
    message = str(getattr(err, "message", None) or err or "Unknown error")
    stack = getattr(err, "stack", None)
    if source_map is not None:
        stack = source_map.symbolicate(stack)
    return OutOfBandError(message, name=getattr(err, "name", None), stack=stack)


def handle_javascript_exception(
    page: Page,
    on_error: Callable[[OutOfBandError], Any],
    *,
    frame: Frame | None = None,
    source_map: SourceMapContext | None = None,
) -> Callable[[], None]:
    """Report the first uncaught page exception (or a page crash) to ``on_error``.

    Later events are ignored. ``frame`` restricts reporting to errors whose
    stack mentions that frame's URL. Returns the unsubscribe function.
    """
    fired = False

    def _fire(error: OutOfBandError) -> None:
        nonlocal fired
        if fired:
            return
        fired = True
        logger.debug("Out-of-band page exception", message=error.message)
        on_error(error)

    def _on_page_error(err: Any) -> None:
        if frame is not None:
            stack = str(getattr(err, "stack", "") or "")
            if frame.url and frame.url not in stack:
                return
        _fire(_to_out_of_band_error(err, source_map))

    def _on_crash(_page: Page) -> None:
        _fire(OutOfBandError("Page crashed", name="TargetCrashedError"))

    page.on("pageerror", _on_page_error)
    page.on("crash", _on_crash)

    def unsubscribe() -> None:
        page.remove_listener("pageerror", _on_page_error)
        page.remove_listener("crash", _on_crash)

    return unsubscribe

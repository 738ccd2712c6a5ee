from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog
from playwright.async_api import Browser, BrowserContext, ConsoleMessage, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from composition_resolver.errors import ProvisionError
from composition_resolver.ownership import Borrowed, Owned, Ownership, release
from composition_resolver.sourcemaps import SourceMapContext

logger = structlog.get_logger(__name__)

DEFAULT_LAUNCH_TIMEOUT_MS = 25_000

_BASE_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-first-run",
    "--no-default-browser-check",
    # Avoid renderer crashes when /dev/shm is tiny.
    "--disable-dev-shm-usage",
]


@dataclass(frozen=True)
class ChromiumOptions:
    headless: bool = True
    disable_web_security: bool = False
    ignore_certificate_errors: bool = False
    gl: str | None = None  # e.g. angle|egl|swiftshader|swangle

    def launch_args(self) -> list[str]:
        args = list(_BASE_CHROMIUM_ARGS)
        if self.disable_web_security:
            args.append("--disable-web-security")
        if self.ignore_certificate_errors:
            args.append("--ignore-certificate-errors")
        if self.gl:
            args.append(f"--use-gl={self.gl}")
        return args


@dataclass(frozen=True)
class BrowserLog:
    text: str
    type: str  # console method: log|debug|info|warning|error|...
    stack_trace: list[dict[str, Any]] = field(default_factory=list)


_CHROMIUM_PATHS = (
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
)

# "browser has been closed" also covers "target page, context or browser has been closed".
_INFRA_ERROR_MARKERS = (
    "browser has been closed",
    "page crashed",
    "target crashed",
    "connection closed while reading from the driver",
    "connection closed while writing to the driver",
    "pipe closed by peer",
)


def find_chromium_executable() -> str | None:
    """``CHROMIUM_PATH`` if it exists, else the first installed system Chromium/Chrome."""
    for path in (os.getenv("CHROMIUM_PATH"), *_CHROMIUM_PATHS):
        if path and Path(path).exists():
            return path
    return None


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when the browser or its driver is gone, as opposed to the page misbehaving."""
    if type(exc).__name__ == "TargetClosedError":
        return True
    msg = str(exc or "").lower()
    return any(marker in msg for marker in _INFRA_ERROR_MARKERS)


@dataclass
class PageHandle:
    page: Page
    context: BrowserContext
    browser: Ownership[Browser]
    release: Callable[[], Awaitable[None]]
    source_map: SourceMapContext | None = None

    def set_browser_source_map_context(self, source_map: SourceMapContext | None) -> None:
        self.source_map = source_map


def attach_browser_log(page: Page, on_browser_log: Callable[[BrowserLog], None]) -> Callable[[], None]:
    """Forward page console messages to ``on_browser_log``; returns a detach function."""

    def _on_console(msg: ConsoleMessage) -> None:
        try:
            location = msg.location or {}
            log = BrowserLog(text=msg.text, type=msg.type, stack_trace=[dict(location)] if location else [])
            on_browser_log(log)
        except Exception as exc:
            logger.warning("Browser log observer failed", error=f"{type(exc).__name__}: {exc}")

    page.on("console", _on_console)
    return lambda: page.remove_listener("console", _on_console)


async def _close_quietly(what: str, closer: Callable[[], Awaitable[Any]]) -> None:
    try:
        await closer()
    except Exception as exc:
        logger.debug("Ignoring close failure", what=what, error=f"{type(exc).__name__}: {exc}")


async def _launch(
    browser_executable: str | None,
    chromium_options: ChromiumOptions,
    launch_timeout_ms: int,
) -> tuple[Playwright, Browser]:
    if browser_executable and not Path(browser_executable).exists():
        raise ProvisionError(f"browser executable not found: {browser_executable}")
    executable = browser_executable or find_chromium_executable()

    try:
        pw = await async_playwright().start()
    except Exception as exc:
        raise ProvisionError(f"could not start the Playwright driver: {exc}") from exc

    try:
        browser = await pw.chromium.launch(
            headless=chromium_options.headless,
            # None lets Playwright use the Chromium it manages itself.
            executable_path=executable,
            args=chromium_options.launch_args(),
            timeout=launch_timeout_ms,
        )
    except BaseException as exc:
        await _close_quietly("playwright", pw.stop)
        if isinstance(exc, PlaywrightError):
            raise ProvisionError(f"could not launch Chromium ({executable or 'playwright-managed'}): {exc}") from exc
        raise

    logger.debug("Launched browser", executable=executable or "playwright-managed", version=browser.version)
    return pw, browser


async def acquire_page(
    passed_in_instance: Browser | None,
    *,
    browser_executable: str | None = None,
    chromium_options: ChromiumOptions | None = None,
    launch_timeout_ms: int = DEFAULT_LAUNCH_TIMEOUT_MS,
) -> PageHandle:
    """Open a fresh page, in the passed browser or in a newly launched one.

    The returned ``release`` closes the page and its context; it also closes
    the browser only when this call launched it.
    """
    options = chromium_options or ChromiumOptions()
    held: Ownership[Browser]

    if passed_in_instance is not None:
        held = Borrowed(passed_in_instance)
    else:
        pw, browser = await _launch(browser_executable, options, launch_timeout_ms)

        async def _teardown_browser() -> None:
            await _close_quietly("browser", browser.close)
            await _close_quietly("playwright", pw.stop)

        held = Owned(browser, _teardown_browser)

    context: BrowserContext | None = None
    try:
        context = await held.resource.new_context(
            viewport={"width": 1280, "height": 720},
            ignore_https_errors=options.ignore_certificate_errors,
        )
        page = await context.new_page()
    except BaseException as exc:
        # release() leaves a borrowed browser and its contexts open.
        if context is not None:
            await _close_quietly("context", context.close)
        await release(held)
        if isinstance(exc, PlaywrightError):
            reason = "browser is not usable" if is_browser_infra_error(exc) else "could not open a page"
            raise ProvisionError(f"{reason}: {exc}") from exc
        raise

    async def _release() -> None:
        await _close_quietly("page", page.close)
        await _close_quietly("context", context.close)
        await release(held)

    return PageHandle(page=page, context=context, browser=held, release=_release)

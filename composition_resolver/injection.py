"""Pushes input props, env variables and flags into the page before the bundle runs."""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from composition_resolver.browser import is_browser_infra_error
from composition_resolver.errors import InjectionError, InvalidTimeoutError

logger = structlog.get_logger(__name__)

BUNDLE_MODE_FN = "remotion_setBundleMode"

_TRANSIENT_MARKERS = (
    "net::err_connection_refused",
    "net::err_connection_reset",
    "net::err_empty_response",
    "net::err_aborted",
    "frame was detached",
    "execution context was destroyed",
)


def validate_timeout(timeout_in_milliseconds: Any) -> None:
    if isinstance(timeout_in_milliseconds, bool) or not isinstance(timeout_in_milliseconds, (int, float)):
        raise InvalidTimeoutError(timeout_in_milliseconds)
    if not math.isfinite(timeout_in_milliseconds) or timeout_in_milliseconds <= 0:
        raise InvalidTimeoutError(timeout_in_milliseconds)


def is_transient_injection_error(exc: BaseException) -> bool:
    """Default retry policy: navigation hiccups and timeouts, never a dead browser."""
    if is_browser_infra_error(exc):
        return False
    if isinstance(exc, PlaywrightTimeoutError):
        return True
    msg = str(exc or "").lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


def normalize_serve_url(serve_url: str) -> str:
    url = serve_url.strip()
    if url.split("?", 1)[0].endswith(".html"):
        return url
    return url.rstrip("/") + "/index.html"


@dataclass(frozen=True)
class InjectionOptions:
    serve_url: str
    timeout_in_milliseconds: float
    proxy_port: int
    input_props: dict[str, Any] = field(default_factory=dict)
    env_variables: dict[str, str] = field(default_factory=dict)
    initial_frame: int = 0
    retries_remaining: int = 2
    audio_enabled: bool = False
    video_enabled: bool = False
    # Whether a failed attempt may be repeated; retrying re-navigates the page.
    is_retryable: Callable[[BaseException], bool] = is_transient_injection_error
    retry_delay_seconds: float = 0.5


def build_init_script(options: InjectionOptions) -> str:
    """JavaScript that seeds the page globals on every navigation.

    Props and env travel as JSON strings; the bundle parses them itself.
    """
    assignments = {
        "remotion_puppeteerTimeout": options.timeout_in_milliseconds,
        "remotion_inputProps": json.dumps(options.input_props),
        "remotion_envVariables": json.dumps(options.env_variables),
        "remotion_initialFrame": options.initial_frame,
        "remotion_proxyPort": options.proxy_port,
        "remotion_audioEnabled": options.audio_enabled,
        "remotion_videoEnabled": options.video_enabled,
    }
    return "\n".join(f"window.{name} = {json.dumps(value)};" for name, value in assignments.items())


async def _inject_once(page: Page, url: str, attempt: int) -> None:
    await page.goto(url, wait_until="load")
    is_bundle = await page.evaluate(f"() => typeof window.{BUNDLE_MODE_FN} === 'function'")
    if not is_bundle:
        raise InjectionError(
            f"Tried to open {url} but window.{BUNDLE_MODE_FN} is not defined. "
            "Make sure the URL points to a served composition bundle.",
            attempts=attempt,
        )


async def set_props_and_env(page: Page, options: InjectionOptions) -> None:
    validate_timeout(options.timeout_in_milliseconds)
    page.set_default_timeout(float(options.timeout_in_milliseconds))

    url = normalize_serve_url(options.serve_url)
    attempts = 1 + max(0, int(options.retries_remaining))
    script_registered = False
    last_error: BaseException | None = None
    attempt = 0

    for attempt in range(1, attempts + 1):
        try:
            if not script_registered:
                await page.add_init_script(script=build_init_script(options))
                script_registered = True
            await _inject_once(page, url, attempt)
            if attempt > 1:
                logger.info("Injection succeeded after retry", url=url, attempt=attempt)
            return
        except InjectionError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt == attempts or not options.is_retryable(exc):
                break
            logger.warning(
                "Injection attempt failed, retrying",
                url=url,
                attempt=attempt,
                attempts=attempts,
                error=f"{type(exc).__name__}: {exc}",
            )
            if options.retry_delay_seconds > 0:
                await asyncio.sleep(options.retry_delay_seconds)

    raise InjectionError(
        f"could not prepare the page at {url} after {attempt} attempt(s): {last_error}",
        attempts=attempt,
    ) from last_error

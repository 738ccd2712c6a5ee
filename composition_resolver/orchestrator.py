"""Resolve the metadata of one composition inside a disposable browser page.

The flow is: serve the bundle, open a page, inject props/env, wait for the
bundle to be ready and call its ``calculateComposition`` entry point. An
uncaught page exception can end the resolution at any point; whichever of
the two finishes first decides the outcome, and everything acquired along
the way is torn down exactly once afterwards.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog
from playwright.async_api import Browser

from composition_resolver.assets import DownloadMap, clean_download_map, make_download_map
from composition_resolver.bridge import handle_javascript_exception
from composition_resolver.browser import (
    DEFAULT_LAUNCH_TIMEOUT_MS,
    BrowserLog,
    ChromiumOptions,
    acquire_page,
    attach_browser_log,
)
from composition_resolver.cleanup import CleanupChain
from composition_resolver.errors import RemoteInvocationError
from composition_resolver.evaluate import evaluate_with_catch, invoke_timed, wait_for_ready
from composition_resolver.injection import (
    BUNDLE_MODE_FN,
    InjectionOptions,
    is_transient_injection_error,
    set_props_and_env,
    validate_timeout,
)
from composition_resolver.log import LogConfig
from composition_resolver.server import ContentServer, ServeOptions, make_or_reuse_server
from composition_resolver.settlement import Settlement

logger = structlog.get_logger(__name__)

CALCULATE_COMPOSITION_FN = "remotion_calculateComposition"

CompositionMetadata = dict[str, Any]


class ResolutionState(str, Enum):
    IDLE = "idle"
    SERVER_READY = "server_ready"
    SANDBOX_READY = "sandbox_ready"
    INJECTED = "injected"
    BUNDLE_READY = "bundle_ready"
    INVOKING = "invoking"
    SETTLED = "settled"


@dataclass(frozen=True)
class ResolutionRequest:
    id: str
    # Already-served URL, or a directory holding a built bundle to serve.
    serve_url: str
    input_props: dict[str, Any] | None = None
    env_variables: dict[str, str] | None = None
    timeout_in_milliseconds: float = 30_000
    puppeteer_instance: Browser | None = None
    server: ContentServer | None = None
    download_map: DownloadMap | None = None
    browser_executable: str | None = None
    chromium_options: ChromiumOptions | None = None
    launch_timeout_in_milliseconds: int = DEFAULT_LAUNCH_TIMEOUT_MS
    port: int | None = None
    verbose: bool = False
    indent: bool = False
    on_browser_log: Callable[[BrowserLog], None] | None = None
    retries_remaining: int = 2
    is_retryable: Callable[[BaseException], bool] = is_transient_injection_error
    retry_delay_seconds: float = 0.5


@dataclass
class CompositionResolution:
    """One run of the resolution flow; keeps the states it went through."""

    request: ResolutionRequest
    cleanup: CleanupChain = field(default_factory=CleanupChain)
    history: list[ResolutionState] = field(default_factory=lambda: [ResolutionState.IDLE])

    @property
    def state(self) -> ResolutionState:
        return self.history[-1]

    def _advance(self, state: ResolutionState) -> None:
        if self.state is ResolutionState.SETTLED:
            return
        self.history.append(state)
        logger.debug("Resolution state", composition=self.request.id, state=state.value)

    async def run(self) -> CompositionMetadata:
        try:
            # Rejected before anything is provisioned.
            validate_timeout(self.request.timeout_in_milliseconds)
            return await self._race()
        finally:
            self._advance(ResolutionState.SETTLED)
            await self.cleanup.run_all()

    async def _race(self) -> CompositionMetadata:
        settlement: Settlement[CompositionMetadata] = Settlement()
        task = asyncio.create_task(self._chain(settlement))
        settlement.follow(task)
        try:
            return await settlement.wait()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait([task])

    async def _chain(self, settlement: Settlement[CompositionMetadata]) -> CompositionMetadata:
        req = self.request
        log = LogConfig(verbose=req.verbose, indent=req.indent, tag="selectComposition()")

        download_map = req.download_map
        if download_map is None:
            download_map = make_download_map()
            self.cleanup.register(lambda: clean_download_map(download_map), "download_map")

        server = await make_or_reuse_server(
            req.server,
            ServeOptions(
                webpack_config_or_serve_url=req.serve_url,
                download_map=download_map,
                port=req.port,
                concurrency=1,
                log=log,
            ),
        )
        self._advance(ResolutionState.SERVER_READY)

        # The page is released before the server it talks to is stopped.
        try:
            handle = await acquire_page(
                req.puppeteer_instance,
                browser_executable=req.browser_executable,
                chromium_options=req.chromium_options,
                launch_timeout_ms=req.launch_timeout_in_milliseconds,
            )
        except BaseException:
            self.cleanup.register(lambda: server.release(True), "server")
            raise
        self.cleanup.register(handle.release, "page")
        self.cleanup.register(
            handle_javascript_exception(handle.page, settlement.reject, source_map=server.source_map),
            "exception_bridge",
        )
        self.cleanup.register(lambda: server.release(True), "server")

        page = handle.page
        handle.set_browser_source_map_context(server.source_map)
        if req.on_browser_log is not None:
            attach_browser_log(page, req.on_browser_log)
        self._advance(ResolutionState.SANDBOX_READY)

        await set_props_and_env(
            page,
            InjectionOptions(
                serve_url=server.serve_url,
                timeout_in_milliseconds=req.timeout_in_milliseconds,
                proxy_port=server.offthread_port,
                input_props=req.input_props or {},
                env_variables=req.env_variables or {},
                initial_frame=0,
                retries_remaining=req.retries_remaining,
                audio_enabled=False,
                video_enabled=False,
                is_retryable=req.is_retryable,
                retry_delay_seconds=req.retry_delay_seconds,
            ),
        )
        await evaluate_with_catch(page, BUNDLE_MODE_FN, [{"type": "evaluation"}], source_map=handle.source_map)
        self._advance(ResolutionState.INJECTED)

        await wait_for_ready(page)
        self._advance(ResolutionState.BUNDLE_READY)

        self._advance(ResolutionState.INVOKING)
        result = await invoke_timed(
            page,
            CALCULATE_COMPOSITION_FN,
            [req.id],
            log,
            label="calculateMetadata",
            source_map=handle.source_map,
        )
        if not isinstance(result, dict):
            raise RemoteInvocationError(
                f"{CALCULATE_COMPOSITION_FN}({req.id!r}) returned {type(result).__name__}, expected an object",
                entry_point=CALCULATE_COMPOSITION_FN,
            )
        return result


async def select_composition(request: ResolutionRequest) -> CompositionMetadata:
    """Get the metadata of composition ``request.id`` from a served bundle."""
    return await CompositionResolution(request).run()

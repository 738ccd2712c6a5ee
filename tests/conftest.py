from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

import pytest
import structlog
from playwright.async_api import Error as PlaywrightError

import composition_resolver.orchestrator as orchestrator
from composition_resolver.browser import PageHandle
from composition_resolver.injection import BUNDLE_MODE_FN
from composition_resolver.orchestrator import CALCULATE_COMPOSITION_FN
from composition_resolver.ownership import Borrowed
from composition_resolver.sourcemaps import SourceMapContext


DEFAULT_METADATA = {"durationInFrames": 150, "fps": 30, "width": 1920, "height": 1080}


class FakePage:
    """Just enough of playwright's Page for the resolution flow."""

    def __init__(
        self,
        *,
        metadata: Any = None,
        calc_error: str | None = None,
        calc_delay: float = 0.0,
        goto_failures: int = 0,
        goto_error: str = "Page.goto: net::ERR_CONNECTION_REFUSED at http://127.0.0.1:3000/index.html",
        bundle_loaded: bool = True,
        cancelled_error: str | None = None,
        on_calculate: Callable[["FakePage"], None] | None = None,
    ) -> None:
        self.metadata = dict(DEFAULT_METADATA) if metadata is None else metadata
        self.calc_error = calc_error
        self.calc_delay = calc_delay
        self.goto_failures = goto_failures
        self.goto_error = goto_error
        self.bundle_loaded = bundle_loaded
        self.cancelled_error = cancelled_error
        self.on_calculate = on_calculate

        self.listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self.init_scripts: list[str] = []
        self.goto_calls: list[str] = []
        self.calls: list[tuple[str, list[Any]]] = []
        self.default_timeout: float | None = None
        self.calculate_finished = False

    def on(self, event: str, cb: Callable[..., Any]) -> None:
        self.listeners[event].append(cb)

    def remove_listener(self, event: str, cb: Callable[..., Any]) -> None:
        self.listeners[event].remove(cb)

    def emit(self, event: str, payload: Any) -> None:
        for cb in list(self.listeners[event]):
            cb(payload)

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def add_init_script(self, script: str | None = None, path: Any = None) -> None:
        self.init_scripts.append(script or "")

    async def goto(self, url: str, wait_until: str | None = None) -> None:
        self.goto_calls.append(url)
        if self.goto_failures > 0:
            self.goto_failures -= 1
            raise PlaywrightError(self.goto_error)

    async def wait_for_function(self, expression: str) -> bool:
        return True

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        if arg is None:
            if "typeof window." in expression:
                return self.bundle_loaded
            if "remotion_cancelledError" in expression:
                return self.cancelled_error
            raise AssertionError(f"unexpected evaluate: {expression}")

        name, args = arg
        self.calls.append((name, list(args)))
        if name == BUNDLE_MODE_FN:
            return None
        if name == CALCULATE_COMPOSITION_FN:
            if self.on_calculate is not None:
                self.on_calculate(self)
            if self.calc_delay:
                await asyncio.sleep(self.calc_delay)
            if self.calc_error:
                raise PlaywrightError(self.calc_error)
            self.calculate_finished = True
            return self.metadata
        raise PlaywrightError(f"TypeError: window.{name} is not a function")


class FakeServer:
    """Stands in for a running ContentServer."""

    def __init__(self, serve_url: str = "http://localhost:3000", port: int = 3001) -> None:
        self.serve_url = serve_url
        self.port = port
        self.offthread_port = port
        self.source_map = SourceMapContext()
        self.stop_calls = 0

    async def stop(self) -> None:
        self.stop_calls += 1

    @property
    def running(self) -> bool:
        return self.stop_calls == 0


class Provisioning:
    """Records every provisioning call the orchestrator makes."""

    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.page_acquisitions = 0
        self.page_releases = 0
        self.server_starts = 0
        self.server_releases: list[bool] = []
        self.owned_server: FakeServer | None = None
        self.fail_page_with: BaseException | None = None
        self.fail_server_with: BaseException | None = None
        self.page_release_error: BaseException | None = None


@pytest.fixture()
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture()
def provisioning(monkeypatch: pytest.MonkeyPatch, fake_page: FakePage) -> Provisioning:
    prov = Provisioning(fake_page)
    real_make_or_reuse = orchestrator.make_or_reuse_server

    async def fake_acquire_page(passed_in_instance, **kwargs) -> PageHandle:
        prov.page_acquisitions += 1
        if prov.fail_page_with is not None:
            raise prov.fail_page_with

        async def _release() -> None:
            prov.page_releases += 1
            if prov.page_release_error is not None:
                raise prov.page_release_error

        return PageHandle(page=prov.page, context=None, browser=Borrowed(passed_in_instance), release=_release)  # type: ignore[arg-type]

    async def fake_start_server(options) -> FakeServer:
        prov.server_starts += 1
        if prov.fail_server_with is not None:
            raise prov.fail_server_with
        prov.owned_server = FakeServer(serve_url=options.webpack_config_or_serve_url, port=options.port or 3001)
        return prov.owned_server

    async def fake_make_or_reuse_server(existing, options):
        handle = await real_make_or_reuse(existing, options)
        inner = handle.release

        async def _release(force: bool) -> None:
            prov.server_releases.append(force)
            await inner(force)

        return type(handle)(held=handle.held, release=_release)

    monkeypatch.setattr(orchestrator, "acquire_page", fake_acquire_page)
    monkeypatch.setattr("composition_resolver.server.start_server", fake_start_server)
    monkeypatch.setattr(orchestrator, "make_or_reuse_server", fake_make_or_reuse_server)
    return prov


@pytest.fixture()
def make_bundle(tmp_path: Path) -> Callable[..., Path]:
    def _make(html: str, extra: dict[str, str] | None = None, name: str = "bundle") -> Path:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "index.html").write_text(html, encoding="utf-8")
        for rel, content in (extra or {}).items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return root

    return _make


@pytest.fixture()
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()

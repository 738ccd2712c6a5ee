from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from playwright.async_api import Error as PlaywrightError

import composition_resolver.browser as browser_mod
from composition_resolver.browser import (
    BrowserLog,
    ChromiumOptions,
    acquire_page,
    attach_browser_log,
    find_chromium_executable,
    is_browser_infra_error,
)
from composition_resolver.errors import ProvisionError
from composition_resolver.ownership import Borrowed


class _DummyPlaywrightError(Exception):
    pass


class _Closable:
    def __init__(self, name: str, log: list[str]) -> None:
        self.name = name
        self.log = log

    async def close(self) -> None:
        self.log.append(self.name)


class _FakeContext(_Closable):
    def __init__(self, log: list[str], fail_new_page: Exception | None = None) -> None:
        super().__init__("context", log)
        self.page = _Closable("page", log)
        self.fail_new_page = fail_new_page

    async def new_page(self):
        if self.fail_new_page is not None:
            raise self.fail_new_page
        return self.page


class _FakeBrowser(_Closable):
    def __init__(
        self,
        log: list[str],
        fail_with: Exception | None = None,
        fail_new_page: Exception | None = None,
    ) -> None:
        super().__init__("browser", log)
        self.fail_with = fail_with
        self.fail_new_page = fail_new_page
        self.context_kwargs: dict | None = None

    async def new_context(self, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        self.context_kwargs = kwargs
        return _FakeContext(self.log, self.fail_new_page)


def test_is_browser_infra_error_page_crashed() -> None:
    assert is_browser_infra_error(_DummyPlaywrightError("Error: Page.goto: Page crashed")) is True


def test_is_browser_infra_error_driver_connection_closed() -> None:
    assert (
        is_browser_infra_error(
            _DummyPlaywrightError("Exception: Browser.new_context: Connection closed while reading from the driver")
        )
        is True
    )


def test_is_browser_infra_error_ignores_page_errors() -> None:
    assert is_browser_infra_error(_DummyPlaywrightError("Error: Composition not found")) is False


def test_chromium_options_map_to_launch_args() -> None:
    args = ChromiumOptions(disable_web_security=True, ignore_certificate_errors=True, gl="swangle").launch_args()

    assert "--no-sandbox" in args
    assert "--disable-web-security" in args
    assert "--ignore-certificate-errors" in args
    assert "--use-gl=swangle" in args
    assert "--use-gl=swangle" not in ChromiumOptions().launch_args()


def test_find_chromium_executable_prefers_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    exe = tmp_path / "chromium"
    exe.write_text("", encoding="utf-8")
    monkeypatch.setenv("CHROMIUM_PATH", str(exe))

    assert find_chromium_executable() == str(exe)


@pytest.mark.asyncio
async def test_borrowed_browser_release_closes_only_page_and_context() -> None:
    closed: list[str] = []
    browser = _FakeBrowser(closed)

    handle = await acquire_page(browser, chromium_options=ChromiumOptions(ignore_certificate_errors=True))  # type: ignore[arg-type]
    assert isinstance(handle.browser, Borrowed)
    assert browser.context_kwargs["ignore_https_errors"] is True

    await handle.release()

    assert closed == ["page", "context"]


@pytest.mark.asyncio
async def test_owned_browser_release_closes_everything(monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[str] = []
    browser = _FakeBrowser(closed)
    pw = SimpleNamespace(stop=lambda: _record(closed, "playwright"))

    async def fake_launch(browser_executable, chromium_options, launch_timeout_ms):
        return pw, browser

    monkeypatch.setattr(browser_mod, "_launch", fake_launch)

    handle = await acquire_page(None)
    await handle.release()

    assert closed == ["page", "context", "browser", "playwright"]


@pytest.mark.asyncio
async def test_context_failure_on_owned_browser_is_a_provision_error(monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[str] = []
    browser = _FakeBrowser(closed, fail_with=PlaywrightError("Browser has been closed"))
    pw = SimpleNamespace(stop=lambda: _record(closed, "playwright"))

    async def fake_launch(browser_executable, chromium_options, launch_timeout_ms):
        return pw, browser

    monkeypatch.setattr(browser_mod, "_launch", fake_launch)

    with pytest.raises(ProvisionError, match="browser is not usable"):
        await acquire_page(None)

    assert closed == ["browser", "playwright"]


@pytest.mark.asyncio
async def test_missing_explicit_executable_is_a_provision_error(tmp_path) -> None:
    with pytest.raises(ProvisionError, match="browser executable not found"):
        await acquire_page(None, browser_executable=str(tmp_path / "no-such-chrome"))


@pytest.mark.asyncio
async def test_page_failure_on_borrowed_browser_closes_the_new_context() -> None:
    closed: list[str] = []
    browser = _FakeBrowser(closed, fail_new_page=PlaywrightError("Target page, context or browser has been closed"))

    with pytest.raises(ProvisionError, match="browser is not usable"):
        await acquire_page(browser)  # type: ignore[arg-type]

    assert closed == ["context"]


@pytest.mark.asyncio
async def test_cancelled_launch_stops_the_playwright_driver(monkeypatch: pytest.MonkeyPatch) -> None:
    stopped: list[str] = []

    async def cancelled_launch(**kwargs):
        raise asyncio.CancelledError()

    pw = SimpleNamespace(
        chromium=SimpleNamespace(launch=cancelled_launch),
        stop=lambda: _record(stopped, "playwright"),
    )

    async def start():
        return pw

    monkeypatch.setattr(browser_mod, "async_playwright", lambda: SimpleNamespace(start=start))

    with pytest.raises(asyncio.CancelledError):
        await acquire_page(None)

    assert stopped == ["playwright"]


def test_attach_browser_log_forwards_console_messages(fake_page) -> None:
    logs: list[BrowserLog] = []
    detach = attach_browser_log(fake_page, logs.append)

    message = SimpleNamespace(text="hello", type="log", location={"url": "http://x/bundle.js", "lineNumber": 3})
    fake_page.emit("console", message)
    detach()
    fake_page.emit("console", message)

    assert logs == [BrowserLog(text="hello", type="log", stack_trace=[{"url": "http://x/bundle.js", "lineNumber": 3}])]


def test_attach_browser_log_survives_a_broken_observer(fake_page) -> None:
    def broken(log: BrowserLog) -> None:
        raise RuntimeError("observer bug")

    attach_browser_log(fake_page, broken)
    fake_page.emit("console", SimpleNamespace(text="x", type="error", location=None))


async def _record(log: list[str], name: str) -> None:
    log.append(name)

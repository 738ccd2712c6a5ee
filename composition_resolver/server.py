"""Content server: serves a prebuilt bundle and proxies assets through the download map."""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from composition_resolver.assets import DownloadMap
from composition_resolver.errors import ServerStartError
from composition_resolver.log import LogConfig, verbose_advanced
from composition_resolver.ownership import Borrowed, Owned, Ownership, release
from composition_resolver.sourcemaps import SourceMapContext

logger = structlog.get_logger(__name__)

DEFAULT_HOST = "127.0.0.1"
_START_TIMEOUT_SECONDS = 10.0
_STOP_TIMEOUT_SECONDS = 5.0


def is_serve_url(value: str) -> bool:
    return value.strip().lower().startswith(("http://", "https://"))


@dataclass(frozen=True)
class ServeOptions:
    # Either an already-served http(s) URL or a directory holding a built bundle.
    webpack_config_or_serve_url: str
    download_map: DownloadMap
    port: int | None = None
    concurrency: int = 1
    log: LogConfig = field(default_factory=LogConfig)


def create_app(bundle_dir: Path | None, download_map: DownloadMap, concurrency: int) -> FastAPI:
    app = FastAPI(title="Composition bundle server", docs_url=None, redoc_url=None, openapi_url=None)
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))
    client = httpx.AsyncClient()

    @app.on_event("shutdown")
    async def _close_client() -> None:
        await client.aclose()

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/proxy")
    async def proxy(src: str = Query(...)) -> FileResponse:
        if not is_serve_url(src):
            raise HTTPException(status_code=400, detail="src must be an http(s) URL")
        async with semaphore:
            try:
                path = await download_map.download(src, client)
            except httpx.HTTPError as exc:
                logger.warning("Asset download failed", src=src, error=f"{type(exc).__name__}: {exc}")
                raise HTTPException(status_code=502, detail=f"could not download {src}") from exc
        return FileResponse(path)

    if bundle_dir is not None:
        app.mount("/", StaticFiles(directory=str(bundle_dir), html=True), name="bundle")

    return app


class ContentServer:
    """A uvicorn server running on the current event loop."""

    def __init__(self, app: FastAPI, sock: socket.socket, serve_url: str | None, source_map: SourceMapContext):
        self.app = app
        self._sock = sock
        self.port: int = int(sock.getsockname()[1])
        self.serve_url = serve_url or f"http://{DEFAULT_HOST}:{self.port}"
        self.source_map = source_map
        self._server = uvicorn.Server(
            uvicorn.Config(app, log_level="warning", access_log=False, lifespan="on")
        )
        self._task: asyncio.Task[None] | None = None

    @property
    def offthread_port(self) -> int:
        return self.port

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve(sockets=[self._sock]))
        try:
            await self._wait_started()
        except BaseException:
            await self.stop()
            raise

    async def _wait_started(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _START_TIMEOUT_SECONDS
        while not self._server.started:
            if self._task.done():
                exc = None if self._task.cancelled() else self._task.exception()
                raise ServerStartError(f"content server exited during startup: {exc!r}")
            if loop.time() > deadline:
                raise ServerStartError("content server did not start in time")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        if self._task is None:
            return
        task = self._task
        self._server.should_exit = True
        try:
            # Nothing to drain before startup completes.
            if not self._server.started:
                task.cancel()
            done, _ = await asyncio.wait([task], timeout=_STOP_TIMEOUT_SECONDS)
            if not done:
                self._server.force_exit = True
                task.cancel()
                await asyncio.wait([task])
        finally:
            self._sock.close()
            self._task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Content server exited with an error", error=repr(task.exception()))


def _bind(port: int | None) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((DEFAULT_HOST, int(port or 0)))
    except OSError as exc:
        sock.close()
        raise ServerStartError(f"could not bind content server to port {port}: {exc}") from exc
    sock.setblocking(False)
    return sock


async def start_server(options: ServeOptions) -> ContentServer:
    target = options.webpack_config_or_serve_url
    if is_serve_url(target):
        bundle_dir = None
        serve_url = target
        source_map = SourceMapContext()
    else:
        bundle_dir = Path(target).expanduser().resolve()
        if not (bundle_dir / "index.html").is_file():
            raise ServerStartError(f"no bundle found at {bundle_dir} (missing index.html)")
        serve_url = None
        source_map = SourceMapContext.from_bundle_dir(bundle_dir)

    sock = _bind(options.port)
    server = ContentServer(
        create_app(bundle_dir, options.download_map, options.concurrency),
        sock,
        serve_url,
        source_map,
    )
    await server.start()
    verbose_advanced(
        options.log.with_tag("server"),
        f"Serving {bundle_dir or serve_url} on port {server.port}",
    )
    return server


@dataclass(frozen=True)
class ServerHandle:
    held: Ownership[ContentServer]
    release: Callable[[bool], Awaitable[None]]

    @property
    def server(self) -> ContentServer:
        return self.held.resource

    @property
    def serve_url(self) -> str:
        return self.server.serve_url

    @property
    def offthread_port(self) -> int:
        return self.server.offthread_port

    @property
    def source_map(self) -> SourceMapContext:
        return self.server.source_map


async def make_or_reuse_server(existing: ContentServer | None, options: ServeOptions) -> ServerHandle:
    """Start a server for ``options`` unless the caller passed one to reuse.

    ``release(force=True)`` stops a server started here; a reused server is
    left running whatever ``force`` says.
    """
    held: Ownership[ContentServer]
    if existing is not None:
        held = Borrowed(existing)
    else:
        server = await start_server(options)
        held = Owned(server, server.stop)

    async def _release(force: bool) -> None:
        if force:
            await release(held)

    return ServerHandle(held=held, release=_release)

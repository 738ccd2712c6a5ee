"""Scoped on-disk cache for assets the page asks the proxy to fetch."""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import httpx
import structlog

logger = structlog.get_logger(__name__)

_DOWNLOAD_TIMEOUT_SECONDS = 60.0


@dataclass
class DownloadMap:
    root: Path
    downloaded: dict[str, Path] = field(default_factory=dict)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    @property
    def downloads_dir(self) -> Path:
        return self.root / "assets"

    def _lock_for(self, url: str) -> asyncio.Lock:
        lock = self._locks.get(url)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[url] = lock
        return lock

    def path_for(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
        suffix = Path(urlsplit(url).path).suffix[:16]
        return self.downloads_dir / f"{digest}{suffix}"

    async def download(self, url: str, client: httpx.AsyncClient) -> Path:
        """Fetch ``url`` once for the lifetime of this map and return the local path."""
        async with self._lock_for(url):
            cached = self.downloaded.get(url)
            if cached is not None and cached.exists():
                return cached

            target = self.path_for(url)
            target.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Downloading asset", url=url, target=str(target))

            async with client.stream("GET", url, follow_redirects=True, timeout=_DOWNLOAD_TIMEOUT_SECONDS) as resp:
                resp.raise_for_status()
                tmp = target.with_name(target.name + ".part")
                with open(tmp, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
                tmp.replace(target)

            self.downloaded[url] = target
            return target


def make_download_map() -> DownloadMap:
    root = Path(tempfile.mkdtemp(prefix="composition-resolver-"))
    logger.debug("Created download map", root=str(root))
    return DownloadMap(root=root)


def clean_download_map(download_map: DownloadMap) -> None:
    shutil.rmtree(download_map.root, ignore_errors=True)
    download_map.downloaded.clear()
    logger.debug("Removed download map", root=str(download_map.root))

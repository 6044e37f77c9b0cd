"""Fetching of source artifacts to the local filesystem.

Artifacts served by a source-controller are `.tar.gz` tarballs. They are
downloaded once per revision and extracted into a cache directory:

```
<storage_dir>/<namespace>-<name>/<hash of url and revision>/
```

Once a revision is extracted, older revisions of the same source are evicted.
Local directories, as used by the command line tool, are used in place.
"""

import asyncio
from collections import Counter
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import hashlib
import logging
import os
from pathlib import Path
import shutil
import tarfile
import tempfile
from urllib.parse import urlparse, urlunparse

import aiofiles
from aiofiles.ospath import isdir
import httpx
from slugify import slugify

from flux_kcl.exceptions import ArtifactFetchError, InputException

from .artifact import SourceArtifact

__all__ = ["ArtifactFetcher", "FetcherConfig", "build_url"]

_LOGGER = logging.getLogger(__name__)

CACHE_DIR_NAME = "flux-kcl-cache"
ARCHIVE_SUFFIX = ".tar.gz"
_CHUNK_SIZE = 64 * 1024


@dataclass
class FetcherConfig:
    """Configuration for the ArtifactFetcher."""

    storage_dir: Path | None = None
    """Cache directory for extracted artifacts, defaults to a temp directory."""

    source_host: str | None = None
    """Replaces the scheme and host of remote artifact URLs."""

    timeout: float = 60.0
    """Timeout in seconds of an artifact download."""

    keep_revisions: int = 2
    """Extracted revisions kept per source, including the newest."""


def build_url(url: str, source_host: str | None) -> str:
    """Return the artifact URL, with its scheme and host replaced if requested.

    This lets the controller reach a source-controller through a port-forward
    instead of its in-cluster service address.
    """
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ArtifactFetchError(f"Invalid artifact URL '{url}'")
    if not source_host:
        return url
    host = urlparse(source_host)
    if not host.scheme or not host.netloc:
        raise ArtifactFetchError(f"Invalid source host '{source_host}'")
    return urlunparse(parsed._replace(scheme=host.scheme, netloc=host.netloc))


def _revision_dirs(source_dir: Path) -> list[Path]:
    """Return the extracted revisions of a source, newest first."""
    revisions: list[tuple[float, Path]] = []
    for path in source_dir.iterdir():
        if path.name.startswith(".") or not path.is_dir():
            continue
        try:
            revisions.append((path.stat().st_mtime, path))
        except FileNotFoundError:
            continue
    return [path for _, path in sorted(revisions, reverse=True)]

def _extract(archive: Path, dest: Path) -> None:
    """Extract a tarball into `dest`, replacing it atomically."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=dest.parent, prefix=".extract-"))
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            tar.extractall(staging, filter="data")
        if dest.exists():
            shutil.rmtree(dest)
        os.replace(staging, dest)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise


class ArtifactFetcher:
    """Resolves source artifacts to local directories."""

    def __init__(self, config: FetcherConfig | None = None) -> None:
        """Initialize ArtifactFetcher."""
        self._config = config or FetcherConfig()
        self._cache_dir = self._config.storage_dir or (
            Path(tempfile.gettempdir()) / CACHE_DIR_NAME
        )
        self._locks: dict[Path, asyncio.Lock] = {}
        self._lock_users: Counter[Path] = Counter()

    def cache_path(self, artifact: SourceArtifact) -> Path:
        """Return the directory an artifact is extracted to."""
        cache_key = hashlib.sha256()
        cache_key.update(artifact.url.encode("utf-8"))
        cache_key.update(artifact.revision.encode("utf-8"))
        slug = slugify(
            f"{artifact.namespace}-{artifact.name}", max_length=50, lowercase=True
        )
        return self._cache_dir / slug / cache_key.hexdigest()[:16]

    @property
    def locked_paths(self) -> set[Path]:
        """Return the cache directories currently being fetched or extracted."""
        return set(self._locks)

    @asynccontextmanager
    async def _locked(self, dest: Path) -> AsyncGenerator[None, None]:
        """Serialize work on a cache directory, dropping the lock when unused."""
        lock = self._locks.setdefault(dest, asyncio.Lock())
        self._lock_users[dest] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[dest] -= 1
            if not self._lock_users[dest]:
                del self._lock_users[dest]
                del self._locks[dest]

    async def fetch(self, artifact: SourceArtifact) -> Path:
        """Return a local directory containing the artifact content.

        Raises ArtifactFetchError if the artifact cannot be downloaded or
        extracted.
        """
        parsed = urlparse(artifact.url)
        if parsed.scheme in ("", "file"):
            return await self._fetch_local(Path(parsed.path), artifact)
        if parsed.scheme not in ("http", "https"):
            raise ArtifactFetchError(
                f"Unsupported artifact URL scheme '{parsed.scheme}' for "
                f"{artifact.source_id}"
            )
        dest = self.cache_path(artifact)
        async with self._locked(dest):
            if await isdir(dest):
                _LOGGER.debug("Artifact %s cached at %s", artifact.revision, dest)
                return dest
            url = build_url(artifact.url, self._config.source_host)
            archive = dest.parent / f"{dest.name}{ARCHIVE_SUFFIX}"
            await self._download(url, archive)
            try:
                await self._unpack(archive, dest, url)
            finally:
                archive.unlink(missing_ok=True)
        _LOGGER.info("Fetched artifact %s of %s", artifact.revision, artifact.source_id)
        return dest

    async def module_path(self, artifact: SourceArtifact, path: str) -> Path:
        """Fetch the artifact and return the directory of the module at `path`.

        Raises InputException if `path` points outside of the artifact.
        """
        root = (await self.fetch(artifact)).resolve()
        module_path = (root / path).resolve()
        if not module_path.is_relative_to(root):
            raise InputException(
                f"Path '{path}' escapes the artifact of {artifact.source_id}"
            )
        return module_path

    async def _fetch_local(self, path: Path, artifact: SourceArtifact) -> Path:
        if await isdir(path):
            return path
        if path.name.endswith(ARCHIVE_SUFFIX) and path.is_file():
            dest = self.cache_path(artifact)
            async with self._locked(dest):
                if not await isdir(dest):
                    await self._unpack(path, dest, str(path))
            return dest
        raise ArtifactFetchError(
            f"Artifact path '{path}' of {artifact.source_id} does not exist"
        )

    async def _unpack(self, archive: Path, dest: Path, location: str) -> None:
        try:
            await asyncio.to_thread(_extract, archive, dest)
        except (tarfile.TarError, OSError) as err:
            raise ArtifactFetchError(
                f"Unable to extract artifact {location}: {err}"
            ) from err
        await self._evict(dest)

    async def _evict(self, dest: Path) -> None:
        """Remove older revisions of the source extracted next to `dest`.

        The newest `keep_revisions` directories are kept, as are directories
        that are being fetched.
        """
        revisions = await asyncio.to_thread(_revision_dirs, dest.parent)
        keep = max(self._config.keep_revisions, 1)
        in_use = self.locked_paths | {dest}
        others = [path for path in revisions if path not in in_use]
        stale = others[keep - 1 :]
        for path in stale:
            _LOGGER.debug("Evicting cached artifact %s", path)
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as err:
                _LOGGER.warning("Unable to evict cached artifact %s: %s", path, err)

    async def _download(self, url: str, archive: Path) -> None:
        _LOGGER.info("Downloading artifact from %s", url)
        archive.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async with aiofiles.open(archive, mode="wb") as out:
                        async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                            await out.write(chunk)
        except httpx.HTTPError as err:
            archive.unlink(missing_ok=True)
            raise ArtifactFetchError(
                f"Unable to download artifact {url}: {err}"
            ) from err

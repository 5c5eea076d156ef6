"""Artifact acquisition: redirect resolution, cached downloads, signature gate.

Downloads are written to ``<name>.partial`` and renamed once complete, so an
interrupted transfer is never mistaken for a finished one. A finished file is
reused on later runs without touching the network. After a successful
signature check a ``<name>.verified`` marker is written next to the file so the
artifact is verified exactly once.

Example:
    >>> fetcher = ArtifactFetcher(Path("C:/scratch/downloads"))
    >>> artifact = fetcher.fetch_verified(url, "Deployment kit")
    >>> artifact.local_path
    WindowsPath('C:/scratch/downloads/DeploymentKit.msi')
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Callable, ContextManager, Optional, Protocol
from urllib.parse import unquote, urljoin, urlparse

import aiohttp

from appliance_media.domain import Artifact
from appliance_media.exceptions import (
    AcquisitionError,
    DownloadStatusError,
    RedirectLimitError,
    SignatureError,
)
from appliance_media.logging import LoggerFactory, ThrottledLogger

from .signature import AuthenticodeVerifier, SignatureVerifier

log = LoggerFactory.for_fetch()

MAX_REDIRECTS = 10
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
PARTIAL_SUFFIX = ".partial"
VERIFIED_SUFFIX = ".verified"
CHUNK_SIZE = 1024 * 1024

# An expired aiohttp.ClientTimeout surfaces as a bare asyncio.TimeoutError.
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

ProgressCallback = Callable[[int, Optional[int]], None]
ProgressFactory = Callable[[str], ContextManager[Optional[ProgressCallback]]]


class Transport(Protocol):
    async def head(self, url: str) -> tuple[int, Optional[str]]:
        """Return the status and Location header of ``url`` without following redirects."""

    async def download(
        self, url: str, destination: Path, progress: Optional[ProgressCallback] = None
    ) -> None:
        """Stream ``url`` into ``destination``."""


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return str(error) or type(error).__name__


class AiohttpTransport:
    """HTTP transport backed by aiohttp."""

    def __init__(self, timeout_seconds: int = 3600):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds, sock_connect=30)

    async def head(self, url: str) -> tuple[int, Optional[str]]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.head(url, allow_redirects=False) as resp:
                    if resp.status != 405:
                        return resp.status, resp.headers.get("Location")
                # Some CDNs refuse HEAD; a GET without reading the body is equivalent.
                async with session.get(url, allow_redirects=False) as resp:
                    return resp.status, resp.headers.get("Location")
            except NETWORK_ERRORS as e:
                raise AcquisitionError(f"Network error resolving {url}: {_describe(e)}") from e

    async def download(
        self, url: str, destination: Path, progress: Optional[ProgressCallback] = None
    ) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if not 200 <= resp.status < 300:
                        raise DownloadStatusError(url, resp.status)
                    total = resp.content_length
                    received = 0
                    with open(destination, "wb") as handle:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            handle.write(chunk)
                            received += len(chunk)
                            if progress:
                                progress(received, total)
            except NETWORK_ERRORS as e:
                raise AcquisitionError(f"Network error downloading {url}: {_describe(e)}") from e


def _no_progress(_friendly_name: str):
    return contextlib.nullcontext(None)


class ArtifactFetcher:
    """Resolves, downloads, caches and verifies artifacts under ``download_dir``."""

    def __init__(
        self,
        download_dir: Path,
        transport: Optional[Transport] = None,
        verifier: Optional[SignatureVerifier] = None,
        progress_factory: Optional[ProgressFactory] = None,
    ):
        self.download_dir = Path(download_dir)
        self.transport = transport or AiohttpTransport()
        self.verifier = verifier or AuthenticodeVerifier()
        self.progress_factory = progress_factory or _no_progress
        self._progress_log = ThrottledLogger(log, interval_seconds=10.0)

    def resolve(self, url: str) -> str:
        """Follow redirects from ``url`` and return the final URL.

        Raises:
            RedirectLimitError: More than MAX_REDIRECTS redirects
            DownloadStatusError: Terminal response is not a success status
        """
        current = url
        for hop in range(MAX_REDIRECTS + 1):
            status, location = asyncio.run(self.transport.head(current))
            if status in REDIRECT_STATUSES and location:
                if hop == MAX_REDIRECTS:
                    break
                log.debug(f"Redirect {hop + 1}: {current} -> {location}")
                current = urljoin(current, location)
                continue
            if 200 <= status < 300:
                if current != url:
                    log.debug(f"Resolved {url} to {current}")
                return current
            raise DownloadStatusError(url, status)
        raise RedirectLimitError(url, MAX_REDIRECTS)

    def destination_for(self, resolved_url: str, dest_name: Optional[str] = None) -> Path:
        name = dest_name or Path(unquote(urlparse(resolved_url).path)).name
        if not name:
            raise AcquisitionError(f"Cannot derive a file name from {resolved_url}")
        return self.download_dir / name

    def fetch(
        self, url: str, friendly_name: str, dest_name: Optional[str] = None
    ) -> Artifact:
        """Download ``url`` unless a finished copy already exists."""
        resolved = self.resolve(url)
        destination = self.destination_for(resolved, dest_name)
        if destination.is_file():
            log.info(f"Using previously downloaded {friendly_name}: {destination.name}")
            return Artifact(
                url=url,
                resolved_url=resolved,
                local_path=destination,
                verified=self._marker(destination).exists(),
            )

        self.download_dir.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        if partial.exists():
            log.debug(f"Discarding interrupted download {partial.name}")
            partial.unlink()

        log.info(f"Downloading {friendly_name} from {resolved}")
        with self.progress_factory(friendly_name) as ui_progress:

            def progress(received: int, total: Optional[int]) -> None:
                if ui_progress:
                    ui_progress(received, total)
                self._progress_log.debug(
                    destination.name,
                    f"{friendly_name}: {received} of {total or '?'} bytes",
                )

            try:
                asyncio.run(self.transport.download(resolved, partial, progress))
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
        partial.replace(destination)
        log.info(f"Downloaded {friendly_name} to {destination}")
        return Artifact(url=url, resolved_url=resolved, local_path=destination)

    def verify_signature(self, path: Path) -> None:
        """Delete ``path`` and raise SignatureError unless its signature is valid."""
        path = Path(path)
        valid, status = self.verifier.check(path)
        if not valid:
            log.error(f"Invalid signature on {path.name}: {status}")
            path.unlink(missing_ok=True)
            self._marker(path).unlink(missing_ok=True)
            raise SignatureError(path, status)
        log.debug(f"Signature of {path.name} is valid")

    def fetch_verified(
        self, url: str, friendly_name: str, dest_name: Optional[str] = None
    ) -> Artifact:
        """Fetch ``url`` and verify it, unless it was verified on an earlier run."""
        artifact = self.fetch(url, friendly_name, dest_name)
        if artifact.verified:
            return artifact
        self.verify_signature(artifact.local_path)
        self._marker(artifact.local_path).touch()
        return Artifact(
            url=artifact.url,
            resolved_url=artifact.resolved_url,
            local_path=artifact.local_path,
            verified=True,
        )

    @staticmethod
    def _marker(path: Path) -> Path:
        return path.with_name(path.name + VERIFIED_SUFFIX)

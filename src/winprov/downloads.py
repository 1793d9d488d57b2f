"""HTTPS downloads of installer artifacts."""
from __future__ import annotations

import logging
import os
import shutil
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from http.client import HTTPResponse
from pathlib import Path

from . import __version__
from .errors import DownloadError, FilesystemError

LOGGER = logging.getLogger(__name__)


def _ssl_context() -> ssl.SSLContext:
    cafile = os.environ.get("SSL_CERT_FILE")
    if cafile and Path(cafile).is_file():
        context = ssl.create_default_context(cafile=cafile)
    else:
        context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


@dataclass(slots=True)
class Downloader:
    """Fetch artifacts from vendor URLs over TLS."""

    timeout: float = 120.0
    chunk_size: int = 1 << 16

    def fetch(self, url: str, destination: Path) -> Path:
        """Download *url* into *destination* and return the destination path.

        The payload is streamed into a ``.part`` sibling first and renamed on
        success, so an interrupted download never leaves a truncated artifact
        at *destination*.
        """
        if not url.lower().startswith("https://"):
            raise DownloadError(f"Refusing to download over an insecure channel: {url}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Cannot create download directory {destination.parent}: {exc}"
            ) from exc

        partial = destination.with_name(f"{destination.name}.part")
        request = urllib.request.Request(url, headers={"User-Agent": f"winprov/{__version__}"})
        LOGGER.debug("Downloading %s to %s", url, destination)
        try:
            handle = partial.open("wb")
        except OSError as exc:
            raise FilesystemError(f"Cannot write download file {partial}: {exc}") from exc
        try:
            with handle, self._open(request) as response:
                shutil.copyfileobj(response, handle, self.chunk_size)
        except urllib.error.HTTPError as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"GET {url} failed: HTTP {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"GET {url} failed: {exc.reason}") from exc
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"GET {url} failed: {exc}") from exc
        partial.replace(destination)
        return destination

    def _open(self, request: urllib.request.Request) -> HTTPResponse:
        """Open *request* (isolated for testing)."""
        return urllib.request.urlopen(  # noqa: S310 - scheme checked in fetch()
            request,
            timeout=self.timeout,
            context=_ssl_context(),
        )


__all__ = ["Downloader"]

from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

import httpx
import yaml

from .config import DEFAULT_TIMEOUT_S
from .errors import BundleDownloadError, BundleHTTPError
from .logging import get_logger

logger = get_logger("client")


class BundleClient:
    """
    Fetches bundle archives and manifests over HTTP(S), or reads them from local paths.
    Acquisition only: nothing here knows how bundles are installed.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._default_headers = dict(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "BundleClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str, *, headers: dict[str, str] | None = None) -> httpx.Response:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        try:
            resp = self._http.get(url, headers=req_headers)
        except httpx.HTTPError as e:
            raise BundleDownloadError(f"Request failed: {e}") from e
        if resp.status_code >= 400:
            raise BundleHTTPError(resp.status_code, resp.text)
        return resp

    def download(self, location: str) -> bytes:
        """Bundle archive bytes from an http(s) URL, a ``file://`` URL or a plain path."""
        parts = urlsplit(location)
        if parts.scheme in ("http", "https"):
            logger.info("Downloading %s", location)
            return self.get(location, headers={"Accept": "application/zip, application/octet-stream"}).content
        path = Path(unquote(parts.path) if parts.scheme == "file" else location).expanduser()
        try:
            return path.read_bytes()
        except OSError as e:
            raise BundleDownloadError(f"Could not read bundle archive {path}: {e}") from e

    def fetch_manifest(self, url: str) -> dict[str, Any]:
        resp = self.get(url)
        try:
            raw = yaml.safe_load(resp.text)
        except yaml.YAMLError as e:
            raise BundleDownloadError(f"Manifest at {url} is not valid YAML: {e}") from e
        if not isinstance(raw, dict):
            raise BundleDownloadError(f"Manifest at {url} is not a mapping")
        return raw

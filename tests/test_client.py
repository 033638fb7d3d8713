import tempfile
import unittest
from pathlib import Path

import httpx

from promptregistry.client import BundleClient
from promptregistry.errors import BundleDownloadError, BundleHTTPError


def _client(handler) -> BundleClient:
    return BundleClient(transport=httpx.MockTransport(handler), default_headers={"User-Agent": "prompt-registry-test"})


class TestDownload(unittest.TestCase):
    def test_http_download_follows_redirects(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, request.headers.get("user-agent")))
            if request.url.path == "/releases/latest/acme.zip":
                return httpx.Response(302, headers={"location": "https://cdn.example.com/acme-1.0.0.zip"})
            return httpx.Response(200, content=b"PK-bytes")

        with _client(handler) as client:
            data = client.download("https://example.com/releases/latest/acme.zip")

        self.assertEqual(data, b"PK-bytes")
        self.assertEqual([s[0] for s in seen], ["/releases/latest/acme.zip", "/acme-1.0.0.zip"])
        self.assertEqual(seen[0][1], "prompt-registry-test")

    def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        with _client(handler) as client, self.assertRaises(BundleHTTPError) as ctx:
            client.download("https://example.com/missing.zip")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_transport_error_is_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client, self.assertRaises(BundleDownloadError):
            client.download("https://example.com/acme.zip")

    def test_local_paths(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            archive = Path(td) / "acme.zip"
            archive.write_bytes(b"local-bytes")
            with _client(lambda request: httpx.Response(500)) as client:
                self.assertEqual(client.download(str(archive)), b"local-bytes")
                self.assertEqual(client.download(archive.as_uri()), b"local-bytes")
                with self.assertRaises(BundleDownloadError):
                    client.download(str(Path(td) / "missing.zip"))


class TestFetchManifest(unittest.TestCase):
    def test_parses_yaml(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="id: acme\nversion: 1.0.0\nname: Acme\n")

        with _client(handler) as client:
            raw = client.fetch_manifest("https://example.com/deployment-manifest.yml")
        self.assertEqual(raw, {"id": "acme", "version": "1.0.0", "name": "Acme"})

    def test_rejects_non_mapping(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="- just\n- a list\n")

        with _client(handler) as client, self.assertRaises(BundleDownloadError):
            client.fetch_manifest("https://example.com/deployment-manifest.yml")


if __name__ == "__main__":
    unittest.main()

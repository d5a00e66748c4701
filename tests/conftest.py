import base64

import httpx
import pytest

from app.services.fetcher import ResourceFetcher

PNG_BASE64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
PNG_BYTES = base64.b64decode(PNG_BASE64)


class FakeWeb:
    """Serve canned responses to a ResourceFetcher and record requests."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, url, content=b"", status=200, headers=None):
        self.routes[url] = (status, content, headers or {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url not in self.routes:
            raise httpx.ConnectError(f"Cannot connect to {url}", request=request)
        status, content, headers = self.routes[url]
        return httpx.Response(status, content=content, headers=headers)

    def fetcher(self) -> ResourceFetcher:
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return ResourceFetcher(client=client, max_workers=4)


@pytest.fixture
def web():
    return FakeWeb()


@pytest.fixture
def fetcher(web):
    fetcher = web.fetcher()
    yield fetcher
    fetcher.client.close()

"""Fetching of remote resources (images, covers) over HTTP."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Union

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a resource could not be retrieved at all."""
    pass


@dataclass
class FetchResponse:
    """What came back from a completed request."""

    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> Optional[str]:
        value = self.headers.get('content-type')
        if not value:
            return None
        return value.split(';', 1)[0].strip().lower() or None


class ResourceFetcher:
    """Thin wrapper around ``httpx.Client`` with a concurrent batch helper."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        max_workers: Optional[int] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=settings.fetch_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": settings.fetch_user_agent},
        )
        self.max_workers = max_workers or settings.fetch_max_workers

    def fetch(self, url: str) -> FetchResponse:
        """Fetch ``url``.

        Non-success statuses are returned, not raised. Network level problems
        (unreachable host, unsupported scheme, timeout) raise ``FetchError``.
        """
        try:
            response = self.client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(f"Failed to fetch {url}: {str(e)}") from e

        return FetchResponse(
            url=url,
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            content=response.content,
        )

    def fetch_many(self, urls: Iterable[str]) -> Dict[str, Union[FetchResponse, FetchError]]:
        """Fetch every URL concurrently and wait for all of them."""
        unique = list(dict.fromkeys(urls))
        if not unique:
            return {}

        def _fetch(url: str) -> Union[FetchResponse, FetchError]:
            try:
                return self.fetch(url)
            except FetchError as e:
                return e

        workers = min(self.max_workers, len(unique))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(_fetch, unique))
        return dict(zip(unique, results))

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

"""Streaming HTTP artifact fetcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from gen_batch.orchestrator.errors import ArtifactRedirect, DownloadError, LocatorExpired

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; GenBatch/1.0)"
EXPIRED_STATUS_CODES = frozenset({401, 403, 410})
_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class FetchResult:
    """Result of a completed artifact fetch."""

    url: str
    status_code: int
    bytes_written: int
    content_type: str


class ArtifactFetcher:
    """HTTP client wrapper that streams one locator to a local file.

    Redirects are not followed automatically; they surface as
    ``ArtifactRedirect`` so the caller decides how many hops to allow.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
            follow_redirects=False,
        )

    def fetch_to(self, url: str, path: Path) -> FetchResult:
        """Stream ``url`` into ``path``, raising ``DownloadError`` subclasses on failure."""

        try:
            with self._client.stream("GET", url) as response:
                if response.is_redirect:
                    location = response.headers.get("location")
                    if not location:
                        raise DownloadError(f"HTTP {response.status_code} without location")
                    raise ArtifactRedirect(str(response.url.join(location)))
                if response.status_code in EXPIRED_STATUS_CODES:
                    raise LocatorExpired(f"HTTP {response.status_code}: locator rejected")
                if not response.is_success:
                    raise DownloadError(f"HTTP {response.status_code}")

                written = 0
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("wb") as handle:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        handle.write(chunk)
                        written += len(chunk)
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    bytes_written=written,
                    content_type=response.headers.get("content-type", ""),
                )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout fetching %s", url)
            raise DownloadError("timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            raise DownloadError(str(exc)) from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ArtifactFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

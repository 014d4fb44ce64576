"""HTTP retrieval with timeout, retry/backoff and gzip-aware decoding."""

import asyncio
import gzip
import time
from typing import Callable, Dict, Optional

import requests  # type: ignore[import-untyped]

from ingest.config import FETCH_BACKOFF_MS, FETCH_RETRIES, HEADERS, REQUEST_TIMEOUT
from ingest.errors import FetchError, TransientFetchError
from ingest.logging_config import get_logger
from ingest.retry import RetryPolicy, exponential, retry_on
from ingest.url_validation import URLValidationError, validate_url

__all__ = [
    "Fetcher",
    "create_session",
    "is_gzip_payload",
]

logger = get_logger("fetcher")

GZIP_MAGIC = b"\x1f\x8b"


def create_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    """Create a requests Session with connection pooling and proper headers."""
    session = requests.Session()
    session.headers.update(headers or HEADERS)
    session.headers.setdefault("Accept-Encoding", "gzip, deflate")
    return session


def is_gzip_payload(url: str, content_type: str, body: bytes) -> bool:
    """True for ``.gz`` URLs, gzip content types, or bodies with the gzip magic."""
    path = url.split("?", 1)[0].lower()
    return (
        path.endswith(".gz")
        or "gzip" in (content_type or "").lower()
        or body[:2] == GZIP_MAGIC
    )


class Fetcher:
    """Blocking HTTP client with an async wrapper.

    Rate limiting is left to callers: async callers gate ``afetch_text`` calls
    with a semaphore, which bounds the number of worker threads in flight.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or create_session(headers)
        self.timeout = timeout
        self.sleep = sleep

    def _policy(self, url: str, retries: int, backoff_ms: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=retries + 1,
            backoff=exponential(backoff_ms / 1000.0),
            retryable=retry_on(TransientFetchError),
            sleep=self.sleep,
            name=f"GET {url}",
        )

    def _get(self, url: str) -> requests.Response:
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientFetchError(url, f"timeout: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientFetchError(url, f"connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(url, f"request error: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise TransientFetchError(url, f"HTTP {resp.status_code}", resp.status_code)
        return resp

    def _fetch(self, url: str, retries: int, backoff_ms: int) -> requests.Response:
        try:
            url = validate_url(url)
        except URLValidationError as e:
            raise FetchError(url, f"invalid URL: {e}") from e

        try:
            return self._policy(url, retries, backoff_ms).call(self._get, url)
        except TransientFetchError as e:
            logger.warning(f"Giving up on {url} after {retries + 1} attempts: {e}")
            raise FetchError(url, str(e)) from e

    def fetch_text(
        self,
        url: str,
        retries: int = FETCH_RETRIES,
        backoff_ms: int = FETCH_BACKOFF_MS,
    ) -> str:
        """GET ``url`` and return its text, decompressing gzip payloads.

        Args:
            url: Absolute http(s) URL
            retries: Extra attempts after the first one
            backoff_ms: Base delay; attempt ``n`` waits ``backoff_ms * 2^n``

        Returns:
            Decoded response body

        Raises:
            FetchError: When every attempt failed; carries the URL
        """
        resp = self._fetch(url, retries, backoff_ms)
        body = resp.content or b""
        content_type = resp.headers.get("Content-Type", "")
        if is_gzip_payload(url, content_type, body):
            try:
                return gzip.decompress(body).decode("utf-8", errors="replace")
            except (OSError, EOFError) as e:
                # requests already inflated a Content-Encoding: gzip body
                if body[:2] == GZIP_MAGIC:
                    raise FetchError(url, f"corrupt gzip payload: {e}") from e
        return str(resp.text)

    def fetch_bytes(self, url: str, retries: int = 0, backoff_ms: int = FETCH_BACKOFF_MS) -> bytes:
        """GET ``url`` and return the raw body (image payloads)."""
        resp = self._fetch(url, retries, backoff_ms)
        return bytes(resp.content or b"")

    async def afetch_text(
        self,
        url: str,
        retries: int = FETCH_RETRIES,
        backoff_ms: int = FETCH_BACKOFF_MS,
    ) -> str:
        return await asyncio.to_thread(self.fetch_text, url, retries, backoff_ms)

    def close(self) -> None:
        self.session.close()

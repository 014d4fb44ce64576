"""Tests for HTTP retrieval and the shared retry policy."""

import asyncio
import gzip

import pytest

from ingest.errors import FetchError
from ingest.retry import RetryPolicy, constant, exponential, retry_on

URL = "https://supplier.example/catalog/"


class TestFetcher:
    """Tests for Fetcher retries and decoding."""

    def test_retries_with_exponential_backoff(self, fetcher, fake_session, sleeps):
        """Two failures then success: sleeps of 400ms and 800ms."""
        fake_session.add_sequence(URL, [(500, b""), (503, b""), (200, "<html>ok</html>".encode())])
        assert fetcher.fetch_text(URL) == "<html>ok</html>"
        assert sleeps == [0.4, 0.8]
        assert fake_session.calls == [URL, URL, URL]

    def test_gives_up_with_fetch_error(self, fetcher, fake_session, sleeps):
        """After the last retry a FetchError carrying the URL is raised."""
        fake_session.add(URL, "", status=502)
        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch_text(URL, retries=2)
        assert exc_info.value.url == URL
        assert len(fake_session.calls) == 3
        assert sleeps == [0.4, 0.8]

    def test_invalid_url_not_requested(self, fetcher, fake_session):
        """Non-http URLs fail without touching the network."""
        with pytest.raises(FetchError):
            fetcher.fetch_text("javascript:alert(1)")
        assert fake_session.calls == []

    def test_gzip_by_extension(self, fetcher, fake_session):
        """``.gz`` payloads are decompressed."""
        url = "https://supplier.example/sitemap.xml.gz"
        fake_session.add(url, gzip.compress("<urlset/>".encode()), content_type="application/octet-stream")
        assert fetcher.fetch_text(url) == "<urlset/>"

    def test_already_inflated_gzip(self, fetcher, fake_session):
        """A gzip content type whose body is already plain text is returned as is."""
        url = "https://supplier.example/sitemap.xml"
        fake_session.add(url, "<urlset/>", content_type="application/x-gzip")
        assert fetcher.fetch_text(url) == "<urlset/>"

    def test_fetch_bytes_single_attempt(self, fetcher, fake_session, sleeps):
        """Image bytes are fetched without retries by default."""
        url = "https://supplier.example/upload/a.jpg"
        with pytest.raises(FetchError):
            fetcher.fetch_bytes(url)
        assert fake_session.calls == [url]
        assert sleeps == []

    def test_async_wrapper(self, fetcher, fake_session):
        """afetch_text runs the blocking fetch in a worker thread."""
        fake_session.add(URL, "<p>hi</p>")
        assert asyncio.run(fetcher.afetch_text(URL)) == "<p>hi</p>"


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_backoff_functions(self):
        """Exponential backoff doubles and respects the cap."""
        backoff = exponential(0.1, cap=0.3)
        assert [backoff(i) for i in range(4)] == [pytest.approx(0.1), pytest.approx(0.2), 0.3, 0.3]
        assert constant(0.3)(5) == 0.3

    def test_call_retries_then_succeeds(self):
        """Retryable failures are retried until the call succeeds."""
        delays = []
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise OSError("locked")
            return "done"

        policy = RetryPolicy(max_attempts=5, backoff=constant(0.1), retryable=retry_on(OSError), sleep=delays.append)
        assert policy.call(flaky) == "done"
        assert delays == [0.1, 0.1]

    def test_non_retryable_propagates_immediately(self):
        """Exceptions the predicate rejects are not retried."""
        delays = []
        policy = RetryPolicy(max_attempts=5, retryable=retry_on(OSError), sleep=delays.append)

        def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            policy.call(broken)
        assert delays == []

    def test_last_exception_propagates(self):
        """When attempts run out the final exception is raised."""
        policy = RetryPolicy(max_attempts=2, backoff=constant(0), sleep=lambda s: None)
        with pytest.raises(OSError, match="second"):
            policy.call(_raise_sequence([OSError("first"), OSError("second")]))

    def test_acall(self):
        """The async variant awaits its sleep between attempts."""
        delays = []

        async def record(delay):
            delays.append(delay)

        attempts = {"n": 0}

        async def flaky():
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise OSError("once")
            return attempts["n"]

        policy = RetryPolicy(max_attempts=3, backoff=exponential(0.3), async_sleep=record)
        assert asyncio.run(policy.acall(flaky)) == 2
        assert delays == [0.3]


def _raise_sequence(errors):
    remaining = list(errors)

    def fn():
        raise remaining.pop(0)

    return fn

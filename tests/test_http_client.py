"""Tests for HTTP client module."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from card_enrichment.core.exceptions import FetchError
from card_enrichment.core.http_client import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    USER_AGENT,
    create_client,
    fetch_bytes,
    fetch_text,
    get_headers,
    get_timeout,
)


def _mock_client(response=None, error=None) -> AsyncMock:
    client = AsyncMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None
    if error is not None:
        client.get.side_effect = error
    else:
        client.get.return_value = response
    return client


def _response(status: int, content: bytes = b"", headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status,
        content=content,
        headers=headers or {},
        request=httpx.Request("GET", "https://blobs.test/x"),
    )


class TestDefaults:
    """Timeout and header configuration."""

    def test_client_default_timeout(self):
        timeout = get_timeout()

        assert timeout.connect == DEFAULT_CONNECT_TIMEOUT
        assert timeout.read == DEFAULT_READ_TIMEOUT

    def test_total_timeout(self):
        timeout = get_timeout(20.0)

        assert timeout.connect == 20.0
        assert timeout.read == 20.0

    def test_headers(self):
        headers = get_headers("application/json")

        assert headers["User-Agent"] == USER_AGENT
        assert headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_create_client(self):
        client = create_client(follow_redirects=False)

        assert client.follow_redirects is False
        assert client.headers["User-Agent"] == USER_AGENT
        await client.aclose()


class TestFetchBytes:
    """Blob download with in-process retries."""

    @pytest.mark.asyncio
    async def test_returns_content_and_type(self):
        client = _mock_client(_response(200, b"data", {"content-type": "image/png"}))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            data, content_type = await fetch_bytes("https://blobs.test/x")

        assert data == b"data"
        assert content_type == "image/png"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        client = _mock_client(_response(404))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(FetchError) as exc_info:
                await fetch_bytes("https://blobs.test/x")

        assert exc_info.value.retryable is False
        assert client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        client = _mock_client(_response(503))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client), \
                patch("card_enrichment.core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(FetchError) as exc_info:
                await fetch_bytes("https://blobs.test/x")

        assert exc_info.value.retryable is True
        assert client.get.await_count == 3

    @pytest.mark.asyncio
    async def test_connection_error(self):
        client = _mock_client(error=httpx.ConnectError("refused"))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client), \
                patch("card_enrichment.core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(FetchError):
                await fetch_bytes("https://blobs.test/x")


class TestFetchText:
    @pytest.mark.asyncio
    async def test_uses_charset(self):
        body = "café".encode("latin-1")
        with patch(
            "card_enrichment.core.http_client.fetch_bytes",
            new=AsyncMock(return_value=(body, "text/plain; charset=latin-1")),
        ):
            assert await fetch_text("https://blobs.test/x") == "café"

    @pytest.mark.asyncio
    async def test_unknown_charset_falls_back(self):
        with patch(
            "card_enrichment.core.http_client.fetch_bytes",
            new=AsyncMock(return_value=(b"<svg/>", "image/svg+xml; charset=bogus")),
        ):
            assert await fetch_text("https://blobs.test/x") == "<svg/>"

    @pytest.mark.asyncio
    async def test_defaults_to_utf8(self):
        with patch(
            "card_enrichment.core.http_client.fetch_bytes",
            new=AsyncMock(return_value=("ü".encode(), None)),
        ):
            assert await fetch_text("https://blobs.test/x") == "ü"

"""HTTP client for external requests.

Configures httpx client with sensible defaults for timeouts and user agent.
Used by renderers, transcription, the unfurl client and the browser sandbox.
"""

import httpx

from card_enrichment.core.exceptions import FetchError
from card_enrichment.core.retry import with_retry

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 30.0
DEFAULT_WRITE_TIMEOUT = 30.0
DEFAULT_POOL_TIMEOUT = 10.0

# User agent to identify our requests
USER_AGENT = "CardEnrichment/1.0 (+https://github.com/card-enrichment/card-enrichment)"


def get_timeout(total: float | None = None) -> httpx.Timeout:
    """Get timeout configuration.

    Args:
        total: If given, a single timeout applied to every phase.

    Returns:
        httpx.Timeout with configured connect/read/write/pool timeouts.
    """
    if total is not None:
        return httpx.Timeout(total)
    return httpx.Timeout(
        connect=DEFAULT_CONNECT_TIMEOUT,
        read=DEFAULT_READ_TIMEOUT,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )


def get_headers(accept: str = "*/*") -> dict[str, str]:
    """Get default headers for requests.

    Args:
        accept: Value for the Accept header.

    Returns:
        Dict with User-Agent and Accept headers.
    """
    return {
        "User-Agent": USER_AGENT,
        "Accept": accept,
    }


def create_client(
    *,
    timeout: httpx.Timeout | None = None,
    accept: str = "*/*",
    follow_redirects: bool = True,
    max_redirects: int = 10,
) -> httpx.AsyncClient:
    """Create an async HTTP client with configured defaults.

    Args:
        timeout: Custom timeout configuration. Uses defaults if not provided.
        accept: Value for the Accept header.
        follow_redirects: Whether to follow redirects (default: True).
        max_redirects: Maximum number of redirects to follow (default: 10).

    Returns:
        Configured httpx.AsyncClient ready for use.

    Example:
        async with create_client() as client:
            response = await client.get("https://example.com")
    """
    return httpx.AsyncClient(
        timeout=timeout or get_timeout(),
        headers=get_headers(accept),
        follow_redirects=follow_redirects,
        max_redirects=max_redirects,
    )


@with_retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
async def fetch_bytes(url: str) -> tuple[bytes, str | None]:
    """Download a blob.

    Args:
        url: Fetchable URL of the blob.

    Returns:
        Tuple of (body bytes, content-type header or None).

    Raises:
        FetchError: On connection failures (retryable) or 4xx/5xx
            responses (retryable only for 5xx).
    """
    try:
        async with create_client() as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise FetchError(
            f"Failed to fetch source: HTTP {status}", retryable=status >= 500
        )
    except httpx.RequestError as e:
        raise FetchError(f"Failed to fetch source: {e}")

    return response.content, response.headers.get("content-type")


async def fetch_text(url: str) -> str:
    """Download a text resource (decoded with the response charset)."""
    data, content_type = await fetch_bytes(url)
    charset = "utf-8"
    if content_type and "charset=" in content_type:
        charset = content_type.split("charset=", 1)[1].split(";")[0].strip() or "utf-8"
    try:
        return data.decode(charset, errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")

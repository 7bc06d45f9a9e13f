"""Link metadata extraction (unfurl) for link cards.

One unfurl API call per invocation. The three failure modes get different
treatment:

- the API answers with an error (non-2xx or a non-success status): final,
  the card is marked failed right away
- the request times out: up to 2 retries, 5s apart
- the request cannot reach the API: 1 retry after 5s

A companion backfill walks link cards that never got a preview and
enqueues extraction for each, staggered to respect the API's rate limits.
"""

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import httpx

from card_enrichment.core.card import CardType, LinkPreview, MetadataStatus
from card_enrichment.core.exceptions import (
    UnfurlNetworkError,
    UnfurlRejectedError,
    UnfurlTimeoutError,
)
from card_enrichment.core.http_client import create_client, get_timeout
from card_enrichment.core.logger import get_card_logger
from card_enrichment.core.retry import (
    LINK_NETWORK_RETRY,
    LINK_TIMEOUT_RETRY,
    RetryPolicy,
    call_with_retry,
)
from card_enrichment.core.stores import encode_cursor

if TYPE_CHECKING:
    from card_enrichment.workflows.context import PipelineContext

logger = logging.getLogger(__name__)

EXTRACT_LINK_METADATA = "link_metadata.extract"
BACKFILL_LINK_METADATA = "link_metadata.backfill"

DEFAULT_UNFURL_API_URL = "https://api.microlink.io/"
DEFAULT_UNFURL_TIMEOUT = 20.0

BACKFILL_BATCH_SIZE = 25
BACKFILL_STAGGER_MS = 2_000

_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def normalize_url(url: str) -> str:
    """Prepend https:// when the URL has no scheme."""
    url = url.strip()
    if _SCHEME.match(url):
        return url
    return f"https://{url}"


def preview_from_unfurl(payload: dict[str, Any]) -> LinkPreview:
    """Map a successful unfurl payload to the flat preview fields."""
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    def nested_url(key: str) -> Optional[str]:
        value = data.get(key)
        if isinstance(value, dict):
            return value.get("url") or None
        return None

    return LinkPreview(
        title=data.get("title") or None,
        description=data.get("description") or None,
        image=nested_url("image"),
        favicon=nested_url("logo"),
        raw=payload,
    )


def failed_preview(card_url: str, status: str = "error") -> LinkPreview:
    """Preview recorded when unfurling is given up; the title is the URL."""
    return LinkPreview(
        title=card_url,
        raw={"status": status, "data": {"title": card_url}},
    )


def select_unfurl_policy(error: Exception) -> Optional[RetryPolicy]:
    if isinstance(error, UnfurlTimeoutError):
        return LINK_TIMEOUT_RETRY
    if isinstance(error, UnfurlNetworkError):
        return LINK_NETWORK_RETRY
    return None


class UnfurlClient:
    """Client for the link unfurl API (microlink-compatible).

    Attributes:
        api_url: Endpoint receiving ?url=<encoded>.
        timeout: Request timeout in seconds.
    """

    def __init__(self, api_url: str = DEFAULT_UNFURL_API_URL, timeout: float = DEFAULT_UNFURL_TIMEOUT):
        self.api_url = api_url
        self.timeout = timeout

    async def unfurl(self, url: str) -> dict[str, Any]:
        """Fetch page metadata for `url`.

        Returns:
            The raw payload ({"status": "success", "data": {...}}).

        Raises:
            UnfurlTimeoutError: The request exceeded the timeout.
            UnfurlNetworkError: The API could not be reached.
            UnfurlRejectedError: The API answered with an error.
        """
        target = normalize_url(url)
        try:
            async with create_client(
                timeout=get_timeout(self.timeout), accept="application/json"
            ) as client:
                response = await client.get(self.api_url, params={"url": target})
        except httpx.TimeoutException as e:
            raise UnfurlTimeoutError(f"Unfurl timed out after {self.timeout}s: {e}")
        except httpx.RequestError as e:
            raise UnfurlNetworkError(f"Unfurl request failed: {e}")

        if not response.is_success:
            raise UnfurlRejectedError(f"Unfurl API returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise UnfurlRejectedError("Unfurl API returned invalid JSON")

        status = payload.get("status") if isinstance(payload, dict) else None
        if status != "success":
            raise UnfurlRejectedError(
                f"Unfurl API reported status {status!r}", status=str(status or "error")
            )
        return payload


async def extract_link_metadata(
    ctx: "PipelineContext", card_id: str, retry_count: int = 0
) -> Optional[MetadataStatus]:
    """Unfurl a link card and store its preview.

    Args:
        ctx: Pipeline context.
        card_id: Card to enrich.
        retry_count: Retries already spent (advanced by rescheduling).

    Returns:
        The card's new metadata_status, or None when a retry was scheduled
        or the card no longer exists.
    """
    log = get_card_logger(__name__, card_id, "link_metadata")
    card = await ctx.cards.get(card_id)
    if card is None:
        log.warning("Card not found, skipping link metadata")
        return None

    if card.type != CardType.LINK or not card.url:
        log.warning("Not a link card with a URL, marking link metadata failed")
        await ctx.cards.patch(
            card_id, metadata_status=MetadataStatus.FAILED, updated_at=ctx.clock()
        )
        return MetadataStatus.FAILED

    if (
        card.metadata_status == MetadataStatus.COMPLETED
        and card.metadata is not None
        and card.metadata.raw is not None
    ):
        return MetadataStatus.COMPLETED

    unfurl = ctx.unfurl or UnfurlClient()
    url = card.url
    outcome = await call_with_retry(
        lambda: unfurl.unfurl(url),
        policy=select_unfurl_policy,
        retry_count=retry_count,
        scheduler=ctx.scheduler,
        action=EXTRACT_LINK_METADATA,
        args={"card_id": card_id},
        log=log,
    )
    if outcome.rescheduled:
        return None

    now = ctx.clock()
    if outcome.succeeded:
        preview = preview_from_unfurl(outcome.value)
        await ctx.cards.patch(
            card_id,
            metadata=preview,
            metadata_status=MetadataStatus.COMPLETED,
            metadata_title=preview.title,
            metadata_description=preview.description,
            updated_at=now,
        )
        log.info("Link metadata stored", extra={"title": preview.title})
        return MetadataStatus.COMPLETED

    status = outcome.error.status if isinstance(outcome.error, UnfurlRejectedError) else "error"
    await ctx.cards.patch(
        card_id,
        metadata=failed_preview(url, status),
        metadata_status=MetadataStatus.FAILED,
        metadata_title=url,
        metadata_description=None,
        updated_at=now,
    )
    log.warning("Link metadata failed: %s", outcome.error)
    return MetadataStatus.FAILED


@dataclass
class LinkBackfillResult:
    scheduled: int
    has_more: bool
    cursor: Optional[str] = None


async def backfill_link_metadata(
    ctx: "PipelineContext",
    cursor: Optional[str] = None,
    batch_size: int = BACKFILL_BATCH_SIZE,
) -> LinkBackfillResult:
    """Enqueue extraction for one page of link cards lacking a preview.

    Extractions are staggered by BACKFILL_STAGGER_MS per item; when the
    page was full, the next page is scheduled to start after this page's
    last extraction.
    """
    cards = await ctx.cards.find_link_cards_missing_preview(limit=batch_size, cursor=cursor)
    for index, card in enumerate(cards):
        await ctx.scheduler.run_after(
            index * BACKFILL_STAGGER_MS, EXTRACT_LINK_METADATA, {"card_id": card.id}
        )

    has_more = len(cards) == batch_size
    next_cursor = encode_cursor(cards[-1]) if cards else None
    if has_more:
        await ctx.scheduler.run_after(
            len(cards) * BACKFILL_STAGGER_MS,
            BACKFILL_LINK_METADATA,
            {"cursor": next_cursor, "batch_size": batch_size},
        )

    logger.info(
        "Link metadata backfill scheduled %d cards (more: %s)", len(cards), has_more
    )
    return LinkBackfillResult(scheduled=len(cards), has_more=has_more, cursor=next_cursor)

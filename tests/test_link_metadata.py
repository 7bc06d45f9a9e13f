"""Tests for link metadata extraction and its backfill."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from card_enrichment.core.card import CardType, LinkPreview, MetadataStatus
from card_enrichment.core.exceptions import (
    UnfurlNetworkError,
    UnfurlRejectedError,
    UnfurlTimeoutError,
)
from card_enrichment.core.stores import encode_cursor
from card_enrichment.workflows.link_metadata import (
    BACKFILL_LINK_METADATA,
    EXTRACT_LINK_METADATA,
    UnfurlClient,
    backfill_link_metadata,
    extract_link_metadata,
    normalize_url,
    preview_from_unfurl,
)
from conftest import BASE_TIME_MS, make_card

UNFURL_PAYLOAD = {
    "status": "success",
    "data": {
        "title": "Example Domain",
        "description": "Illustrative examples",
        "image": {"url": "https://example.com/og.png"},
        "logo": {"url": "https://example.com/favicon.ico"},
        "publisher": "Example",
    },
}


def _link_card(card_id="link-1", url="example.com/a", **overrides):
    return make_card(card_id, CardType.LINK, url=url, content="", **overrides)


def _unfurl(*effects) -> MagicMock:
    client = MagicMock()
    client.unfurl = AsyncMock(side_effect=list(effects))
    return client


class TestHelpers:
    def test_normalize_url(self):
        assert normalize_url("example.com/a") == "https://example.com/a"
        assert normalize_url(" http://example.com ") == "http://example.com"
        assert normalize_url("ftp://files.test/x") == "ftp://files.test/x"

    def test_preview_mapping(self):
        preview = preview_from_unfurl(UNFURL_PAYLOAD)

        assert preview == LinkPreview(
            title="Example Domain",
            description="Illustrative examples",
            image="https://example.com/og.png",
            favicon="https://example.com/favicon.ico",
            raw=UNFURL_PAYLOAD,
        )

    def test_preview_missing_fields(self):
        preview = preview_from_unfurl({"status": "success", "data": {"image": None}})

        assert preview.title is None
        assert preview.image is None
        assert preview.favicon is None


class TestExtractLinkMetadata:
    """Per-failure-mode retry behaviour."""

    @pytest.mark.asyncio
    async def test_success(self, ctx, scheduler):
        ctx.unfurl = _unfurl(UNFURL_PAYLOAD)
        await ctx.cards.insert(_link_card(metadata_status=MetadataStatus.PENDING))

        assert await extract_link_metadata(ctx, "link-1") == MetadataStatus.COMPLETED

        card = await ctx.cards.get("link-1")
        assert card.metadata_status == MetadataStatus.COMPLETED
        assert card.metadata.title == "Example Domain"
        assert card.metadata.raw == UNFURL_PAYLOAD
        assert card.metadata_title == "Example Domain"
        assert card.metadata_description == "Illustrative examples"
        assert card.updated_at == BASE_TIME_MS
        ctx.unfurl.unfurl.assert_awaited_once_with("example.com/a")
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_rejected_fails_immediately(self, ctx, scheduler):
        ctx.unfurl = _unfurl(UnfurlRejectedError("blocked", status="fail"))
        await ctx.cards.insert(_link_card())

        assert await extract_link_metadata(ctx, "link-1") == MetadataStatus.FAILED

        card = await ctx.cards.get("link-1")
        assert card.metadata_status == MetadataStatus.FAILED
        assert card.metadata_title == "example.com/a"
        assert card.metadata.raw == {"status": "fail", "data": {"title": "example.com/a"}}
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_timeout_retries_twice(self, ctx, scheduler):
        ctx.unfurl = _unfurl(*[UnfurlTimeoutError("slow")] * 3)
        await ctx.cards.insert(_link_card())

        assert await extract_link_metadata(ctx, "link-1", retry_count=0) is None
        assert await extract_link_metadata(ctx, "link-1", retry_count=1) is None
        assert scheduler.calls == [
            (5_000, EXTRACT_LINK_METADATA, {"card_id": "link-1", "retry_count": 1}),
            (5_000, EXTRACT_LINK_METADATA, {"card_id": "link-1", "retry_count": 2}),
        ]

        assert await extract_link_metadata(ctx, "link-1", retry_count=2) == MetadataStatus.FAILED
        card = await ctx.cards.get("link-1")
        assert card.metadata_title == "example.com/a"
        assert card.metadata.raw["status"] == "error"
        assert len(scheduler.calls) == 2

    @pytest.mark.asyncio
    async def test_network_error_retries_once(self, ctx, scheduler):
        ctx.unfurl = _unfurl(UnfurlNetworkError("refused"), UnfurlNetworkError("refused"))
        await ctx.cards.insert(_link_card())

        assert await extract_link_metadata(ctx, "link-1") is None
        assert await extract_link_metadata(ctx, "link-1", retry_count=1) == MetadataStatus.FAILED
        assert scheduler.calls == [
            (5_000, EXTRACT_LINK_METADATA, {"card_id": "link-1", "retry_count": 1})
        ]

    @pytest.mark.asyncio
    async def test_already_completed(self, ctx):
        ctx.unfurl = _unfurl()
        await ctx.cards.insert(
            _link_card(
                metadata_status=MetadataStatus.COMPLETED,
                metadata=preview_from_unfurl(UNFURL_PAYLOAD),
            )
        )

        assert await extract_link_metadata(ctx, "link-1") == MetadataStatus.COMPLETED
        ctx.unfurl.unfurl.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_a_link(self, ctx):
        ctx.unfurl = _unfurl()
        await ctx.cards.insert(make_card())

        assert await extract_link_metadata(ctx, "card-1") == MetadataStatus.FAILED
        assert (await ctx.cards.get("card-1")).metadata_status == MetadataStatus.FAILED
        ctx.unfurl.unfurl.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_card(self, ctx):
        assert await extract_link_metadata(ctx, "missing") is None


class TestUnfurlClient:
    """Error classification of the HTTP call."""

    def _client(self, response=None, error=None) -> AsyncMock:
        client = AsyncMock()
        client.__aenter__.return_value = client
        client.__aexit__.return_value = None
        if error is not None:
            client.get.side_effect = error
        else:
            client.get.return_value = response
        return client

    def _response(self, status: int, **kwargs) -> httpx.Response:
        return httpx.Response(
            status, request=httpx.Request("GET", "https://unfurl.test/"), **kwargs
        )

    @pytest.mark.asyncio
    async def test_success(self):
        client = self._client(self._response(200, json=UNFURL_PAYLOAD))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            payload = await UnfurlClient("https://unfurl.test/").unfurl("example.com")

        assert payload == UNFURL_PAYLOAD
        client.get.assert_awaited_once_with(
            "https://unfurl.test/", params={"url": "https://example.com"}
        )

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = self._client(error=httpx.ReadTimeout("slow"))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(UnfurlTimeoutError):
                await UnfurlClient().unfurl("example.com")

    @pytest.mark.asyncio
    async def test_network_error(self):
        client = self._client(error=httpx.ConnectError("refused"))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(UnfurlNetworkError):
                await UnfurlClient().unfurl("example.com")

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = self._client(self._response(429, json={"status": "fail"}))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(UnfurlRejectedError):
                await UnfurlClient().unfurl("example.com")

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        client = self._client(self._response(200, json={"status": "fail", "data": {}}))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(UnfurlRejectedError) as exc_info:
                await UnfurlClient().unfurl("example.com")

        assert exc_info.value.status == "fail"

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = self._client(self._response(200, content=b"<html>"))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(UnfurlRejectedError):
                await UnfurlClient().unfurl("example.com")


class TestBackfillLinkMetadata:
    """Staggered enqueueing with cursor paging."""

    async def _insert_links(self, ctx, count: int):
        for i in range(count):
            await ctx.cards.insert(
                _link_card(f"link-{i}", url=f"example.com/{i}", created_at=BASE_TIME_MS - 10_000 + i)
            )

    @pytest.mark.asyncio
    async def test_full_batch_reschedules(self, ctx, scheduler):
        await self._insert_links(ctx, 3)
        await ctx.cards.insert(
            _link_card("done", metadata=preview_from_unfurl(UNFURL_PAYLOAD))
        )

        result = await backfill_link_metadata(ctx, batch_size=3)

        last = await ctx.cards.get("link-2")
        assert result.scheduled == 3
        assert result.has_more is True
        assert result.cursor == encode_cursor(last)
        assert scheduler.calls == [
            (0, EXTRACT_LINK_METADATA, {"card_id": "link-0"}),
            (2_000, EXTRACT_LINK_METADATA, {"card_id": "link-1"}),
            (4_000, EXTRACT_LINK_METADATA, {"card_id": "link-2"}),
            (6_000, BACKFILL_LINK_METADATA, {"cursor": result.cursor, "batch_size": 3}),
        ]

    @pytest.mark.asyncio
    async def test_cursor_continues(self, ctx, scheduler):
        await self._insert_links(ctx, 3)
        first = await backfill_link_metadata(ctx, batch_size=2)
        scheduler.clear()

        second = await backfill_link_metadata(ctx, cursor=first.cursor, batch_size=2)

        assert second.scheduled == 1
        assert second.has_more is False
        assert scheduler.calls == [(0, EXTRACT_LINK_METADATA, {"card_id": "link-2"})]

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, ctx, scheduler):
        result = await backfill_link_metadata(ctx)

        assert result.scheduled == 0
        assert result.cursor is None
        assert scheduler.calls == []

"""Tests for the soft-deleted card purge."""

from unittest.mock import AsyncMock, patch

import pytest

from card_enrichment.workflows.cleanup import (
    CLEANUP_DELETED_CARDS,
    THIRTY_DAYS_MS,
    cleanup_deleted_card,
    cleanup_deleted_cards,
    release_card_blob,
)
from conftest import BASE_TIME_MS, make_card

DAY_MS = 24 * 60 * 60 * 1000
LONG_AGO = BASE_TIME_MS - THIRTY_DAYS_MS - DAY_MS


async def _insert_deleted(ctx, count: int, deleted_at: int = LONG_AGO) -> None:
    for i in range(count):
        await ctx.cards.insert(
            make_card(f"del-{i}", is_deleted=True, deleted_at=deleted_at, created_at=i)
        )


class TestCleanupDeletedCards:
    """Batching and the 30-day window."""

    @pytest.mark.asyncio
    async def test_full_batch_reschedules(self, ctx, scheduler):
        await _insert_deleted(ctx, 10)

        result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 10
        assert result.has_more is True
        assert result.failed_card_ids == []
        assert scheduler.calls == [(0, CLEANUP_DELETED_CARDS, {"batch_size": 10})]
        assert await ctx.cards.scan() == []

    @pytest.mark.asyncio
    async def test_partial_batch_stops(self, ctx, scheduler):
        await _insert_deleted(ctx, 9)

        result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 9
        assert result.has_more is False
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_recently_deleted_kept(self, ctx):
        await _insert_deleted(ctx, 1, deleted_at=BASE_TIME_MS - 29 * DAY_MS)
        await ctx.cards.insert(make_card("live"))

        result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 0
        assert await ctx.cards.get("del-0") is not None
        assert await ctx.cards.get("live") is not None

    @pytest.mark.asyncio
    async def test_record_failure_collected(self, ctx, scheduler):
        await _insert_deleted(ctx, 2)

        with patch.object(
            ctx.cards, "delete", new=AsyncMock(side_effect=[RuntimeError("store down"), None])
        ):
            result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 1
        assert result.failed_card_ids == ["del-0"]


class TestCleanupDeletedCard:
    @pytest.mark.asyncio
    async def test_deletes_blobs_and_record(self, ctx, blobs):
        file_id = await blobs.store(b"file", "image/png")
        thumbnail_id = await blobs.store(b"thumb", "image/webp")
        card = make_card(file_id=file_id, thumbnail_id=thumbnail_id, is_deleted=True)
        await ctx.cards.insert(card)

        await cleanup_deleted_card(ctx, card)

        assert await blobs.read(file_id) is None
        assert await blobs.read(thumbnail_id) is None
        assert await ctx.cards.get(card.id) is None

    @pytest.mark.asyncio
    async def test_blob_failure_does_not_stop_record_deletion(self, ctx, blobs):
        thumbnail_id = await blobs.store(b"thumb", "image/webp")
        card = make_card(file_id="abcdef", thumbnail_id=thumbnail_id, is_deleted=True)
        await ctx.cards.insert(card)

        await cleanup_deleted_card(ctx, card)

        assert await blobs.read(thumbnail_id) is None
        assert await ctx.cards.get(card.id) is None

    @pytest.mark.asyncio
    async def test_shared_blobs_kept_for_live_card(self, ctx, blobs):
        file_id = await blobs.store(b"same photo", "image/jpeg")
        thumbnail_id = await blobs.store(b"same thumb", "image/webp")
        await ctx.cards.insert(
            make_card("live", file_id=file_id, thumbnail_id=thumbnail_id)
        )
        await ctx.cards.insert(
            make_card(
                "gone",
                file_id=file_id,
                thumbnail_id=thumbnail_id,
                is_deleted=True,
                deleted_at=LONG_AGO,
            )
        )

        result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 1
        assert await ctx.cards.get("gone") is None
        assert await blobs.read(file_id) == (b"same photo", "image/jpeg")
        assert await blobs.read(thumbnail_id) == (b"same thumb", "image/webp")

    @pytest.mark.asyncio
    async def test_last_reference_releases_blob(self, ctx, blobs):
        file_id = await blobs.store(b"same photo", "image/jpeg")
        for card_id in ("gone-1", "gone-2"):
            await ctx.cards.insert(
                make_card(card_id, file_id=file_id, is_deleted=True, deleted_at=LONG_AGO)
            )

        result = await cleanup_deleted_cards(ctx)

        assert result.cleaned_count == 2
        assert await blobs.read(file_id) is None


class TestReleaseCardBlob:
    @pytest.mark.asyncio
    async def test_no_handle(self, ctx):
        assert await release_card_blob(ctx, make_card(), None, "file") is False

    @pytest.mark.asyncio
    async def test_referenced_by_other_card(self, ctx, blobs):
        handle = await blobs.store(b"shared", "image/png")
        await ctx.cards.insert(make_card("other", file_id=handle))

        released = await release_card_blob(ctx, make_card(file_id=handle), handle, "file")

        assert released is False
        assert await blobs.read(handle) is not None

"""End-to-end runs through the job queue, worker and action registry."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from card_enrichment.core.card import (
    AiModelMeta,
    CardType,
    MetadataStatus,
    Stage,
    StageState,
    StageStatus,
)
from card_enrichment.core.exceptions import ExtractionError
from card_enrichment.core.processing_status import is_fully_enriched
from card_enrichment.core.scheduler import InMemoryJobQueue, SchedulerWorker
from card_enrichment.workflows import pipeline
from card_enrichment.workflows.ai_metadata import AiMetadata
from card_enrichment.workflows.context import PipelineContext
from card_enrichment.workflows.registry import build_registry
from conftest import make_card

UNFURL_PAYLOAD = {"status": "success", "data": {"title": "Example", "description": "Page"}}


@pytest.fixture
def queue(clock) -> InMemoryJobQueue:
    return InMemoryJobQueue(clock=clock)


@pytest.fixture
def live_ctx(cards, blobs, queue, clock) -> PipelineContext:
    generator = MagicMock()
    generator.generate = AsyncMock(
        return_value=AiMetadata(tags=["python"], summary="About asyncio.", confidence=0.95)
    )
    generator.model_meta = AiModelMeta(provider="openai", model="gpt-5-nano", version="v1")
    unfurl = MagicMock()
    unfurl.unfurl = AsyncMock(return_value=UNFURL_PAYLOAD)
    return PipelineContext(
        cards=cards,
        blobs=blobs,
        scheduler=queue,
        clock=clock,
        generator=generator,
        unfurl=unfurl,
    )


class TestRegistry:
    def test_every_action_registered(self):
        registry = build_registry()

        assert registry.names() == sorted(
            [
                "pipeline.start_card_processing",
                "pipeline.schedule_next_stage",
                "pipeline.run_classify_stage",
                "pipeline.run_categorize_stage",
                "pipeline.run_metadata_stage",
                "pipeline.run_renderables_stage",
                "pipeline.requeue_stale_stages",
                "link_metadata.extract",
                "link_metadata.backfill",
                "ai_backfill.run",
                "cleanup.run",
            ]
        )


class TestEndToEnd:
    """Cards driven through every stage by the worker."""

    @pytest.mark.asyncio
    async def test_text_card_fully_enriched(self, live_ctx, queue):
        await live_ctx.cards.insert(make_card())
        await queue.run_after(0, pipeline.START_CARD_PROCESSING, {"card_id": "card-1"})

        await SchedulerWorker(queue, build_registry(), live_ctx).drain()

        card = await live_ctx.cards.get("card-1")
        assert is_fully_enriched(card.processing_status)
        assert card.ai_tags == ["python"]
        assert queue.pending() == []

    @pytest.mark.asyncio
    async def test_link_card(self, live_ctx, queue):
        await live_ctx.cards.insert(make_card(card_type=CardType.LINK, url="example.com"))
        await queue.run_after(0, pipeline.START_CARD_PROCESSING, {"card_id": "card-1"})

        await SchedulerWorker(queue, build_registry(), live_ctx).drain()

        card = await live_ctx.cards.get("card-1")
        assert card.metadata_status == MetadataStatus.COMPLETED
        assert card.metadata_title == "Example"
        assert is_fully_enriched(card.processing_status)

    @pytest.mark.asyncio
    async def test_retry_waits_for_clock(self, live_ctx, queue, clock):
        live_ctx.generator.generate.side_effect = [ExtractionError("busy"), AiMetadata(tags=["a"])]
        await live_ctx.cards.insert(make_card())
        await queue.run_after(0, pipeline.START_CARD_PROCESSING, {"card_id": "card-1"})
        worker = SchedulerWorker(queue, build_registry(), live_ctx)

        await worker.drain()
        card = await live_ctx.cards.get("card-1")
        assert card.processing_status[Stage.METADATA].status == StageState.IN_PROGRESS
        assert [j.action for j in queue.pending()] == [pipeline.RUN_METADATA_STAGE]

        clock.advance(5_000)
        await worker.drain()

        card = await live_ctx.cards.get("card-1")
        assert card.processing_status[Stage.METADATA].status == StageState.COMPLETED
        assert card.ai_tags == ["a"]

    @pytest.mark.asyncio
    async def test_stale_stage_recovered_by_sweep(self, live_ctx, queue, clock):
        await live_ctx.cards.insert(make_card())
        card = await pipeline.initialize_card_processing_state(live_ctx, "card-1")
        status = dict(card.processing_status)
        status[Stage.METADATA] = StageStatus(
            StageState.IN_PROGRESS, started_at=clock() - pipeline.STALE_STAGE_MS - 1
        )
        await live_ctx.cards.patch("card-1", processing_status=status)
        await queue.run_after(0, pipeline.REQUEUE_STALE_STAGES, {})

        await SchedulerWorker(queue, build_registry(), live_ctx).drain()

        card = await live_ctx.cards.get("card-1")
        assert is_fully_enriched(card.processing_status)
        assert card.ai_tags == ["python"]

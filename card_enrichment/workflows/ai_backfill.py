"""Periodic sweep for cards that never received AI metadata."""

import logging
from dataclasses import dataclass, field

from card_enrichment.workflows.context import PipelineContext
from card_enrichment.workflows.pipeline import RUN_METADATA_STAGE

logger = logging.getLogger(__name__)

RUN_AI_BACKFILL = "ai_backfill.run"

# Cards younger than this are still being handled by their own pipeline
AI_BACKFILL_GRACE_MS = 5 * 60 * 1000
AI_BACKFILL_BATCH_SIZE = 50


@dataclass
class AiBackfillResult:
    enqueued_count: int = 0
    failed_card_ids: list[str] = field(default_factory=list)


async def enqueue_missing_ai_generation(
    ctx: PipelineContext, batch_size: int = AI_BACKFILL_BATCH_SIZE
) -> AiBackfillResult:
    """Enqueue the metadata stage for up to `batch_size` cards lacking AI metadata.

    Enqueue failures are collected, not raised, so one bad card does not
    hide the rest of the batch.
    """
    created_before = ctx.clock() - AI_BACKFILL_GRACE_MS
    cards = await ctx.cards.find_cards_missing_ai(created_before=created_before, limit=batch_size)

    result = AiBackfillResult()
    for card in cards:
        try:
            await ctx.scheduler.run_after(0, RUN_METADATA_STAGE, {"card_id": card.id})
            result.enqueued_count += 1
        except Exception as e:
            logger.error(
                "Failed to enqueue AI generation for card %s: %s",
                card.id,
                e,
                extra={"card_id": card.id},
            )
            result.failed_card_ids.append(card.id)

    logger.info(
        "AI backfill enqueued %d cards (%d failed)",
        result.enqueued_count,
        len(result.failed_card_ids),
    )
    return result

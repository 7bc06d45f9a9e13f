"""Operator actions: processing overview, manual stage retry and resets."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from card_enrichment.core.card import Card, CardType, MetadataStatus, Stage, StageState
from card_enrichment.core.processing_status import (
    ensure_processing_status,
    is_fully_enriched,
    stage_pending,
    stage_running,
    with_stage_status,
)
from card_enrichment.workflows.ai_backfill import AiBackfillResult, enqueue_missing_ai_generation
from card_enrichment.workflows.cleanup import release_card_blob
from card_enrichment.workflows.context import PipelineContext
from card_enrichment.workflows.link_metadata import LinkBackfillResult, backfill_link_metadata
from card_enrichment.workflows.pipeline import (
    STAGE_RUNNERS,
    is_stale_stage,
    start_card_processing,
)

logger = logging.getLogger(__name__)


@dataclass
class ManualTriggerResult:
    """Human-readable outcome of an operator action."""

    success: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}


def card_reasons(card: Card) -> list[str]:
    """Why a card is not fully enriched, one line per problem."""
    reasons = []
    for stage, stage_status in card.processing_status.items():
        if stage_status.status == StageState.FAILED:
            reasons.append(f"{stage.value} failed: {stage_status.error or 'unknown error'}")
        elif stage_status.status == StageState.PENDING:
            reasons.append(f"{stage.value} pending")
        elif stage_status.status == StageState.IN_PROGRESS:
            reasons.append(f"{stage.value} in progress")

    if card.ai_generated_at is None:
        reasons.append("AI metadata missing")
    else:
        if not card.ai_summary:
            reasons.append("AI summary missing")
        if not card.ai_tags:
            reasons.append("AI tags missing")

    if card.type == CardType.LINK and card.metadata_status == MetadataStatus.PENDING:
        reasons.append("Link metadata still pending")
    return reasons


@dataclass
class ProcessingOverview:
    stage_summary: dict[str, dict[str, int]] = field(default_factory=dict)
    pending_enrichment: int = 0
    failed_cards: int = 0
    cards: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_summary": self.stage_summary,
            "pending_enrichment": self.pending_enrichment,
            "failed_cards": self.failed_cards,
            "cards": self.cards,
        }


async def processing_overview(ctx: PipelineContext, limit: int = 100) -> ProcessingOverview:
    """Summarize live cards that still have enrichment work.

    Args:
        ctx: Pipeline context.
        limit: Maximum number of cards listed in detail.
    """
    overview = ProcessingOverview(
        stage_summary={
            stage.value: {"pending": 0, "in_progress": 0, "failed": 0} for stage in Stage
        }
    )
    cards = await ctx.cards.scan(lambda c: not c.is_deleted)
    for card in cards:
        reasons = card_reasons(card)
        if is_fully_enriched(card.processing_status) and not reasons:
            continue

        overview.pending_enrichment += 1
        has_failure = False
        for stage, stage_status in card.processing_status.items():
            counts = overview.stage_summary[stage.value]
            if stage_status.status == StageState.PENDING:
                counts["pending"] += 1
            elif stage_status.status == StageState.IN_PROGRESS:
                counts["in_progress"] += 1
            elif stage_status.status == StageState.FAILED:
                counts["failed"] += 1
                has_failure = True
        if has_failure:
            overview.failed_cards += 1

        if len(overview.cards) < limit:
            overview.cards.append(
                {
                    "id": card.id,
                    "type": card.type.value,
                    "created_at": card.created_at,
                    "reasons": reasons,
                    "processing_status": {
                        stage.value: s.to_dict() for stage, s in card.processing_status.items()
                    },
                }
            )
    return overview


async def retry_stage(ctx: PipelineContext, card_id: str, stage: Stage) -> ManualTriggerResult:
    """Reset one stage to pending and run it immediately.

    A stage that is running and not yet stale is left alone. A retryable
    failure during the run leaves a retry scheduled; the message reports
    the stage status as observed after the run.
    """
    card = await ctx.cards.get(card_id)
    if card is None:
        return ManualTriggerResult(False, f"Card {card_id} not found")
    if card.is_deleted:
        return ManualTriggerResult(False, f"Card {card_id} is deleted")

    now = ctx.clock()
    status = ensure_processing_status(card, now)
    current = status.get(stage)
    if stage_running(current) and not is_stale_stage(current, now):
        return ManualTriggerResult(False, f"{stage.value} stage is already running")

    await ctx.cards.patch(
        card_id,
        processing_status=with_stage_status(status, stage, stage_pending()),
        updated_at=now,
    )

    logger.info("Manual retry of %s for card %s", stage.value, card_id)
    await STAGE_RUNNERS[stage](ctx, card_id)

    card = await ctx.cards.get(card_id)
    result = card.processing_status.get(stage) if card else None
    if result is None:
        return ManualTriggerResult(False, f"{stage.value} stage has no status after retry")
    if result.status == StageState.COMPLETED:
        return ManualTriggerResult(True, f"{stage.value} stage completed")
    if result.status == StageState.FAILED:
        return ManualTriggerResult(False, f"{stage.value} stage failed: {result.error}")
    if result.status == StageState.IN_PROGRESS:
        return ManualTriggerResult(True, f"{stage.value} stage is retrying in the background")
    return ManualTriggerResult(True, f"{stage.value} stage is queued")


async def reset_card_processing_state(
    ctx: PipelineContext, card_id: str
) -> ManualTriggerResult:
    """Drop derived data for a card and run its pipeline from the start."""
    card = await ctx.cards.get(card_id)
    if card is None:
        return ManualTriggerResult(False, f"Card {card_id} not found")

    if card.thumbnail_id:
        if card.thumbnail_id != card.file_id:
            await release_card_blob(ctx, card, card.thumbnail_id, "thumbnail")
        await ctx.cards.patch(card_id, thumbnail_id=None)

    await start_card_processing(ctx, card_id, classification_status=stage_pending())
    return ManualTriggerResult(True, f"Processing restarted for card {card_id}")


async def retry_ai_backfill(ctx: PipelineContext) -> AiBackfillResult:
    return await enqueue_missing_ai_generation(ctx)


async def retry_link_backfill(
    ctx: PipelineContext, cursor: Optional[str] = None
) -> LinkBackfillResult:
    return await backfill_link_metadata(ctx, cursor=cursor)

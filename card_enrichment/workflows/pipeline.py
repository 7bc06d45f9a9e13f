"""Workflow orchestrator and stage actions.

Each stage action is a short, independently scheduled unit of work that
advances one stage of one card:

    pending -> in_progress -> completed | failed
                    |
                    +-> retry scheduled (stays in_progress)

When a stage settles, the action asks schedule_next_stage to queue the
next stage that still has work. Stage actions are the error boundary:
nothing raises past them; failures become a failed StageStatus.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from card_enrichment.core.card import (
    Card,
    CardType,
    MetadataStatus,
    Stage,
    StageState,
    StageStatus,
)
from card_enrichment.core.exceptions import (
    CardNotFoundError,
    NoMetadataGeneratedError,
    RenderError,
)
from card_enrichment.core.logger import get_card_logger
from card_enrichment.core.processing_status import (
    build_initial_processing_status,
    complete_stage,
    ensure_processing_status,
    stage_failed,
    stage_in_progress,
    stage_is_pending,
    stage_running,
    with_stage_status,
)
from card_enrichment.core.retry import AI_METADATA_RETRY, RENDERABLES_RETRY, call_with_retry
from card_enrichment.workflows.ai_metadata import AiMetadata
from card_enrichment.workflows.context import PipelineContext
from card_enrichment.workflows.link_metadata import EXTRACT_LINK_METADATA

logger = logging.getLogger(__name__)

START_CARD_PROCESSING = "pipeline.start_card_processing"
SCHEDULE_NEXT_STAGE = "pipeline.schedule_next_stage"
RUN_CLASSIFY_STAGE = "pipeline.run_classify_stage"
RUN_CATEGORIZE_STAGE = "pipeline.run_categorize_stage"
RUN_METADATA_STAGE = "pipeline.run_metadata_stage"
RUN_RENDERABLES_STAGE = "pipeline.run_renderables_stage"
REQUEUE_STALE_STAGES = "pipeline.requeue_stale_stages"

STAGE_ORDER = (Stage.CLASSIFY, Stage.CATEGORIZE, Stage.METADATA, Stage.RENDERABLES)

STAGE_ACTIONS = {
    Stage.CLASSIFY: RUN_CLASSIFY_STAGE,
    Stage.CATEGORIZE: RUN_CATEGORIZE_STAGE,
    Stage.METADATA: RUN_METADATA_STAGE,
    Stage.RENDERABLES: RUN_RENDERABLES_STAGE,
}

# Metadata stage polls for a pending link preview before analyzing a link
LINK_PREVIEW_WAIT_MS = 5_000
MAX_LINK_PREVIEW_WAITS = 6

# An in_progress stage older than this is treated as abandoned
STALE_STAGE_MS = 10 * 60 * 1000
STALE_SWEEP_BATCH_SIZE = 50


def _awaiting_link_preview(card: Card) -> bool:
    return (
        card.type == CardType.LINK
        and bool(card.url)
        and (card.metadata is None or card.metadata.raw is None)
    )


def is_stale_stage(stage_status: Optional[StageStatus], now: int) -> bool:
    """Whether a running stage was started more than STALE_STAGE_MS ago."""
    if not stage_running(stage_status):
        return False
    started_at = stage_status.started_at or 0
    return now - started_at > STALE_STAGE_MS


async def _set_stage(
    ctx: PipelineContext,
    card_id: str,
    stage: Stage,
    build: Callable[[Optional[StageStatus]], StageStatus],
    **changes,
) -> Card:
    """Patch one stage of a freshly read card (plus optional field changes)."""
    card = await ctx.cards.get(card_id)
    if card is None:
        raise CardNotFoundError(f"Card {card_id} not found")
    now = ctx.clock()
    status = ensure_processing_status(card, now)
    new_status = build(status.get(stage))
    return await ctx.cards.patch(
        card_id,
        processing_status=with_stage_status(status, stage, new_status),
        updated_at=now,
        **changes,
    )


async def initialize_card_processing_state(
    ctx: PipelineContext,
    card_id: str,
    classification_status: Union[StageStatus, dict, None] = None,
) -> Card:
    """Seed a card's processing state and clear derived AI fields.

    Raises:
        CardNotFoundError: If the card does not exist.
    """
    card = await ctx.cards.get(card_id)
    if card is None:
        raise CardNotFoundError(f"Card {card_id} not found")

    # Scheduled jobs carry the classify result as JSON
    if isinstance(classification_status, dict):
        classification_status = StageStatus.from_dict(classification_status)

    now = ctx.clock()
    status = build_initial_processing_status(
        now=now,
        card_type=card.type,
        classification_status=classification_status,
    )

    metadata_status = card.metadata_status
    if card.type == CardType.LINK:
        metadata_status = (
            MetadataStatus.PENDING if _awaiting_link_preview(card) else MetadataStatus.COMPLETED
        )

    return await ctx.cards.patch(
        card_id,
        processing_status=status,
        metadata_status=metadata_status,
        ai_tags=None,
        ai_summary=None,
        ai_transcript=None,
        ai_generated_at=None,
        ai_model_meta=None,
        workflow_id=uuid.uuid4().hex,
        updated_at=now,
    )


async def start_card_processing(
    ctx: PipelineContext,
    card_id: str,
    classification_status: Union[StageStatus, dict, None] = None,
) -> Card:
    """Entry point after card creation: seed state and queue the first work.

    Link cards awaiting a preview also get an unfurl job.
    """
    card = await initialize_card_processing_state(ctx, card_id, classification_status)
    if card.metadata_status == MetadataStatus.PENDING:
        await ctx.scheduler.run_after(0, EXTRACT_LINK_METADATA, {"card_id": card_id})
    await ctx.scheduler.run_after(0, SCHEDULE_NEXT_STAGE, {"card_id": card_id})
    get_card_logger(__name__, card_id).info(
        "Card processing started", extra={"workflow_id": card.workflow_id}
    )
    return card


async def schedule_next_stage(ctx: PipelineContext, card_id: str) -> Optional[Stage]:
    """Queue the first stage, in STAGE_ORDER, that is still pending.

    Failed stages are left for manual retry or backfill; a running stage
    stops the walk because it chains onward itself when it settles.

    Returns:
        The stage that was scheduled, or None.
    """
    log = get_card_logger(__name__, card_id)
    card = await ctx.cards.get(card_id)
    if card is None or card.is_deleted:
        log.info("Card missing or deleted, nothing to schedule")
        return None

    now = ctx.clock()
    status = ensure_processing_status(card, now)
    if status != card.processing_status:
        await ctx.cards.patch(card_id, processing_status=status, updated_at=now)

    for stage in STAGE_ORDER:
        if stage not in status:
            continue
        current = status[stage]
        if stage_running(current) and not is_stale_stage(current, now):
            log.debug("Stage %s already running", stage.value)
            return None
        if stage_is_pending(current) or is_stale_stage(current, now):
            await ctx.scheduler.run_after(
                0, STAGE_ACTIONS[stage], {"card_id": card_id, "retry_count": 0}
            )
            log.info("Scheduled stage %s", stage.value)
            return stage

    log.info("No stage left to schedule")
    return None


async def _finish(ctx: PipelineContext, card_id: str) -> None:
    await ctx.scheduler.run_after(0, SCHEDULE_NEXT_STAGE, {"card_id": card_id})


async def run_classify_stage(ctx: PipelineContext, card_id: str, retry_count: int = 0) -> None:
    """Settle the classify stage.

    Card type detection happens before the card is stored, so the stage
    only records completion, keeping any confidence supplied with it.
    """
    card = await ctx.cards.get(card_id)
    if card is None:
        return
    current = card.processing_status.get(Stage.CLASSIFY)
    if current is None or (not stage_is_pending(current) and not is_stale_stage(current, ctx.clock())):
        await _finish(ctx, card_id)
        return

    confidence = current.confidence if current.confidence is not None else 1.0
    await _set_stage(
        ctx, card_id, Stage.CLASSIFY, lambda prev: complete_stage(ctx.clock(), prev, confidence)
    )
    await _finish(ctx, card_id)


async def run_categorize_stage(ctx: PipelineContext, card_id: str, retry_count: int = 0) -> None:
    """Categorize has no behaviour yet; the stage is marked completed."""
    card = await ctx.cards.get(card_id)
    if card is None:
        return
    current = card.processing_status.get(Stage.CATEGORIZE)
    if stage_is_pending(current) or is_stale_stage(current, ctx.clock()):
        await _set_stage(
            ctx, card_id, Stage.CATEGORIZE, lambda prev: complete_stage(ctx.clock(), prev, 1.0)
        )
    await _finish(ctx, card_id)


async def run_metadata_stage(
    ctx: PipelineContext,
    card_id: str,
    retry_count: int = 0,
    link_wait: int = 0,
) -> None:
    """Generate AI tags/summary (and transcript) for a card.

    Retries follow AI_METADATA_RETRY: 5s, 30s, 2min. After that the stage
    is marked failed and the periodic AI backfill picks the card up later.

    Args:
        ctx: Pipeline context.
        card_id: Card to enrich.
        retry_count: Retries already spent.
        link_wait: How many times the stage already waited for a link preview.
    """
    log = get_card_logger(__name__, card_id, Stage.METADATA.value)
    card = await ctx.cards.get(card_id)
    if card is None or card.is_deleted:
        log.warning("Card missing or deleted, skipping metadata stage")
        return

    now = ctx.clock()
    current = card.processing_status.get(Stage.METADATA)
    if current is not None and current.status == StageState.COMPLETED and card.ai_generated_at:
        await _finish(ctx, card_id)
        return
    if retry_count == 0 and stage_running(current) and not is_stale_stage(current, now):
        log.info("Metadata stage already running")
        return

    if ctx.generator is None:
        await _set_stage(
            ctx,
            card_id,
            Stage.METADATA,
            lambda prev: stage_failed(ctx.clock(), "AI provider not configured", prev),
        )
        await _finish(ctx, card_id)
        return

    if (
        card.type == CardType.LINK
        and card.metadata_status == MetadataStatus.PENDING
        and card.metadata is None
        and link_wait < MAX_LINK_PREVIEW_WAITS
    ):
        await ctx.scheduler.run_after(
            LINK_PREVIEW_WAIT_MS,
            RUN_METADATA_STAGE,
            {"card_id": card_id, "retry_count": retry_count, "link_wait": link_wait + 1},
        )
        log.debug("Waiting for link preview (%d)", link_wait + 1)
        return

    card = await _set_stage(
        ctx, card_id, Stage.METADATA, lambda prev: stage_in_progress(ctx.clock(), prev)
    )
    generator = ctx.generator

    async def attempt() -> AiMetadata:
        metadata = await generator.generate(card)
        if metadata.is_empty:
            raise NoMetadataGeneratedError("No AI metadata generated for card")
        return metadata

    outcome = await call_with_retry(
        attempt,
        policy=AI_METADATA_RETRY,
        retry_count=retry_count,
        scheduler=ctx.scheduler,
        action=RUN_METADATA_STAGE,
        args={"card_id": card_id, "link_wait": link_wait},
        log=log,
    )
    if outcome.rescheduled:
        return

    if outcome.succeeded:
        metadata = outcome.value
        now = ctx.clock()
        await _set_stage(
            ctx,
            card_id,
            Stage.METADATA,
            lambda prev: complete_stage(now, prev, metadata.confidence),
            ai_tags=metadata.tags,
            ai_summary=metadata.summary,
            ai_transcript=metadata.transcript or card.ai_transcript,
            ai_generated_at=now,
            ai_model_meta=generator.model_meta,
        )
        log.info(
            "AI metadata stored",
            extra={"tags": len(metadata.tags), "confidence": metadata.confidence},
        )
    else:
        error = outcome.error
        message = str(error) or type(error).__name__
        await _set_stage(
            ctx, card_id, Stage.METADATA, lambda prev: stage_failed(ctx.clock(), message, prev)
        )
        log.error("Metadata stage failed: %s", message)

    await _finish(ctx, card_id)


async def run_renderables_stage(
    ctx: PipelineContext, card_id: str, retry_count: int = 0
) -> None:
    """Generate the card's thumbnail.

    Retries follow RENDERABLES_RETRY: 5s, 15s. Card types without a
    matching renderer (or cards without a file) complete immediately.
    """
    log = get_card_logger(__name__, card_id, Stage.RENDERABLES.value)
    card = await ctx.cards.get(card_id)
    if card is None or card.is_deleted:
        log.warning("Card missing or deleted, skipping renderables stage")
        return

    now = ctx.clock()
    current = card.processing_status.get(Stage.RENDERABLES)
    if current is not None and current.status == StageState.COMPLETED:
        await _finish(ctx, card_id)
        return
    if retry_count == 0 and stage_running(current) and not is_stale_stage(current, now):
        log.info("Renderables stage already running")
        return

    renderer = ctx.renderer_for(card)
    if renderer is None:
        log.info("No renderer applies to this card, completing stage")
        await _set_stage(
            ctx, card_id, Stage.RENDERABLES, lambda prev: complete_stage(ctx.clock(), prev, 1.0)
        )
        await _finish(ctx, card_id)
        return

    await _set_stage(
        ctx, card_id, Stage.RENDERABLES, lambda prev: stage_in_progress(ctx.clock(), prev)
    )

    async def attempt():
        result = await renderer.render(card_id)
        if not result.success:
            raise RenderError(result.error or "render_failed", retryable=result.retryable)
        return result

    outcome = await call_with_retry(
        attempt,
        policy=RENDERABLES_RETRY,
        retry_count=retry_count,
        scheduler=ctx.scheduler,
        action=RUN_RENDERABLES_STAGE,
        args={"card_id": card_id},
        log=log,
    )
    if outcome.rescheduled:
        return

    if outcome.succeeded:
        await _set_stage(
            ctx, card_id, Stage.RENDERABLES, lambda prev: complete_stage(ctx.clock(), prev, 1.0)
        )
        log.info("Renderables stage completed", extra={"generated": outcome.value.generated})
    else:
        message = str(outcome.error) or "render_failed"
        await _set_stage(
            ctx, card_id, Stage.RENDERABLES, lambda prev: stage_failed(ctx.clock(), message, prev)
        )
        log.error("Renderables stage failed: %s", message)

    await _finish(ctx, card_id)


STAGE_RUNNERS: dict[Stage, Callable[..., Awaitable[None]]] = {
    Stage.CLASSIFY: run_classify_stage,
    Stage.CATEGORIZE: run_categorize_stage,
    Stage.METADATA: run_metadata_stage,
    Stage.RENDERABLES: run_renderables_stage,
}


async def requeue_stale_stages(
    ctx: PipelineContext, batch_size: int = STALE_SWEEP_BATCH_SIZE
) -> list[str]:
    """Reschedule cards whose running stage has gone stale.

    A stage stays in_progress when the job that ran it was lost, which
    would leave its card stuck. schedule_next_stage treats such a stage as
    abandoned and runs it again.

    Returns:
        Ids of the cards rescheduled.
    """
    cutoff = ctx.clock() - STALE_STAGE_MS
    cards = await ctx.cards.find_cards_with_stale_stages(started_before=cutoff, limit=batch_size)
    for card in cards:
        await ctx.scheduler.run_after(0, SCHEDULE_NEXT_STAGE, {"card_id": card.id})
    if cards:
        logger.warning("Requeued %d cards with stale stages", len(cards))
    return [card.id for card in cards]

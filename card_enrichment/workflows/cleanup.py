"""Purge of soft-deleted cards.

Runs daily. Each run handles one batch of cards deleted more than 30 days
ago: their file and thumbnail blobs are removed (best-effort, skipping
blobs another card shares), then the record itself. A full batch means
more candidates may remain, so the job reschedules itself immediately.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from card_enrichment.core.card import Card
from card_enrichment.workflows.context import PipelineContext

logger = logging.getLogger(__name__)

CLEANUP_DELETED_CARDS = "cleanup.run"

THIRTY_DAYS_MS = 30 * 24 * 60 * 60 * 1000
CLEANUP_BATCH_SIZE = 10


@dataclass
class CleanupResult:
    cleaned_count: int = 0
    has_more: bool = False
    failed_card_ids: list[str] = field(default_factory=list)


async def release_card_blob(
    ctx: PipelineContext, card: Card, handle: Optional[str], kind: str
) -> bool:
    """Delete a blob the card no longer needs unless another card still uses it.

    Blobs are content-addressed, so two cards holding the same bytes share
    one handle.

    Returns:
        True if the blob was deleted.
    """
    if not handle:
        return False
    if await ctx.cards.is_blob_referenced(handle, exclude_id=card.id):
        logger.info(
            "Keeping %s blob of card %s; still referenced by another card",
            kind,
            card.id,
            extra={"card_id": card.id, "blob": handle},
        )
        return False
    try:
        await ctx.blobs.delete(handle)
        return True
    except Exception as e:
        logger.warning(
            "Failed to delete %s blob for card %s: %s",
            kind,
            card.id,
            e,
            extra={"card_id": card.id, "blob": handle},
        )
        return False


async def cleanup_deleted_card(ctx: PipelineContext, card: Card) -> None:
    """Delete one soft-deleted card's blobs and then its record.

    Blobs still referenced by other cards are kept. Blob deletion failures
    are logged and do not stop the record deletion.
    """
    await release_card_blob(ctx, card, card.file_id, "file")
    if card.thumbnail_id != card.file_id:
        await release_card_blob(ctx, card, card.thumbnail_id, "thumbnail")
    await ctx.cards.delete(card.id)


async def cleanup_deleted_cards(
    ctx: PipelineContext, batch_size: int = CLEANUP_BATCH_SIZE
) -> CleanupResult:
    """Purge one batch of cards soft-deleted more than 30 days ago.

    Returns:
        CleanupResult with the number of purged cards, whether a follow-up
        run was scheduled, and ids whose record deletion failed.
    """
    cutoff = ctx.clock() - THIRTY_DAYS_MS
    cards = await ctx.cards.find_cards_pending_cleanup(deleted_before=cutoff, limit=batch_size)

    result = CleanupResult()
    for card in cards:
        try:
            await cleanup_deleted_card(ctx, card)
            result.cleaned_count += 1
        except Exception as e:
            logger.error("Failed to clean up card %s: %s", card.id, e, extra={"card_id": card.id})
            result.failed_card_ids.append(card.id)

    result.has_more = len(cards) == batch_size
    if result.has_more:
        await ctx.scheduler.run_after(0, CLEANUP_DELETED_CARDS, {"batch_size": batch_size})

    logger.info(
        "Cleanup purged %d cards (more: %s, failed: %d)",
        result.cleaned_count,
        result.has_more,
        len(result.failed_card_ids),
    )
    return result

"""Action name -> handler wiring for the scheduler worker."""

from card_enrichment.core.scheduler import ActionRegistry
from card_enrichment.workflows import pipeline
from card_enrichment.workflows.ai_backfill import RUN_AI_BACKFILL, enqueue_missing_ai_generation
from card_enrichment.workflows.cleanup import CLEANUP_DELETED_CARDS, cleanup_deleted_cards
from card_enrichment.workflows.link_metadata import (
    BACKFILL_LINK_METADATA,
    EXTRACT_LINK_METADATA,
    backfill_link_metadata,
    extract_link_metadata,
)


def build_registry() -> ActionRegistry:
    return ActionRegistry(
        {
            pipeline.START_CARD_PROCESSING: pipeline.start_card_processing,
            pipeline.SCHEDULE_NEXT_STAGE: pipeline.schedule_next_stage,
            pipeline.RUN_CLASSIFY_STAGE: pipeline.run_classify_stage,
            pipeline.RUN_CATEGORIZE_STAGE: pipeline.run_categorize_stage,
            pipeline.RUN_METADATA_STAGE: pipeline.run_metadata_stage,
            pipeline.RUN_RENDERABLES_STAGE: pipeline.run_renderables_stage,
            pipeline.REQUEUE_STALE_STAGES: pipeline.requeue_stale_stages,
            EXTRACT_LINK_METADATA: extract_link_metadata,
            BACKFILL_LINK_METADATA: backfill_link_metadata,
            RUN_AI_BACKFILL: enqueue_missing_ai_generation,
            CLEANUP_DELETED_CARDS: cleanup_deleted_cards,
        }
    )

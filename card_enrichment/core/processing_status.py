"""Per-card processing status state machine.

Pure functions, no I/O. Every component that changes a card's
processing_status builds the new map through these helpers so that
started_at/confidence continuity holds regardless of call order.
"""

from typing import Optional

from card_enrichment.core.card import (
    Card,
    CardType,
    ProcessingStatus,
    Stage,
    StageState,
    StageStatus,
)

RENDERABLE_CARD_TYPES = frozenset({CardType.IMAGE, CardType.VIDEO, CardType.DOCUMENT})
CATEGORIZE_CARD_TYPES = frozenset({CardType.LINK})


def stage_completed(now: int, confidence: float = 1.0) -> StageStatus:
    return StageStatus(
        status=StageState.COMPLETED,
        completed_at=now,
        confidence=confidence,
    )


def stage_pending() -> StageStatus:
    return StageStatus(status=StageState.PENDING)


def stage_in_progress(now: int, previous: Optional[StageStatus] = None) -> StageStatus:
    """Mark a stage as running, keeping the first start time."""
    return StageStatus(
        status=StageState.IN_PROGRESS,
        started_at=previous.started_at if previous and previous.started_at is not None else now,
        confidence=previous.confidence if previous else None,
    )


def stage_failed(
    now: int, error: str, previous: Optional[StageStatus] = None
) -> StageStatus:
    """Mark a stage as failed at `now` with an error message."""
    return StageStatus(
        status=StageState.FAILED,
        started_at=previous.started_at if previous and previous.started_at is not None else now,
        completed_at=now,
        confidence=previous.confidence if previous else None,
        error=error,
    )


def complete_stage(
    now: int, previous: Optional[StageStatus] = None, confidence: float = 1.0
) -> StageStatus:
    """Mark a stage as completed while keeping its original start time.

    Args:
        now: Completion timestamp (ms).
        previous: The stage's current status, if any.
        confidence: Confidence of the produced result (0-1).

    Returns:
        A completed StageStatus whose started_at falls back to the previous
        completion time, then to `now`.
    """
    started_at = now
    if previous is not None:
        if previous.started_at is not None:
            started_at = previous.started_at
        elif previous.completed_at is not None:
            started_at = previous.completed_at
    return StageStatus(
        status=StageState.COMPLETED,
        started_at=started_at,
        completed_at=now,
        confidence=confidence,
    )


def with_stage_status(
    status: Optional[ProcessingStatus], stage: Stage, new_status: StageStatus
) -> ProcessingStatus:
    """Return a copy of `status` with one stage replaced."""
    updated = dict(status or {})
    updated[stage] = new_status
    return updated


def should_run_renderables_stage(card_type: CardType) -> bool:
    return card_type in RENDERABLE_CARD_TYPES


def should_run_categorize_stage(card_type: CardType) -> bool:
    return card_type in CATEGORIZE_CARD_TYPES


def build_initial_processing_status(
    *,
    now: int,
    card_type: CardType,
    classification_status: Optional[StageStatus] = None,
    metadata_stage_needed: bool = True,
    categorize_stage_override: Optional[bool] = None,
    renderables_stage_override: Optional[bool] = None,
) -> ProcessingStatus:
    """Compute the starting status map for a new card.

    Stages the card type never needs are marked completed at `now` with
    confidence 1, so "fully enriched" is the same check for every type.

    Args:
        now: Creation timestamp (ms).
        card_type: The card's type.
        classification_status: Classify result supplied upstream. The
            classify stage is only present when this is given.
        metadata_stage_needed: False marks the metadata stage completed.
        categorize_stage_override: Force the categorize stage on or off.
        renderables_stage_override: Force the renderables stage on or off.

    Returns:
        Mapping of Stage to its initial StageStatus.
    """
    run_categorize = (
        categorize_stage_override
        if categorize_stage_override is not None
        else should_run_categorize_stage(card_type)
    )
    run_renderables = (
        renderables_stage_override
        if renderables_stage_override is not None
        else should_run_renderables_stage(card_type)
    )

    status: ProcessingStatus = {}
    if classification_status is not None:
        status[Stage.CLASSIFY] = classification_status
    status[Stage.CATEGORIZE] = stage_pending() if run_categorize else stage_completed(now, 1.0)
    status[Stage.METADATA] = stage_pending() if metadata_stage_needed else stage_completed(now, 1.0)
    status[Stage.RENDERABLES] = stage_pending() if run_renderables else stage_completed(now, 1.0)
    return status


def stage_needs_work(stage_status: Optional[StageStatus]) -> bool:
    """True when a stage is missing, pending or failed."""
    return stage_status is None or stage_status.status in (
        StageState.PENDING,
        StageState.FAILED,
    )


def stage_is_pending(stage_status: Optional[StageStatus]) -> bool:
    return stage_status is None or stage_status.status == StageState.PENDING


def stage_running(stage_status: Optional[StageStatus]) -> bool:
    return stage_status is not None and stage_status.status == StageState.IN_PROGRESS


def ensure_processing_status(card: Card, now: int) -> ProcessingStatus:
    """Fill in any stage missing from an older card record.

    Existing stage records are kept as they are.
    """
    defaults = build_initial_processing_status(now=now, card_type=card.type)
    status = dict(card.processing_status)
    for stage, default in defaults.items():
        status.setdefault(stage, default)
    return status


def required_stages(card_type: CardType) -> list[Stage]:
    """Stages whose work actually applies to this card type."""
    stages = [Stage.METADATA]
    if should_run_categorize_stage(card_type):
        stages.insert(0, Stage.CATEGORIZE)
    if should_run_renderables_stage(card_type):
        stages.append(Stage.RENDERABLES)
    return stages


def is_fully_enriched(status: Optional[ProcessingStatus]) -> bool:
    """True when every recorded stage has completed.

    Stages a type does not need are recorded as completed at creation, so
    no per-type special casing is required.
    """
    if not status:
        return False
    return all(s.status == StageState.COMPLETED for s in status.values())

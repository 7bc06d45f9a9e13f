"""Base renderer interface for thumbnail generation.

This module defines the abstract base class shared by the raster image,
video frame and SVG renderers, and the RenderResult dataclass every
renderer returns. BaseRenderer.render() owns the common contract: lookup,
applicability and idempotency checks, source URL resolution, blob storage,
card patching, and the catch-all that turns failures into results.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Optional

from card_enrichment.core.card import Card, CardType, FileMetadata
from card_enrichment.core.exceptions import EnrichmentError
from card_enrichment.core.logger import get_card_logger
from card_enrichment.core.stores import BaseCardStore, BlobStore


@dataclass
class RenderResult:
    """Result of a render attempt.

    Attributes:
        success: False only when something went wrong
        generated: True when a new thumbnail blob was stored
        thumbnail_id: Handle of the new or existing thumbnail
        error: Error code or message when success is False
        retryable: Whether a later attempt could succeed
        duration_ms: Processing time in milliseconds
    """

    success: bool
    generated: bool = False
    thumbnail_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    duration_ms: int = 0


@dataclass
class Thumbnail:
    """Output of a renderer's generate step.

    data is None when no thumbnail is needed but the original dimensions
    should still be recorded.
    """

    data: Optional[bytes]
    mime_type: str
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    duration: Optional[float] = None


def is_svg(card: Card) -> bool:
    """True when the card's source file is an SVG document."""
    mime = (card.mime_type or "").lower()
    name = (card.file_name or "").lower()
    return mime == "image/svg+xml" or name.endswith(".svg")


class BaseRenderer(ABC):
    """Abstract base class for renderers.

    Subclasses declare the card types they handle and implement generate().

    Example:
        class ImageRenderer(BaseRenderer):
            card_types = frozenset({CardType.IMAGE})

            async def generate(self, card, source_url) -> Thumbnail:
                ...
    """

    card_types: frozenset[CardType] = frozenset()
    name: str = "renderer"

    def __init__(self, cards: BaseCardStore, blobs: BlobStore):
        self.cards = cards
        self.blobs = blobs

    def accepts(self, card: Card) -> bool:
        return card.type in self.card_types and bool(card.file_id)

    @abstractmethod
    async def generate(self, card: Card, source_url: str) -> Thumbnail:
        """Produce the thumbnail for a card.

        Args:
            card: The card, already checked by accepts().
            source_url: Fetchable URL of the card's source file.

        Returns:
            Thumbnail with encoded bytes (or None data) and original dimensions.

        Raises:
            EnrichmentError: For expected failures (fetch, sandbox, invalid source).
        """

    async def render(self, card_id: str) -> RenderResult:
        """Generate and store a thumbnail for one card. Never raises."""
        start = time.monotonic()
        log = get_card_logger(__name__, card_id, "renderables")

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            card = await self.cards.get(card_id)
            if card is None:
                return RenderResult(success=False, error="card_not_found", duration_ms=elapsed())

            if not self.accepts(card):
                return RenderResult(success=True, generated=False, duration_ms=elapsed())

            if card.thumbnail_id:
                return RenderResult(
                    success=True,
                    generated=False,
                    thumbnail_id=card.thumbnail_id,
                    duration_ms=elapsed(),
                )

            source_url = await self.blobs.get_url(card.file_id)
            if not source_url:
                return RenderResult(success=False, error="missing_storage_url", duration_ms=elapsed())

            thumbnail = await self.generate(card, source_url)
            file_metadata = self._merge_file_metadata(card, thumbnail)

            if thumbnail.data is None:
                if file_metadata != card.file_metadata:
                    await self.cards.patch(card_id, file_metadata=file_metadata)
                log.info("%s skipped thumbnail, source already small", self.name)
                return RenderResult(success=True, generated=False, duration_ms=elapsed())

            thumbnail_id = await self.blobs.store(thumbnail.data, thumbnail.mime_type)
            await self.cards.patch(
                card_id, thumbnail_id=thumbnail_id, file_metadata=file_metadata
            )
            log.info(
                "%s stored thumbnail (%d bytes)",
                self.name,
                len(thumbnail.data),
                extra={"thumbnail_id": thumbnail_id},
            )
            return RenderResult(
                success=True,
                generated=True,
                thumbnail_id=thumbnail_id,
                duration_ms=elapsed(),
            )
        except EnrichmentError as e:
            log.warning("%s failed: %s", self.name, e, extra={"error_code": e.code})
            return RenderResult(
                success=False,
                error=str(e) or e.code,
                retryable=e.retryable,
                duration_ms=elapsed(),
            )
        except Exception as e:
            log.exception("%s crashed", self.name)
            return RenderResult(
                success=False,
                error=str(e) or type(e).__name__,
                retryable=True,
                duration_ms=elapsed(),
            )

    @staticmethod
    def _merge_file_metadata(card: Card, thumbnail: Thumbnail) -> FileMetadata:
        """Record original dimensions, keeping existing values when unknown."""
        current = card.file_metadata or FileMetadata()
        changes = {}
        if thumbnail.original_width:
            changes["width"] = thumbnail.original_width
        if thumbnail.original_height:
            changes["height"] = thumbnail.original_height
        if thumbnail.duration:
            changes["duration"] = thumbnail.duration
        return replace(current, **changes)

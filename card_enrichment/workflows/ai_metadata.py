"""AI metadata generation (tags, summary, transcript).

Dispatches on card type to a text, vision or audio routine and normalizes
what the model returns. This module performs no status bookkeeping and no
retries: the metadata stage action in pipeline.py owns both.
"""

import base64
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from card_enrichment.core.card import AiModelMeta, Card, CardType
from card_enrichment.core.exceptions import SourceUnavailableError
from card_enrichment.core.llm_factory import LLMProvider
from card_enrichment.core.stores import BlobStore
from card_enrichment.core.transcription import AudioTranscriber

logger = logging.getLogger(__name__)

MIN_TAGS = 2
MAX_TAGS = 8

_RESPONSE_FORMAT = (
    'Respond with a JSON object: {"tags": [...], "summary": "..."}. '
    f"Give {MIN_TAGS}-{MAX_TAGS} short, lowercase tags and a summary of 1-2 sentences."
)

TEXT_ANALYSIS_PROMPT = (
    "You analyze notes a user saved for later. Identify the main topics, "
    "entities and intent of the text. " + _RESPONSE_FORMAT
)

IMAGE_ANALYSIS_PROMPT = (
    "You analyze images a user saved for later. Describe the subject, "
    "style and any visible text so the image can be found by search. " + _RESPONSE_FORMAT
)

LINK_ANALYSIS_PROMPT = (
    "You analyze web pages a user bookmarked. Use the page title, "
    "description and any excerpt to capture what the page is about. " + _RESPONSE_FORMAT
)

# Confidence recorded on the metadata stage per routine
TEXT_CONFIDENCE = 0.95
IMAGE_CONFIDENCE = 0.9
AUDIO_CONFIDENCE = 0.85
LINK_CONFIDENCE = 0.9
DOCUMENT_CONFIDENCE = 0.85
PALETTE_CONFIDENCE = 0.9

# Larger images are passed by URL
MAX_INLINE_IMAGE_BYTES = 5 * 1024 * 1024


@dataclass
class AiMetadata:
    """Normalized AI output for one card."""

    tags: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    transcript: Optional[str] = None
    confidence: float = 1.0

    @property
    def is_empty(self) -> bool:
        return not self.tags and not self.summary and not self.transcript


def normalize_tags(raw: Any) -> list[str]:
    """Clean model tags: strings only, trimmed, deduplicated, at most MAX_TAGS."""
    if not isinstance(raw, list):
        return []
    tags: list[str] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        tag = item.strip().lstrip("#").strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        tags.append(tag)
        if len(tags) >= MAX_TAGS:
            break
    return tags


def normalize_summary(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    summary = raw.strip()
    return summary or None


def build_link_prompt(card: Card) -> str:
    """Describe a link card from its unfurled preview, else URL plus content."""
    lines = []
    preview = card.metadata
    raw_data = (preview.raw or {}).get("data", {}) if preview else {}
    if not isinstance(raw_data, dict):
        raw_data = {}

    title = (preview.title if preview else None) or card.metadata_title
    description = (preview.description if preview else None) or card.metadata_description
    if title:
        lines.append(f"Title: {title}")
    if description:
        lines.append(f"Description: {description}")
    if raw_data.get("author"):
        lines.append(f"Author: {raw_data['author']}")
    if raw_data.get("publisher"):
        lines.append(f"Publisher: {raw_data['publisher']}")
    if raw_data.get("date"):
        lines.append(f"Published: {raw_data['date']}")

    if lines:
        lines.append(f"URL: {card.url or ''}")
        if card.content:
            lines.append("")
            lines.append(card.content)
        return "\n".join(lines)
    return f"URL: {card.url or ''}\n{card.content}".strip()


def build_palette_prompt(card: Card) -> str:
    colors = ", ".join(
        f"{c.hex} ({c.name})" if c.name else c.hex for c in card.colors
    )
    parts = [f"Colors: {colors}"] if colors else []
    if card.content:
        parts.append(card.content)
    return "\n".join(parts)


def build_document_prompt(card: Card) -> str:
    return "\n".join(p for p in (card.file_name, card.content) if p)


class AiMetadataGenerator:
    """Generates tags/summary (and transcripts) for cards of every type.

    Attributes:
        llm: Provider used for text and vision calls.
        transcriber: Audio transcriber for audio cards.
        blobs: Blob store resolving source file URLs.
        model_version: Version string recorded in AiModelMeta.
    """

    def __init__(
        self,
        llm: LLMProvider,
        transcriber: Optional[AudioTranscriber],
        blobs: BlobStore,
        *,
        model_version: str = "2024-08-06",
    ):
        self.llm = llm
        self.transcriber = transcriber
        self.blobs = blobs
        self.model_version = model_version
        self._routines: dict[CardType, Callable[[Card], Awaitable[AiMetadata]]] = {
            CardType.TEXT: self._for_text,
            CardType.QUOTE: self._for_text,
            CardType.LINK: self._for_link,
            CardType.IMAGE: self._for_image,
            CardType.AUDIO: self._for_audio,
            CardType.DOCUMENT: self._for_document,
            CardType.VIDEO: self._for_document,
            CardType.PALETTE: self._for_palette,
        }

    @property
    def model_meta(self) -> AiModelMeta:
        return AiModelMeta(
            provider=self.llm.provider_name,
            model=self.llm.model,
            version=self.model_version,
        )

    async def generate(self, card: Card) -> AiMetadata:
        """Run the routine for the card's type.

        Returns:
            AiMetadata, possibly empty when the card has nothing to analyze.

        Raises:
            ExtractionError: The AI call failed (retryable).
            SourceUnavailableError: An image card's file is missing from storage.
        """
        return await self._routines[card.type](card)

    async def analyze_text(self, content: str, system_prompt: str, confidence: float) -> AiMetadata:
        if not content.strip():
            return AiMetadata(confidence=confidence)
        result = await self.llm.extract_structured(content, system_prompt)
        return AiMetadata(
            tags=normalize_tags(result.get("tags")),
            summary=normalize_summary(result.get("summary")),
            confidence=confidence,
        )

    async def _for_text(self, card: Card) -> AiMetadata:
        return await self.analyze_text(card.content, TEXT_ANALYSIS_PROMPT, TEXT_CONFIDENCE)

    async def _for_document(self, card: Card) -> AiMetadata:
        return await self.analyze_text(
            build_document_prompt(card), TEXT_ANALYSIS_PROMPT, DOCUMENT_CONFIDENCE
        )

    async def _for_palette(self, card: Card) -> AiMetadata:
        return await self.analyze_text(
            build_palette_prompt(card), TEXT_ANALYSIS_PROMPT, PALETTE_CONFIDENCE
        )

    async def _for_link(self, card: Card) -> AiMetadata:
        return await self.analyze_text(build_link_prompt(card), LINK_ANALYSIS_PROMPT, LINK_CONFIDENCE)

    async def _image_reference(self, handle: str) -> str:
        """Inline the stored image as a data URL, or fall back to its public URL."""
        blob = await self.blobs.read(handle)
        if blob is None:
            raise SourceUnavailableError(f"File {handle} not found in storage")
        data, mime_type = blob
        if len(data) <= MAX_INLINE_IMAGE_BYTES:
            return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        image_url = await self.blobs.get_url(handle)
        if not image_url:
            raise SourceUnavailableError(f"No storage URL for file {handle}")
        return image_url

    async def _for_image(self, card: Card) -> AiMetadata:
        if not card.file_id:
            return AiMetadata(confidence=IMAGE_CONFIDENCE)
        image_url = await self._image_reference(card.file_id)

        prompt = "Analyze this image."
        if card.content:
            prompt += f"\nUser note: {card.content}"
        result = await self.llm.extract_structured_from_images(
            prompt, [image_url], IMAGE_ANALYSIS_PROMPT
        )
        return AiMetadata(
            tags=normalize_tags(result.get("tags")),
            summary=normalize_summary(result.get("summary")),
            confidence=IMAGE_CONFIDENCE,
        )

    async def _for_audio(self, card: Card) -> AiMetadata:
        transcript = None
        if card.file_id and self.transcriber is not None:
            audio_url = await self.blobs.get_url(card.file_id)
            if audio_url:
                transcript = await self.transcriber.transcribe(audio_url, card.mime_type)
            else:
                logger.warning("Audio file has no storage URL", extra={"card_id": card.id})

        text = transcript or card.content
        metadata = await self.analyze_text(text, TEXT_ANALYSIS_PROMPT, AUDIO_CONFIDENCE)
        metadata.transcript = transcript
        return metadata


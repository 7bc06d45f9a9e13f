"""Card data model for the card enrichment pipeline.

This module defines the core data structures used throughout the pipeline:
- CardType: Closed set of card kinds, drives which stages apply
- Stage / StageState: Names and states of the per-card state machine
- StageStatus: Per-stage status record embedded in a card
- Card: Main dataclass representing a saved content item
"""

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CardType(str, Enum):
    """Kind of saved content. Immutable after creation."""

    TEXT = "text"
    LINK = "link"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    PALETTE = "palette"
    QUOTE = "quote"


class Stage(str, Enum):
    """Enrichment stages, in the order the orchestrator walks them."""

    CLASSIFY = "classify"
    CATEGORIZE = "categorize"
    METADATA = "metadata"
    RENDERABLES = "renderables"


class StageState(str, Enum):
    """Processing state for a single stage."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MetadataStatus(str, Enum):
    """Link unfurl state for link cards."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StageStatus:
    """Status record for one stage.

    started_at is kept across transitions until the stage is reset;
    completed_at is set on completed and failed.
    """

    status: StageState
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    confidence: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        for name in ("started_at", "completed_at", "confidence", "error"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageStatus":
        return cls(
            status=StageState(data["status"]),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            confidence=data.get("confidence"),
            error=data.get("error"),
        )


ProcessingStatus = dict[Stage, StageStatus]


@dataclass(frozen=True)
class FileMetadata:
    """Facts about a card's source file, filled in by the renderables stage."""

    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class AiModelMeta:
    """Provenance of AI-generated fields."""

    provider: str
    model: str
    version: str


@dataclass(frozen=True)
class PaletteColor:
    hex: str
    name: Optional[str] = None


@dataclass(frozen=True)
class LinkPreview:
    """Unfurled link metadata.

    The flat title/description/image/favicon fields are the legacy shape
    read by clients; raw keeps the whole unfurl payload for re-derivation.
    """

    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    favicon: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


def _compact(obj: Any) -> dict[str, Any]:
    """Dataclass fields as a dict, dropping None values."""
    return {
        f.name: getattr(obj, f.name)
        for f in fields(obj)
        if getattr(obj, f.name) is not None
    }


@dataclass(frozen=True)
class Card:
    """A saved content item.

    Required fields:
        id: Opaque card identifier
        user_id: Owning user
        type: CardType, drives which stages apply

    The pipeline only mutates the AI, link, file-metadata, thumbnail and
    processing_status fields. Updates go through CardStore.patch, which
    returns a new instance.
    """

    id: str
    user_id: str
    type: CardType

    # Content
    content: str = ""
    url: Optional[str] = None
    notes: Optional[str] = None
    file_id: Optional[str] = None
    thumbnail_id: Optional[str] = None
    file_metadata: Optional[FileMetadata] = None
    colors: list[PaletteColor] = field(default_factory=list)

    # AI enrichment
    ai_tags: Optional[list[str]] = None
    ai_summary: Optional[str] = None
    ai_transcript: Optional[str] = None
    ai_generated_at: Optional[int] = None
    ai_model_meta: Optional[AiModelMeta] = None

    # Link enrichment
    metadata: Optional[LinkPreview] = None
    metadata_status: Optional[MetadataStatus] = None
    metadata_title: Optional[str] = None
    metadata_description: Optional[str] = None

    # Pipeline state
    processing_status: ProcessingStatus = field(default_factory=dict)
    workflow_id: Optional[str] = None

    # Lifecycle
    is_deleted: bool = False
    deleted_at: Optional[int] = None
    created_at: int = 0
    updated_at: Optional[int] = None

    @property
    def file_name(self) -> Optional[str]:
        return self.file_metadata.file_name if self.file_metadata else None

    @property
    def mime_type(self) -> Optional[str]:
        return self.file_metadata.mime_type if self.file_metadata else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif f.name == "processing_status":
                value = {stage.value: s.to_dict() for stage, s in value.items()}
            elif f.name == "colors":
                value = [_compact(c) for c in value]
            elif isinstance(value, (FileMetadata, AiModelMeta, LinkPreview)):
                value = _compact(value)
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Card":
        """Build a Card from to_dict() output or an API request body.

        Raises:
            KeyError: If id, user_id or type is missing.
            ValueError: If type or a status value is unknown.
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        values["type"] = CardType(values["type"])
        if values.get("file_metadata") is not None:
            values["file_metadata"] = FileMetadata(**values["file_metadata"])
        if values.get("ai_model_meta") is not None:
            values["ai_model_meta"] = AiModelMeta(**values["ai_model_meta"])
        if values.get("metadata") is not None:
            values["metadata"] = LinkPreview(**values["metadata"])
        if values.get("metadata_status") is not None:
            values["metadata_status"] = MetadataStatus(values["metadata_status"])
        if values.get("colors"):
            values["colors"] = [PaletteColor(**c) for c in values["colors"]]
        if values.get("processing_status"):
            values["processing_status"] = {
                Stage(name): StageStatus.from_dict(s)
                for name, s in values["processing_status"].items()
            }
        return cls(**values)

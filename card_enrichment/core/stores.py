"""Card and blob stores.

The pipeline only talks to storage through these narrow interfaces:
point read/patch/delete of a card by id, ordered scans with a predicate,
and a content-addressed blob store. JsonCardStore persists to a JSON file
for durability across restarts; the in-memory store backs tests and
one-off tooling.
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from card_enrichment.core.card import Card, CardType, StageState
from card_enrichment.core.exceptions import CardNotFoundError

logger = logging.getLogger(__name__)

CardPredicate = Callable[[Card], bool]


def _scan_key(card: Card) -> tuple[int, str]:
    return (card.created_at, card.id)


def encode_cursor(card: Card) -> str:
    """Opaque cursor pointing just past `card` in scan order."""
    return f"{card.created_at}:{card.id}"


def decode_cursor(cursor: str) -> tuple[int, str]:
    created_at, _, card_id = cursor.partition(":")
    return int(created_at), card_id


class BaseCardStore(ABC):
    """Async card store interface plus the indexed queries the jobs need.

    Every mutation is a single-document operation; no multi-card
    transactions are offered.
    """

    @abstractmethod
    async def get(self, card_id: str) -> Optional[Card]:
        """Return the card or None if it does not exist."""

    @abstractmethod
    async def insert(self, card: Card) -> Card:
        """Store a new card (overwrites an existing id)."""

    @abstractmethod
    async def patch(self, card_id: str, **changes: Any) -> Card:
        """Apply field changes to one card and return the updated card.

        Raises:
            CardNotFoundError: If the card does not exist.
        """

    @abstractmethod
    async def delete(self, card_id: str) -> None:
        """Remove a card record. Missing ids are ignored."""

    @abstractmethod
    async def scan(
        self,
        predicate: Optional[CardPredicate] = None,
        *,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> list[Card]:
        """Cards matching `predicate`, ordered by (created_at, id).

        Args:
            predicate: Filter; all cards when None.
            limit: Maximum number of cards returned.
            cursor: Only return cards after this cursor (see encode_cursor).
        """

    async def list_by_user(self, user_id: str, *, limit: Optional[int] = None) -> list[Card]:
        return await self.scan(lambda c: c.user_id == user_id, limit=limit)

    async def find_cards_missing_ai(self, *, created_before: int, limit: int) -> list[Card]:
        """Live cards older than `created_before` that never got AI metadata."""
        return await self.scan(
            lambda c: (
                not c.is_deleted
                and c.created_at < created_before
                and c.ai_generated_at is None
            ),
            limit=limit,
        )

    async def find_cards_pending_cleanup(self, *, deleted_before: int, limit: int) -> list[Card]:
        """Soft-deleted cards whose deletion is older than `deleted_before`."""
        return await self.scan(
            lambda c: (
                c.is_deleted
                and c.deleted_at is not None
                and c.deleted_at < deleted_before
            ),
            limit=limit,
        )

    async def find_cards_with_stale_stages(self, *, started_before: int, limit: int) -> list[Card]:
        """Live cards with a stage still in progress since before `started_before`."""
        return await self.scan(
            lambda c: (
                not c.is_deleted
                and any(
                    s.status == StageState.IN_PROGRESS and (s.started_at or 0) < started_before
                    for s in c.processing_status.values()
                )
            ),
            limit=limit,
        )

    async def is_blob_referenced(self, handle: str, *, exclude_id: Optional[str] = None) -> bool:
        """Whether any card other than `exclude_id` points at blob `handle`.

        Soft-deleted cards count; their blobs are released when they are purged.
        """
        matches = await self.scan(
            lambda c: c.id != exclude_id and handle in (c.file_id, c.thumbnail_id),
            limit=1,
        )
        return bool(matches)

    async def find_link_cards_missing_preview(
        self, *, limit: int, cursor: Optional[str] = None
    ) -> list[Card]:
        """Live link cards with a URL but no raw unfurl payload."""
        return await self.scan(
            lambda c: (
                c.type == CardType.LINK
                and not c.is_deleted
                and bool(c.url)
                and (c.metadata is None or c.metadata.raw is None)
            ),
            limit=limit,
            cursor=cursor,
        )


class InMemoryCardStore(BaseCardStore):
    """Dict-backed card store."""

    def __init__(self, cards: Optional[list[Card]] = None):
        self._cards: dict[str, Card] = {c.id: c for c in cards or []}
        self._lock = asyncio.Lock()

    def _persist(self) -> None:
        """Hook for durable subclasses."""

    async def get(self, card_id: str) -> Optional[Card]:
        return self._cards.get(card_id)

    async def insert(self, card: Card) -> Card:
        async with self._lock:
            self._cards[card.id] = card
            self._persist()
        return card

    async def patch(self, card_id: str, **changes: Any) -> Card:
        async with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                raise CardNotFoundError(f"Card {card_id} not found")
            updated = replace(card, **changes)
            self._cards[card_id] = updated
            self._persist()
        return updated

    async def delete(self, card_id: str) -> None:
        async with self._lock:
            if self._cards.pop(card_id, None) is not None:
                self._persist()

    async def scan(
        self,
        predicate: Optional[CardPredicate] = None,
        *,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> list[Card]:
        after = decode_cursor(cursor) if cursor else None
        results = []
        for card in sorted(self._cards.values(), key=_scan_key):
            if after is not None and _scan_key(card) <= after:
                continue
            if predicate is not None and not predicate(card):
                continue
            results.append(card)
            if limit is not None and len(results) >= limit:
                break
        return results


class JsonCardStore(InMemoryCardStore):
    """Card store persisted to a JSON file.

    Creates the file if it doesn't exist on first use. The whole file is
    rewritten after every mutation.

    Attributes:
        path: Path to the JSON file.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self.load()

    def load(self) -> None:
        """Load cards from the JSON file (empty store when missing)."""
        if not self.path.exists():
            self._cards = {}
            return

        with open(self.path, encoding="utf-8") as f:
            state = json.load(f)

        self._cards = {
            data["id"]: Card.from_dict(data) for data in state.get("cards", [])
        }

    def _persist(self) -> None:
        # Ensure parent directory exists
        self.path.parent.mkdir(parents=True, exist_ok=True)

        state = {
            "cards": [c.to_dict() for c in sorted(self._cards.values(), key=_scan_key)],
            "last_updated": datetime.now().isoformat(),
        }
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, ensure_ascii=False)


class BlobStore(Protocol):
    """Content-addressed binary storage."""

    async def store(self, data: bytes, mime_type: str) -> str: ...

    async def get_url(self, handle: str) -> Optional[str]: ...

    async def read(self, handle: str) -> Optional[tuple[bytes, str]]: ...

    async def delete(self, handle: str) -> None: ...


class LocalBlobStore:
    """Blob store on the local filesystem.

    Handles are the SHA-256 of the content, so storing the same bytes
    twice yields the same handle. Each blob has a JSON side-car holding its
    MIME type and size.

    Attributes:
        root: Directory holding blobs.
        public_base_url: URL prefix under which /blobs/{handle} is served.
    """

    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _blob_path(self, handle: str) -> Path:
        if not handle or not all(ch in "0123456789abcdef" for ch in handle):
            raise ValueError(f"Invalid blob handle: {handle!r}")
        return self.root / handle

    def _meta_path(self, handle: str) -> Path:
        return self._blob_path(handle).with_suffix(".json")

    async def store(self, data: bytes, mime_type: str) -> str:
        handle = hashlib.sha256(data).hexdigest()
        self.root.mkdir(parents=True, exist_ok=True)
        self._blob_path(handle).write_bytes(data)
        with open(self._meta_path(handle), "w", encoding="utf-8") as f:
            json.dump({"mime_type": mime_type, "size": len(data)}, f)
        return handle

    async def get_url(self, handle: str) -> Optional[str]:
        try:
            exists = self._blob_path(handle).exists()
        except ValueError:
            return None
        if not exists:
            return None
        return f"{self.public_base_url}/blobs/{handle}"

    async def read(self, handle: str) -> Optional[tuple[bytes, str]]:
        """Return (bytes, mime_type) or None when the blob is missing."""
        try:
            path = self._blob_path(handle)
        except ValueError:
            return None
        if not path.exists():
            return None
        mime_type = "application/octet-stream"
        meta_path = self._meta_path(handle)
        if meta_path.exists():
            with open(meta_path, encoding="utf-8") as f:
                mime_type = json.load(f).get("mime_type", mime_type)
        return path.read_bytes(), mime_type

    async def delete(self, handle: str) -> None:
        """Delete a blob.

        Raises:
            FileNotFoundError: If no blob has this handle.
        """
        path = self._blob_path(handle)
        path.unlink()
        self._meta_path(handle).unlink(missing_ok=True)

"""Shared test fixtures for the card enrichment pipeline.

Provides an in-memory card store, a scheduler that records instead of
running, a controllable clock and a temporary blob store, so workflow
tests never touch real storage or the network.
"""

from pathlib import Path
from typing import Any

import pytest

from card_enrichment.core.card import Card, CardType
from card_enrichment.core.stores import InMemoryCardStore, LocalBlobStore
from card_enrichment.workflows.context import PipelineContext

# 2024-06-01T00:00:00Z
BASE_TIME_MS = 1_717_200_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = BASE_TIME_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingScheduler:
    """Scheduler that records run_after calls without running them."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, str, dict[str, Any]]] = []

    async def run_after(self, delay_ms: int, action: str, args: dict[str, Any]) -> str:
        self.calls.append((delay_ms, action, dict(args)))
        return f"job-{len(self.calls)}"

    def actions(self) -> list[str]:
        return [action for _, action, _ in self.calls]

    def calls_for(self, action: str) -> list[tuple[int, dict[str, Any]]]:
        return [(delay, args) for delay, name, args in self.calls if name == action]

    def clear(self) -> None:
        self.calls.clear()


def make_card(card_id: str = "card-1", card_type: CardType = CardType.TEXT, **overrides: Any) -> Card:
    """Build a card with sensible defaults for tests."""
    values: dict[str, Any] = {
        "id": card_id,
        "user_id": "user-1",
        "type": card_type,
        "content": "Notes about asyncio task groups",
        "created_at": BASE_TIME_MS - 60_000,
    }
    values.update(overrides)
    return Card(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cards() -> InMemoryCardStore:
    return InMemoryCardStore()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    """Blob store rooted in a temporary directory.

    Args:
        tmp_path: pytest's built-in temp directory fixture.
    """
    return LocalBlobStore(tmp_path / "blobs", "http://blobs.test")


@pytest.fixture
def ctx(cards, blobs, scheduler, clock) -> PipelineContext:
    return PipelineContext(cards=cards, blobs=blobs, scheduler=scheduler, clock=clock)

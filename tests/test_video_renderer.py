"""Tests for the video frame renderer."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from card_enrichment.core.card import CardType, FileMetadata
from card_enrichment.core.exceptions import SandboxError
from card_enrichment.renderables.sandbox import SandboxResult
from card_enrichment.renderables.video import (
    MAX_FRAME_HEIGHT,
    MAX_FRAME_WIDTH,
    SANDBOX_TIMEOUT_SEC,
    VideoRenderer,
    build_video_frame_script,
)
from conftest import make_card


def _sandbox(result=None, error=None) -> MagicMock:
    sandbox = MagicMock()
    sandbox.execute = AsyncMock(return_value=result, side_effect=error)
    return sandbox


def _frame_payload() -> dict:
    return {
        "success": True,
        "data": base64.b64encode(b"frame").decode(),
        "width": 400,
        "height": 225,
        "mimeType": "image/webp",
        "originalWidth": 1280,
        "originalHeight": 720,
        "duration": 31.2,
    }


class TestBuildScript:
    def test_embeds_arguments(self):
        script = build_video_frame_script("https://blobs.test/blobs/v")

        args = json.loads(script.rsplit("}, ", 1)[1].rsplit(");", 1)[0])
        assert args["videoUrl"] == "https://blobs.test/blobs/v"
        assert args["maxWidth"] == MAX_FRAME_WIDTH
        assert args["maxHeight"] == MAX_FRAME_HEIGHT
        assert "__ARGS__" not in script


class TestVideoRenderer:
    """Frame capture through the sandbox."""

    @pytest.mark.asyncio
    async def test_stores_frame(self, cards, blobs):
        file_id = await blobs.store(b"video-bytes", "video/mp4")
        await cards.insert(
            make_card(
                "vid-1",
                CardType.VIDEO,
                file_id=file_id,
                file_metadata=FileMetadata(file_name="clip.mp4", mime_type="video/mp4"),
            )
        )
        sandbox = _sandbox(SandboxResult(success=True, result=_frame_payload()))

        result = await VideoRenderer(cards, blobs, sandbox).render("vid-1")

        assert result.success is True
        assert result.generated is True
        code = sandbox.execute.call_args.args[0]
        assert f"http://blobs.test/blobs/{file_id}" in code
        assert sandbox.execute.call_args.kwargs["timeout_sec"] == SANDBOX_TIMEOUT_SEC

        card = await cards.get("vid-1")
        assert card.file_metadata.width == 1280
        assert card.file_metadata.height == 720
        assert card.file_metadata.duration == 31.2
        assert await blobs.read(card.thumbnail_id) == (b"frame", "image/webp")

    @pytest.mark.asyncio
    async def test_script_failure_is_retryable(self, cards, blobs):
        file_id = await blobs.store(b"video-bytes", "video/mp4")
        await cards.insert(make_card("vid-1", CardType.VIDEO, file_id=file_id))
        sandbox = _sandbox(
            SandboxResult(success=True, result={"success": False, "error": "timeout"})
        )

        result = await VideoRenderer(cards, blobs, sandbox).render("vid-1")

        assert result.success is False
        assert result.retryable is True
        assert "timeout" in result.error
        assert (await cards.get("vid-1")).thumbnail_id is None

    @pytest.mark.asyncio
    async def test_sandbox_unreachable(self, cards, blobs):
        file_id = await blobs.store(b"video-bytes", "video/mp4")
        await cards.insert(make_card("vid-1", CardType.VIDEO, file_id=file_id))
        sandbox = _sandbox(error=SandboxError("kernel_execution_failed: refused"))

        result = await VideoRenderer(cards, blobs, sandbox).render("vid-1")

        assert result.success is False
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_video_without_file_skipped(self, cards, blobs):
        await cards.insert(make_card("vid-1", CardType.VIDEO))
        sandbox = _sandbox()

        result = await VideoRenderer(cards, blobs, sandbox).render("vid-1")

        assert result.success is True
        assert result.generated is False
        sandbox.execute.assert_not_called()

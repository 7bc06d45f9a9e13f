"""Tests for the PDF renderer."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from card_enrichment.core.card import CardType, FileMetadata
from card_enrichment.core.config import Config
from card_enrichment.renderables.pdf import (
    MAX_PDF_WIDTH,
    PDF_VIEWER_URL,
    PdfRenderer,
    build_pdf_render_script,
)
from card_enrichment.renderables.sandbox import SandboxResult
from card_enrichment.workflows.context import build_context
from conftest import make_card


def _pdf_card(file_id: str, mime_type: str = "application/pdf", **overrides):
    return make_card(
        "doc-1",
        CardType.DOCUMENT,
        file_id=file_id,
        file_metadata=FileMetadata(file_name="paper.pdf", mime_type=mime_type),
        **overrides,
    )


def _sandbox(result: SandboxResult) -> MagicMock:
    sandbox = MagicMock()
    sandbox.execute = AsyncMock(return_value=result)
    return sandbox


def _page_result(**overrides) -> SandboxResult:
    payload = {
        "success": True,
        "data": base64.b64encode(b"page png").decode(),
        "width": 400,
        "height": 518,
        "mimeType": "image/png",
        "originalWidth": 612,
        "originalHeight": 792,
    }
    payload.update(overrides)
    return SandboxResult(success=True, result=payload)


class TestScript:
    def test_script_arguments(self):
        script = build_pdf_render_script("http://blobs.test/blobs/abc")

        args = json.loads(script.split("const args = ", 1)[1].split(";\n", 1)[0])
        assert args["pdfUrl"] == "http://blobs.test/blobs/abc"
        assert args["viewerUrl"] == PDF_VIEWER_URL
        assert args["viewportWidth"] == MAX_PDF_WIDTH + 50
        assert args["maxWidth"] == 400

    def test_waits_for_first_page_canvas(self):
        script = build_pdf_render_script("http://blobs.test/blobs/abc")

        assert "waitForSelector('#viewer .page canvas'" in script
        assert "__ARGS__" not in script

    def test_quotes_in_url_are_escaped(self):
        script = build_pdf_render_script("http://x.test/it's.pdf")

        args = json.loads(script.split("const args = ", 1)[1].split(";\n", 1)[0])
        assert args["pdfUrl"] == "http://x.test/it's.pdf"


class TestPdfRenderer:
    """First page captured in the sandbox, page size stored."""

    @pytest.mark.asyncio
    async def test_renders_first_page(self, cards, blobs):
        file_id = await blobs.store(b"%PDF-1.7", "application/pdf")
        await cards.insert(_pdf_card(file_id))
        sandbox = _sandbox(_page_result())

        result = await PdfRenderer(cards, blobs, sandbox).render("doc-1")

        assert result.success is True
        assert result.generated is True
        card = await cards.get("doc-1")
        assert (card.file_metadata.width, card.file_metadata.height) == (612, 792)
        assert card.file_metadata.mime_type == "application/pdf"
        assert await blobs.read(card.thumbnail_id) == (b"page png", "image/png")
        script = sandbox.execute.call_args.args[0]
        assert f"http://blobs.test/blobs/{file_id}" in script
        assert sandbox.execute.call_args.kwargs["timeout_sec"] == 120

    @pytest.mark.asyncio
    async def test_script_failure_is_retryable(self, cards, blobs):
        file_id = await blobs.store(b"%PDF-1.7", "application/pdf")
        await cards.insert(_pdf_card(file_id))
        sandbox = _sandbox(
            SandboxResult(success=True, result={"success": False, "error": "pdf_canvas_missing"})
        )

        result = await PdfRenderer(cards, blobs, sandbox).render("doc-1")

        assert result.success is False
        assert result.retryable is True
        assert "pdf_canvas_missing" in result.error
        assert (await cards.get("doc-1")).thumbnail_id is None

    @pytest.mark.asyncio
    async def test_other_documents_not_accepted(self, cards, blobs):
        await cards.insert(_pdf_card("ab", mime_type="application/msword"))
        sandbox = _sandbox(_page_result())

        result = await PdfRenderer(cards, blobs, sandbox).render("doc-1")

        assert result.success is True
        assert result.generated is False
        sandbox.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_thumbnail_kept(self, cards, blobs):
        await cards.insert(_pdf_card("ab", thumbnail_id="cd"))
        sandbox = _sandbox(_page_result())

        result = await PdfRenderer(cards, blobs, sandbox).render("doc-1")

        assert result.generated is False
        assert result.thumbnail_id == "cd"
        sandbox.execute.assert_not_called()

    def test_accepts_only_pdf_documents(self, cards, blobs):
        renderer = PdfRenderer(cards, blobs, _sandbox(_page_result()))

        assert renderer.accepts(_pdf_card("ab"))
        assert renderer.accepts(_pdf_card("ab", mime_type="Application/PDF"))
        assert not renderer.accepts(_pdf_card(None))
        assert not renderer.accepts(
            make_card(
                "img-1",
                CardType.IMAGE,
                file_id="ab",
                file_metadata=FileMetadata(mime_type="application/pdf"),
            )
        )


class TestContextWiring:
    def test_registered_with_sandbox_key(self, tmp_path):
        config = Config(openai_api_key="", kernel_api_key="kernel-key", data_dir=tmp_path)

        ctx, _ = build_context(config)

        assert isinstance(ctx.renderer_for(_pdf_card("ab")), PdfRenderer)

    def test_disabled_without_sandbox_key(self, tmp_path):
        config = Config(openai_api_key="", data_dir=tmp_path)

        ctx, _ = build_context(config)

        assert ctx.renderer_for(_pdf_card("ab")) is None

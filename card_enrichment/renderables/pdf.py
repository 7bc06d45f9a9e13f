"""PDF thumbnail renderer.

The first page is rendered by Mozilla's hosted PDF.js viewer inside the
browser sandbox, then copied to a canvas no wider than MAX_PDF_WIDTH and
returned as PNG. The page size in PDF points is kept as the card's
original dimensions.
"""

import json
import logging

from card_enrichment.core.card import Card, CardType
from card_enrichment.core.stores import BaseCardStore, BlobStore
from card_enrichment.renderables.base import BaseRenderer, Thumbnail
from card_enrichment.renderables.sandbox import BrowserSandbox, frame_from_result

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
PDF_VIEWER_URL = "https://mozilla.github.io/pdf.js/web/viewer.html?file="

MAX_PDF_WIDTH = 400
VIEWPORT_WIDTH = MAX_PDF_WIDTH + 50
VIEWPORT_HEIGHT = 700
PAGE_LOAD_TIMEOUT_MS = 60_000
CANVAS_TIMEOUT_MS = 30_000
RENDER_SETTLE_MS = 2_000
SANDBOX_TIMEOUT_SEC = 120

PDF_RENDER_SCRIPT = """
const args = __ARGS__;
await page.setViewportSize({ width: args.viewportWidth, height: args.viewportHeight });
await page.goto(args.viewerUrl + encodeURIComponent(args.pdfUrl), {
  waitUntil: 'networkidle',
  timeout: args.pageTimeoutMs,
});
await page.waitForSelector('#viewer .page canvas', { timeout: args.canvasTimeoutMs });
await new Promise((r) => setTimeout(r, args.settleMs));

return await page.evaluate(async ({ maxWidth }) => {
  try {
    const source = document.querySelector('#viewer .page canvas');
    if (!source) {
      return { success: false, error: 'pdf_canvas_missing' };
    }

    let originalWidth = source.width;
    let originalHeight = source.height;
    const app = window.PDFViewerApplication;
    if (app && app.pdfDocument) {
      const firstPage = await app.pdfDocument.getPage(1);
      const viewport = firstPage.getViewport({ scale: 1 });
      originalWidth = viewport.width;
      originalHeight = viewport.height;
    }

    const scale = Math.min(1, maxWidth / source.width);
    const targetWidth = Math.max(1, Math.round(source.width * scale));
    const targetHeight = Math.max(1, Math.round(source.height * scale));
    const canvas = document.createElement('canvas');
    canvas.width = targetWidth;
    canvas.height = targetHeight;
    const context = canvas.getContext('2d');
    context.fillStyle = '#ffffff';
    context.fillRect(0, 0, targetWidth, targetHeight);
    context.drawImage(source, 0, 0, targetWidth, targetHeight);
    const pngUrl = canvas.toDataURL('image/png');
    return {
      success: true,
      data: pngUrl.split(',')[1],
      width: targetWidth,
      height: targetHeight,
      mimeType: 'image/png',
      originalWidth: Math.round(originalWidth),
      originalHeight: Math.round(originalHeight),
    };
  } catch (e) {
    return { success: false, error: String(e) };
  }
}, { maxWidth: args.maxWidth });
"""


def build_pdf_render_script(pdf_url: str) -> str:
    args = {
        "pdfUrl": pdf_url,
        "viewerUrl": PDF_VIEWER_URL,
        "viewportWidth": VIEWPORT_WIDTH,
        "viewportHeight": VIEWPORT_HEIGHT,
        "maxWidth": MAX_PDF_WIDTH,
        "pageTimeoutMs": PAGE_LOAD_TIMEOUT_MS,
        "canvasTimeoutMs": CANVAS_TIMEOUT_MS,
        "settleMs": RENDER_SETTLE_MS,
    }
    return PDF_RENDER_SCRIPT.replace("__ARGS__", json.dumps(args))


class PdfRenderer(BaseRenderer):
    """First-page thumbnails for PDF document cards."""

    card_types = frozenset({CardType.DOCUMENT})
    name = "pdf_renderer"

    def __init__(self, cards: BaseCardStore, blobs: BlobStore, sandbox: BrowserSandbox):
        super().__init__(cards, blobs)
        self.sandbox = sandbox

    def accepts(self, card: Card) -> bool:
        return super().accepts(card) and (card.mime_type or "").lower() == PDF_MIME_TYPE

    async def generate(self, card: Card, source_url: str) -> Thumbnail:
        result = await self.sandbox.execute(
            build_pdf_render_script(source_url), timeout_sec=SANDBOX_TIMEOUT_SEC
        )
        frame = frame_from_result(result)
        logger.debug(
            "Rendered PDF page %dx%d for card %s", frame.width, frame.height, card.id
        )
        return Thumbnail(
            data=frame.data,
            mime_type=frame.mime_type,
            original_width=frame.original_width,
            original_height=frame.original_height,
        )

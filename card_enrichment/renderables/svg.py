"""SVG thumbnail renderer.

The SVG source is validated and measured locally, then rasterized to PNG
in the browser sandbox. PNG keeps vector edges and text sharp.
"""

import base64
import json
import logging
import re
from typing import Optional

from card_enrichment.core.card import Card, CardType
from card_enrichment.core.exceptions import InvalidSourceError
from card_enrichment.core.http_client import fetch_text
from card_enrichment.core.stores import BaseCardStore, BlobStore
from card_enrichment.renderables.base import BaseRenderer, Thumbnail, is_svg
from card_enrichment.renderables.sandbox import BrowserSandbox, frame_from_result

logger = logging.getLogger(__name__)

MAX_SVG_WIDTH = 500
MAX_SVG_HEIGHT = 500
SVG_RENDER_TIMEOUT_MS = 30_000
SANDBOX_TIMEOUT_SEC = 60

_NUMBER = r"([0-9]*\.?[0-9]+)"
# Lookbehind keeps stroke-width / line-height from matching
WIDTH_ATTR = re.compile(r"(?<![\w-])width\s*=\s*[\"']\s*" + _NUMBER, re.IGNORECASE)
HEIGHT_ATTR = re.compile(r"(?<![\w-])height\s*=\s*[\"']\s*" + _NUMBER, re.IGNORECASE)
VIEWBOX_ATTR = re.compile(r"viewBox\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
SVG_TAG = re.compile(r"<svg\b[^>]*>", re.IGNORECASE | re.DOTALL)

SVG_RENDER_SCRIPT = """
await page.setViewportSize({ width: 800, height: 600 });
await page.goto('about:blank');
return await page.evaluate(async ({ dataUrl, width, height, maxWidth, maxHeight, timeoutMs }) => {
  return await new Promise((resolve) => {
    const img = new Image();
    const timer = setTimeout(() => resolve({ success: false, error: 'timeout' }), timeoutMs);
    const fail = (error) => {
      clearTimeout(timer);
      resolve({ success: false, error: String(error) });
    };

    img.onerror = () => fail('svg_load_failed');
    img.onload = () => {
      try {
        const sourceWidth = width || img.naturalWidth || maxWidth;
        const sourceHeight = height || img.naturalHeight || maxHeight;
        const scale = Math.min(maxWidth / sourceWidth, maxHeight / sourceHeight);
        const targetWidth = Math.max(1, Math.round(sourceWidth * scale));
        const targetHeight = Math.max(1, Math.round(sourceHeight * scale));
        const canvas = document.createElement('canvas');
        canvas.width = targetWidth;
        canvas.height = targetHeight;
        canvas.getContext('2d').drawImage(img, 0, 0, targetWidth, targetHeight);
        const pngUrl = canvas.toDataURL('image/png');
        clearTimeout(timer);
        resolve({
          success: true,
          data: pngUrl.split(',')[1],
          width: targetWidth,
          height: targetHeight,
          mimeType: 'image/png',
          originalWidth: sourceWidth,
          originalHeight: sourceHeight,
        });
      } catch (e) {
        fail(e);
      }
    };
    img.src = dataUrl;
  });
}, __ARGS__);
"""


def validate_svg(content: str) -> str:
    """Return the stripped SVG text.

    Raises:
        InvalidSourceError: If the content is not an SVG document.
    """
    text = content.lstrip("\ufeff").strip()
    if not (text.startswith("<svg") or text.startswith("<?xml")):
        raise InvalidSourceError("Source is not an SVG document", code="invalid_svg")
    return text


def extract_svg_dimensions(content: str) -> tuple[Optional[int], Optional[int]]:
    """Native size from the root element's width/height, else its viewBox.

    Returns:
        (width, height), each None when unknown or not positive.
    """
    match = SVG_TAG.search(content)
    tag = match.group(0) if match else content

    width = height = None
    width_match = WIDTH_ATTR.search(tag)
    height_match = HEIGHT_ATTR.search(tag)
    if width_match and height_match:
        width = round(float(width_match.group(1)))
        height = round(float(height_match.group(1)))

    if not (width and height and width > 0 and height > 0):
        width = height = None
        viewbox = VIEWBOX_ATTR.search(tag)
        if viewbox:
            parts = re.split(r"[\s,]+", viewbox.group(1).strip())
            if len(parts) == 4:
                try:
                    vb_width = round(float(parts[2]))
                    vb_height = round(float(parts[3]))
                except ValueError:
                    vb_width = vb_height = 0
                if vb_width > 0 and vb_height > 0:
                    width, height = vb_width, vb_height

    return width, height


def svg_data_url(content: str) -> str:
    """Inline the SVG so the page loads it without cross-origin checks."""
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def build_svg_render_script(data_url: str, width: Optional[int], height: Optional[int]) -> str:
    args = {
        "dataUrl": data_url,
        "width": width,
        "height": height,
        "maxWidth": MAX_SVG_WIDTH,
        "maxHeight": MAX_SVG_HEIGHT,
        "timeoutMs": SVG_RENDER_TIMEOUT_MS,
    }
    return SVG_RENDER_SCRIPT.replace("__ARGS__", json.dumps(args))


class SvgRenderer(BaseRenderer):
    """PNG thumbnails for SVG image cards."""

    card_types = frozenset({CardType.IMAGE})
    name = "svg_renderer"

    def __init__(self, cards: BaseCardStore, blobs: BlobStore, sandbox: BrowserSandbox):
        super().__init__(cards, blobs)
        self.sandbox = sandbox

    def accepts(self, card: Card) -> bool:
        return super().accepts(card) and is_svg(card)

    async def generate(self, card: Card, source_url: str) -> Thumbnail:
        content = validate_svg(await fetch_text(source_url))
        width, height = extract_svg_dimensions(content)

        result = await self.sandbox.execute(
            build_svg_render_script(svg_data_url(content), width, height),
            timeout_sec=SANDBOX_TIMEOUT_SEC,
        )
        frame = frame_from_result(result)
        return Thumbnail(
            data=frame.data,
            mime_type="image/png",
            original_width=width or frame.original_width,
            original_height=height or frame.original_height,
        )

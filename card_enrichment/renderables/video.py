"""Video frame thumbnail renderer.

Grabs one frame in the browser sandbox: the page loads the video, seeks
a little way in to skip leading black frames, draws it on a canvas fitted
to 400x400 and encodes WebP (JPEG when the runtime cannot encode WebP).
"""

import json
import logging

from card_enrichment.core.card import Card, CardType
from card_enrichment.core.stores import BaseCardStore, BlobStore
from card_enrichment.renderables.base import BaseRenderer, Thumbnail
from card_enrichment.renderables.sandbox import BrowserSandbox, frame_from_result

logger = logging.getLogger(__name__)

MAX_FRAME_WIDTH = 400
MAX_FRAME_HEIGHT = 400

# In-page time limit for loading, seeking and encoding
FRAME_TIMEOUT_MS = 60_000

# Service-side limit for the whole execution
SANDBOX_TIMEOUT_SEC = 120

VIDEO_FRAME_SCRIPT = """
await page.setViewportSize({ width: 800, height: 600 });
await page.goto('about:blank');
return await page.evaluate(async ({ videoUrl, maxWidth, maxHeight, timeoutMs }) => {
  return await new Promise((resolve) => {
    const video = document.createElement('video');
    video.crossOrigin = 'anonymous';
    video.muted = true;
    video.preload = 'metadata';

    const timer = setTimeout(() => resolve({ success: false, error: 'timeout' }), timeoutMs);
    const fail = (error) => {
      clearTimeout(timer);
      resolve({ success: false, error: String(error) });
    };

    video.onerror = () => fail('video_load_failed');
    video.onloadedmetadata = () => {
      const duration = Number.isFinite(video.duration) ? video.duration : 0;
      video.currentTime = Math.max(0.1, Math.min(duration * 0.1, 5));
    };
    video.onseeked = () => {
      try {
        const scale = Math.min(maxWidth / video.videoWidth, maxHeight / video.videoHeight, 1);
        const width = Math.max(1, Math.round(video.videoWidth * scale));
        const height = Math.max(1, Math.round(video.videoHeight * scale));
        const canvas = document.createElement('canvas');
        canvas.width = width;
        canvas.height = height;
        canvas.getContext('2d').drawImage(video, 0, 0, width, height);

        let mimeType = 'image/webp';
        let dataUrl = canvas.toDataURL('image/webp', 0.8);
        if (!dataUrl.startsWith('data:image/webp')) {
          mimeType = 'image/jpeg';
          dataUrl = canvas.toDataURL('image/jpeg', 0.85);
        }
        clearTimeout(timer);
        resolve({
          success: true,
          data: dataUrl.split(',')[1],
          width,
          height,
          mimeType,
          originalWidth: video.videoWidth,
          originalHeight: video.videoHeight,
          duration: Number.isFinite(video.duration) ? video.duration : null,
        });
      } catch (e) {
        fail(e);
      }
    };
    video.src = videoUrl;
  });
}, __ARGS__);
"""


def build_video_frame_script(video_url: str) -> str:
    args = {
        "videoUrl": video_url,
        "maxWidth": MAX_FRAME_WIDTH,
        "maxHeight": MAX_FRAME_HEIGHT,
        "timeoutMs": FRAME_TIMEOUT_MS,
    }
    return VIDEO_FRAME_SCRIPT.replace("__ARGS__", json.dumps(args))


class VideoRenderer(BaseRenderer):
    """Thumbnails for video cards via the browser sandbox."""

    card_types = frozenset({CardType.VIDEO})
    name = "video_renderer"

    def __init__(self, cards: BaseCardStore, blobs: BlobStore, sandbox: BrowserSandbox):
        super().__init__(cards, blobs)
        self.sandbox = sandbox

    async def generate(self, card: Card, source_url: str) -> Thumbnail:
        result = await self.sandbox.execute(
            build_video_frame_script(source_url), timeout_sec=SANDBOX_TIMEOUT_SEC
        )
        frame = frame_from_result(result)
        return Thumbnail(
            data=frame.data,
            mime_type=frame.mime_type,
            original_width=frame.original_width,
            original_height=frame.original_height,
            duration=frame.duration,
        )

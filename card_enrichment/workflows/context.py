"""Dependencies handed to every stage action and periodic job.

Actions receive a PipelineContext explicitly; nothing in the pipeline
reaches for process-wide handles.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from card_enrichment.core.card import Card, now_ms
from card_enrichment.core.config import Config
from card_enrichment.core.llm_factory import LLMFactory
from card_enrichment.core.scheduler import Clock, JsonJobQueue, Scheduler
from card_enrichment.core.stores import BaseCardStore, BlobStore, JsonCardStore, LocalBlobStore
from card_enrichment.core.transcription import AudioTranscriber
from card_enrichment.renderables.base import BaseRenderer
from card_enrichment.renderables.image import ImageRenderer
from card_enrichment.renderables.pdf import PdfRenderer
from card_enrichment.renderables.sandbox import BrowserSandbox
from card_enrichment.renderables.svg import SvgRenderer
from card_enrichment.renderables.video import VideoRenderer
from card_enrichment.workflows.ai_metadata import AiMetadataGenerator
from card_enrichment.workflows.link_metadata import UnfurlClient

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Stores, scheduler and external clients used by the workflows.

    Attributes:
        cards: Card store.
        blobs: Blob store.
        scheduler: Durable delayed-job scheduler.
        clock: Millisecond clock.
        generator: AI metadata generator (None when no AI provider is configured).
        renderers: Thumbnail renderers, tried in order.
        unfurl: Link unfurl client.
    """

    cards: BaseCardStore
    blobs: BlobStore
    scheduler: Scheduler
    clock: Clock = now_ms
    generator: Optional[AiMetadataGenerator] = None
    renderers: list[BaseRenderer] = field(default_factory=list)
    unfurl: Optional[UnfurlClient] = None

    def renderer_for(self, card: Card) -> Optional[BaseRenderer]:
        """First renderer that accepts the card, or None."""
        for renderer in self.renderers:
            if renderer.accepts(card):
                return renderer
        return None


def build_context(config: Config) -> tuple[PipelineContext, JsonJobQueue]:
    """Wire the production context from configuration.

    Args:
        config: Loaded application configuration.

    Returns:
        Tuple of (context, job queue). The queue is also the context's
        scheduler; callers need it to run a SchedulerWorker.
    """
    cards = JsonCardStore(config.cards_file)
    blobs = LocalBlobStore(config.blobs_dir, config.public_base_url)
    queue = JsonJobQueue(config.jobs_file)

    generator = None
    provider_key = (
        config.anthropic_api_key if config.llm_provider == "anthropic" else config.openai_api_key
    )
    if provider_key:
        llm = LLMFactory.create(config.llm_provider, api_key=provider_key, model=config.llm_model)
        transcriber = None
        if config.openai_api_key:
            transcriber = AudioTranscriber(config.openai_api_key, config.transcription_model)
        generator = AiMetadataGenerator(
            llm, transcriber, blobs, model_version=config.ai_model_version
        )
    else:
        logger.warning("No API key for %s; AI metadata stage disabled", config.llm_provider)

    renderers: list[BaseRenderer] = [ImageRenderer(cards, blobs)]
    if config.kernel_api_key:
        sandbox = BrowserSandbox(config.kernel_api_key, config.kernel_api_url)
        renderers += [
            VideoRenderer(cards, blobs, sandbox),
            SvgRenderer(cards, blobs, sandbox),
            PdfRenderer(cards, blobs, sandbox),
        ]
    else:
        logger.warning("KERNEL_API_KEY not set; sandbox-rendered thumbnails disabled")

    context = PipelineContext(
        cards=cards,
        blobs=blobs,
        scheduler=queue,
        generator=generator,
        renderers=renderers,
        unfurl=UnfurlClient(config.unfurl_api_url, timeout=config.unfurl_timeout),
    )
    return context, queue

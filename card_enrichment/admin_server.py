"""Admin HTTP server for the card enrichment service.

Receives new cards, exposes the processing overview and the operator
"retry" affordances, and serves stored blobs so that external services
(the AI provider, the browser sandbox) can fetch them by URL.

Endpoints:
    GET /health - Health check endpoint, returns {"status": "ok"}
    GET /metrics - Counters and uptime
    GET /admin/overview - Cards with outstanding enrichment work
    POST /cards - Store a card and start its pipeline, returns 202 Accepted
    POST /cards/{card_id}/stages/{stage}/retry - Re-run one stage now
    POST /cards/{card_id}/reset - Restart a card's pipeline from scratch
    POST /admin/backfill/ai - Enqueue AI generation for cards missing it
    POST /admin/backfill/links - Enqueue unfurls for links missing a preview
    GET /blobs/{handle} - Blob content (no auth)

Every endpoint except /health and /blobs requires Bearer token
authentication when CARD_ADMIN_TOKEN is set.
"""

import hmac
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from aiohttp import web

from card_enrichment.core.card import Card, Stage
from card_enrichment.core.config import get_config
from card_enrichment.core.exceptions import EnrichmentError
from card_enrichment.workflows import admin
from card_enrichment.workflows.context import PipelineContext, build_context
from card_enrichment.workflows.pipeline import start_card_processing

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8767


@dataclass
class ServerMetrics:
    """Server metrics for monitoring."""

    start_time: float = field(default_factory=time.time)
    cards_received: int = 0
    manual_retries: int = 0
    errors_total: int = 0

    def increment_cards(self) -> None:
        self.cards_received += 1

    def increment_retries(self) -> None:
        self.manual_retries += 1

    def increment_errors(self) -> None:
        self.errors_total += 1

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary for JSON response."""
        return {
            "uptime_seconds": round(self.get_uptime_seconds(), 2),
            "cards_received": self.cards_received,
            "manual_retries": self.manual_retries,
            "errors_total": self.errors_total,
        }


CONTEXT_KEY = web.AppKey("context", PipelineContext)
METRICS_KEY = web.AppKey("metrics", ServerMetrics)


def get_auth_token() -> str | None:
    """Configured admin token, or None when auth is disabled (dev mode)."""
    return os.environ.get("CARD_ADMIN_TOKEN") or None


def check_auth(request: web.Request) -> bool:
    """Check the request's "Authorization: Bearer <token>" header.

    Returns:
        True if authentication is valid or disabled, False otherwise.
    """
    token = get_auth_token()
    if not token:
        return True

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False

    provided_token = auth_header[7:]
    return hmac.compare_digest(provided_token, token)


def _unauthorized() -> web.Response:
    return web.json_response(
        {"error": "Unauthorized - invalid or missing token"},
        status=401,
    )


async def _read_json_object(request: web.Request) -> tuple[Optional[dict], Optional[web.Response]]:
    """Parse the body as a JSON object; an empty body yields {}."""
    if not request.can_read_body:
        return {}, None
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None, web.json_response({"error": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return None, web.json_response(
            {"error": "Request body must be a JSON object"}, status=400
        )
    return body, None


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def metrics_handler(request: web.Request) -> web.Response:
    if not check_auth(request):
        return _unauthorized()
    return web.json_response(request.app[METRICS_KEY].to_dict())


async def overview_handler(request: web.Request) -> web.Response:
    """List cards that are not fully enriched, with reasons."""
    if not check_auth(request):
        return _unauthorized()
    try:
        limit = int(request.query.get("limit", "100"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)

    overview = await admin.processing_overview(request.app[CONTEXT_KEY], limit=limit)
    return web.json_response(overview.to_dict())


async def create_card_handler(request: web.Request) -> web.Response:
    """Store a new card and start its pipeline.

    Expects the card as a JSON object with at least "id", "user_id" and
    "type". An optional "classification" object seeds the classify stage.

    Returns:
        202 Accepted with the card id and workflow id.
        400 Bad Request if the body is not a valid card.
        401 Unauthorized if authentication fails.
    """
    if not check_auth(request):
        return _unauthorized()

    body, error = await _read_json_object(request)
    if error is not None:
        return error

    ctx = request.app[CONTEXT_KEY]
    classification = body.pop("classification", None)
    body.setdefault("created_at", ctx.clock())
    try:
        card = Card.from_dict(body)
    except KeyError as e:
        return web.json_response({"error": f"Missing required field: {e.args[0]}"}, status=400)
    except (TypeError, ValueError) as e:
        return web.json_response({"error": f"Invalid card: {e}"}, status=400)

    await ctx.cards.insert(card)
    try:
        card = await start_card_processing(ctx, card.id, classification_status=classification)
    except (EnrichmentError, KeyError, ValueError) as e:
        request.app[METRICS_KEY].increment_errors()
        logger.error("Failed to start processing for card %s: %s", card.id, e)
        return web.json_response({"error": str(e)}, status=400)

    request.app[METRICS_KEY].increment_cards()
    logger.info("Accepted card %s (%s)", card.id, card.type.value)
    return web.json_response(
        {"status": "accepted", "card_id": card.id, "workflow_id": card.workflow_id},
        status=202,
    )


async def retry_stage_handler(request: web.Request) -> web.Response:
    """Re-run one stage for one card and report the outcome."""
    if not check_auth(request):
        return _unauthorized()

    card_id = request.match_info["card_id"]
    try:
        stage = Stage(request.match_info["stage"])
    except ValueError:
        valid = ", ".join(s.value for s in Stage)
        return web.json_response(
            {"error": f"Unknown stage - must be one of: {valid}"}, status=400
        )

    request.app[METRICS_KEY].increment_retries()
    result = await admin.retry_stage(request.app[CONTEXT_KEY], card_id, stage)
    if not result.success:
        request.app[METRICS_KEY].increment_errors()
    return web.json_response(result.to_dict(), status=200 if result.success else 409)


async def reset_card_handler(request: web.Request) -> web.Response:
    if not check_auth(request):
        return _unauthorized()

    card_id = request.match_info["card_id"]
    result = await admin.reset_card_processing_state(request.app[CONTEXT_KEY], card_id)
    return web.json_response(result.to_dict(), status=200 if result.success else 404)


async def ai_backfill_handler(request: web.Request) -> web.Response:
    if not check_auth(request):
        return _unauthorized()

    result = await admin.retry_ai_backfill(request.app[CONTEXT_KEY])
    return web.json_response(
        {"enqueued_count": result.enqueued_count, "failed_card_ids": result.failed_card_ids}
    )


async def link_backfill_handler(request: web.Request) -> web.Response:
    if not check_auth(request):
        return _unauthorized()

    body, error = await _read_json_object(request)
    if error is not None:
        return error

    result = await admin.retry_link_backfill(request.app[CONTEXT_KEY], cursor=body.get("cursor"))
    return web.json_response(
        {"scheduled": result.scheduled, "has_more": result.has_more, "cursor": result.cursor}
    )


async def blob_handler(request: web.Request) -> web.Response:
    """Serve a stored blob with its recorded MIME type."""
    found = await request.app[CONTEXT_KEY].blobs.read(request.match_info["handle"])
    if found is None:
        return web.json_response({"error": "Blob not found"}, status=404)
    data, mime_type = found
    # Stored MIME types may carry parameters, which content_type= rejects
    return web.Response(body=data, headers={"Content-Type": mime_type})


def create_app(context: PipelineContext | None = None) -> web.Application:
    """Create and configure the aiohttp application.

    Args:
        context: Pipeline context. If not provided, one is built from the
            environment configuration.

    Returns:
        Configured aiohttp Application with all routes registered.
    """
    app = web.Application()
    app[METRICS_KEY] = ServerMetrics()

    if context is None:
        context, _ = build_context(get_config(require_api_key=False))
    app[CONTEXT_KEY] = context

    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/admin/overview", overview_handler)
    app.router.add_post("/cards", create_card_handler)
    app.router.add_post("/cards/{card_id}/stages/{stage}/retry", retry_stage_handler)
    app.router.add_post("/cards/{card_id}/reset", reset_card_handler)
    app.router.add_post("/admin/backfill/ai", ai_backfill_handler)
    app.router.add_post("/admin/backfill/links", link_backfill_handler)
    app.router.add_get("/blobs/{handle}", blob_handler)
    return app


async def run_server(
    context: PipelineContext | None = None,
    host: str = "0.0.0.0",
    port: int = DEFAULT_PORT,
) -> web.AppRunner:
    """Start the admin server.

    Returns:
        The AppRunner instance (for cleanup).
    """
    app = create_app(context)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Admin server listening on %s:%d", host, port)
    return runner

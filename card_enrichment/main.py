"""Main entry point for the card enrichment service.

Usage:
    python -m card_enrichment.main serve                # Admin server + worker + cron
    python -m card_enrichment.main serve --port 8080    # Custom port
    python -m card_enrichment.main retry CARD_ID STAGE  # Re-run one stage now
    python -m card_enrichment.main backfill-ai          # Enqueue AI backfill once
    python -m card_enrichment.main backfill-links       # Enqueue link backfill once
    python -m card_enrichment.main cleanup              # Purge one batch of deleted cards
    python -m card_enrichment.main status               # Print processing overview
    python -m card_enrichment.main --verbose ...        # Enable debug logging
"""

import argparse
import asyncio
import json
import signal
import sys

from card_enrichment.admin_server import DEFAULT_PORT, run_server
from card_enrichment.core.card import Stage
from card_enrichment.core.config import Config, get_config
from card_enrichment.core.logger import get_logger, setup_logging
from card_enrichment.core.scheduler import SchedulerWorker
from card_enrichment.workflows import admin
from card_enrichment.workflows.cleanup import cleanup_deleted_cards
from card_enrichment.workflows.context import build_context
from card_enrichment.workflows.cron import CronRunner, default_cron_jobs
from card_enrichment.workflows.registry import build_registry

logger = get_logger(__name__)

# Shutdown event for graceful termination
_shutdown_event: asyncio.Event | None = None


async def run_service(config: Config, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> None:
    """Run the admin server, scheduler worker and cron runner until signalled.

    Handles SIGTERM/SIGINT for graceful shutdown.
    """
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def signal_handler(sig: int) -> None:
        logger.info("Received signal %s, initiating graceful shutdown...", sig)
        if _shutdown_event:
            _shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: signal_handler(s))

    context, queue = build_context(config)
    worker = SchedulerWorker(
        queue,
        build_registry(),
        context,
        max_concurrent=config.max_concurrent_jobs,
        poll_interval=config.poll_interval,
    )
    cron = CronRunner(queue, default_cron_jobs(config))
    runner = await run_server(context, host=host, port=port)

    logger.info("Service started (%d pending jobs)", len(queue.pending()))
    tasks = [
        asyncio.create_task(worker.run_forever(_shutdown_event), name="scheduler-worker"),
        asyncio.create_task(cron.run_forever(_shutdown_event), name="cron-runner"),
    ]
    try:
        await _shutdown_event.wait()
    finally:
        try:
            # Give in-flight jobs some time to finish
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Background tasks timed out, cancelling...")
            for task in tasks:
                task.cancel()
        await runner.cleanup()
        logger.info("Service shutdown complete")


async def run_retry(config: Config, card_id: str, stage: Stage) -> int:
    context, _ = build_context(config)
    result = await admin.retry_stage(context, card_id, stage)
    print(result.message)
    return 0 if result.success else 1


async def run_ai_backfill(config: Config) -> int:
    context, _ = build_context(config)
    result = await admin.retry_ai_backfill(context)
    print(f"Enqueued AI generation for {result.enqueued_count} cards")
    if result.failed_card_ids:
        print(f"Failed to enqueue: {', '.join(result.failed_card_ids)}")
        return 1
    return 0


async def run_link_backfill(config: Config) -> int:
    context, _ = build_context(config)
    result = await admin.retry_link_backfill(context)
    print(f"Scheduled link metadata for {result.scheduled} cards (more: {result.has_more})")
    return 0


async def run_cleanup(config: Config) -> int:
    context, _ = build_context(config)
    result = await cleanup_deleted_cards(context)
    print(f"Purged {result.cleaned_count} cards (more: {result.has_more})")
    return 0 if not result.failed_card_ids else 1


async def run_status(config: Config, limit: int) -> int:
    context, queue = build_context(config)
    overview = await admin.processing_overview(context, limit=limit)
    print(json.dumps(overview.to_dict(), indent=2))
    print(f"\nPending jobs: {len(queue.pending())}")
    return 0


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="card-enrichment",
        description="Asynchronous enrichment pipeline for saved cards.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run admin server, worker and cron jobs")
    serve.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        metavar="PORT",
        help=f"Port for the admin server (default: {DEFAULT_PORT})",
    )

    retry = subparsers.add_parser("retry", help="Re-run one stage for one card")
    retry.add_argument("card_id", help="Card identifier")
    retry.add_argument("stage", choices=[s.value for s in Stage], help="Stage to re-run")

    subparsers.add_parser("backfill-ai", help="Enqueue AI generation for cards missing it")
    subparsers.add_parser("backfill-links", help="Enqueue unfurls for links missing a preview")
    subparsers.add_parser("cleanup", help="Purge one batch of soft-deleted cards")

    status = subparsers.add_parser("status", help="Print cards with outstanding work")
    status.add_argument("--limit", type=int, default=100, metavar="N")

    return parser


def main(args: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, 1 for errors).
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    # Maintenance commands make no AI calls
    require_api_key = parsed_args.command in ("serve", "retry")

    try:
        config = get_config(require_api_key=require_api_key)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log_level = "DEBUG" if parsed_args.verbose else config.log_level
    setup_logging(log_level)

    if parsed_args.command == "serve":
        logger.info("Running service on port %d", parsed_args.port)
        try:
            asyncio.run(run_service(config, host=parsed_args.host, port=parsed_args.port))
            return 0
        except KeyboardInterrupt:
            logger.info("Interrupted during startup")
            return 0
    if parsed_args.command == "retry":
        return asyncio.run(run_retry(config, parsed_args.card_id, Stage(parsed_args.stage)))
    if parsed_args.command == "backfill-ai":
        return asyncio.run(run_ai_backfill(config))
    if parsed_args.command == "backfill-links":
        return asyncio.run(run_link_backfill(config))
    if parsed_args.command == "cleanup":
        return asyncio.run(run_cleanup(config))
    return asyncio.run(run_status(config, parsed_args.limit))


if __name__ == "__main__":
    sys.exit(main())

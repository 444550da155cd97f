#!/usr/bin/env python3
"""Main entrypoint — wires the notification engine and polls until interrupted.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from src.core.config import load_settings
from src.core.logging import setup_logging
from src.integration.context import create_engine_context

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start every component and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    logger.info(
        "engine_starting",
        telegram=settings.channels.telegram.enabled,
        webhook=settings.channels.webhook.enabled,
        recipients=len(settings.dispatcher.recipients),
    )

    ctx = create_engine_context(settings)
    if not settings.dispatcher.recipients:
        logger.warning("no_recipients_configured")

    await ctx.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("engine_shutting_down")
    await ctx.stop()

    stats = ctx.dispatcher.stats()
    logger.info(
        "engine_exited",
        total_sent=stats.total_sent,
        total_failed=stats.total_failed,
        pending_retries=stats.retry_queue_size,
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the alert engine: poll sources and dispatch notifications.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()

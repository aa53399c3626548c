#!/usr/bin/env python3
"""
Dispatch Worker — run the worker pools until SIGINT/SIGTERM.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml --classes email
    dispatch-worker --classes email,sms

Exit codes:
    0  clean shutdown
    2  storage unreachable at startup
"""
import argparse
import asyncio
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog  # noqa: E402
from dotenv import load_dotenv  # noqa: E402

logger = structlog.get_logger()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Outbound message dispatch worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml (default: $DISPATCH_CONFIG)")
    parser.add_argument(
        "--classes",
        default="",
        help="Comma-separated message classes to serve (default: every configured one)",
    )
    return parser.parse_args(argv)


async def serve(config_path: str = None, classes: list[str] = None) -> int:
    from config.settings import load_settings
    from config.log_setup import configure_logging
    from core.context import build_context
    from core.errors import StartupError
    from core.runtime import DispatchRuntime

    settings = load_settings(config_path)
    configure_logging(settings.log_level, json_logs=not settings.debug)

    ctx = build_context(settings)
    try:
        await ctx.start()
    except StartupError as e:
        logger.error("startup_failed", error=str(e))
        await ctx.close()
        return 2

    runtime = DispatchRuntime(ctx, classes=classes or None)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.start()
    logger.info("worker_ready", app=settings.app_name)
    try:
        await stop.wait()
        logger.info("shutdown_requested")
    finally:
        await runtime.stop()
        await ctx.close()
    return 0


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    classes = [c.strip() for c in args.classes.split(",") if c.strip()]
    sys.exit(asyncio.run(serve(args.config, classes)))


if __name__ == "__main__":
    main()

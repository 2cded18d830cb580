#!/usr/bin/env python3
"""Run the session/refresh-token sweeper until SIGINT or SIGTERM.

Usage:
    python scripts/cleanup_worker.py              # loop every CLEANUP_INTERVAL_SECONDS
    python scripts/cleanup_worker.py --once       # single sweep, print counts, exit
    python scripts/cleanup_worker.py --interval 600
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(interval: Optional[int], once: bool) -> int:
    from reportguard.logging import get_logger
    from reportguard.service.runtime import get_runtime

    logger = get_logger("reportguard.scripts.cleanup_worker")
    runtime = get_runtime()
    worker = runtime.cleanup_worker
    if interval:
        worker.interval_seconds = interval

    if once:
        result = await worker.run_once()
        print(
            f"expired_sessions={result['expired_sessions']} "
            f"purged_tokens={result['purged_tokens']} skipped={result['skipped']}"
        )
        await runtime.close()
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await worker.start()
    try:
        await stop_event.wait()
        logger.info("cleanup_worker_shutdown_requested")
    finally:
        await runtime.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Expired session and refresh token sweeper")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between sweeps (defaults to CLEANUP_INTERVAL_SECONDS)",
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    if args.interval is not None and args.interval <= 0:
        print("Error: --interval must be positive")
        sys.exit(1)

    sys.exit(asyncio.run(run(args.interval, args.once)))


if __name__ == "__main__":
    main()

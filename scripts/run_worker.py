#!/usr/bin/env python3
"""
Standalone queue worker — runs the poll loop without the HTTP API.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml
    python scripts/run_worker.py --once     # one poll cycle, wait for handlers, exit

Several worker processes may poll the same PostgreSQL database; claims are
contention-safe. Stop with SIGINT/SIGTERM; in-flight jobs drain first when
worker.drain_on_shutdown is set.
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog

logger = structlog.get_logger()


async def run(config_path: str = None, once: bool = False) -> int:
    from config.settings import load_settings
    from workers.runtime import build_runtime

    settings = load_settings(config_path)
    runtime = await build_runtime(settings)
    if not runtime.queue_enabled:
        logger.error("worker_exiting", reason="queue disabled")
        return 1

    if once:
        stats = await runtime.backend.poll_once()
        await runtime.backend.drain()
        logger.info("worker_single_cycle", **stats)
        await runtime.stop()
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await runtime.start()
    logger.info("worker_running", queues=runtime.backend.registry.queue_names)
    try:
        await stop.wait()
    finally:
        await runtime.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(description="PostQueue worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args.config, once=args.once)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

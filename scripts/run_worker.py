#!/usr/bin/env python3
"""
Welcome Worker — standalone process.

Usage:
    # Local:
    python scripts/run_worker.py

    # Override consumer name (one per replica):
    python scripts/run_worker.py --consumer worker-2

Exits immediately (status 0) when no broker is configured: welcome
delivery is simply off for this deployment.
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_worker(consumer_name: str = "") -> bool:
    import structlog
    from dotenv import load_dotenv
    load_dotenv()

    from config.logging import configure_logging
    from config.settings import load_settings
    settings = load_settings()
    configure_logging(settings)
    logger = structlog.get_logger()

    from database.session import close_db, init_db
    from database.store_factory import create_store
    from job_queue.consumer import WelcomeWorker
    from job_queue.message_queue import create_message_queue

    qc = settings.queue
    store = create_store(settings.database)
    queue = create_message_queue(qc)
    if settings.database.store_backend == "sql":
        await init_db()

    worker = WelcomeWorker(
        queue, store,
        queue_name=qc.name,
        consumer_group=qc.consumer_group,
        consumer_name=consumer_name or qc.consumer_name,
        prefetch=qc.prefetch,
        max_inline_wait_ms=qc.max_inline_wait_ms,
        retry_backoff_ms=qc.retry_backoff_ms,
        promote_interval_s=qc.delayed_promote_interval,
        reclaim_idle_ms=qc.reclaim_idle_ms,
        reclaim_interval_s=qc.reclaim_interval,
    )

    loop = asyncio.get_running_loop()
    task = await worker.start_background()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
            handled.append(sig)
        except NotImplementedError:
            pass  # Windows

    started = False
    try:
        started = await task
    except asyncio.CancelledError:
        started = True
        logger.info("welcome_worker_signal_received")
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
        await worker.stop()
        await queue.close()
        await close_db()
    return started


def main():
    parser = argparse.ArgumentParser(description="Welcome message worker")
    parser.add_argument("--consumer", default="", help="Consumer name within the group")
    args = parser.parse_args()

    asyncio.run(run_worker(consumer_name=args.consumer))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Background worker for the MetricsHub engine.

Runs the scheduler tick, the health sweep and the execution worker pool.
Runs independently of the API process.

Usage:
    python scripts/worker.py                   # Scheduler + health sweep + workers
    python scripts/worker.py --concurrency 20  # 20 worker tasks
    python scripts/worker.py --no-scheduler    # Workers only (scale-out node)
    python scripts/worker.py --once            # One tick, one sweep, drain the queue, exit
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from metricshub.app import build_services
from metricshub.db.session import close_db
from metricshub.execution.worker import WorkerPool
from metricshub.observability.logging import configure_logging

logger = structlog.get_logger()


async def run_worker(args: argparse.Namespace) -> int:
    """Run the background worker.

    Returns:
        Exit code (0 = success)
    """
    services = build_services()
    if args.concurrency:
        services.workers = WorkerPool(services.queue, services.engine, concurrency=args.concurrency)

    try:
        if args.once:
            logger.info("worker_run_once")
            if not args.no_scheduler:
                result = await services.scheduler.tick()
                logger.info("tick_complete", enqueued=len(result.enqueued), skipped=result.skipped)
            if not args.no_health:
                await services.monitor.sweep()
            if not args.no_workers:
                handled = await services.workers.run_once()
                logger.info("queue_drained", handled=handled)
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        if not args.no_scheduler:
            services.scheduler.start(health_interval_s=None)
            if args.no_health:
                services.scheduler.scheduler.remove_job("health_sweep")
        if not args.no_workers:
            await services.workers.start()

        logger.info(
            "worker_starting",
            scheduler=not args.no_scheduler,
            health=not args.no_health,
            workers=not args.no_workers,
        )
        await stop.wait()
        logger.info("shutdown_signal_received")
        return 0
    except Exception as e:
        logger.error("worker_fatal_error", error=str(e), exc_info=True)
        return 1
    finally:
        await services.aclose()
        await close_db()


def main() -> int:
    parser = argparse.ArgumentParser(description="MetricsHub scheduler and execution worker")
    parser.add_argument("--concurrency", type=int, default=0, help="Worker tasks (default: from settings)")
    parser.add_argument("--once", action="store_true", help="Run one pass and exit")
    parser.add_argument("--no-scheduler", action="store_true", help="Do not run the scheduler tick")
    parser.add_argument("--no-health", action="store_true", help="Do not run the health sweep")
    parser.add_argument("--no-workers", action="store_true", help="Do not process queued jobs")
    args = parser.parse_args()

    configure_logging()
    try:
        return asyncio.run(run_worker(args))
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())

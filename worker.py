#!/usr/bin/env python
"""
Maintenance Worker

Standalone process for deployments that run the API with
SCHEDULER_ENABLED=false. Each cycle:
1. Drains the retry queue (and resets stuck jobs)
2. Sweeps expired action locks
3. Auto-updates bookings whose date has passed (every AUTO_UPDATE_EVERY cycles)
4. Sweeps orphaned deposit blobs (once a day, every DEPOSIT_SWEEP_EVERY cycles)

Run with:
    python worker.py

Or with environment:
    WORKER_INTERVAL=30 python worker.py
"""

import os
import sys
import time
import logging
import signal

from app.config import settings
from app.services.scheduler import SCHEDULED_JOBS
from app.utils.logging_config import setup_logging

logger = logging.getLogger("worker")

# Worker configuration
POLL_INTERVAL = int(os.getenv("WORKER_INTERVAL", str(settings.job_queue_interval_seconds)))  # seconds
AUTO_UPDATE_EVERY = max(1, settings.auto_update_interval_seconds // max(1, POLL_INTERVAL))
DEPOSIT_SWEEP_EVERY = max(1, 24 * 3600 // max(1, POLL_INTERVAL))
RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current cycle...")
    RUNNING = False


def run_job(name: str):
    """Run one scheduled job; a failure is logged and the loop keeps going."""
    try:
        return SCHEDULED_JOBS[name]()
    except Exception as e:
        logger.error(f"Error in {name}: {e}", exc_info=True)
        return None


def run_cycle(cycle: int) -> dict:
    """Run the jobs due on this cycle and return their results by name."""
    results = {
        "job_queue": run_job("job_queue"),
        "lock_sweep": run_job("lock_sweep"),
    }
    if cycle % AUTO_UPDATE_EVERY == 0:
        results["booking_auto_update"] = run_job("booking_auto_update")
    if cycle % DEPOSIT_SWEEP_EVERY == 0:
        results["deposit_sweep"] = run_job("deposit_sweep")
    return results


def run_worker():
    """Main worker loop"""
    logger.info("=" * 50)
    logger.info("Starting Maintenance Worker")
    logger.info(f"Poll interval: {POLL_INTERVAL}s")
    logger.info(f"Auto-update every {AUTO_UPDATE_EVERY} cycle(s)")
    logger.info(f"Deposit sweep every {DEPOSIT_SWEEP_EVERY} cycle(s)")
    logger.info("=" * 50)

    cycle = 0

    while RUNNING:
        cycle += 1
        start_time = time.time()

        results = run_cycle(cycle)
        locks = results["lock_sweep"]

        jobs = results["job_queue"] or {"processed": 0, "completed": 0, "failed": 0}
        cleaned = locks["cleaned"] if locks else 0
        if jobs["processed"] + cleaned > 0:
            duration = time.time() - start_time
            logger.info(
                f"Cycle {cycle}: "
                f"Jobs {jobs['completed']} completed/{jobs['failed']} failed | "
                f"Locks {cleaned} expired | "
                f"{duration:.2f}s"
            )

        # Sleep until next poll
        if RUNNING:
            time.sleep(POLL_INTERVAL)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    setup_logging(settings.log_level, settings.log_json)

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)

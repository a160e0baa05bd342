#!/usr/bin/env python
"""
Reconciliation Worker

Background process that:
1. Executes due side effects from the outbox (refunds, cancellations)
2. Runs maintenance every MAINTENANCE_INTERVAL_MINUTES
   (expire buffered events, purge the idempotency ledger, finalize
   settled bookings, restore cooled-down credentials)

Run with:
    python worker.py

Set WORKER_ENABLED=false on the API processes when this runs separately.
"""

import sys
import time
import signal

from app.config import settings
from app.services.credential_manager import CredentialManager
from app.services.outbox_worker import run_outbox_cycle
from app.services.provider_clients import build_clients
from app.services.scheduler import run_maintenance
from app.utils.logging_config import setup_logging, get_logger

logger = get_logger("worker")

RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current batch...")
    RUNNING = False


def run_worker():
    """Main worker loop"""
    credentials = CredentialManager.from_settings(settings)
    clients = build_clients(settings, credentials)

    poll_interval = settings.worker_poll_interval
    maintenance_every = settings.maintenance_interval_minutes * 60

    logger.info(
        f"Starting reconciliation worker (poll: {poll_interval}s, batch: {settings.worker_batch_size}, "
        f"maintenance: {settings.maintenance_interval_minutes} min)"
    )

    cycle = 0
    last_maintenance = 0.0

    while RUNNING:
        cycle += 1
        start_time = time.time()

        try:
            stats = run_outbox_cycle(clients, settings)
            if stats["processed"]:
                logger.info(
                    f"Cycle {cycle}: outbox {stats['succeeded']} ok / {stats['failed']} failed | "
                    f"{time.time() - start_time:.2f}s"
                )
        except Exception as e:
            logger.error(f"Outbox error in cycle {cycle}: {e}")

        if time.time() - last_maintenance >= maintenance_every:
            try:
                run_maintenance(credentials, None, settings)
            except Exception as e:
                logger.error(f"Maintenance error in cycle {cycle}: {e}")
            last_maintenance = time.time()

        # Sleep until next poll
        if RUNNING:
            time.sleep(poll_interval)

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

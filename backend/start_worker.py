#!/usr/bin/env python3
"""
Checks for a running Celery worker and starts one (with beat) if none answers.
"""

import logging
import os
import subprocess
import sys
import time

from journeyflow.celery_config import celery_app
from journeyflow.config import settings

logger = logging.getLogger(__name__)


def check_celery_worker():
    """Check if a Celery worker is running"""
    try:
        active_workers = celery_app.control.inspect(timeout=2.0).active()
        if active_workers:
            logger.info(f"Celery workers running: {', '.join(active_workers)}")
            return True
        logger.warning("No active Celery workers found")
        return False
    except Exception as e:
        logger.error(f"Failed to check Celery worker status: {e}")
        return False


def start_celery_worker():
    """Start a Celery worker with an embedded beat scheduler"""
    cmd = [
        "celery",
        "-A", "journeyflow.celery_worker.celery",
        "worker",
        "--beat",
        "--loglevel=info",
        f"--concurrency={settings.WORKER_CONCURRENCY}",
    ]
    logger.info(f"Running command: {' '.join(cmd)}")
    try:
        process = subprocess.Popen(cmd, cwd=os.path.dirname(os.path.abspath(__file__)))
    except OSError as e:
        logger.error(f"Failed to start Celery worker: {e}")
        return None
    logger.info(f"Celery worker started with PID: {process.pid}")
    return process


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("=== CELERY WORKER CHECK ===")
    if check_celery_worker():
        logger.info("Worker is already running, no action needed")
        return

    process = start_celery_worker()
    if not process:
        sys.exit(1)

    logger.info("Worker started, press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
            if process.poll() is not None:
                logger.error("Worker process died unexpectedly")
                sys.exit(process.returncode or 1)
    except KeyboardInterrupt:
        logger.info("Stopping worker...")
        process.terminate()
        process.wait()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()

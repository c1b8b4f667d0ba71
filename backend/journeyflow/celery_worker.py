import asyncio
import logging
import time

from celery.signals import worker_process_init

from journeyflow.celery_config import celery_app
from journeyflow.db.init import init_db
from journeyflow import scheduler  # noqa: F401  registers periodic tasks

logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Check MongoDB is reachable when a worker process starts. Each task runs
    its own event loop and initializes Beanie inside it.
    """
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        logger.info("Database connection verified for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        time.sleep(5)
        asyncio.run(init_db())
        logger.info("Database connection verified for Celery worker (retry successful).")


# Celery discovers the app through this name: celery -A journeyflow.celery_worker.celery worker
celery = celery_app

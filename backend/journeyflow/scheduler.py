import logging
from celery.schedules import crontab

from journeyflow.celery_config import celery_app
from journeyflow.config import settings
from journeyflow.tasks import process_active_enrollments_task, run_journey_engine_task

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    # Tick every ACTIVE enrollment
    sender.add_periodic_task(
        float(settings.SCHEDULER_INTERVAL_SECONDS),
        process_active_enrollments_task.s(),
        name="process-active-enrollments"
    )

    # Segment and abandoned cart sweep every 15 minutes
    sender.add_periodic_task(
        crontab(minute="*/15"),
        run_journey_engine_task.s(),
        name="run-journey-engine"
    )

    logger.info("Periodic tasks configured successfully")

import asyncio
import logging
from typing import List, Optional

from journeyflow.celery_config import celery_app
from journeyflow.db.init import init_db
from journeyflow.errors import CorruptedStateError, JourneyflowError, NotFoundError
from journeyflow.models.event import CommerceEvent

logger = logging.getLogger(__name__)


@celery_app.task(name="journeyflow.tasks.process_enrollment_task", bind=True, acks_late=True, max_retries=3)
def process_enrollment_task(self, enrollment_id: str):
    """
    Celery task to advance one enrollment by one tick.
    """
    from journeyflow.services.journey_executor import default_executor

    async def tick():
        await init_db()
        await default_executor().process_enrollment(enrollment_id)

    try:
        asyncio.run(tick())
        logger.info(f"[TASK] Enrollment {enrollment_id} processed")
    except (NotFoundError, CorruptedStateError) as e:
        # Retrying cannot fix a missing enrollment or a node that is not in the journey
        logger.error(f"[TASK] Enrollment {enrollment_id} cannot be processed: {e.message}")
        raise
    except JourneyflowError as e:
        logger.warning(f"[TASK] Enrollment {enrollment_id} failed, retrying: {e.message}")
        raise self.retry(exc=e)


@celery_app.task(name="journeyflow.tasks.process_active_enrollments_task", acks_late=True)
def process_active_enrollments_task():
    """
    Periodic task: queue one process_enrollment_task per ACTIVE enrollment.
    """
    from journeyflow.services.store import MongoJourneyStore

    async def load_ids():
        await init_db()
        return [e.id for e in await MongoJourneyStore().list_active_enrollments()]

    enrollment_ids = asyncio.run(load_ids())
    for enrollment_id in enrollment_ids:
        process_enrollment_task.delay(enrollment_id)
    logger.info(f"[TASK] Queued {len(enrollment_ids)} active enrollment(s)")
    return len(enrollment_ids)


@celery_app.task(name="journeyflow.tasks.run_journey_engine_task", acks_late=True)
def run_journey_engine_task(
    dry_run: bool = False,
    include_test_journeys: bool = False,
    test_phone_numbers: Optional[List[str]] = None,
    test_customer_ids: Optional[List[str]] = None,
):
    """
    Periodic task: enroll segment and abandoned cart candidates, then tick.
    """
    from journeyflow.services.journey_executor import default_executor
    from journeyflow.services.journey_runner import run_journey_engine

    async def run():
        await init_db()
        return await run_journey_engine(
            default_executor(),
            include_test_journeys=include_test_journeys,
            test_phone_numbers=test_phone_numbers,
            test_customer_ids=test_customer_ids,
            dry_run=dry_run,
        )

    summary = asyncio.run(run())
    return summary.model_dump()


@celery_app.task(name="journeyflow.tasks.handle_commerce_event_task", acks_late=True, max_retries=3)
def handle_commerce_event_task(event: dict):
    """
    Celery task to route a commerce webhook into the journey engine.
    """
    from journeyflow.services.event_tracker import EventTracker
    from journeyflow.services.journey_executor import default_executor

    async def handle():
        await init_db()
        tracker = EventTracker(default_executor())
        enrollments = await tracker.handle_commerce_event(CommerceEvent.model_validate(event))
        return [e.id for e in enrollments]

    return asyncio.run(handle())

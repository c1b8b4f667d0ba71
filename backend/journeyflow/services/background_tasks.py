import asyncio
import logging
from typing import Optional

from journeyflow.config import settings
from journeyflow.errors import JourneyflowError
from journeyflow.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)


class EnrollmentScheduler:
    """
    In-process loop that ticks every ACTIVE enrollment on a fixed interval.

    Used when no Celery beat is running. Ticks for different enrollments run
    concurrently, bounded by WORKER_CONCURRENCY.
    """

    def __init__(
        self,
        executor: JourneyExecutor,
        interval_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
    ):
        self.executor = executor
        self.interval_seconds = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS
        self.semaphore = asyncio.Semaphore(concurrency or settings.WORKER_CONCURRENCY)
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the scheduler loop"""
        if self.running:
            logger.warning("[SCHEDULER] Scheduler is already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info(f"[SCHEDULER] Started, interval {self.interval_seconds}s")

    async def stop(self):
        """Stop the scheduler loop"""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("[SCHEDULER] Stopped")

    async def _run(self):
        loop_count = 0
        while self.running:
            loop_count += 1
            try:
                processed = await self.run_once()
                logger.info(f"[SCHEDULER] Pass {loop_count} processed {processed} enrollment(s)")
            except Exception as e:
                logger.error(f"[SCHEDULER] Pass {loop_count} failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> int:
        """Tick every ACTIVE enrollment once. Returns how many ticks completed without error."""
        enrollments = await self.executor.store.list_active_enrollments()
        results = await asyncio.gather(*(self._tick(e.id) for e in enrollments), return_exceptions=True)
        for enrollment, result in zip(enrollments, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"[SCHEDULER] Enrollment {enrollment.id} failed unexpectedly: {result!r}",
                    exc_info=result,
                )
        return sum(1 for ok in results if ok is True)

    async def _tick(self, enrollment_id: str) -> bool:
        async with self.semaphore:
            try:
                await self.executor.process_enrollment(enrollment_id)
                return True
            except JourneyflowError as e:
                logger.error(f"[SCHEDULER] Enrollment {enrollment_id} failed: {e.message}")
                return False

import asyncio

from journeyflow.models.enrollment import EnrollmentStatus, JourneyEnrollment
from journeyflow.services.background_tasks import EnrollmentScheduler


async def test_run_once_ticks_every_active_enrollment(executor, store, clock, scenario_journey):
    await store.save_journey(scenario_journey)
    first = await executor.enroll_customer("j1", "c1")
    second = await executor.enroll_customer("j1", "c1")
    broken = JourneyEnrollment(journey_id="deleted", customer_id="c1")
    await store.insert_enrollment(broken)

    scheduler = EnrollmentScheduler(executor, interval_seconds=1, concurrency=2)
    processed = await scheduler.run_once()

    assert processed == 2
    for enrollment_id in (first.id, second.id):
        assert (await store.get_enrollment(enrollment_id)).current_node_id == "d1"
    assert (await store.get_enrollment(broken.id)).status == EnrollmentStatus.ACTIVE


async def test_start_and_stop(executor):
    scheduler = EnrollmentScheduler(executor, interval_seconds=3600)
    await scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running and scheduler.task is None


async def test_run_once_survives_unexpected_tick_errors(executor, store, scenario_journey, monkeypatch):
    await store.save_journey(scenario_journey)
    healthy = await executor.enroll_customer("j1", "c1")
    corrupt = await executor.enroll_customer("j1", "c1")
    process = executor.process_enrollment

    async def flaky_process(enrollment_id):
        if enrollment_id == corrupt.id:
            raise RuntimeError("document failed validation")
        await process(enrollment_id)

    monkeypatch.setattr(executor, "process_enrollment", flaky_process)
    scheduler = EnrollmentScheduler(executor, interval_seconds=1)

    assert await scheduler.run_once() == 1
    assert (await store.get_enrollment(healthy.id)).current_node_id == "d1"


async def test_loop_keeps_running_after_store_failure(executor, store, monkeypatch):
    calls = []

    async def failing_list():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("mongo down")
        return []

    monkeypatch.setattr(store, "list_active_enrollments", failing_list)
    scheduler = EnrollmentScheduler(executor, interval_seconds=0.01)
    await scheduler.start()
    await asyncio.sleep(0.1)

    assert not scheduler.task.done()
    assert len(calls) >= 2
    await scheduler.stop()

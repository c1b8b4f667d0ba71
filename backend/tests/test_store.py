import asyncio

import pytest

from conftest import T0
from journeyflow.errors import StaleEnrollmentError
from journeyflow.models.enrollment import EnrollmentStatus, JourneyEnrollment
from journeyflow.models.segment import CustomerSegment
from journeyflow.services.segment_cache import SegmentCache


async def test_stale_write_is_rejected(store):
    await store.insert_enrollment(JourneyEnrollment(id="enr_1", journey_id="j1", customer_id="c1"))
    first = await store.get_enrollment("enr_1")
    second = await store.get_enrollment("enr_1")

    first.enter_node("t1", T0)
    await store.save_enrollment(first)
    assert first.version == 1

    second.enter_node("d1", T0)
    with pytest.raises(StaleEnrollmentError):
        await store.save_enrollment(second)
    assert (await store.get_enrollment("enr_1")).current_node_id == "t1"


async def test_reads_are_isolated_copies(store):
    await store.insert_enrollment(JourneyEnrollment(id="enr_1", journey_id="j1", customer_id="c1"))
    copy = await store.get_enrollment("enr_1")
    copy.enter_node("t1", T0)
    assert (await store.get_enrollment("enr_1")).history == []


async def test_duplicate_insert_is_rejected(store):
    await store.insert_enrollment(JourneyEnrollment(id="enr_1", journey_id="j1", customer_id="c1"))
    with pytest.raises(StaleEnrollmentError):
        await store.insert_enrollment(JourneyEnrollment(id="enr_1", journey_id="j1", customer_id="c1"))


async def test_list_active_enrollments_filters_status_and_journey(store):
    await store.insert_enrollment(JourneyEnrollment(id="a", journey_id="j1", customer_id="c1"))
    await store.insert_enrollment(JourneyEnrollment(id="b", journey_id="j2", customer_id="c1"))
    await store.insert_enrollment(
        JourneyEnrollment(id="c", journey_id="j1", customer_id="c2", status=EnrollmentStatus.COMPLETED)
    )
    assert {e.id for e in await store.list_active_enrollments()} == {"a", "b"}
    assert [e.id for e in await store.list_active_enrollments(journey_id="j1")] == ["a"]


async def test_concurrent_ticks_do_not_duplicate_sends(executor, store, messaging, clock, scenario_journey):
    await store.save_journey(scenario_journey)
    enrollment = await executor.enroll_customer("j1", "c1")
    await executor.process_enrollment(enrollment.id)
    clock.advance(hours=2, minutes=1)

    await asyncio.gather(*(executor.process_enrollment(enrollment.id) for _ in range(5)))

    done = await store.get_enrollment(enrollment.id)
    assert done.status == EnrollmentStatus.COMPLETED
    assert len(done.actions) == 1
    assert len(messaging.sent) == 1


async def test_segment_cache_expires_entries(store):
    now = [0.0]
    cache = SegmentCache(store, ttl_seconds=60, clock=lambda: now[0])
    await store.save_segment(CustomerSegment(id="s1", name="first"))
    assert (await cache.get("s1")).name == "first"

    await store.save_segment(CustomerSegment(id="s1", name="second"))
    assert (await cache.get("s1")).name == "first"

    now[0] = 61.0
    assert (await cache.get("s1")).name == "second"

    await store.save_segment(CustomerSegment(id="s1", name="third"))
    cache.invalidate("s1")
    assert (await cache.get("s1")).name == "third"
    assert await cache.get("missing") is None

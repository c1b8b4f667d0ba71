from datetime import timedelta

import pytest

from conftest import T0, build_journey, chain
from journeyflow.errors import ValidationError
from journeyflow.models.enrollment import ActionType, EnrollmentStatus
from journeyflow.models.event import CommerceEvent
from journeyflow.services.event_tracker import EventTracker


@pytest.fixture
def tracker(executor):
    return EventTracker(executor)


def waiting_journey(journey_id, trigger):
    return build_journey(
        nodes=[
            {"id": "t1", "type": "trigger", "trigger": trigger},
            {"id": "d1", "type": "delay", "delay": {"value": 1, "unit": "days"}},
            {"id": "g1", "type": "goal"},
        ],
        edges=chain("t1", "d1", "g1"),
        journey_id=journey_id,
    )


async def test_order_event_enrolls_matching_journeys(tracker, store, commerce):
    commerce.orders["c1"] = [{"id": 1}]
    await store.save_journey(waiting_journey("orders", {"kind": "order_placed"}))
    await store.save_journey(waiting_journey("first", {"kind": "first_purchase"}))
    await store.save_journey(waiting_journey("tags", {"kind": "tag_added", "tag": "vip"}))
    await store.save_journey(waiting_journey("segment", {"kind": "segment", "segmentId": "s1"}))

    enrolled = await tracker.handle_commerce_event(
        CommerceEvent.model_validate({"topic": "orders/create", "customer_id": "c1", "payload": {"id": 99}})
    )
    assert sorted(e.journey_id for e in enrolled) == ["first", "orders"]


async def test_order_event_records_purchase_on_active_enrollments(tracker, executor, store):
    await store.save_journey(waiting_journey("manual", {"kind": "manual"}))
    existing = await executor.enroll_customer("manual", "c1")

    await tracker.handle_commerce_event(
        CommerceEvent.model_validate({"type": "order_created", "customer_id": "c1", "payload": {"id": 99}})
    )
    enrollment = await store.get_enrollment(existing.id)
    purchases = [a for a in enrollment.actions if a.type == ActionType.PURCHASE_MADE]
    assert len(purchases) == 1
    assert purchases[0].metadata == {"order_id": "99"}


async def test_event_for_unknown_customer_is_ignored(tracker, store):
    await store.save_journey(waiting_journey("orders", {"kind": "order_placed"}))
    assert await tracker.handle_commerce_event(CommerceEvent(type="order_created", customer_id="nobody")) == []
    assert await tracker.handle_commerce_event(CommerceEvent(type="order_created")) == []


async def test_record_engagement_validates_type(tracker, executor, store):
    await store.save_journey(waiting_journey("manual", {"kind": "manual"}))
    enrollment = await executor.enroll_customer("manual", "c1")

    with pytest.raises(ValidationError):
        await tracker.record_engagement(enrollment.id, "message_teleported")
    with pytest.raises(ValidationError):
        await tracker.record_engagement(enrollment.id, "message_sent")

    updated = await tracker.record_engagement(enrollment.id, "message_opened")
    assert updated.has_action(ActionType.MESSAGE_OPENED)
    assert updated.status == EnrollmentStatus.ACTIVE


async def test_inbound_message_opens_free_window(tracker, store):
    contact = await tracker.record_inbound_message("+1 (555) 123-4567", T0, customer_id="c1")
    assert contact.phone == "15551234567"
    assert contact.window_expires_at == T0 + timedelta(hours=24)
    assert (await store.get_contact_window("15551234567")).customer_id == "c1"

    with pytest.raises(ValidationError):
        await tracker.record_inbound_message("not a phone", T0)

from datetime import timedelta

import pytest

from conftest import T0, build_journey, chain, template_action
from journeyflow.errors import ExternalProviderError
from journeyflow.models.customer import ContactWindow
from journeyflow.models.enrollment import ActionType, JourneyEnrollment
from journeyflow.services.action_processor import ActionProcessor, render


@pytest.fixture
def processor(messaging, store, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    clock.now = T0.replace(hour=12)
    return ActionProcessor(messaging, store, clock=clock, sleep=fake_sleep)


def journey_with(action_node, **settings):
    return build_journey(
        nodes=[{"id": "t1", "type": "trigger"}, action_node, {"id": "g1", "type": "goal"}],
        edges=chain("t1", action_node["id"], "g1"),
        **settings,
    )


async def run(processor, journey, customer):
    node = journey.get_node("a1")
    enrollment = JourneyEnrollment(id="enr_1", journey_id=journey.id, customer_id=customer.id, current_node_id="a1")
    return await processor.execute(journey, enrollment, node, customer)


async def test_template_send(processor, messaging, commerce):
    result = await run(processor, journey_with(template_action(variables={"code": "SAVE10"})), commerce.customers["c1"])
    assert result.sent and result.channel == "template" and result.attempts == 1
    assert messaging.sent[0]["variables"] == {
        "code": "SAVE10", "first_name": "Ana", "last_name": "Silva", "email": "ana@example.com"
    }


async def test_free_form_inside_window_has_tracked_links(processor, messaging, store, commerce, clock):
    await store.save_contact_window(ContactWindow(phone="+1 555 123 4567", last_message_at=clock.now - timedelta(hours=3)))
    action = template_action(text="Hi {{first_name}}, see https://shop.example/sale")
    result = await run(processor, journey_with(action), commerce.customers["c1"])

    assert result.sent and result.channel == "free_form"
    body = messaging.sent[0]["body"]
    assert body.startswith("Hi Ana, see http://localhost:8000/api/track/click?token=")
    assert "url=https%3A%2F%2Fshop.example%2Fsale" in body


async def test_missing_or_local_phone_fails(processor, messaging, commerce):
    no_phone = commerce.add_customer(id="c2")
    result = await run(processor, journey_with(template_action()), no_phone)
    assert not result.sent and result.error_kind == "validation"

    local = commerce.add_customer(id="c3", phone="0612345678")
    result = await run(processor, journey_with(template_action()), local)
    assert result.reason == "Invalid phone format"
    assert messaging.sent == []


async def test_send_window_uses_journey_timezone(processor, messaging, commerce, clock):
    # 12:00 UTC is 21:00 in Tokyo, past the 9 to 21 window.
    result = await run(processor, journey_with(template_action(), timezone="Asia/Tokyo"), commerce.customers["c1"])
    assert result.status == "failed"
    assert result.reason == "outside send window"
    assert result.error_kind == "out_of_window"

    deferred = await run(
        processor, journey_with(template_action(deferOutsideSendWindow=True), timezone="Asia/Tokyo"), commerce.customers["c1"]
    )
    assert deferred.deferred


async def test_unknown_timezone_falls_back_to_utc(processor, commerce):
    result = await run(processor, journey_with(template_action(), timezone="Mars/Olympus"), commerce.customers["c1"])
    assert result.sent


async def test_outside_free_window_without_template_is_skipped(processor, messaging, commerce):
    action = template_action(templateName=None, text="Hello")
    result = await run(processor, journey_with(action), commerce.customers["c1"])
    assert result.status == "failed"
    assert result.reason == "outside window, no fallback template"
    assert messaging.sent == []


async def test_rate_limit_counts_sent_messages(processor, store, messaging, commerce, clock):
    earlier = JourneyEnrollment(journey_id="j1", customer_id="c1")
    earlier.record_action(ActionType.MESSAGE_SENT, clock.now - timedelta(hours=2))
    await store.insert_enrollment(earlier)

    result = await run(processor, journey_with(template_action(rateLimit={"maxPerDay": 1})), commerce.customers["c1"])
    assert result.error_kind == "rate_limited"
    assert result.reason == "rate limit reached (1 per day)"

    result = await run(processor, journey_with(template_action(rateLimit={"maxPerDay": 2})), commerce.customers["c1"])
    assert result.sent


async def test_transient_errors_are_retried_with_backoff(processor, messaging, commerce, sleeps):
    messaging.errors = [
        ExternalProviderError("503", transient=True, status_code=503),
        ExternalProviderError("429", transient=True, status_code=429),
    ]
    result = await run(processor, journey_with(template_action()), commerce.customers["c1"])
    assert result.sent and result.attempts == 3
    assert sleeps == [2.0, 4.0]


async def test_retries_stop_at_max_attempts(processor, messaging, commerce, sleeps):
    messaging.errors = [ExternalProviderError("timeout", transient=True) for _ in range(5)]
    action = template_action(retry={"maxAttempts": 2, "strategy": "linear", "baseDelaySeconds": 1})
    result = await run(processor, journey_with(action), commerce.customers["c1"])
    assert result.status == "failed" and result.attempts == 2
    assert sleeps == [1.0]


async def test_permanent_errors_are_not_retried(processor, messaging, commerce, sleeps):
    messaging.errors = [ExternalProviderError("template not approved", status_code=400)]
    result = await run(processor, journey_with(template_action()), commerce.customers["c1"])
    assert result.status == "failed" and result.attempts == 1 and result.error_kind == "provider"
    assert sleeps == []


def test_render_leaves_unknown_placeholders():
    assert render("Hi {{ first_name }} {{missing}}", {"first_name": "Ana"}) == "Hi Ana {{missing}}"

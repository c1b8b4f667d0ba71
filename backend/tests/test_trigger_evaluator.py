from datetime import timedelta

import pytest

from conftest import T0
from journeyflow.errors import ExternalProviderError
from journeyflow.models.event import CommerceEvent
from journeyflow.models.journey import TriggerNode
from journeyflow.models.segment import CustomerSegment
from journeyflow.services.segment_cache import SegmentCache
from journeyflow.services.trigger_evaluator import TriggerEvaluator


@pytest.fixture
def triggers(store, commerce, clock):
    return TriggerEvaluator(commerce, SegmentCache(store), clock=clock)


def trigger(**config):
    return TriggerNode(id="t1", trigger=config)


async def test_manual_always_matches(triggers, commerce):
    assert await triggers.check_trigger(trigger(kind="manual"), commerce.customers["c1"])


async def test_order_placed_needs_matching_order_event(triggers, commerce):
    customer = commerce.customers["c1"]
    order = CommerceEvent.model_validate({"topic": "orders/create", "customer_id": 1})
    assert order.type == "order_created"
    assert not await triggers.check_trigger(trigger(kind="order_placed"), customer, order)
    own_order = CommerceEvent.model_validate({"type": "order_created", "customerId": "c1"})
    assert await triggers.check_trigger(trigger(kind="order_placed"), customer, own_order)
    assert not await triggers.check_trigger(trigger(kind="order_placed"), customer)


async def test_tag_added_is_case_insensitive(triggers, commerce):
    event = CommerceEvent.model_validate({"type": "customers/update", "customer_id": "c1", "tags": "Gold, VIP"})
    assert await triggers.check_trigger(trigger(kind="tag_added", tag="vip"), commerce.customers["c1"], event)
    assert not await triggers.check_trigger(trigger(kind="tag_added", tag="bronze"), commerce.customers["c1"], event)


async def test_segment_trigger_uses_segment_conditions(triggers, store, commerce):
    await store.save_segment(
        CustomerSegment.model_validate(
            {
                "id": "big-spenders",
                "conditionGroups": [
                    {"groupOperator": "AND", "conditions": [{"field": "total_spent", "operator": ">", "value": 100}]}
                ],
            }
        )
    )
    rich = commerce.add_customer(id="c2", total_spent="250.00")
    assert await triggers.check_trigger(trigger(kind="segment", segmentId="big-spenders"), rich)
    assert not await triggers.check_trigger(trigger(kind="segment", segmentId="big-spenders"), commerce.customers["c1"])
    assert not await triggers.check_trigger(trigger(kind="segment", segmentId="missing"), rich)


async def test_abandoned_cart_waits_for_checkout_to_age(triggers, commerce):
    customer = commerce.customers["c1"]
    commerce.checkouts.append({"id": 1, "customer": {"id": "c1"}, "updated_at": (T0 - timedelta(hours=2)).isoformat()})
    assert not await triggers.check_trigger(trigger(kind="abandoned_cart", hours=3), customer)
    assert await triggers.check_trigger(trigger(kind="abandoned_cart", hours=1), customer)


async def test_first_and_repeat_purchase(triggers, commerce):
    customer = commerce.customers["c1"]
    commerce.orders["c1"] = [{"id": 1}]
    assert await triggers.check_trigger(trigger(kind="first_purchase"), customer)
    assert not await triggers.check_trigger(trigger(kind="repeat_purchase"), customer)
    commerce.orders["c1"].append({"id": 2})
    assert await triggers.check_trigger(trigger(kind="repeat_purchase"), customer)


async def test_provider_failure_and_unknown_kind_do_not_match(triggers, commerce):
    customer = commerce.customers["c1"]
    commerce.fail_with = ExternalProviderError("shopify down", transient=True)
    assert not await triggers.check_trigger(trigger(kind="first_purchase"), customer)
    assert not await triggers.check_trigger(trigger(kind="webhook"), customer)

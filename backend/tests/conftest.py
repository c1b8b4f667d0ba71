from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from journeyflow.errors import ExternalProviderError, NotFoundError
from journeyflow.models.customer import Customer
from journeyflow.models.journey import JourneyDefinition
from journeyflow.services.commerce import CommerceProvider, checkout_belongs_to
from journeyflow.services.journey_executor import JourneyExecutor
from journeyflow.services.messaging import MessagingProvider
from journeyflow.services.store import InMemoryJourneyStore

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCommerce(CommerceProvider):
    def __init__(self):
        self.customers: Dict[str, Customer] = {}
        self.orders: Dict[str, List[Dict[str, Any]]] = {}
        self.checkouts: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.orders_fail_with: Optional[Exception] = None
        self.customer_calls = 0

    def add_customer(self, **fields) -> Customer:
        customer = Customer.from_raw(fields)
        self.customers[customer.id] = customer
        return customer

    async def get_customer(self, customer_id):
        self.customer_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        customer = self.customers.get(str(customer_id))
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    async def get_customer_orders(self, customer_id):
        if self.fail_with is not None or self.orders_fail_with is not None:
            raise self.fail_with or self.orders_fail_with
        return list(self.orders.get(str(customer_id), []))

    async def get_abandoned_checkouts(self, customer_id=None, email=None):
        if self.fail_with is not None:
            raise self.fail_with
        if customer_id is None and email is None:
            return list(self.checkouts)
        return [c for c in self.checkouts if checkout_belongs_to(c, customer_id, email)]

    async def list_customers(self, limit=250):
        return list(self.customers.values())[:limit]


class FakeMessaging(MessagingProvider):
    def __init__(self, configured: bool = True):
        self.configured = configured
        self.sent: List[Dict[str, Any]] = []
        self.errors: List[ExternalProviderError] = []

    def is_configured(self):
        return self.configured

    async def _deliver(self, message: Dict[str, Any]) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)
        return f"wamid.{len(self.sent)}"

    async def send_free_form(self, phone, body):
        return await self._deliver({"kind": "free_form", "phone": phone, "body": body})

    async def send_template(self, phone, template_name, language, variables):
        return await self._deliver(
            {"kind": "template", "phone": phone, "template": template_name, "language": language, "variables": variables}
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryJourneyStore()


@pytest.fixture
def commerce():
    fake = FakeCommerce()
    fake.add_customer(id="c1", first_name="Ana", last_name="Silva", email="ana@example.com", phone="+15551234567")
    return fake


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(store, commerce, messaging, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return JourneyExecutor(store, commerce, messaging, clock=clock, sleep=fake_sleep)


def build_journey(nodes, edges, journey_id="j1", status="ACTIVE", **settings) -> JourneyDefinition:
    return JourneyDefinition.model_validate(
        {"id": journey_id, "name": journey_id, "status": status, "nodes": nodes, "edges": edges, "settings": settings}
    )


def chain(*node_ids):
    return [{"source": a, "target": b} for a, b in zip(node_ids, node_ids[1:])]


def template_action(node_id="a1", **action):
    config = {"kind": "whatsapp_template", "templateName": "welcome_v1", "sendWindow": {"startHour": 9, "endHour": 21}}
    config.update(action)
    return {"id": node_id, "type": "action", "action": config}


@pytest.fixture
def scenario_journey():
    """trigger(manual) -> delay(2 hours) -> action(template, 9 to 21) -> goal"""
    return build_journey(
        nodes=[
            {"id": "t1", "type": "trigger", "trigger": {"kind": "manual"}},
            {"id": "d1", "type": "delay", "delay": {"value": 2, "unit": "hours"}},
            template_action("a1"),
            {"id": "g1", "type": "goal"},
        ],
        edges=chain("t1", "d1", "a1", "g1"),
    )

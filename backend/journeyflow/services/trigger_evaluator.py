import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from journeyflow.errors import JourneyflowError
from journeyflow.models.common import ensure_utc, utcnow
from journeyflow.models.customer import Customer
from journeyflow.models.event import CUSTOMER_UPDATED, ORDER_CREATED, CommerceEvent
from journeyflow.models.journey import TriggerNode
from journeyflow.services import condition_evaluator
from journeyflow.services.commerce import CommerceProvider
from journeyflow.services.segment_cache import SegmentCache

logger = logging.getLogger(__name__)


def _parse_timestamp(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


class TriggerEvaluator:
    """Decides whether a journey's trigger admits a customer.

    Event-only kinds (order_placed, tag_added, manual) never touch a provider.
    Provider failures are logged and evaluate to False.
    """

    def __init__(
        self,
        commerce: CommerceProvider,
        segment_cache: SegmentCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.commerce = commerce
        self.segment_cache = segment_cache
        self.clock = clock

    async def check_trigger(
        self,
        trigger_node: TriggerNode,
        customer: Customer,
        event: Optional[CommerceEvent] = None,
    ) -> bool:
        config = trigger_node.trigger
        kind = config.kind
        try:
            if kind == "manual":
                return True
            if kind == "order_placed":
                return event is not None and event.type == ORDER_CREATED and event.customer_id == customer.id
            if kind == "tag_added":
                wanted = (config.tag or "").strip().lower()
                return (
                    event is not None
                    and event.type == CUSTOMER_UPDATED
                    and bool(wanted)
                    and wanted in {tag.lower() for tag in event.tags}
                )
            if kind == "segment":
                return await self._matches_segment(config.segment_id, customer)
            if kind == "abandoned_cart":
                return await self._has_aged_checkout(customer, config.hours or 24)
            if kind in ("first_purchase", "repeat_purchase"):
                orders = await self.commerce.get_customer_orders(customer.id)
                return len(orders) == 1 if kind == "first_purchase" else len(orders) >= 2
        except JourneyflowError as e:
            logger.warning(f"[TRIGGER] {kind} trigger check failed for customer {customer.id}: {e.message}")
            return False

        logger.info(f"[TRIGGER] Unknown trigger kind '{kind}' on node {trigger_node.id}, not matching")
        return False

    async def _matches_segment(self, segment_id: Optional[str], customer: Customer) -> bool:
        if not segment_id:
            logger.warning(f"[TRIGGER] Segment trigger without a segment id, customer {customer.id} not matched")
            return False
        segment = await self.segment_cache.get(segment_id)
        if segment is None:
            logger.warning(f"[TRIGGER] Segment {segment_id} not found")
            return False
        return condition_evaluator.matches(customer, segment.condition_groups, now=self.clock())

    async def _has_aged_checkout(self, customer: Customer, hours: float) -> bool:
        checkouts = await self.commerce.get_abandoned_checkouts(customer_id=customer.id, email=customer.email)
        threshold = self.clock() - timedelta(hours=hours)
        for checkout in checkouts:
            updated_at = _parse_timestamp(checkout.get("updated_at"))
            if updated_at is not None and updated_at <= threshold:
                return True
        return False

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from journeyflow.errors import ConfigurationError, ExternalProviderError, NotFoundError, ValidationError
from journeyflow.models.common import ensure_utc
from journeyflow.models.customer import ContactWindow, normalize_phone
from journeyflow.models.enrollment import ActionType, EnrollmentStatus, JourneyEnrollment
from journeyflow.models.event import CommerceEvent, ORDER_CREATED
from journeyflow.models.journey import JourneyStatus
from journeyflow.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)

# Triggers that react to an incoming commerce event rather than a sweep.
EVENT_TRIGGERS = {"order_placed", "tag_added", "first_purchase", "repeat_purchase"}


class EventTracker:
    """Routes commerce webhooks and engagement signals into the journey engine."""

    def __init__(self, executor: JourneyExecutor):
        self.executor = executor
        self.store = executor.store

    async def handle_commerce_event(self, event: CommerceEvent) -> List[JourneyEnrollment]:
        """Enroll the event's customer into every ACTIVE journey whose trigger matches.

        An order event also counts as a purchase for the customer's ACTIVE
        enrollments, which feeds made_purchase style conditions.
        """
        if not event.customer_id:
            logger.warning(f"[EVENT] Ignoring {event.type} event without a customer id")
            return []

        logger.info(f"[EVENT] Processing {event.type} event for customer {event.customer_id}")
        try:
            customer = await self.executor.commerce.get_customer(event.customer_id)
        except (NotFoundError, ExternalProviderError, ConfigurationError) as e:
            logger.error(f"[EVENT] Could not load customer {event.customer_id}: {e.message}")
            return []

        if event.type == ORDER_CREATED:
            await self._record_purchase(event)

        enrolled = []
        for journey in await self.store.list_journeys(status=JourneyStatus.ACTIVE):
            if journey.trigger_node.trigger.kind not in EVENT_TRIGGERS:
                continue
            enrollment = await self.executor.enroll_customer(
                journey.id, customer.id, event=event, customer=customer
            )
            if enrollment is not None:
                logger.info(f"[EVENT] Customer {customer.id} enrolled in journey {journey.id} ({enrollment.id})")
                enrolled.append(enrollment)

        logger.info(f"[EVENT] {event.type} for customer {event.customer_id} produced {len(enrolled)} enrollment(s)")
        return enrolled

    async def _record_purchase(self, event: CommerceEvent):
        order_id = event.payload.get("id") or event.payload.get("order_id")
        for journey in await self.store.list_journeys(status=JourneyStatus.ACTIVE):
            for enrollment in await self.store.list_customer_enrollments(journey.id, event.customer_id):
                if enrollment.status != EnrollmentStatus.ACTIVE:
                    continue
                await self.executor.record_engagement(
                    enrollment.id, ActionType.PURCHASE_MADE, {"order_id": str(order_id) if order_id else None}
                )

    async def record_engagement(
        self, enrollment_id: str, action_type: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[JourneyEnrollment]:
        try:
            action = ActionType(action_type)
        except ValueError as e:
            raise ValidationError(f"Unknown engagement type '{action_type}'") from e
        logger.info(f"[EVENT] Recording {action.value} for enrollment {enrollment_id}")
        return await self.executor.record_engagement(enrollment_id, action, metadata)

    async def record_inbound_message(
        self, phone: str, received_at: datetime, customer_id: Optional[str] = None
    ) -> ContactWindow:
        """An inbound WhatsApp message opens the 24 hour free messaging window."""
        normalized = normalize_phone(phone)
        received_at = ensure_utc(received_at)
        if not normalized:
            raise ValidationError("Invalid phone format", phone=phone)
        contact = await self.store.get_contact_window(normalized) or ContactWindow(phone=normalized)
        contact = contact.model_copy(
            update={
                "customer_id": customer_id or contact.customer_id,
                "last_message_at": received_at,
                "window_expires_at": received_at + timedelta(hours=24),
            }
        )
        await self.store.save_contact_window(contact)
        logger.info(f"[EVENT] Inbound message from {normalized}, free window open until {contact.window_expires_at}")
        return contact

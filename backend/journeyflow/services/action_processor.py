"""
Action node execution.

``ActionProcessor.execute`` runs the delivery gates for a WhatsApp action in a
fixed order (phone, provider configuration, daily send window, rate limit,
24 hour window decision) and then sends with bounded retry. Every outcome is
returned as an ActionResult; provider and validation errors never escape.
"""
import asyncio
import logging
import re
from datetime import datetime
from typing import Awaitable, Callable, Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from journeyflow.config import settings
from journeyflow.errors import (
    ConfigurationError,
    ExternalProviderError,
    JourneyflowError,
    OutOfWindowError,
    RateLimitError,
    ValidationError,
)
from journeyflow.models.common import utcnow
from journeyflow.models.customer import Customer, normalize_phone
from journeyflow.models.enrollment import JourneyEnrollment
from journeyflow.models.journey import ActionNode, JourneyDefinition
from journeyflow.services import send_window
from journeyflow.services.messaging import MessagingProvider
from journeyflow.services.store import JourneyStore
from journeyflow.services.tracking_links import make_click_token, track_links

logger = logging.getLogger(__name__)

OUTSIDE_SEND_WINDOW = "outside send window"
PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ActionResult(BaseModel):
    status: Literal["sent", "failed", "deferred"]
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    message_id: Optional[str] = None
    channel: Optional[Literal["free_form", "template"]] = None
    attempts: int = 0

    @property
    def sent(self) -> bool:
        return self.status == "sent"

    @property
    def deferred(self) -> bool:
        return self.status == "deferred"

    @classmethod
    def failure(cls, error: JourneyflowError, attempts: int = 0) -> "ActionResult":
        return cls(status="failed", reason=error.message, error_kind=error.kind, attempts=attempts)


def journey_timezone(journey: JourneyDefinition) -> ZoneInfo:
    name = journey.settings.timezone or settings.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[ACTION] Unknown timezone '{name}' on journey {journey.id}, using UTC")
        return ZoneInfo("UTC")


def render(text: str, variables: Dict[str, str]) -> str:
    """Fill ``{{name}}`` placeholders; unknown placeholders are left as written."""
    return PLACEHOLDER.sub(lambda match: str(variables.get(match.group(1), match.group(0))), text)


def validated_phone(customer: Customer) -> str:
    raw = customer.contact_phone
    if not raw:
        raise ValidationError("Customer has no phone number", customer_id=customer.id)
    phone = normalize_phone(raw)
    # Numbers must be in international format; a leading 0 means a local number.
    if not phone or phone.startswith("0"):
        raise ValidationError("Invalid phone format", customer_id=customer.id)
    return phone


class ActionProcessor:

    def __init__(
        self,
        messaging: MessagingProvider,
        store: JourneyStore,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.messaging = messaging
        self.store = store
        self.clock = clock
        self.sleep = sleep

    async def execute(
        self,
        journey: JourneyDefinition,
        enrollment: JourneyEnrollment,
        node: ActionNode,
        customer: Customer,
    ) -> ActionResult:
        config = node.action
        now = self.clock()
        try:
            phone = validated_phone(customer)
            if not self.messaging.is_configured():
                raise ConfigurationError("WhatsApp not configured")

            local_hour = now.astimezone(journey_timezone(journey)).hour
            if not config.send_window.contains(local_hour):
                if config.defer_outside_send_window:
                    logger.info(f"[ACTION] Node {node.id} deferred, local hour {local_hour} outside send window")
                    return ActionResult(status="deferred", reason=OUTSIDE_SEND_WINDOW, error_kind=OutOfWindowError.kind)
                raise OutOfWindowError(OUTSIDE_SEND_WINDOW, hour=local_hour)

            await self._check_rate_limit(journey, node, customer, now)

            contact = await self.store.get_contact_window(phone)
            if contact is not None:
                customer = customer.with_contact_window(contact.last_message_at, contact.window_expires_at)

            variables = dict(config.variables)
            if customer.first_name:
                variables["first_name"] = customer.first_name
            if customer.last_name:
                variables["last_name"] = customer.last_name
            if customer.email:
                variables["email"] = customer.email

            body = render(config.text, variables) if config.text else None
            template_name = config.template_name
            decision = send_window.decide(customer, now, template_name=template_name, free_form_body=body)
            if decision.skip:
                raise OutOfWindowError(decision.reason)

            if decision.use_free_form:
                body = track_links(body, make_click_token(enrollment.id, journey.id, node.id))
                return await self._send_with_retry(
                    node, "free_form", lambda: self.messaging.send_free_form(phone, body)
                )
            return await self._send_with_retry(
                node,
                "template",
                lambda: self.messaging.send_template(phone, template_name, config.language, variables),
            )
        except JourneyflowError as e:
            logger.warning(f"[ACTION] Node {node.id} not sent for customer {customer.id}: {e.message}")
            return ActionResult.failure(e)

    async def _check_rate_limit(self, journey: JourneyDefinition, node: ActionNode, customer: Customer, now: datetime):
        limits = node.action.rate_limit
        if limits is None:
            return
        journey_id = journey.id if limits.scope == "journey" else None
        for limit, lookback, label in limits.windows():
            sent = await self.store.count_sent_messages(customer.id, now - lookback, journey_id=journey_id)
            if sent >= limit:
                raise RateLimitError(f"rate limit reached ({limit} per {label})", sent=sent, limit=limit)

    async def _send_with_retry(self, node: ActionNode, channel: str, send) -> ActionResult:
        retry = node.action.retry
        attempt = 0
        while True:
            attempt += 1
            try:
                message_id = await send()
                logger.info(f"[ACTION] Node {node.id} sent via {channel} on attempt {attempt}: {message_id}")
                return ActionResult(status="sent", message_id=message_id, channel=channel, attempts=attempt)
            except ExternalProviderError as e:
                if not e.transient or attempt >= retry.max_attempts:
                    logger.error(
                        f"[ACTION] Node {node.id} send failed after {attempt} attempt(s) "
                        f"(transient={e.transient}): {e.message}"
                    )
                    result = ActionResult.failure(e, attempts=attempt)
                    return result.model_copy(update={"channel": channel})
                delay = retry.delay_for(attempt)
                logger.warning(
                    f"[ACTION] Node {node.id} transient send failure on attempt {attempt}/{retry.max_attempts}, "
                    f"retrying in {delay}s: {e.message}"
                )
                await self.sleep(delay)

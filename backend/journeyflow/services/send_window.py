"""
Free-form vs. template decision for WhatsApp sends.

A contact is inside the free messaging window when an explicit window expiry is
still in the future or, without one, when their last inbound message is less
than 24 hours old. Inside the window a free-form body is sent at no template
cost; outside it a configured template is used, and without one the send is
skipped.
"""
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict

from journeyflow.models.common import ensure_utc
from journeyflow.models.customer import Customer

FREE_WINDOW = timedelta(hours=24)
NO_FALLBACK_REASON = "outside window, no fallback template"


class SendDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    use_free_form: bool = False
    use_template: bool = False
    skip: bool = False
    reason: Optional[str] = None


def in_free_window(customer: Customer, now: datetime, window_expires_at: Optional[datetime] = None) -> bool:
    now = ensure_utc(now)
    expires_at = ensure_utc(window_expires_at) or customer.window_expires_at
    if expires_at is not None:
        return expires_at > now
    last_message_at = customer.last_message_at
    return last_message_at is not None and now - last_message_at < FREE_WINDOW


def decide(
    customer: Customer,
    now: datetime,
    template_name: Optional[str] = None,
    free_form_body: Optional[str] = None,
    window_expires_at: Optional[datetime] = None,
) -> SendDecision:
    if in_free_window(customer, now, window_expires_at):
        if free_form_body:
            return SendDecision(use_free_form=True, reason="inside 24h window")
        if template_name:
            return SendDecision(use_template=True, reason="inside 24h window, no free-form body")
        return SendDecision(skip=True, reason="no message body or template configured")
    if template_name:
        return SendDecision(use_template=True, reason="outside 24h window, using template")
    return SendDecision(skip=True, reason=NO_FALLBACK_REASON)

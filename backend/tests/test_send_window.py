from datetime import timedelta

from conftest import T0
from journeyflow.models.customer import Customer
from journeyflow.services.send_window import NO_FALLBACK_REASON, decide, in_free_window


def contact(**fields):
    return Customer(id="c1", **fields)


def test_explicit_expiry_wins_over_stale_last_message():
    c = contact(last_message_at=T0 - timedelta(hours=40), window_expires_at=T0 + timedelta(hours=1))
    decision = decide(c, T0, template_name="promo", free_form_body="Hi")
    assert decision.use_free_form and not decision.use_template


def test_recent_inbound_message_opens_window():
    c = contact(last_message_at=T0 - timedelta(hours=2))
    assert in_free_window(c, T0)
    assert decide(c, T0, free_form_body="Hi").use_free_form


def test_stale_contact_falls_back_to_template():
    c = contact(last_message_at=T0 - timedelta(hours=30))
    decision = decide(c, T0, template_name="promo", free_form_body="Hi")
    assert decision.use_template and not decision.use_free_form


def test_stale_contact_without_template_is_skipped():
    c = contact(last_message_at=T0 - timedelta(hours=30))
    decision = decide(c, T0, free_form_body="Hi")
    assert decision.skip
    assert decision.reason == NO_FALLBACK_REASON


def test_expired_explicit_window_overrides_recent_message():
    c = contact(last_message_at=T0 - timedelta(hours=1), window_expires_at=T0 - timedelta(minutes=5))
    assert not in_free_window(c, T0)
    decision = decide(c, T0, template_name="promo", free_form_body="Hi")
    assert decision.use_template and not decision.use_free_form


def test_window_closes_at_24_hours():
    c = contact(last_message_at=T0 - timedelta(hours=24))
    assert not in_free_window(c, T0)


def test_inside_window_without_body_uses_template():
    c = contact(last_message_at=T0 - timedelta(hours=1))
    assert decide(c, T0, template_name="promo").use_template
    assert decide(c, T0).skip

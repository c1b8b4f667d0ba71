"""
Scheduled sweep over ACTIVE journeys.

Journeys triggered by a segment or by abandoned carts have no webhook to start
them, so ``run_journey_engine`` resolves their candidate customers, enrolls the
eligible ones and then ticks every ACTIVE enrollment once.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from journeyflow.errors import JourneyflowError
from journeyflow.models.common import ensure_utc
from journeyflow.models.customer import Customer, normalize_phone
from journeyflow.models.enrollment import JourneyEnrollment
from journeyflow.models.journey import JourneyDefinition, JourneyStatus
from journeyflow.services import condition_evaluator
from journeyflow.services.journey_executor import JourneyExecutor
from journeyflow.services.trigger_evaluator import _parse_timestamp

logger = logging.getLogger(__name__)

SWEEP_TRIGGERS = {"segment", "abandoned_cart"}


class RunLogEntry(BaseModel):
    level: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class RunSummary(BaseModel):
    journeys_processed: int = 0
    enrollments_created: int = 0
    enrollments_processed: int = 0
    dry_run_candidates: int = 0
    skipped: int = 0
    errors: List[RunLogEntry] = Field(default_factory=list)

    def log(self, level: str, message: str, **context):
        getattr(logger, "warning" if level == "warn" else level)(f"[RUNNER] {message} {context}")
        self.errors.append(RunLogEntry(level=level, message=message, context=context))


def can_reenter(journey: JourneyDefinition, previous: List[JourneyEnrollment], now) -> bool:
    if not previous:
        return True
    entry = journey.settings.entry
    if not entry.allow_reentry:
        return False
    if not entry.reentry_cooldown_days:
        return True
    latest = max(previous, key=lambda e: ensure_utc(e.updated_at))
    finished_at = ensure_utc(latest.completed_at or latest.updated_at)
    return now - finished_at >= timedelta(days=entry.reentry_cooldown_days)


def is_test_customer(customer: Customer, test_customer_ids: Iterable[str], test_phones: Iterable[str]) -> bool:
    if customer.id in {str(cid) for cid in test_customer_ids}:
        return True
    phone = normalize_phone(customer.contact_phone)
    return bool(phone) and phone in {normalize_phone(p) for p in test_phones}


async def _segment_candidates(
    executor: JourneyExecutor, journey: JourneyDefinition, customers: List[Customer], summary: RunSummary
) -> List[Customer]:
    trigger = journey.trigger_node.trigger
    segment_id = trigger.segment_id or journey.settings.entry.segment_id
    if not segment_id:
        return []
    segment = await executor.segment_cache.get(segment_id)
    if segment is None:
        summary.log("warn", "Segment not found for journey trigger", journey_id=journey.id, segment_id=segment_id)
        return []
    now = executor.clock()
    return [c for c in customers if condition_evaluator.matches(c, segment.condition_groups, now=now)]


async def _abandoned_cart_candidates(
    executor: JourneyExecutor, journey: JourneyDefinition, summary: RunSummary
) -> List[Customer]:
    hours = journey.trigger_node.trigger.hours or 24
    try:
        checkouts = await executor.commerce.get_abandoned_checkouts()
    except JourneyflowError as e:
        summary.log("error", "Failed to load abandoned checkouts", journey_id=journey.id, error=e.message)
        return []
    cutoff = executor.clock() - timedelta(hours=hours)
    candidates = {}
    for checkout in checkouts:
        updated_at = _parse_timestamp(checkout.get("updated_at"))
        owner = checkout.get("customer")
        if updated_at is None or updated_at > cutoff or not isinstance(owner, dict) or owner.get("id") is None:
            continue
        customer = Customer.from_raw(owner)
        candidates[customer.id] = customer
    return list(candidates.values())


async def run_journey_engine(
    executor: JourneyExecutor,
    include_test_journeys: bool = False,
    test_phone_numbers: Optional[List[str]] = None,
    test_customer_ids: Optional[List[str]] = None,
    dry_run: bool = False,
) -> RunSummary:
    summary = RunSummary()
    store = executor.store
    journeys = await store.list_journeys(status=JourneyStatus.ACTIVE)
    customers: Optional[List[Customer]] = None

    for journey in journeys:
        if journey.settings.test_mode and not include_test_journeys:
            summary.skipped += 1
            continue
        kind = journey.trigger_node.trigger.kind
        if kind not in SWEEP_TRIGGERS:
            summary.skipped += 1
            continue
        summary.journeys_processed += 1

        if kind == "segment":
            if customers is None:
                try:
                    customers = await executor.commerce.list_customers()
                except JourneyflowError as e:
                    summary.log("error", "Failed to load customers", error=e.message)
                    customers = []
            candidates = await _segment_candidates(executor, journey, customers, summary)
        else:
            candidates = await _abandoned_cart_candidates(executor, journey, summary)

        test_phones = list(test_phone_numbers or []) + journey.settings.test_phone_numbers
        test_ids = list(test_customer_ids or []) + journey.settings.test_customer_ids
        for customer in candidates:
            if journey.settings.test_mode and not is_test_customer(customer, test_ids, test_phones):
                continue
            previous = await store.list_customer_enrollments(journey.id, customer.id)
            if not can_reenter(journey, previous, executor.clock()):
                continue
            if dry_run:
                summary.dry_run_candidates += 1
                summary.log("info", "Dry-run enrollment", journey_id=journey.id, customer_id=customer.id)
                continue
            try:
                enrollment = await executor.enroll_customer(journey.id, customer.id, customer=customer)
            except JourneyflowError as e:
                summary.log("error", "Failed to enroll customer", journey_id=journey.id, customer_id=customer.id, error=e.message)
                continue
            if enrollment is not None:
                summary.enrollments_created += 1

    if dry_run:
        logger.info(f"[RUNNER] Dry run finished: {summary.dry_run_candidates} candidate(s)")
        return summary

    for enrollment in await store.list_active_enrollments():
        try:
            await executor.process_enrollment(enrollment.id)
            summary.enrollments_processed += 1
        except JourneyflowError as e:
            summary.log("error", "Failed to process enrollment", enrollment_id=enrollment.id, error=e.message)

    logger.info(
        f"[RUNNER] Sweep finished: {summary.journeys_processed} journeys, "
        f"{summary.enrollments_created} enrolled, {summary.enrollments_processed} processed, "
        f"{len(summary.errors)} log entries"
    )
    return summary

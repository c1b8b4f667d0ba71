"""
Segment condition evaluation.

``matches(customer, groups)`` never raises: a condition with an unknown field,
unknown operator or unparsable value is logged and counts as non-matching.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from journeyflow.models.common import ensure_utc, utcnow
from journeyflow.models.customer import Customer
from journeyflow.models.segment import ConditionGroup, SegmentCondition

logger = logging.getLogger(__name__)

# Field spellings used by older segment exports and the builder UI.
CONDITION_FIELD_ALIASES = {
    "name": "customer_name",
    "email": "customer_email",
    "phone": "customer_phone",
    "tags": "customer_tags",
    "totalSpent": "total_spent",
    "total_spend": "total_spent",
    "orders_count": "total_orders",
    "ordersCount": "total_orders",
    "order_count": "total_orders",
    "orderCount": "total_orders",
    "averageOrderValue": "average_order_value",
    "marketing_opt_in": "accepts_marketing",
    "acceptsMarketing": "accepts_marketing",
    "email_opt_in": "accepts_marketing",
    "created_at": "customer_since",
    "lastMessageAt": "last_message_at",
    "country": "location_country",
    "city": "location_city",
    "state": "location_state",
    "province": "location_state",
    "zip": "location_postal_code",
}

OPERATOR_ALIASES = {
    "=": "equals",
    "==": "equals",
    "eq": "equals",
    "is": "equals",
    "!=": "not_equals",
    "ne": "not_equals",
    "is_not": "not_equals",
    ">": "greater_than",
    "gt": "greater_than",
    ">=": "greater_or_equal",
    "gte": "greater_or_equal",
    "at_least": "greater_or_equal",
    "<": "less_than",
    "lt": "less_than",
    "<=": "less_or_equal",
    "lte": "less_or_equal",
    "at_most": "less_or_equal",
    "includes": "contains",
    "not_includes": "not_contains",
}


class MalformedConditionError(Exception):
    """Raised internally for conditions that cannot be evaluated."""


_MISSING = object()


def _field_value(customer: Customer, field: str, now: datetime) -> Any:
    address = customer.primary_address
    if field == "customer_name":
        return customer.full_name
    if field == "customer_email":
        return customer.email or ""
    if field == "customer_phone":
        return customer.contact_phone or ""
    if field == "customer_tags":
        return customer.tags
    if field == "total_spent":
        return customer.total_spent
    if field == "total_orders":
        return customer.orders_count
    if field == "average_order_value":
        return customer.total_spent / customer.orders_count if customer.orders_count > 0 else 0.0
    if field == "accepts_marketing":
        return customer.accepts_marketing
    if field == "never_ordered":
        return customer.orders_count == 0
    if field == "customer_since":
        return customer.created_at
    if field in ("last_order_date", "last_seen"):
        return customer.updated_at
    if field == "days_since_last_order":
        if customer.updated_at is None:
            return 999
        return (now - customer.updated_at).days
    if field == "last_message_at":
        return customer.last_message_at
    if field == "location_country":
        return address.country if address else ""
    if field == "location_city":
        return address.city if address else ""
    if field == "location_state":
        return address.province if address else ""
    if field == "location_postal_code":
        return address.zip if address else ""
    if field == "location_address":
        if not address:
            return ""
        return f"{address.address1 or ''} {address.address2 or ''}".strip()
    return _MISSING


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Builder exports store timestamps in milliseconds.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _lower(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) else None


def _require_number(value: Any, target: Any, operator: str):
    left, right = _to_number(value), _to_number(target)
    if right is None:
        raise MalformedConditionError(f"{operator} needs a numeric value, got {target!r}")
    return left, right


def _compare(value: Any, operator: str, target: Any, now: datetime) -> bool:
    if operator in ("has_tag", "not_has_tag"):
        tags = value if isinstance(value, list) else [t.strip() for t in str(value or "").split(",")]
        wanted = str(target or "").strip().lower()
        found = bool(wanted) and wanted in {tag.lower() for tag in tags if tag}
        return found if operator == "has_tag" else not found

    # List-valued fields (tags) compare as their comma-joined text.
    if isinstance(value, list):
        value = ", ".join(value)

    if operator == "equals":
        if isinstance(value, bool) and isinstance(target, str):
            return value == (target.strip().lower() in ("true", "yes", "1"))
        if _lower(value) is not None and _lower(target) is not None:
            return _lower(value) == _lower(target)
        left, right = _to_number(value), _to_number(target)
        if left is not None and right is not None:
            return left == right
        return value == target
    if operator == "not_equals":
        return not _compare(value, "equals", target, now)
    if operator in ("contains", "not_contains", "starts_with", "ends_with"):
        left, right = _lower(value), _lower(target)
        if left is None or right is None:
            return False
        if operator == "contains":
            return right in left
        if operator == "not_contains":
            return right not in left
        if operator == "starts_with":
            return left.startswith(right)
        return left.endswith(right)
    if operator == "greater_than":
        left, right = _require_number(value, target, operator)
        return left is not None and left > right
    if operator == "greater_or_equal":
        left, right = _require_number(value, target, operator)
        return left is not None and left >= right
    if operator == "less_than":
        left, right = _require_number(value, target, operator)
        return left is not None and left < right
    if operator == "less_or_equal":
        left, right = _require_number(value, target, operator)
        return left is not None and left <= right
    if operator == "between":
        bounds = target if isinstance(target, (list, tuple)) else str(target or "").split(",")
        if len(bounds) < 2:
            raise MalformedConditionError(f"between needs two bounds, got {target!r}")
        low, high = _to_number(bounds[0]), _to_number(bounds[1])
        if low is None or high is None:
            raise MalformedConditionError(f"between needs numeric bounds, got {target!r}")
        number = _to_number(value)
        return number is not None and low <= number <= high
    if operator == "is_empty":
        return _is_empty(value)
    if operator == "is_not_empty":
        return not _is_empty(value)
    if operator == "in_last_days":
        days = _to_number(target)
        if days is None:
            raise MalformedConditionError(f"in_last_days needs a number of days, got {target!r}")
        moment = _to_datetime(value)
        return moment is not None and moment >= now - timedelta(days=days)
    if operator in ("before_date", "after_date"):
        boundary = _to_datetime(target)
        if boundary is None:
            raise MalformedConditionError(f"{operator} needs a date, got {target!r}")
        moment = _to_datetime(value)
        if moment is None:
            return False
        return moment < boundary if operator == "before_date" else moment > boundary
    raise MalformedConditionError(f"Unknown operator {operator!r}")


def normalize_field(field: str) -> str:
    return CONDITION_FIELD_ALIASES.get(field, field)


def normalize_operator(operator: str) -> str:
    cleaned = (operator or "").strip()
    return OPERATOR_ALIASES.get(cleaned, OPERATOR_ALIASES.get(cleaned.lower(), cleaned.lower()))


def evaluate_condition(customer: Customer, condition: SegmentCondition, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    try:
        field = normalize_field(condition.field)
        value = _field_value(customer, field, now)
        if value is _MISSING:
            raise MalformedConditionError(f"Unknown field {condition.field!r}")
        return _compare(value, normalize_operator(condition.operator), condition.value, now)
    except MalformedConditionError as e:
        logger.warning(f"[CONDITION] Skipping malformed condition {condition.id or condition.field}: {e}")
        return False
    except Exception as e:
        logger.error(f"[CONDITION] Failed to evaluate condition {condition.id or condition.field}: {e}", exc_info=True)
        return False


def matches(customer: Customer, groups: Iterable[ConditionGroup], now: Optional[datetime] = None) -> bool:
    """True when every group matches; an empty group (or no groups) matches everyone."""
    now = now or utcnow()
    for group in groups or []:
        if not group.conditions:
            continue
        results = (evaluate_condition(customer, condition, now) for condition in group.conditions)
        group_matched = any(results) if group.group_operator == "OR" else all(results)
        if not group_matched:
            return False
    return True

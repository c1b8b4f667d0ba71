"""
One processor per journey node type.

A processor inspects the enrollment's current node and returns a NodeOutcome
telling the state machine what to do next: wait (no state change), advance
along an edge (optionally on a condition branch) or finish with a terminal
status. Processors do not persist anything.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel

from journeyflow.errors import NotFoundError
from journeyflow.models.common import ensure_utc, utcnow
from journeyflow.models.customer import Customer
from journeyflow.models.enrollment import ActionType, EnrollmentStatus, JourneyEnrollment
from journeyflow.models.journey import (
    ActionNode,
    Branch,
    ConditionNode,
    DelayNode,
    ExitNode,
    FailurePolicy,
    GoalNode,
    JourneyDefinition,
    TriggerNode,
)
from journeyflow.services.action_processor import ActionProcessor, ActionResult
from journeyflow.services.commerce import CommerceProvider

logger = logging.getLogger(__name__)


class NodeOutcome(BaseModel):
    kind: Literal["wait", "advance", "finish"]
    branch: Optional[Branch] = None
    status: Optional[EnrollmentStatus] = None
    reason: Optional[str] = None
    action_result: Optional[ActionResult] = None

    @classmethod
    def wait(cls, reason: str, action_result: Optional[ActionResult] = None) -> "NodeOutcome":
        return cls(kind="wait", reason=reason, action_result=action_result)

    @classmethod
    def advance(cls, branch: Optional[Branch] = None, action_result: Optional[ActionResult] = None) -> "NodeOutcome":
        return cls(kind="advance", branch=branch, action_result=action_result)

    @classmethod
    def finish(
        cls, status: EnrollmentStatus, reason: Optional[str] = None, action_result: Optional[ActionResult] = None
    ) -> "NodeOutcome":
        return cls(kind="finish", status=status, reason=reason, action_result=action_result)


def _number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _created_after(order: Dict[str, Any], moment: datetime) -> bool:
    created_at = order.get("created_at")
    if not created_at:
        return False
    try:
        created = ensure_utc(datetime.fromisoformat(str(created_at).replace("Z", "+00:00")))
    except ValueError:
        return False
    return created > moment


def _contains_product(order: Dict[str, Any], product_id: str) -> bool:
    return any(str(line.get("product_id") or "") == product_id for line in order.get("line_items") or [])


class NodeProcessors:
    """Dispatch table from node class to processor coroutine."""

    def __init__(
        self,
        actions: ActionProcessor,
        commerce: CommerceProvider,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.actions = actions
        self.commerce = commerce
        self.clock = clock
        self._handlers = {
            TriggerNode: self.process_trigger,
            DelayNode: self.process_delay,
            ActionNode: self.process_action,
            ConditionNode: self.process_condition,
            GoalNode: self.process_goal,
            ExitNode: self.process_exit,
        }

    async def process(self, journey: JourneyDefinition, enrollment: JourneyEnrollment, node, customer: Customer) -> NodeOutcome:
        handler = self._handlers.get(type(node))
        if handler is None:
            raise TypeError(f"No processor registered for node type {type(node).__name__}")
        return await handler(journey, enrollment, node, customer)

    async def process_trigger(self, journey, enrollment, node: TriggerNode, customer) -> NodeOutcome:
        # The trigger is only the entry marker; it never holds an enrollment back.
        return NodeOutcome.advance()

    async def process_delay(self, journey, enrollment, node: DelayNode, customer) -> NodeOutcome:
        entry = enrollment.latest_entry(node.id)
        if entry is None:
            logger.warning(f"[DELAY] Enrollment {enrollment.id} has no history entry for delay node {node.id}")
            return NodeOutcome.wait("no history entry for delay node")
        elapsed = self.clock() - ensure_utc(entry.entered_at)
        if elapsed < node.delay.duration:
            return NodeOutcome.wait(f"waiting until {ensure_utc(entry.entered_at) + node.delay.duration}")
        return NodeOutcome.advance()

    async def process_action(self, journey, enrollment, node: ActionNode, customer) -> NodeOutcome:
        result = await self.actions.execute(journey, enrollment, node, customer)
        if result.deferred:
            return NodeOutcome.wait(result.reason or "deferred", action_result=result)
        if not result.sent and node.action.on_failure == FailurePolicy.EXIT:
            return NodeOutcome.finish(
                EnrollmentStatus.EXITED, reason=f"action_failed: {result.reason}", action_result=result
            )
        return NodeOutcome.advance(action_result=result)

    async def process_condition(self, journey, enrollment, node: ConditionNode, customer) -> NodeOutcome:
        result = await self.evaluate_condition(node, customer, enrollment)
        logger.info(f"[CONDITION] Node {node.id} ({node.condition.kind}) evaluated to {result} for enrollment {enrollment.id}")
        return NodeOutcome.advance(branch=Branch.for_result(result))

    async def process_goal(self, journey, enrollment, node: GoalNode, customer) -> NodeOutcome:
        return NodeOutcome.finish(EnrollmentStatus.COMPLETED)

    async def process_exit(self, journey, enrollment, node: ExitNode, customer) -> NodeOutcome:
        return NodeOutcome.finish(EnrollmentStatus.EXITED, reason="exit_node")

    async def evaluate_condition(self, node: ConditionNode, customer: Customer, enrollment: JourneyEnrollment) -> bool:
        kind = node.condition.kind
        args = node.condition.args
        try:
            if kind == "opened_message":
                return enrollment.has_action(ActionType.MESSAGE_OPENED)
            if kind == "clicked_link":
                return enrollment.has_action(ActionType.LINK_CLICKED)
            if kind == "has_tag":
                return customer.has_tag(str(args.get("tag") or ""))
            if kind == "total_spent_gt":
                return customer.total_spent > _number(args.get("amount"))
            if kind == "order_count":
                return customer.orders_count >= _number(args.get("min"))
            if kind == "made_purchase":
                orders = await self.commerce.get_customer_orders(customer.id)
                started_at = ensure_utc(enrollment.started_at)
                return any(_created_after(order, started_at) for order in orders)
            if kind == "product_purchased":
                product_id = args.get("productId") or args.get("product_id")
                if not product_id:
                    return False
                orders: List[Dict[str, Any]] = await self.commerce.get_customer_orders(customer.id)
                return any(_contains_product(order, str(product_id)) for order in orders)
        except NotFoundError as e:
            logger.warning(f"[CONDITION] Node {node.id} ({kind}) could not be evaluated: {e.message}")
            return False

        logger.warning(f"[CONDITION] Unknown condition kind '{kind}' on node {node.id}, treating as false")
        return False

import asyncio
import logging
import uuid
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from journeyflow.config import settings
from journeyflow.errors import (
    ConfigurationError,
    CorruptedStateError,
    ExternalProviderError,
    NotFoundError,
    StaleEnrollmentError,
    ValidationError,
)
from journeyflow.models.common import utcnow
from journeyflow.models.customer import Customer
from journeyflow.models.enrollment import (
    ActionType,
    EnrollmentStatus,
    JourneyEnrollment,
)
from journeyflow.models.event import CommerceEvent
from journeyflow.models.journey import (
    ActionNode,
    ConditionNode,
    JourneyDefinition,
    JourneyStatus,
    PausePolicy,
)
from journeyflow.services.action_processor import ActionProcessor, ActionResult
from journeyflow.services.commerce import CommerceProvider
from journeyflow.services.messaging import MessagingProvider
from journeyflow.services.node_processors import NodeOutcome, NodeProcessors
from journeyflow.services.segment_cache import SegmentCache
from journeyflow.services.store import JourneyStore
from journeyflow.services.trigger_evaluator import TriggerEvaluator

logger = logging.getLogger(__name__)

ENGAGEMENT_ACTIONS = {ActionType.MESSAGE_OPENED, ActionType.LINK_CLICKED, ActionType.PURCHASE_MADE}
JOURNEY_PAUSED = "journey_paused"


class JourneyExecutor:
    """Advances enrollments through their journey graph, one tick at a time.

    A tick runs under an in-process lock for the enrollment and every write is
    version-checked by the store, so two workers can never interleave updates
    to the same enrollment.
    """

    # Per-enrollment locks shared by every executor in the process.
    _locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __init__(
        self,
        store: JourneyStore,
        commerce: CommerceProvider,
        messaging: MessagingProvider,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        segment_cache: Optional[SegmentCache] = None,
    ):
        self.store = store
        self.commerce = commerce
        self.messaging = messaging
        self.clock = clock
        self.execution_id = str(uuid.uuid4())[:8]
        self.segment_cache = segment_cache or SegmentCache(store, ttl_seconds=settings.SEGMENT_CACHE_TTL_SECONDS)
        self.triggers = TriggerEvaluator(commerce, self.segment_cache, clock=clock)
        self.actions = ActionProcessor(messaging, store, clock=clock, sleep=sleep)
        self.processors = NodeProcessors(self.actions, commerce, clock=clock)

    def _log_flow(self, enrollment_id: Optional[str], message: str, level: str = "info", **kwargs):
        """Structured logging for enrollment processing"""
        log_data = {
            "execution_id": self.execution_id,
            "enrollment_id": enrollment_id,
            "message": message,
            **kwargs
        }
        if level == "info":
            logger.info(f"[FLOW] {log_data}")
        elif level == "warning":
            logger.warning(f"[FLOW] {log_data}")
        elif level == "error":
            logger.error(f"[FLOW] {log_data}")
        elif level == "debug":
            logger.debug(f"[FLOW] {log_data}")

    def _lock_for(self, enrollment_id: str) -> asyncio.Lock:
        lock = self._locks.get(enrollment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[enrollment_id] = lock
        return lock

    async def _save(self, enrollment: JourneyEnrollment, message: str, **kwargs) -> bool:
        """Persist a tick's changes; False when another writer got there first."""
        try:
            await self.store.save_enrollment(enrollment)
        except StaleEnrollmentError as e:
            self._log_flow(
                enrollment.id, "Stale write abandoned", level="warning", expected_version=e.context.get("expected_version")
            )
            return False
        self._log_flow(
            enrollment.id,
            message,
            journey_id=enrollment.journey_id,
            status=enrollment.status.value,
            current_node=enrollment.current_node_id,
            version=enrollment.version,
            **kwargs
        )
        return True

    # --- enrollment --------------------------------------------------------

    async def enroll_customer(
        self,
        journey_id: str,
        customer_id: str,
        event: Optional[CommerceEvent] = None,
        customer: Optional[Customer] = None,
    ) -> Optional[JourneyEnrollment]:
        """Create an enrollment if the journey's entry rules and trigger admit the customer.

        Returns None when the journey is missing or not ACTIVE, when an entry
        rule blocks the customer, or when the trigger does not match. The new
        enrollment is ticked once immediately so it enters the trigger node.
        """
        customer_id = str(customer_id)
        journey = await self.store.get_journey(journey_id)
        if journey is None:
            self._log_flow(None, "Enrollment rejected: journey not found", level="warning", journey_id=journey_id)
            return None
        if not journey.is_active:
            self._log_flow(
                None, "Enrollment rejected: journey not active", journey_id=journey_id, status=journey.status.value
            )
            return None

        existing = await self.store.list_customer_enrollments(journey_id, customer_id)
        entry = journey.settings.entry
        if entry.frequency == "once" and any(e.status == EnrollmentStatus.COMPLETED for e in existing):
            self._log_flow(None, "Enrollment rejected: journey already completed once", journey_id=journey_id, customer_id=customer_id)
            return None
        if entry.max_entries is not None and len(existing) >= entry.max_entries:
            self._log_flow(
                None,
                "Enrollment rejected: max entries reached",
                journey_id=journey_id,
                customer_id=customer_id,
                max_entries=entry.max_entries,
            )
            return None

        trigger_node = journey.trigger_node
        if trigger_node.trigger.kind != "manual":
            if customer is None:
                try:
                    customer = await self.commerce.get_customer(customer_id)
                except (NotFoundError, ExternalProviderError, ConfigurationError) as e:
                    self._log_flow(None, f"Enrollment rejected: customer unavailable: {e.message}", level="warning", customer_id=customer_id)
                    return None
            if not await self.triggers.check_trigger(trigger_node, customer, event):
                self._log_flow(
                    None, "Enrollment rejected: trigger did not match",
                    journey_id=journey_id, customer_id=customer_id, trigger=trigger_node.trigger.kind,
                )
                return None

        now = self.clock()
        enrollment = JourneyEnrollment(journey_id=journey_id, customer_id=customer_id, started_at=now, updated_at=now)
        await self.store.insert_enrollment(enrollment)
        self._log_flow(enrollment.id, "Customer enrolled", journey_id=journey_id, customer_id=customer_id)

        await self.process_enrollment(enrollment.id)
        return await self.store.get_enrollment(enrollment.id)

    # --- ticks ---------------------------------------------------------------

    async def process_enrollment(self, enrollment_id: str) -> None:
        """Advance one enrollment by one tick.

        Safe to call redundantly: a tick blocked on a delay, a deferred send or
        a paused journey writes nothing. Raises NotFoundError when the
        enrollment or its journey is missing and CorruptedStateError when the
        enrollment points at a node its journey does not have.
        """
        async with self._lock_for(enrollment_id):
            enrollment = await self.store.get_enrollment(enrollment_id)
            if enrollment is None:
                self._log_flow(enrollment_id, "Enrollment not found", level="error")
                raise NotFoundError(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            if enrollment.is_terminal:
                self._log_flow(enrollment_id, "Enrollment already finished, skipping", level="debug", status=enrollment.status.value)
                return

            journey = await self.store.get_journey(enrollment.journey_id)
            if journey is None:
                self._log_flow(enrollment_id, "Journey not found", level="error", journey_id=enrollment.journey_id)
                raise NotFoundError(f"Journey {enrollment.journey_id} not found", journey_id=enrollment.journey_id)

            if not journey.is_active:
                await self._handle_inactive_journey(journey, enrollment)
                return

            if enrollment.current_node_id is None:
                enrollment.enter_node(journey.trigger_node.id, self.clock())
                await self._save(enrollment, "Entered trigger node", node_id=journey.trigger_node.id)
                return

            await self._run_steps(journey, enrollment)

    async def _handle_inactive_journey(self, journey: JourneyDefinition, enrollment: JourneyEnrollment):
        if journey.status == JourneyStatus.DRAFT or journey.settings.pause_policy == PausePolicy.FREEZE:
            self._log_flow(enrollment.id, "Journey not active, enrollment frozen", level="debug", journey_status=journey.status.value)
            return
        now = self.clock()
        enrollment.close_current_entry(now)
        enrollment.finish(EnrollmentStatus.EXITED, now, reason=JOURNEY_PAUSED)
        await self._save(enrollment, "Exited because the journey is no longer active", journey_status=journey.status.value)

    async def _run_steps(self, journey: JourneyDefinition, enrollment: JourneyEnrollment):
        """Process nodes until the enrollment blocks, finishes or has visited every node once."""
        customer: Optional[Customer] = None
        for _ in range(len(journey.nodes)):
            node = journey.get_node(enrollment.current_node_id)
            if node is None:
                self._log_flow(
                    enrollment.id, "Current node missing from journey", level="error", node_id=enrollment.current_node_id
                )
                raise CorruptedStateError(
                    f"Enrollment {enrollment.id} references unknown node {enrollment.current_node_id}",
                    enrollment_id=enrollment.id,
                    node_id=enrollment.current_node_id,
                )

            if customer is None and isinstance(node, (ActionNode, ConditionNode)):
                try:
                    customer = await self.commerce.get_customer(enrollment.customer_id)
                except (ExternalProviderError, ConfigurationError) as e:
                    self._log_flow(enrollment.id, f"Customer fetch failed, retrying next pass: {e.message}", level="warning")
                    return

            try:
                outcome = await self.processors.process(journey, enrollment, node, customer)
            except (ExternalProviderError, ConfigurationError) as e:
                self._log_flow(
                    enrollment.id, f"Provider call failed, retrying next pass: {e.message}", level="warning", node_id=node.id
                )
                return
            now = self.clock()

            if outcome.action_result is not None and not outcome.action_result.deferred:
                self._record_action_result(enrollment, node.id, outcome.action_result, now)

            if outcome.kind == "wait":
                self._log_flow(enrollment.id, "Waiting", level="debug", node_id=node.id, reason=outcome.reason)
                return
            if outcome.kind == "finish":
                enrollment.close_current_entry(now)
                enrollment.finish(outcome.status, now, reason=outcome.reason)
                await self._save(enrollment, f"Finished at {node.type} node", node_id=node.id, reason=outcome.reason)
                return
            if not await self._follow_edge(journey, enrollment, node, outcome, now):
                return

        self._log_flow(
            enrollment.id, "Step limit reached for this tick, continuing next pass", level="warning", node_id=enrollment.current_node_id
        )

    def _record_action_result(self, enrollment: JourneyEnrollment, node_id: str, result: ActionResult, now: datetime):
        if result.sent:
            enrollment.record_action(
                ActionType.MESSAGE_SENT, now, node_id=node_id,
                message_id=result.message_id, channel=result.channel, attempts=result.attempts,
            )
        else:
            enrollment.record_action(
                ActionType.MESSAGE_FAILED, now, success=False, node_id=node_id,
                reason=result.reason, error_kind=result.error_kind, attempts=result.attempts,
            )

    async def _follow_edge(
        self, journey: JourneyDefinition, enrollment: JourneyEnrollment, node, outcome: NodeOutcome, now: datetime
    ) -> bool:
        """Move to the next node. Returns True when processing can continue this tick."""
        edges = journey.outgoing_edges(node.id)
        if not edges:
            enrollment.close_current_entry(now)
            enrollment.finish(EnrollmentStatus.DROPPED, now, reason="dead_end")
            await self._save(enrollment, "Dropped: node has no outgoing edges", node_id=node.id)
            return False

        edge = edges[0]
        if outcome.branch is not None:
            matching = next((e for e in edges if e.branch == outcome.branch), None)
            if matching is None:
                self._log_flow(
                    enrollment.id,
                    f"No '{outcome.branch.value}' edge on condition node, falling back to first edge",
                    level="warning",
                    node_id=node.id,
                    target=edge.target,
                )
            else:
                edge = matching

        enrollment.close_current_entry(now)
        enrollment.enter_node(edge.target, now)
        return await self._save(enrollment, "Advanced", from_node=node.id, to_node=edge.target, branch=outcome.branch)

    # --- engagement ----------------------------------------------------------

    async def record_engagement(
        self, enrollment_id: str, action_type: ActionType, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[JourneyEnrollment]:
        """Append an engagement action (open, click, purchase) to an ACTIVE enrollment."""
        action_type = ActionType(action_type)
        if action_type not in ENGAGEMENT_ACTIONS:
            raise ValidationError(f"{action_type.value} is not an engagement action")

        async with self._lock_for(enrollment_id):
            enrollment = await self.store.get_enrollment(enrollment_id)
            if enrollment is None:
                raise NotFoundError(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            if enrollment.is_terminal:
                self._log_flow(enrollment_id, f"Ignoring {action_type.value} on finished enrollment", status=enrollment.status.value)
                return None
            enrollment.record_action(action_type, self.clock(), node_id=enrollment.current_node_id, **(metadata or {}))
            if not await self._save(enrollment, f"Recorded {action_type.value}"):
                return None
            return enrollment


def default_executor() -> JourneyExecutor:
    """Executor wired to MongoDB, Shopify and WhatsApp from settings. Requires init_db()."""
    from journeyflow.services.commerce import ShopifyCommerceProvider
    from journeyflow.services.messaging import WhatsAppMessagingProvider
    from journeyflow.services.store import MongoJourneyStore

    return JourneyExecutor(MongoJourneyStore(), ShopifyCommerceProvider(), WhatsAppMessagingProvider())

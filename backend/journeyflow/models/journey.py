from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, Field, field_validator, model_validator

from journeyflow.models.common import CamelModel, utcnow


class JourneyStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class Branch(str, Enum):
    """Outcome of a condition node, carried on its outgoing edges."""

    YES = "yes"
    NO = "no"

    @classmethod
    def from_label(cls, label: Optional[str]) -> Optional["Branch"]:
        if not label:
            return None
        normalized = label.strip().lower()
        if normalized in ("yes", "true"):
            return cls.YES
        if normalized in ("no", "false"):
            return cls.NO
        return None

    @classmethod
    def for_result(cls, result: bool) -> "Branch":
        return cls.YES if result else cls.NO


class FailurePolicy(str, Enum):
    """What the state machine does after an action fails to send."""

    CONTINUE = "continue"
    EXIT = "exit"


class PausePolicy(str, Enum):
    """Effect of pausing or archiving a journey on its ACTIVE enrollments."""

    FREEZE = "freeze"
    EXIT = "exit"


# --- node configuration -----------------------------------------------------

class TriggerConfig(CamelModel):
    # Unknown kinds are kept as data; the trigger evaluator treats them as non-matching.
    kind: str = Field("manual", validation_alias=AliasChoices("kind", "type"))
    segment_id: Optional[str] = Field(None, validation_alias=AliasChoices("segment_id", "segmentId"))
    tag: Optional[str] = None
    hours: float = 24
    event_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("event_name", "eventName", "webhookEvent")
    )


class DelayConfig(CamelModel):
    value: float = Field(0, ge=0)
    unit: Literal["minutes", "hours", "days"] = "hours"

    @property
    def duration(self) -> timedelta:
        if self.unit == "minutes":
            return timedelta(minutes=self.value)
        if self.unit == "hours":
            return timedelta(hours=self.value)
        return timedelta(days=self.value)


class SendWindow(CamelModel):
    start_hour: int = Field(9, ge=0, le=23)
    end_hour: int = Field(21, ge=1, le=24)

    def contains(self, hour: int) -> bool:
        return self.start_hour <= hour < self.end_hour


class RateLimit(CamelModel):
    max_per_day: Optional[int] = Field(None, ge=0)
    max_per_week: Optional[int] = Field(None, ge=0)
    max_per_month: Optional[int] = Field(None, ge=0)
    scope: Literal["journey", "all_journeys"] = "journey"

    def windows(self) -> List[tuple]:
        """(limit, lookback, label) for every configured cap."""
        caps = []
        if self.max_per_day is not None:
            caps.append((self.max_per_day, timedelta(days=1), "day"))
        if self.max_per_week is not None:
            caps.append((self.max_per_week, timedelta(days=7), "week"))
        if self.max_per_month is not None:
            caps.append((self.max_per_month, timedelta(days=30), "month"))
        return caps


class RetryPolicy(CamelModel):
    max_attempts: int = Field(3, ge=1)
    strategy: Literal["linear", "exponential"] = "exponential"
    base_delay_seconds: float = Field(2.0, ge=0)
    max_delay_seconds: float = Field(30.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows failed attempt number ``attempt``."""
        if self.strategy == "linear":
            delay = self.base_delay_seconds * attempt
        else:
            delay = self.base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class ActionConfig(CamelModel):
    kind: Literal["whatsapp_template", "whatsapp_message"] = "whatsapp_template"
    template_name: Optional[str] = None
    language: str = "en"
    variables: Dict[str, str] = Field(default_factory=dict)
    text: Optional[str] = Field(
        None, validation_alias=AliasChoices("text", "fallbackText", "fallback_text", "message")
    )
    send_window: SendWindow = Field(default_factory=SendWindow)
    rate_limit: Optional[RateLimit] = None
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    on_failure: FailurePolicy = FailurePolicy.CONTINUE
    defer_outside_send_window: bool = False


class ConditionConfig(CamelModel):
    kind: str
    args: Dict[str, Any] = Field(default_factory=dict)


class GoalConfig(CamelModel):
    description: Optional[str] = None


# --- nodes ------------------------------------------------------------------

class NodeBase(CamelModel):
    id: str
    name: Optional[str] = None
    position: Dict[str, float] = Field(default_factory=dict)


class TriggerNode(NodeBase):
    type: Literal["trigger"] = "trigger"
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)


class DelayNode(NodeBase):
    type: Literal["delay"] = "delay"
    delay: DelayConfig = Field(default_factory=DelayConfig)


class ActionNode(NodeBase):
    type: Literal["action"] = "action"
    action: ActionConfig = Field(default_factory=ActionConfig)


class ConditionNode(NodeBase):
    type: Literal["condition"] = "condition"
    condition: ConditionConfig


class GoalNode(NodeBase):
    type: Literal["goal"] = "goal"
    goal: GoalConfig = Field(default_factory=GoalConfig)


class ExitNode(NodeBase):
    type: Literal["exit"] = "exit"


JourneyNode = Annotated[
    Union[TriggerNode, DelayNode, ActionNode, ConditionNode, GoalNode, ExitNode],
    Field(discriminator="type"),
]


class JourneyEdge(CamelModel):
    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None
    branch: Optional[Branch] = None

    @model_validator(mode="after")
    def _branch_from_label(self):
        if self.branch is None:
            self.branch = Branch.from_label(self.label)
        return self


# --- journey ----------------------------------------------------------------

class EntrySettings(CamelModel):
    frequency: Literal["always", "once"] = "always"
    max_entries: Optional[int] = Field(None, ge=1)
    segment_id: Optional[str] = None
    # Sweep only: may a customer with an earlier enrollment be enrolled again.
    allow_reentry: bool = False
    reentry_cooldown_days: Optional[float] = Field(None, ge=0)

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value):
        if value in (None, "", "multiple"):
            return "always"
        return value


class JourneySettings(CamelModel):
    entry: EntrySettings = Field(default_factory=EntrySettings)
    timezone: Optional[str] = None
    test_mode: bool = False
    test_phone_numbers: List[str] = Field(default_factory=list)
    test_customer_ids: List[str] = Field(default_factory=list)
    pause_policy: PausePolicy = PausePolicy.FREEZE


class JourneyDefinition(CamelModel):
    id: str
    name: str = ""
    status: JourneyStatus = JourneyStatus.DRAFT
    nodes: List[JourneyNode]
    edges: List[JourneyEdge] = Field(default_factory=list)
    settings: JourneySettings = Field(default_factory=JourneySettings)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_graph(self):
        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError(f"Journey {self.id} has duplicate node ids")

        triggers = [node for node in self.nodes if node.type == "trigger"]
        if len(triggers) != 1:
            raise ValueError(f"Journey {self.id} must have exactly one trigger node, found {len(triggers)}")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                raise ValueError(f"Edge from non-existent node: {edge.source}")
            if edge.target not in known:
                raise ValueError(f"Edge to non-existent node: {edge.target}")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == JourneyStatus.ACTIVE

    @property
    def trigger_node(self) -> TriggerNode:
        return next(node for node in self.nodes if node.type == "trigger")

    def get_node(self, node_id: Optional[str]):
        if node_id is None:
            return None
        return next((node for node in self.nodes if node.id == node_id), None)

    def outgoing_edges(self, node_id: str) -> List[JourneyEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def find_graph_issues(self) -> List[str]:
        """Structural warnings that do not make the journey invalid."""
        issues = []
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        reachable = set()
        stack = [self.trigger_node.id]
        while stack:
            node_id = stack.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            stack.extend(adjacency.get(node_id, []))
        for node in self.nodes:
            if node.id not in reachable:
                issues.append(f"Node {node.id} is not reachable from the trigger")

        visiting, visited = set(), set()

        def visit(node_id):
            if node_id in visiting:
                issues.append(f"Loop detected involving node {node_id}")
                return
            if node_id in visited:
                return
            visiting.add(node_id)
            for target in adjacency.get(node_id, []):
                visit(target)
            visiting.remove(node_id)
            visited.add(node_id)

        visit(self.trigger_node.id)

        for node in self.nodes:
            if node.type != "condition":
                continue
            branches = {edge.branch for edge in self.outgoing_edges(node.id)}
            for branch in Branch:
                if branch not in branches:
                    issues.append(f"Condition node {node.id} has no {branch.value} branch")
        return issues

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from journeyflow.models.common import CamelModel, utcnow


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXITED = "EXITED"
    DROPPED = "DROPPED"


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.EXITED, EnrollmentStatus.DROPPED}
)


class ActionType(str, Enum):
    MESSAGE_SENT = "message_sent"
    MESSAGE_FAILED = "message_failed"
    MESSAGE_OPENED = "message_opened"
    LINK_CLICKED = "link_clicked"
    PURCHASE_MADE = "purchase_made"


class HistoryEntry(CamelModel):
    node_id: str
    entered_at: datetime
    exited_at: Optional[datetime] = None


class ActionRecord(CamelModel):
    type: ActionType
    at: datetime
    success: bool = True
    node_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def new_enrollment_id() -> str:
    return f"enr_{uuid.uuid4().hex[:16]}"


class JourneyEnrollment(CamelModel):
    id: str = Field(default_factory=new_enrollment_id)
    journey_id: str
    customer_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_node_id: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    actions: List[ActionRecord] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    # Bumped by the store on every successful write; stale writes are rejected.
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def latest_entry(self, node_id: str) -> Optional[HistoryEntry]:
        """Most recent history entry for a node (a node can be revisited)."""
        for entry in reversed(self.history):
            if entry.node_id == node_id:
                return entry
        return None

    def enter_node(self, node_id: str, now: datetime) -> None:
        self.current_node_id = node_id
        self.history.append(HistoryEntry(node_id=node_id, entered_at=now))
        self.updated_at = now

    def close_current_entry(self, now: datetime) -> None:
        if self.current_node_id is None:
            return
        entry = self.latest_entry(self.current_node_id)
        if entry is not None and entry.exited_at is None:
            entry.exited_at = now

    def record_action(
        self,
        action_type: ActionType,
        now: datetime,
        success: bool = True,
        node_id: Optional[str] = None,
        reason: Optional[str] = None,
        **metadata,
    ) -> ActionRecord:
        record = ActionRecord(
            type=action_type,
            at=now,
            success=success,
            node_id=node_id,
            reason=reason,
            metadata=metadata,
        )
        self.actions.append(record)
        self.updated_at = now
        return record

    def has_action(self, action_type: ActionType) -> bool:
        return any(action.type == action_type for action in self.actions)

    def finish(self, status: EnrollmentStatus, now: datetime, reason: Optional[str] = None) -> None:
        self.status = status
        self.updated_at = now
        if status == EnrollmentStatus.COMPLETED:
            self.completed_at = now
        if reason:
            self.exit_reason = reason

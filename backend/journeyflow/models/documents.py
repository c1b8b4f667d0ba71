from beanie import Document, Indexed
from pydantic import Field
from datetime import datetime, timezone
from typing import List, Optional


class JourneyDocument(Document):
    journey_id: Indexed(str, unique=True)
    status: Indexed(str) = "DRAFT"
    definition: dict  # JourneyDefinition as JSON, nodes and edges included
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "journeys"


class EnrollmentDocument(Document):
    enrollment_id: Indexed(str, unique=True)
    journey_id: Indexed(str)
    customer_id: Indexed(str)
    status: Indexed(str) = "ACTIVE"
    current_node_id: Optional[str] = None
    history: List[dict] = Field(default_factory=list)
    actions: List[dict] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    version: int = 0

    class Settings:
        name = "journey_enrollments"


class SegmentDocument(Document):
    segment_id: Indexed(str, unique=True)
    name: str = Field(..., example="VIP customers")
    description: Optional[str] = None
    condition_groups: List[dict] = Field(default_factory=list)

    class Settings:
        name = "segments"


class ContactDocument(Document):
    phone: Indexed(str, unique=True)
    customer_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    window_expires_at: Optional[datetime] = None

    class Settings:
        name = "contacts"

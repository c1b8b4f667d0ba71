"""
Persistence boundary for journeys, enrollments, segments and contacts.

Enrollment writes follow a read-modify-write pattern guarded by a version
counter: ``save_enrollment`` only succeeds if the stored version still matches
the version that was read, otherwise StaleEnrollmentError is raised and the
caller drops its in-memory copy.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from journeyflow.errors import StaleEnrollmentError
from journeyflow.models.customer import ContactWindow, normalize_phone
from journeyflow.models.documents import (
    ContactDocument,
    EnrollmentDocument,
    JourneyDocument,
    SegmentDocument,
)
from journeyflow.models.enrollment import (
    ActionType,
    EnrollmentStatus,
    JourneyEnrollment,
)
from journeyflow.models.journey import JourneyDefinition, JourneyStatus
from journeyflow.models.segment import CustomerSegment

logger = logging.getLogger(__name__)


class JourneyStore(ABC):
    """Read-modify-write contract consumed by the journey executor."""

    # journeys
    @abstractmethod
    async def get_journey(self, journey_id: str) -> Optional[JourneyDefinition]: ...

    @abstractmethod
    async def list_journeys(self, status: Optional[JourneyStatus] = None) -> List[JourneyDefinition]: ...

    @abstractmethod
    async def save_journey(self, journey: JourneyDefinition) -> None: ...

    # enrollments
    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[JourneyEnrollment]: ...

    @abstractmethod
    async def list_active_enrollments(self, journey_id: Optional[str] = None) -> List[JourneyEnrollment]: ...

    @abstractmethod
    async def list_customer_enrollments(self, journey_id: str, customer_id: str) -> List[JourneyEnrollment]: ...

    @abstractmethod
    async def insert_enrollment(self, enrollment: JourneyEnrollment) -> None: ...

    @abstractmethod
    async def save_enrollment(self, enrollment: JourneyEnrollment) -> None:
        """Persist the enrollment if nobody else wrote it since it was read."""

    @abstractmethod
    async def count_sent_messages(
        self, customer_id: str, since: datetime, journey_id: Optional[str] = None
    ) -> int:
        """Successful message_sent actions for a customer since ``since``."""

    # segments and contacts
    @abstractmethod
    async def get_segment(self, segment_id: str) -> Optional[CustomerSegment]: ...

    @abstractmethod
    async def save_segment(self, segment: CustomerSegment) -> None: ...

    @abstractmethod
    async def get_contact_window(self, phone: str) -> Optional[ContactWindow]: ...

    @abstractmethod
    async def save_contact_window(self, contact: ContactWindow) -> None: ...


class InMemoryJourneyStore(JourneyStore):
    """Process-local store with the same concurrency contract as the Mongo store.

    Every read returns a deep copy, so callers never share state with the store.
    """

    def __init__(self):
        self.journeys: Dict[str, JourneyDefinition] = {}
        self.enrollments: Dict[str, JourneyEnrollment] = {}
        self.segments: Dict[str, CustomerSegment] = {}
        self.contacts: Dict[str, ContactWindow] = {}

    async def get_journey(self, journey_id):
        journey = self.journeys.get(journey_id)
        return journey.model_copy(deep=True) if journey else None

    async def list_journeys(self, status=None):
        return [
            journey.model_copy(deep=True)
            for journey in self.journeys.values()
            if status is None or journey.status == status
        ]

    async def save_journey(self, journey):
        self.journeys[journey.id] = journey.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id):
        enrollment = self.enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_active_enrollments(self, journey_id=None):
        return [
            enrollment.model_copy(deep=True)
            for enrollment in self.enrollments.values()
            if enrollment.status == EnrollmentStatus.ACTIVE
            and (journey_id is None or enrollment.journey_id == journey_id)
        ]

    async def list_customer_enrollments(self, journey_id, customer_id):
        return [
            enrollment.model_copy(deep=True)
            for enrollment in self.enrollments.values()
            if enrollment.journey_id == journey_id and enrollment.customer_id == str(customer_id)
        ]

    async def insert_enrollment(self, enrollment):
        if enrollment.id in self.enrollments:
            raise StaleEnrollmentError(f"Enrollment {enrollment.id} already exists", enrollment_id=enrollment.id)
        self.enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def save_enrollment(self, enrollment):
        stored = self.enrollments.get(enrollment.id)
        if stored is None or stored.version != enrollment.version:
            raise StaleEnrollmentError(
                f"Enrollment {enrollment.id} was modified concurrently",
                enrollment_id=enrollment.id,
                expected_version=enrollment.version,
            )
        enrollment.version += 1
        self.enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def count_sent_messages(self, customer_id, since, journey_id=None):
        count = 0
        for enrollment in self.enrollments.values():
            if enrollment.customer_id != str(customer_id):
                continue
            if journey_id is not None and enrollment.journey_id != journey_id:
                continue
            count += sum(
                1
                for action in enrollment.actions
                if action.type == ActionType.MESSAGE_SENT and action.success and action.at >= since
            )
        return count

    async def get_segment(self, segment_id):
        segment = self.segments.get(segment_id)
        return segment.model_copy(deep=True) if segment else None

    async def save_segment(self, segment):
        self.segments[segment.id] = segment.model_copy(deep=True)

    async def get_contact_window(self, phone):
        contact = self.contacts.get(normalize_phone(phone))
        return contact.model_copy() if contact else None

    async def save_contact_window(self, contact):
        key = normalize_phone(contact.phone)
        self.contacts[key] = contact.model_copy(update={"phone": key})


def _enrollment_fields(enrollment: JourneyEnrollment) -> dict:
    data = enrollment.model_dump(mode="python")
    data["enrollment_id"] = data.pop("id")
    data["status"] = enrollment.status.value
    for action in data["actions"]:
        action["type"] = action["type"].value
    return data


def _enrollment_from_document(doc: EnrollmentDocument) -> JourneyEnrollment:
    return JourneyEnrollment(
        id=doc.enrollment_id,
        journey_id=doc.journey_id,
        customer_id=doc.customer_id,
        status=doc.status,
        current_node_id=doc.current_node_id,
        history=doc.history,
        actions=doc.actions,
        started_at=doc.started_at,
        updated_at=doc.updated_at,
        completed_at=doc.completed_at,
        exit_reason=doc.exit_reason,
        version=doc.version,
    )


class MongoJourneyStore(JourneyStore):
    """Beanie-backed store. Requires init_db() to have run in this process."""

    async def get_journey(self, journey_id):
        doc = await JourneyDocument.find_one(JourneyDocument.journey_id == journey_id)
        if not doc:
            return None
        return JourneyDefinition.model_validate({**doc.definition, "status": doc.status})

    async def list_journeys(self, status=None):
        query = JourneyDocument.find() if status is None else JourneyDocument.find(
            JourneyDocument.status == JourneyStatus(status).value
        )
        docs = await query.to_list()
        return [JourneyDefinition.model_validate({**doc.definition, "status": doc.status}) for doc in docs]

    async def save_journey(self, journey):
        definition = journey.model_dump(mode="json")
        doc = await JourneyDocument.find_one(JourneyDocument.journey_id == journey.id)
        if doc:
            doc.status = journey.status.value
            doc.definition = definition
            doc.updated_at = journey.updated_at
            await doc.save()
        else:
            await JourneyDocument(
                journey_id=journey.id,
                status=journey.status.value,
                definition=definition,
                updated_at=journey.updated_at,
            ).insert()

    async def get_enrollment(self, enrollment_id):
        doc = await EnrollmentDocument.find_one(EnrollmentDocument.enrollment_id == enrollment_id)
        return _enrollment_from_document(doc) if doc else None

    async def list_active_enrollments(self, journey_id=None):
        filters = {"status": EnrollmentStatus.ACTIVE.value}
        if journey_id is not None:
            filters["journey_id"] = journey_id
        docs = await EnrollmentDocument.find(filters).to_list()
        return [_enrollment_from_document(doc) for doc in docs]

    async def list_customer_enrollments(self, journey_id, customer_id):
        docs = await EnrollmentDocument.find(
            {"journey_id": journey_id, "customer_id": str(customer_id)}
        ).to_list()
        return [_enrollment_from_document(doc) for doc in docs]

    async def insert_enrollment(self, enrollment):
        await EnrollmentDocument(**_enrollment_fields(enrollment)).insert()

    async def save_enrollment(self, enrollment):
        fields = _enrollment_fields(enrollment)
        expected_version = fields.pop("version")
        fields.pop("enrollment_id")
        result = await EnrollmentDocument.get_motor_collection().update_one(
            {"enrollment_id": enrollment.id, "version": expected_version},
            {"$set": {**fields, "version": expected_version + 1}},
        )
        if result.matched_count == 0:
            logger.warning(f"[STORE] Stale write rejected for enrollment {enrollment.id} at version {expected_version}")
            raise StaleEnrollmentError(
                f"Enrollment {enrollment.id} was modified concurrently",
                enrollment_id=enrollment.id,
                expected_version=expected_version,
            )
        enrollment.version = expected_version + 1

    async def count_sent_messages(self, customer_id, since, journey_id=None):
        match = {"customer_id": str(customer_id)}
        if journey_id is not None:
            match["journey_id"] = journey_id
        pipeline = [
            {"$match": match},
            {"$unwind": "$actions"},
            {
                "$match": {
                    "actions.type": ActionType.MESSAGE_SENT.value,
                    "actions.success": True,
                    "actions.at": {"$gte": since},
                }
            },
            {"$count": "sent"},
        ]
        result = await EnrollmentDocument.get_motor_collection().aggregate(pipeline).to_list(length=1)
        return result[0]["sent"] if result else 0

    async def get_segment(self, segment_id):
        doc = await SegmentDocument.find_one(SegmentDocument.segment_id == segment_id)
        if not doc:
            return None
        return CustomerSegment(
            id=doc.segment_id,
            name=doc.name,
            description=doc.description,
            condition_groups=doc.condition_groups,
        )

    async def save_segment(self, segment):
        data = segment.model_dump(mode="json")
        doc = await SegmentDocument.find_one(SegmentDocument.segment_id == segment.id)
        if doc:
            doc.name = segment.name
            doc.description = segment.description
            doc.condition_groups = data["condition_groups"]
            await doc.save()
        else:
            await SegmentDocument(
                segment_id=segment.id,
                name=segment.name,
                description=segment.description,
                condition_groups=data["condition_groups"],
            ).insert()

    async def get_contact_window(self, phone):
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        doc = await ContactDocument.find_one(ContactDocument.phone == normalized)
        if not doc:
            return None
        return ContactWindow(
            phone=doc.phone,
            customer_id=doc.customer_id,
            last_message_at=doc.last_message_at,
            window_expires_at=doc.window_expires_at,
        )

    async def save_contact_window(self, contact):
        normalized = normalize_phone(contact.phone)
        doc = await ContactDocument.find_one(ContactDocument.phone == normalized)
        if doc:
            doc.customer_id = contact.customer_id or doc.customer_id
            doc.last_message_at = contact.last_message_at
            doc.window_expires_at = contact.window_expires_at
            await doc.save()
        else:
            await ContactDocument(
                phone=normalized,
                customer_id=contact.customer_id,
                last_message_at=contact.last_message_at,
                window_expires_at=contact.window_expires_at,
            ).insert()

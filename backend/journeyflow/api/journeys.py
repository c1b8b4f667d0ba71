import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from journeyflow.api.dependencies import get_event_tracker, get_executor, http_error
from journeyflow.errors import JourneyflowError
from journeyflow.models.common import utcnow
from journeyflow.models.event import CommerceEvent
from journeyflow.models.journey import JourneyDefinition, JourneyStatus
from journeyflow.models.segment import CustomerSegment
from journeyflow.services.contact_import import import_contacts
from journeyflow.services.event_tracker import EventTracker
from journeyflow.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)
router = APIRouter()


class EnrollRequest(BaseModel):
    customer_id: str


class StatusRequest(BaseModel):
    status: JourneyStatus


class InboundMessageRequest(BaseModel):
    phone: str
    customer_id: Optional[str] = None
    received_at: Optional[datetime] = None


class EnrollmentResponse(BaseModel):
    enrolled: bool
    enrollment: Optional[Dict[str, Any]] = None


# --- journeys -----------------------------------------------------------------

@router.put("/journeys/{journey_id}")
async def save_journey(journey_id: str, journey: JourneyDefinition, executor: JourneyExecutor = Depends(get_executor)):
    if journey.id != journey_id:
        raise HTTPException(status_code=422, detail="Journey id in body does not match the URL")
    journey.updated_at = utcnow()
    await executor.store.save_journey(journey)
    issues = journey.find_graph_issues()
    for issue in issues:
        logger.warning(f"[JOURNEY] {journey_id}: {issue}")
    logger.info(f"[JOURNEY] Saved journey {journey_id} ({journey.status.value}, {len(journey.nodes)} nodes)")
    return {"journey_id": journey_id, "status": journey.status.value, "warnings": issues}


@router.get("/journeys/{journey_id}")
async def get_journey(journey_id: str, executor: JourneyExecutor = Depends(get_executor)):
    journey = await executor.store.get_journey(journey_id)
    if journey is None:
        raise HTTPException(status_code=404, detail="Journey not found")
    return {"journey": journey.model_dump(mode="json"), "warnings": journey.find_graph_issues()}


@router.post("/journeys/{journey_id}/status")
async def set_journey_status(journey_id: str, request: StatusRequest, executor: JourneyExecutor = Depends(get_executor)):
    journey = await executor.store.get_journey(journey_id)
    if journey is None:
        raise HTTPException(status_code=404, detail="Journey not found")
    previous = journey.status
    journey.status = request.status
    journey.updated_at = utcnow()
    await executor.store.save_journey(journey)
    logger.info(f"[JOURNEY] Journey {journey_id} status {previous.value} -> {request.status.value}")
    return {"journey_id": journey_id, "status": journey.status.value}


@router.put("/segments/{segment_id}")
async def save_segment(segment_id: str, segment: CustomerSegment, executor: JourneyExecutor = Depends(get_executor)):
    if segment.id != segment_id:
        raise HTTPException(status_code=422, detail="Segment id in body does not match the URL")
    await executor.store.save_segment(segment)
    executor.segment_cache.invalidate(segment_id)
    return {"segment_id": segment_id}


# --- enrollments --------------------------------------------------------------

@router.post("/journeys/{journey_id}/enrollments", response_model=EnrollmentResponse)
async def enroll_customer(journey_id: str, request: EnrollRequest, executor: JourneyExecutor = Depends(get_executor)):
    """Manually enroll a customer. Entry rules and the trigger still apply."""
    try:
        enrollment = await executor.enroll_customer(journey_id, request.customer_id)
    except JourneyflowError as e:
        raise http_error(e)
    if enrollment is None:
        return EnrollmentResponse(enrolled=False)
    return EnrollmentResponse(enrolled=True, enrollment=enrollment.model_dump(mode="json"))


@router.post("/journeys/{journey_id}/enrollments/import")
async def import_enrollments(
    journey_id: str, file: UploadFile = File(...), executor: JourneyExecutor = Depends(get_executor)
):
    content = (await file.read()).decode("utf-8-sig")
    try:
        summary = await import_contacts(executor, journey_id, content)
    except JourneyflowError as e:
        raise http_error(e)
    return summary.model_dump()


@router.get("/enrollments/{enrollment_id}")
async def get_enrollment(enrollment_id: str, executor: JourneyExecutor = Depends(get_executor)):
    enrollment = await executor.store.get_enrollment(enrollment_id)
    if enrollment is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment.model_dump(mode="json")


@router.post("/enrollments/{enrollment_id}/process")
async def process_enrollment(enrollment_id: str, executor: JourneyExecutor = Depends(get_executor)):
    try:
        await executor.process_enrollment(enrollment_id)
    except JourneyflowError as e:
        raise http_error(e)
    enrollment = await executor.store.get_enrollment(enrollment_id)
    return enrollment.model_dump(mode="json")


# --- events -------------------------------------------------------------------

@router.post("/events")
async def receive_event(event: CommerceEvent, tracker: EventTracker = Depends(get_event_tracker)):
    enrollments = await tracker.handle_commerce_event(event)
    return {"event": event.type, "enrollment_ids": [e.id for e in enrollments]}


@router.post("/events/inbound-message")
async def receive_inbound_message(request: InboundMessageRequest, tracker: EventTracker = Depends(get_event_tracker)):
    try:
        contact = await tracker.record_inbound_message(
            request.phone, request.received_at or utcnow(), customer_id=request.customer_id
        )
    except JourneyflowError as e:
        raise http_error(e)
    return contact.model_dump(mode="json")

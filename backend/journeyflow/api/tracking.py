import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from itsdangerous import BadSignature, SignatureExpired
from pydantic import BaseModel, Field

from journeyflow.api.dependencies import get_event_tracker, http_error
from journeyflow.errors import JourneyflowError
from journeyflow.models.enrollment import ActionType
from journeyflow.services.event_tracker import EventTracker
from journeyflow.services.tracking_links import load_click_token

logger = logging.getLogger(__name__)
router = APIRouter()


class EngagementRequest(BaseModel):
    enrollment_id: str
    type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/track/engagement")
async def track_engagement(request: EngagementRequest, tracker: EventTracker = Depends(get_event_tracker)):
    """
    Records an open, click or purchase against an enrollment. Finished
    enrollments accept the call but record nothing.
    """
    try:
        enrollment = await tracker.record_engagement(request.enrollment_id, request.type, request.metadata)
    except JourneyflowError as e:
        raise http_error(e)
    return {"recorded": enrollment is not None, "enrollment_id": request.enrollment_id, "type": request.type}


@router.get("/track/click")
async def track_click(
    token: str = Query(..., description="Signed tracking token"),
    url: str = Query(..., description="Original link target"),
    tracker: EventTracker = Depends(get_event_tracker),
):
    """
    Tracks a link click via a signed token, then redirects to the original URL.
    The redirect happens even when the token is invalid or recording fails.
    """
    try:
        data = load_click_token(token)
    except SignatureExpired:
        logger.warning("[TRACKING] Expired click token received")
        return RedirectResponse(url=url, status_code=302)
    except BadSignature:
        logger.warning("[TRACKING] Invalid click token received")
        return RedirectResponse(url=url, status_code=302)

    enrollment_id: Optional[str] = data.get("enrollment_id")
    logger.info(f"[TRACKING] Link click for enrollment {enrollment_id} on node {data.get('node_id')}")
    try:
        await tracker.record_engagement(
            enrollment_id, ActionType.LINK_CLICKED.value, {"url": url, "source_node_id": data.get("node_id")}
        )
    except JourneyflowError as e:
        logger.error(f"[TRACKING] Failed to record click for enrollment {enrollment_id}: {e.message}")
    return RedirectResponse(url=url, status_code=302)

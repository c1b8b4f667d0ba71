from functools import lru_cache

from fastapi import Depends, HTTPException

from journeyflow.errors import (
    ConfigurationError,
    CorruptedStateError,
    ExternalProviderError,
    JourneyflowError,
    NotFoundError,
    ValidationError,
)
from journeyflow.services.event_tracker import EventTracker
from journeyflow.services.journey_executor import JourneyExecutor, default_executor


@lru_cache(maxsize=1)
def get_executor() -> JourneyExecutor:
    """Process-wide executor; tests replace it through app.dependency_overrides."""
    return default_executor()


def get_event_tracker(executor: JourneyExecutor = Depends(get_executor)) -> EventTracker:
    return EventTracker(executor)


def http_error(error: JourneyflowError) -> HTTPException:
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, ValidationError):
        status_code = 422
    elif isinstance(error, CorruptedStateError):
        status_code = 409
    elif isinstance(error, (ExternalProviderError, ConfigurationError)):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"error": error.kind, "message": error.message})

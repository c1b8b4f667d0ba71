"""
Error taxonomy for the journey engine.

Pure evaluators never raise these; they return a non-match and log. I/O-bound
collaborators raise them and the action processor folds them into failed
action records. Only NotFoundError and CorruptedStateError halt a tick.
"""
from typing import Optional


class JourneyflowError(Exception):
    """Base class for all engine errors."""

    kind = "error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ConfigurationError(JourneyflowError):
    """Messaging or commerce access is not configured for the store."""

    kind = "configuration"


class ValidationError(JourneyflowError):
    """Malformed input such as a bad phone number or a missing action field."""

    kind = "validation"


class ExternalProviderError(JourneyflowError):
    """Failure returned by the commerce or messaging API."""

    kind = "provider"

    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None, **context):
        super().__init__(message, **context)
        self.transient = transient
        self.status_code = status_code


class OutOfWindowError(JourneyflowError):
    """The daily send window or the 24 hour free window was violated."""

    kind = "out_of_window"


class NotFoundError(JourneyflowError):
    """A journey, node, segment or enrollment is missing."""

    kind = "not_found"


class CorruptedStateError(JourneyflowError):
    """An enrollment references a node that is not in its journey."""

    kind = "corrupted_state"


class StaleEnrollmentError(JourneyflowError):
    """A write was rejected because the enrollment changed since it was read."""

    kind = "stale_write"


class RateLimitError(JourneyflowError):
    """The action's per-customer send cap for the period is used up."""

    kind = "rate_limited"

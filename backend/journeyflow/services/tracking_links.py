import logging
import re
from typing import Any, Dict
from urllib.parse import quote

from itsdangerous import URLSafeTimedSerializer

from journeyflow.config import settings

logger = logging.getLogger(__name__)

# Signing key shared with api/tracking.py through settings.
serializer = URLSafeTimedSerializer(settings.TRACKING_SECRET_KEY, salt="journeyflow-click")

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")


def make_click_token(enrollment_id: str, journey_id: str, node_id: str) -> str:
    return serializer.dumps({"enrollment_id": enrollment_id, "journey_id": journey_id, "node_id": node_id})


def load_click_token(token: str) -> Dict[str, Any]:
    """Raises itsdangerous.BadSignature (or SignatureExpired) for invalid tokens."""
    return serializer.loads(token, max_age=settings.TRACKING_TOKEN_MAX_AGE_SECONDS)


def get_tracking_url(token: str, url: str) -> str:
    return f"{settings.API_PUBLIC_URL}/api/track/click?token={token}&url={quote(url, safe='')}"


def track_links(body: str, token: str) -> str:
    """Rewrite every http(s) link in a message body to go through the click tracker."""
    if not body:
        return body

    def replace_link(match):
        original_url = match.group(0)
        if "/api/track/" in original_url:
            return original_url
        return get_tracking_url(token, original_url)

    tracked = URL_PATTERN.sub(replace_link, body)
    if tracked != body:
        logger.debug("[TRACKING] Rewrote message links to tracked URLs")
    return tracked

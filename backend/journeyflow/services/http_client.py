import logging
from typing import Any, Dict, Optional

import httpx

from journeyflow.config import settings
from journeyflow.errors import ExternalProviderError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def provider_error_from_response(provider: str, response: httpx.Response) -> ExternalProviderError:
    """Map an HTTP error response onto the engine's error taxonomy."""
    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text[:500]}
    # Graph API and Shopify both nest the useful part under "error"/"errors".
    detail = (body.get("error") or body.get("errors") or body) if isinstance(body, dict) else body
    if isinstance(detail, dict):
        detail = detail.get("message") or detail
    return ExternalProviderError(
        f"{provider} returned HTTP {response.status_code}: {detail}",
        transient=response.status_code in TRANSIENT_STATUS_CODES,
        status_code=response.status_code,
        provider=provider,
    )


async def request_json(
    provider: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json: Optional[Dict[str, Any]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Perform one HTTP call and return the decoded JSON body.

    Network failures and timeouts are transient; 4xx responses other than
    rate limiting are permanent.
    """
    try:
        if client is not None:
            response = await client.request(method, url, headers=headers, params=params, json=json)
        else:
            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as session:
                response = await session.request(method, url, headers=headers, params=params, json=json)
    except httpx.TimeoutException as e:
        logger.warning(f"[HTTP] {provider} {method} {url} timed out: {e}")
        raise ExternalProviderError(f"{provider} request timed out", transient=True, provider=provider) from e
    except httpx.HTTPError as e:
        logger.warning(f"[HTTP] {provider} {method} {url} failed: {e}")
        raise ExternalProviderError(f"{provider} request failed: {e}", transient=True, provider=provider) from e

    if response.is_error:
        error = provider_error_from_response(provider, response)
        logger.warning(f"[HTTP] {error.message}")
        raise error
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        logger.warning(f"[HTTP] {provider} {method} {url} returned a body that is not JSON")
        raise ExternalProviderError(
            f"{provider} returned HTTP {response.status_code} with a body that is not JSON",
            status_code=response.status_code,
            provider=provider,
        ) from e

"""
Shared request helper for the upstream feeds.

Maps httpx failures onto the package error taxonomy so nothing above the
SDK deals with httpx exceptions.
"""

from typing import Any, Dict, Optional

import httpx

from metered_usage.config.logger import get_logger
from metered_usage.core.errors import AuthError, TransportError

LOGGER = get_logger("metered_usage.sdk.http")

AUTH_STATUS_CODES = (401, 403)


async def send_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json: Any = None,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """Send one request and return the successful response.

    Raises:
        AuthError: On HTTP 401/403
        TransportError: On any other HTTP error status or network failure
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(method, url, headers=headers, params=params, json=json)
            response.raise_for_status()
            return response
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        LOGGER.error("Upstream returned an error status", extra={"url": url, "status": status})
        if status in AUTH_STATUS_CODES:
            raise AuthError(f"Credential rejected by {url}", status_code=status)
        raise TransportError(f"{method} {url} failed with status {status}", status_code=status)
    except httpx.HTTPError as e:
        LOGGER.error("Upstream request failed", extra={"url": url, "error": str(e)})
        raise TransportError(f"{method} {url} failed: {e}")


def decode_json(response: httpx.Response) -> Any:
    """Decode a JSON body.

    Raises:
        TransportError: If the body is not JSON
    """
    try:
        return response.json()
    except ValueError as e:
        raise TransportError(f"Invalid JSON from {response.request.url}: {e}")

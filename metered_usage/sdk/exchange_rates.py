"""
Exchange rate feed client.

The feed returns ``{"date": ..., "usd": {"eur": 0.92, ...}}``.
"""

from typing import Any, Dict, Optional

import httpx

from metered_usage.core.errors import TransportError
from .http import decode_json, send_request

DEFAULT_RATES_URL = "https://latest.currency-api.pages.dev/v1/currencies/usd.json"


class ExchangeRateClient:
    """Fetches USD-based exchange rates."""

    def __init__(
        self,
        url: str = DEFAULT_RATES_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def fetch_rates(self) -> Dict[str, Any]:
        """Return the raw rate payload.

        Raises:
            TransportError: If the feed is unreachable or malformed
        """
        response = await send_request("GET", self.url, timeout=self.timeout, transport=self._transport)
        payload = decode_json(response)
        if not isinstance(payload, dict):
            raise TransportError("Exchange rate feed did not return an object")
        return payload

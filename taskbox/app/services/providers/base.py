"""
Shared plumbing for outbound provider clients.

Every client wraps one shared `httpx.AsyncClient` and its own
CircuitBreaker. Transport failures and 5xx answers count against the
breaker and surface as ProviderError (retried by the dispatcher); 4xx
answers are returned to the client for provider-specific handling.
"""

from typing import Any, Optional

import httpx

from taskbox.app.core.exceptions import ProviderError
from taskbox.app.core.reliability import CircuitBreaker


def error_detail(response: httpx.Response, *keys: str) -> Optional[str]:
    """First string value among `keys` in a JSON error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    for key in keys:
        value = body.get(key)
        if isinstance(value, str):
            return value
    return None


class ProviderClient:
    """Base class for provider clients."""

    name = "provider"

    def __init__(self, http: httpx.AsyncClient, breaker: Optional[CircuitBreaker] = None):
        self.http = http
        self.breaker = breaker or CircuitBreaker(self.name)

    @property
    def configured(self) -> bool:
        return True

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request through the circuit breaker.

        Returns:
            The response, for any status below 500

        Raises:
            CircuitOpenError: If the provider's circuit is open
            ProviderError: On transport failure or a 5xx answer
        """
        return await self.breaker.call(self._send, method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderError(self.name, f"request failed: {exc!r}") from exc

        if response.status_code >= 500:
            raise ProviderError(
                self.name,
                f"responded with status {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def raise_for_status(self, response: httpx.Response, *detail_keys: str) -> Any:
        """Turn a 4xx into ProviderError; return the decoded JSON body otherwise."""
        if response.is_error:
            detail = error_detail(response, *detail_keys)
            raise ProviderError(
                self.name,
                detail or f"responded with status {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )
        if not response.content:
            return {}
        return response.json()

"""
Mandrill transactional mail client.
"""

from typing import Any, Dict, Optional

import httpx

from taskbox.app.core.exceptions import ProviderError
from taskbox.app.services.providers.base import ProviderClient

MANDRILL_API_URL = "https://mandrillapp.com/api/1.0"


class MandrillClient(ProviderClient):
    name = "mandrill"

    def __init__(self, http: httpx.AsyncClient, api_key: Optional[str], **kwargs):
        super().__init__(http, **kwargs)
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send one message.

        Returns:
            Mandrill's result for the first recipient: `_id`, `status`
            (sent, queued, scheduled, rejected, invalid), `reject_reason`
        """
        response = await self.request(
            "POST",
            f"{MANDRILL_API_URL}/messages/send.json",
            json={"key": self.api_key, "message": message, "async": True},
        )
        results = self.raise_for_status(response, "message")
        if not isinstance(results, list) or not results:
            raise ProviderError(self.name, "returned no results", status_code=response.status_code)
        return results[0]

"""
Twilio SMS client.
"""

from typing import Any, Dict, Optional

import httpx

from taskbox.app.core.exceptions import ProviderError
from taskbox.app.services.providers.base import ProviderClient

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"

# Suffix of the error message Twilio returns for a malformed `To` number.
INVALID_NUMBER_SUFFIX = "is not a valid phone number."


def is_invalid_number_error(error: ProviderError) -> bool:
    return bool(error.detail) and error.detail.endswith(INVALID_NUMBER_SUFFIX)


class TwilioClient(ProviderClient):
    name = "twilio"

    def __init__(
        self,
        http: httpx.AsyncClient,
        account_sid: Optional[str],
        auth_token: Optional[str],
        messaging_service_sid: Optional[str] = None,
        status_callback_url: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(http, **kwargs)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.messaging_service_sid = messaging_service_sid
        self.status_callback_url = status_callback_url

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def can_send_from(self, from_number: Optional[str]) -> bool:
        return self.configured and bool(from_number or self.messaging_service_sid)

    async def send_message(self, to: str, body: str, from_number: Optional[str] = None) -> Dict[str, Any]:
        """
        Queue a message with Twilio.

        Returns:
            The created message resource (`sid`, `status`, ...)

        Raises:
            ProviderError: On any failure; `detail` carries Twilio's message
        """
        form = {"To": to, "Body": body}
        if self.status_callback_url:
            form["StatusCallback"] = self.status_callback_url
        if from_number:
            form["From"] = from_number
        elif self.messaging_service_sid:
            form["MessagingServiceSid"] = self.messaging_service_sid

        response = await self.request(
            "POST",
            f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json",
            data=form,
            auth=(self.account_sid, self.auth_token),
        )
        return self.raise_for_status(response, "message")

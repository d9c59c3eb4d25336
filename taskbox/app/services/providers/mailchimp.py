"""
Mailchimp marketing list client.

Members are addressed by the MD5 hash of their lowercased email.
"""

import hashlib
from typing import Any, Dict, List, Optional

import httpx

from taskbox.app.services.providers.base import ProviderClient

# Error details Mailchimp returns for members we can safely ignore.
ALREADY_MEMBER_DETAIL = "is already a list member"
FAKE_EMAIL_DETAIL = "looks fake or invalid"


def subscriber_hash(email: str) -> str:
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


class MailchimpClient(ProviderClient):
    name = "mailchimp"

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: Optional[str],
        audience_id: Optional[str],
        **kwargs,
    ):
        super().__init__(http, **kwargs)
        self.api_key = api_key
        self.audience_id = audience_id

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.audience_id and "-" in self.api_key)

    @property
    def base_url(self) -> str:
        # The key ends in the datacenter, e.g. "...-us21"
        datacenter = self.api_key.rsplit("-", 1)[-1]
        return f"https://{datacenter}.api.mailchimp.com/3.0"

    async def _call(self, method: str, path: str, body: Dict[str, Any]) -> Any:
        response = await self.request(
            method,
            f"{self.base_url}/lists/{self.audience_id}{path}",
            json=body,
            auth=("taskbox", self.api_key),
        )
        return self.raise_for_status(response, "detail")

    async def add_list_member(self, email: str, merge_fields: Dict[str, str]) -> Dict[str, Any]:
        return await self._call(
            "POST",
            "/members",
            {"email_address": email, "merge_fields": merge_fields, "status": "subscribed"},
        )

    async def update_list_member(self, email: str, merge_fields: Dict[str, str]) -> Dict[str, Any]:
        return await self._call(
            "PATCH",
            f"/members/{subscriber_hash(email)}",
            {"email_address": email, "merge_fields": merge_fields},
        )

    async def update_list_member_tags(self, email: str, tags: List[Dict[str, str]]) -> None:
        await self._call("POST", f"/members/{subscriber_hash(email)}/tags", {"tags": tags})

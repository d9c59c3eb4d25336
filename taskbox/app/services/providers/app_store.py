"""
App Store receipt verification client (verifyReceipt).
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from taskbox.app.services.providers.base import ProviderClient

# Receipt is from the sandbox environment; verify it there instead.
SANDBOX_RECEIPT_STATUS = 21007


def latest_expiry(result: Dict[str, Any], original_transaction_id: str) -> Optional[datetime]:
    """Latest `expires_date_ms` for one subscription in a verifyReceipt result."""
    latest = None
    for item in result.get("latest_receipt_info") or []:
        if str(item.get("original_transaction_id")) != original_transaction_id:
            continue
        expires_ms = item.get("expires_date_ms")
        if expires_ms is None:
            continue
        expires_at = datetime.fromtimestamp(int(expires_ms) / 1000, tz=timezone.utc)
        if latest is None or expires_at > latest:
            latest = expires_at
    return latest


class AppStoreClient(ProviderClient):
    name = "app_store"

    def __init__(
        self,
        http: httpx.AsyncClient,
        shared_secret: Optional[str],
        verify_url: str,
        sandbox_verify_url: str,
        **kwargs,
    ):
        super().__init__(http, **kwargs)
        self.shared_secret = shared_secret
        self.verify_url = verify_url
        self.sandbox_verify_url = sandbox_verify_url

    @property
    def configured(self) -> bool:
        return bool(self.shared_secret)

    async def _verify(self, url: str, encoded_receipt: str) -> Dict[str, Any]:
        response = await self.request(
            "POST",
            url,
            json={
                "receipt-data": encoded_receipt,
                "password": self.shared_secret,
                "exclude-old-transactions": True,
            },
        )
        return self.raise_for_status(response)

    async def verify_receipt(self, encoded_receipt: str) -> Dict[str, Any]:
        """
        Verify a receipt against production, falling back to the sandbox.

        Returns:
            The verifyReceipt result; `status` 0 means valid
        """
        result = await self._verify(self.verify_url, encoded_receipt)
        if result.get("status") == SANDBOX_RECEIPT_STATUS:
            result = await self._verify(self.sandbox_verify_url, encoded_receipt)
        return result

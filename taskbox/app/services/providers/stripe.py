"""
Stripe client: off-session PaymentIntents for payment plans.
"""

from typing import Any, Dict, Optional

import httpx

from taskbox.app.core.exceptions import PaymentDeclinedError, ProviderError
from taskbox.app.services.providers.base import ProviderClient

STRIPE_API_URL = "https://api.stripe.com/v1"


def _stripe_error(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


class StripeClient(ProviderClient):
    name = "stripe"

    def __init__(self, http: httpx.AsyncClient, secret_key: Optional[str], **kwargs):
        super().__init__(http, **kwargs)
        self.secret_key = secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer: str,
        payment_method: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create and confirm an off-session PaymentIntent.

        Args:
            idempotency_key: Stable per charge so a retried attempt returns
                the intent created by an earlier one instead of charging twice

        Returns:
            The PaymentIntent object

        Raises:
            PaymentDeclinedError: Card declined or payment method missing
            ProviderError: Any other failure
        """
        form = {
            "amount": str(amount_cents),
            "currency": currency.lower(),
            "customer": customer,
            "payment_method": payment_method,
            "description": description,
            "confirm": "true",
            "off_session": "true",
            "error_on_requires_action": "true",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = value

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        response = await self.request(
            "POST",
            f"{STRIPE_API_URL}/payment_intents",
            data=form,
            headers=headers,
        )

        if not response.is_error:
            return response.json()

        error = _stripe_error(response)
        if error.get("type") == "card_error":
            raise PaymentDeclinedError(
                error.get("message") or "Your card was declined.",
                decline_code=error.get("decline_code") or error.get("code"),
            )
        if error.get("code") == "resource_missing":
            raise PaymentDeclinedError("No payment method on file", decline_code="resource_missing")

        detail = error.get("message")
        raise ProviderError(
            self.name,
            detail or f"responded with status {response.status_code}",
            status_code=response.status_code,
            detail=detail,
        )

"""
Provider construction for the composition root.
"""

from dataclasses import dataclass

import httpx

from taskbox.app.core.config import Settings
from taskbox.app.services.providers.app_store import AppStoreClient
from taskbox.app.services.providers.mailchimp import MailchimpClient
from taskbox.app.services.providers.mandrill import MandrillClient
from taskbox.app.services.providers.stripe import StripeClient
from taskbox.app.services.providers.twilio import TwilioClient


@dataclass
class Providers:
    """Provider clients handed to task handlers through TaskContext."""
    twilio: TwilioClient
    mandrill: MandrillClient
    mailchimp: MailchimpClient
    stripe: StripeClient
    app_store: AppStoreClient


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))


def build_providers(settings: Settings, http: httpx.AsyncClient) -> Providers:
    """Build every provider client on one shared HTTP client (closed by the caller)."""
    return Providers(
        twilio=TwilioClient(
            http,
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            messaging_service_sid=settings.twilio_messaging_service_sid,
            status_callback_url=f"{settings.base_url.rstrip('/')}/api/twilioStatusMessage",
        ),
        mandrill=MandrillClient(http, api_key=settings.mandrill_api_key),
        mailchimp=MailchimpClient(
            http,
            api_key=settings.mailchimp_api_key,
            audience_id=settings.mailchimp_audience_id,
        ),
        stripe=StripeClient(http, secret_key=settings.stripe_secret_key),
        app_store=AppStoreClient(
            http,
            shared_secret=settings.app_store_shared_secret,
            verify_url=settings.app_store_verify_url,
            sandbox_verify_url=settings.app_store_sandbox_verify_url,
        ),
    )

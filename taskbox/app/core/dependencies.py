"""
Request dependencies for the ops API.

Protects the dispatch trigger with the shared DISPATCH_SECRET.
"""

import hmac
from typing import Optional
from fastapi import Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from taskbox.app.core.config import settings
from taskbox.app.core.exceptions import AuthenticationError

# Optional so the secret may also arrive as ?token= (cron pingers)
security = HTTPBearer(auto_error=False)


async def require_dispatch_token(
    token: Optional[str] = Query(None, description="Dispatch secret"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    FastAPI dependency guarding the dispatch trigger.

    Open when no DISPATCH_SECRET is configured. Otherwise the secret must be
    sent as a bearer token or as the `token` query parameter.

    Raises:
        AuthenticationError: 401 if the secret is missing or wrong
    """
    secret = settings.dispatch_secret
    if not secret:
        return

    provided = credentials.credentials if credentials else token
    if not provided or not hmac.compare_digest(provided.encode(), secret.encode()):
        raise AuthenticationError("Invalid dispatch token")

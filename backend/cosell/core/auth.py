"""
Request-scoped credentials.

Every collaborator that talks to Graph or MSX is constructed with a
Credential for the request (or scheduled job) it serves. There is no
module-level token, so concurrent requests never see each other's tokens.
"""
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cosell.core.config import get_settings

logger = logging.getLogger(__name__)

GRAPH_APP_SCOPE = "https://graph.microsoft.com/.default"


class Credential(BaseModel):
    """A bearer token plus the mailbox it acts for (None = signed-in user)."""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    user_id: Optional[str] = None

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def acquire_app_token(scope: str) -> str:
    """
    Client-credentials token for unattended (scheduled) scans.

    Raises httpx.HTTPStatusError if Entra ID rejects the request.
    """
    settings = get_settings()
    url = f"https://login.microsoftonline.com/{settings.azure_tenant_id}/oauth2/v2.0/token"
    data = {
        "grant_type": "client_credentials",
        "client_id": settings.azure_client_id,
        "client_secret": settings.azure_client_secret,
        "scope": scope,
    }
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.post(url, data=data)
        response.raise_for_status()
        logger.info(f"Acquired app-only token for {scope}")
        return response.json()["access_token"]

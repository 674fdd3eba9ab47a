"""Microsoft Graph token acquisition."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from msal import ConfidentialClientApplication

from .config import Settings

GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
LOGGER = logging.getLogger(__name__)


class MsalTokenProvider:
    """Async token source backed by an msal confidential client.

    Tries the msal cache first and falls back to a fresh client-credentials
    grant. msal is synchronous, so acquisition runs in a worker thread.
    """

    def __init__(self, settings: Settings, scopes: Optional[List[str]] = None):
        self.scopes = scopes or GRAPH_SCOPE
        self.user_name = settings.acting_user
        self._app = ConfidentialClientApplication(
            client_id=settings.ms_client_id,
            client_credential=settings.ms_client_secret,
            authority=f"https://login.microsoftonline.com/{settings.ms_tenant_id}",
        )

    def _acquire(self) -> str:
        result = self._app.acquire_token_silent(self.scopes, account=None)
        if not result:
            LOGGER.debug("No cached Graph token; requesting a new one")
            result = self._app.acquire_token_for_client(scopes=self.scopes)
        if "access_token" not in result:
            raise RuntimeError(
                "Failed to acquire Microsoft Graph token: "
                f"{result.get('error_description') or result.get('error') or result}"
            )
        return result["access_token"]

    async def get_token(self) -> str:
        return await asyncio.to_thread(self._acquire)

    def current_user(self) -> str:
        return self.user_name


class StaticTokenProvider:
    """Token source for a bearer token obtained elsewhere (e.g. a signed-in browser)."""

    def __init__(self, token: str, user_name: str = "Unknown User"):
        self._token = token
        self.user_name = user_name

    async def get_token(self) -> str:
        return self._token

    def current_user(self) -> str:
        return self.user_name

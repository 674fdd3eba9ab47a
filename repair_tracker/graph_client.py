"""Async Microsoft Graph client."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .errors import GraphAPIError

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
SESSION_HEADER = "workbook-session-id"
LOGGER = logging.getLogger(__name__)


def _parse_body(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text


class GraphClient:
    """Wrapper around Microsoft Graph that attaches auth and session headers.

    Any non-2xx response, or a 2xx body that is not JSON, becomes a
    ``GraphAPIError``. Transport failures and timeouts become a retryable
    ``GraphAPIError`` with status 0.
    """

    def __init__(
        self,
        token_provider,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_provider = token_provider
        self._http = httpx.AsyncClient(
            base_url=GRAPH_BASE_URL + "/",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def current_user(self) -> str:
        return self.token_provider.current_user()

    async def request(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        session_id: Optional[str] = None,
    ) -> Any:
        """Call ``url`` and return the decoded JSON, or None for empty responses."""

        token = await self.token_provider.get_token()
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if session_id:
            headers[SESSION_HEADER] = session_id

        LOGGER.debug("Graph %s %s (session=%s)", method, url, bool(session_id))
        try:
            response = await self._http.request(
                method,
                url.lstrip("/") if not url.startswith("http") else url,
                headers=headers,
                json=body,
            )
        except httpx.TransportError as exc:
            LOGGER.warning("Graph %s %s failed before a response: %s", method, url, exc)
            raise GraphAPIError.network(exc) from exc

        if not response.is_success:
            error_body = _parse_body(response.text)
            LOGGER.error(
                "Graph API error %s %s for %s %s: %s",
                response.status_code,
                response.reason_phrase,
                method,
                url,
                error_body,
            )
            raise GraphAPIError.from_response(
                response.status_code, response.reason_phrase, error_body
            )

        if response.status_code == 204 or not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            LOGGER.error("Graph %s %s returned a non-JSON body: %.200s", method, url, response.text)
            raise GraphAPIError(
                response.status_code,
                f"Graph API returned a non-JSON body for {method} {url}",
                response.text,
                retryable=False,
            ) from exc

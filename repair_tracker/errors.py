"""Exception types shared across the Graph, session and repository layers."""

from __future__ import annotations

import json
from typing import Any, FrozenSet, Optional

RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({408, 429, 500, 502, 503, 504})
NETWORK_ERROR_STATUS = 0


def is_retryable_status(status_code: int) -> bool:
    """Classify an HTTP status; 0 stands for a transport failure with no response."""

    if status_code == NETWORK_ERROR_STATUS:
        return True
    return status_code in RETRYABLE_STATUS_CODES


class ConfigurationError(RuntimeError):
    """Required configuration is missing or malformed."""


class WorkbookNotFoundError(RuntimeError):
    """A workbook could not be located on the configured site."""


class GraphAPIError(Exception):
    """A failed Microsoft Graph call.

    ``retryable`` is decided when the error is built and is the only thing the
    session manager looks at when choosing whether to try again.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        body: Any = None,
        retryable: Optional[bool] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.retryable = is_retryable_status(status_code) if retryable is None else retryable
        self.attempts = 1
        super().__init__(message)

    @classmethod
    def from_response(cls, status_code: int, reason: str, body: Any) -> "GraphAPIError":
        if isinstance(body, (dict, list)):
            detail = json.dumps(body, indent=2)
        else:
            detail = str(body or "")
        message = f"Graph API error: {status_code} {reason}".rstrip()
        if detail:
            message = f"{message}\n{detail}"
        return cls(status_code, message, body)

    @classmethod
    def network(cls, exc: Exception) -> "GraphAPIError":
        return cls(
            NETWORK_ERROR_STATUS,
            f"Network error calling Microsoft Graph: {exc.__class__.__name__}: {exc}",
            None,
            retryable=True,
        )

    @property
    def error_code(self) -> Optional[str]:
        if isinstance(self.body, dict):
            return (self.body.get("error") or {}).get("code")
        return None

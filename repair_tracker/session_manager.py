"""Workbook session lifecycle with retry and backoff.

Graph workbook sessions are server-side editing contexts. Every logical
operation here runs inside exactly one session:

    NO_SESSION -> CREATING -> ACTIVE_IN_USE -> ACTIVE_IDLE -> CLOSING -> NO_SESSION

A session older than the configured timeout is treated as gone and replaced
on the next acquisition. Concurrent callers queue on an ``asyncio.Lock``, so
operations run one at a time in the order they asked.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import GraphAPIError
from .graph_client import GraphClient
from .workbook import WorkbookLocation

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, enum.Enum):
    NO_SESSION = "no_session"
    CREATING = "creating"
    ACTIVE_IN_USE = "active_in_use"
    ACTIVE_IDLE = "active_idle"
    CLOSING = "closing"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2**(attempt - 1)`` plus up to ``jitter_ratio``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.jitter_ratio < 0:
            raise ValueError("base_delay and jitter_ratio must not be negative")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        delay = self.base_delay * (2 ** (attempt - 1))
        jitter = delay * self.jitter_ratio * (rng or random).random()
        return delay + jitter


@dataclass
class _Session:
    id: str
    created_at: float
    expires_at: float
    in_use: bool = False


class SessionManager:
    """Owns the workbook session for one workbook."""

    def __init__(
        self,
        client: GraphClient,
        location: WorkbookLocation,
        retry_policy: Optional[RetryPolicy] = None,
        session_timeout: float = 30 * 60,
        persist_changes: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.location = location
        self.retry_policy = retry_policy or RetryPolicy()
        self.session_timeout = session_timeout
        self.persist_changes = persist_changes
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._session: Optional[_Session] = None
        self._lock = asyncio.Lock()
        self.state = SessionState.NO_SESSION

    def _session_valid(self) -> bool:
        session = self._session
        if session is None:
            return False
        expired = self._clock() >= session.expires_at
        if expired or session.in_use:
            LOGGER.debug(
                "Session %s not reusable (expired=%s, in_use=%s)",
                session.id,
                expired,
                session.in_use,
            )
            return False
        return True

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        max_attempts = self.retry_policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                result = await operation()
            except GraphAPIError as exc:
                exc.attempts = attempt
                if not exc.retryable:
                    LOGGER.error(
                        "%s failed with non-retryable status %s; not retrying",
                        name,
                        exc.status_code,
                    )
                    raise
                if attempt >= max_attempts:
                    LOGGER.error(
                        "%s failed after %s attempts (last status %s)",
                        name,
                        attempt,
                        exc.status_code,
                    )
                    raise
                delay = self.retry_policy.delay_for(attempt, self._rng)
                LOGGER.warning(
                    "%s attempt %s/%s failed with status %s; retrying in %.2fs",
                    name,
                    attempt,
                    max_attempts,
                    exc.status_code,
                    delay,
                )
                await self._sleep(delay)
            else:
                if attempt > 1:
                    LOGGER.info("%s succeeded on attempt %s", name, attempt)
                return result
        raise AssertionError("unreachable")

    async def _create_session(self) -> _Session:
        self.state = SessionState.CREATING
        LOGGER.info("Creating workbook session for item %s", self.location.item_id)
        try:
            response = await self._retry(
                lambda: self.client.request(
                    f"{self.location.workbook_url}/createSession",
                    "POST",
                    {"persistChanges": self.persist_changes},
                ),
                "createSession",
            )
        except Exception:
            self.state = SessionState.NO_SESSION
            raise
        now = self._clock()
        self._session = _Session(
            id=response["id"],
            created_at=now,
            expires_at=now + self.session_timeout,
        )
        self.state = SessionState.ACTIVE_IDLE
        LOGGER.info("Workbook session created")
        return self._session

    async def _close_session(self) -> None:
        session = self._session
        if session is None:
            self.state = SessionState.NO_SESSION
            return
        self.state = SessionState.CLOSING
        try:
            await self.client.request(
                f"{self.location.workbook_url}/closeSession",
                "POST",
                {},
                session.id,
            )
            LOGGER.info("Workbook session closed")
        except Exception:
            LOGGER.exception("Failed to close workbook session; leaving it to expire")
        finally:
            self._session = None
            self.state = SessionState.NO_SESSION

    async def _acquire(self) -> _Session:
        if self._session_valid():
            return self._session  # type: ignore[return-value]
        if self._session is not None:
            await self._close_session()
        return await self._create_session()

    async def with_session(self, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run ``operation(session_id)`` inside a session that is always closed afterwards."""

        if self._lock.locked():
            LOGGER.debug("Waiting for the workbook session lock")
        async with self._lock:
            try:
                session = await self._acquire()
                session.in_use = True
                self.state = SessionState.ACTIVE_IN_USE
                return await self._retry(lambda: operation(session.id), "workbook operation")
            finally:
                if self._session is not None:
                    self._session.in_use = False
                    self.state = SessionState.ACTIVE_IDLE
                await self._close_session()

    async def execute_with_session(self, url: str, method: str = "GET", body: Any = None) -> Any:
        return await self.with_session(
            lambda session_id: self.client.request(url, method, body, session_id)
        )

    async def check_health(self) -> bool:
        """Fetch the workbook's file metadata; no session, no side effects."""

        try:
            await self._retry(
                lambda: self.client.request(self.location.item_url), "healthCheck"
            )
        except GraphAPIError:
            LOGGER.exception("Workbook health check failed for item %s", self.location.item_id)
            return False
        LOGGER.info("Workbook health check passed for item %s", self.location.item_id)
        return True

    def session_info(self) -> Dict[str, Any]:
        session = self._session
        if session is None:
            return {"has_session": False, "state": self.state.value}
        return {
            "has_session": True,
            "state": self.state.value,
            "session_id": session.id,
            "created_at": session.created_at,
            "expires_at": session.expires_at,
            "in_use": session.in_use,
            "is_valid": self._session_valid(),
        }

    async def force_close(self) -> None:
        LOGGER.info("Force closing workbook session")
        async with self._lock:
            await self._close_session()

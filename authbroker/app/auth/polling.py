"""
Polling Session Store
=====================

Cross-origin delivery of the authorization result. When the client cannot
receive the provider redirect itself, it starts a polling session keyed by
the OAuth ``state`` and polls its status while the callback page is served
to the browser.

The callback only knows ``state``, never the polling id, so updates are
matched by state. A session transitions at most once, from ``pending`` to
``completed`` or ``error``; later deliveries for the same state are no-ops.
"""

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..models import PollingResult, PollingStatusResponse
from .utils import generate_polling_id

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
ERROR = "error"
NOT_FOUND = "not_found"


@dataclass
class PollingSession:
    polling_id: str
    state: str
    session_id: Optional[str]
    created_at: float
    expires_at: float
    status: str = PENDING
    result: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class PollingSessionStore(abc.ABC):

    @abc.abstractmethod
    async def create(self, *, state: str, session_id: Optional[str] = None) -> PollingSession:
        ...

    @abc.abstractmethod
    async def get(self, polling_id: str) -> Optional[PollingSession]:
        ...

    @abc.abstractmethod
    async def update_by_state(self, state: str, result: Dict[str, Any]) -> bool:
        ...

    @abc.abstractmethod
    async def sweep(self) -> int:
        ...

    @abc.abstractmethod
    async def stats(self) -> Dict[str, int]:
        ...

    async def status(self, polling_id: str) -> PollingStatusResponse:
        """
        Non-destructive status read.

        The stored result is only disclosed once the session is terminal:
        code and state when completed, the provider's error text when failed.
        """
        session = await self.get(polling_id)
        if session is None:
            return PollingStatusResponse(status=NOT_FOUND, error="Session not found or expired")

        response = PollingStatusResponse(
            status=session.status,
            created_at=_as_datetime(session.created_at),
            expires_at=_as_datetime(session.expires_at),
        )
        if session.status == COMPLETED:
            response.result = PollingResult(
                code=session.result.get("code"),
                state=session.result.get("state"),
            )
        elif session.status == ERROR:
            response.error = session.result.get("error")
            response.error_description = session.result.get("error_description")
        return response


def _as_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class InMemoryPollingSessionStore(PollingSessionStore):
    """
    Process-local polling session store.

    Args:
        ttl_seconds: Session lifetime (10 minutes by default)
        clock: Returns the current UNIX time
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, PollingSession] = {}
        self._lock = asyncio.Lock()
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    async def create(self, *, state: str, session_id: Optional[str] = None) -> PollingSession:
        async with self._lock:
            now = self._clock()
            session = PollingSession(
                polling_id=generate_polling_id(),
                state=state,
                session_id=session_id,
                created_at=now,
                expires_at=now + self._ttl_seconds,
            )
            self._sessions[session.polling_id] = session

        logger.info(
            "Created polling session",
            extra={"polling_id": session.polling_id, "session_id": session_id},
        )
        return session

    async def get(self, polling_id: str) -> Optional[PollingSession]:
        async with self._lock:
            session = self._sessions.get(polling_id)
            if session is None:
                return None
            if session.is_expired(self._clock()):
                del self._sessions[polling_id]
                return None
            return session

    async def update_by_state(self, state: str, result: Dict[str, Any]) -> bool:
        """
        Resolve the first live pending session whose state matches.

        ``result`` carries either ``code`` (and ``state``) or ``error`` (and
        ``error_description``).

        Returns:
            True if a session was updated. Unknown, expired and already
            resolved states are all silent no-ops.
        """
        async with self._lock:
            now = self._clock()
            for session in self._sessions.values():
                if session.state != state or session.status != PENDING:
                    continue
                if session.is_expired(now):
                    continue

                session.status = ERROR if result.get("error") else COMPLETED
                session.result = dict(result)
                session.completed_at = now

                logger.info(
                    "Updated polling session",
                    extra={
                        "polling_id": session.polling_id,
                        "status": session.status,
                        "has_code": bool(result.get("code")),
                        "error": result.get("error"),
                    },
                )
                return True

        return False

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [pid for pid, s in self._sessions.items() if s.is_expired(now)]
            for pid in expired:
                del self._sessions[pid]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired polling sessions")
        return len(expired)

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            sessions = list(self._sessions.values())
        return {
            "total": len(sessions),
            "pending": sum(1 for s in sessions if s.status == PENDING),
            "completed": sum(1 for s in sessions if s.status == COMPLETED),
            "error": sum(1 for s in sessions if s.status == ERROR),
        }

"""
Authorization Session Store
===========================

Holds the PKCE/state/nonce material of an authorization attempt between
``/auth/initialize`` and ``/auth/exchange``.

Expiry is enforced lazily on lookup and by a periodic sweep; both read the
same injected clock. All mutations happen under one ``asyncio.Lock`` so a
``claim`` is atomic with respect to other requests on the event loop.
"""

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..errors import ValidationError
from .utils import generate_session_id

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationSession:
    session_id: str
    state: str
    nonce: str
    code_verifier: str = field(repr=False)
    redirect_uri: Optional[str]
    created_at: float
    expires_at: float
    claimed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class AuthorizationSessionStore(abc.ABC):
    """
    Storage interface for authorization sessions.

    The in-memory implementation below is the only one shipped; a networked
    store can replace it without touching the orchestrator.
    """

    @abc.abstractmethod
    async def create(
        self,
        *,
        state: str,
        nonce: str,
        code_verifier: str,
        redirect_uri: Optional[str],
    ) -> AuthorizationSession:
        ...

    @abc.abstractmethod
    async def get(self, session_id: str) -> Optional[AuthorizationSession]:
        ...

    @abc.abstractmethod
    async def claim(self, session_id: str) -> Optional[AuthorizationSession]:
        """Mark a live session as in use; None if absent, expired or already claimed"""

    @abc.abstractmethod
    async def release(self, session_id: str) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def sweep(self) -> int:
        ...

    @abc.abstractmethod
    async def stats(self) -> Dict[str, int]:
        ...


class InMemoryAuthorizationSessionStore(AuthorizationSessionStore):
    """
    Process-local session store.

    Args:
        ttl_seconds: Session lifetime (10 minutes by default)
        clock: Returns the current UNIX time
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, AuthorizationSession] = {}
        self._lock = asyncio.Lock()
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def _live(self, session_id: str, now: float) -> Optional[AuthorizationSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            del self._sessions[session_id]
            logger.debug("Evicted expired session on lookup", extra={"session_id": session_id})
            return None
        return session

    async def create(
        self,
        *,
        state: str,
        nonce: str,
        code_verifier: str,
        redirect_uri: Optional[str],
    ) -> AuthorizationSession:
        """
        Store a new authorization session.

        Raises:
            ValidationError: If ``state`` is already used by a live session
        """
        async with self._lock:
            now = self._clock()
            for existing in list(self._sessions.values()):
                if existing.state == state and self._live(existing.session_id, now):
                    raise ValidationError("State already in use")

            session = AuthorizationSession(
                session_id=generate_session_id(),
                state=state,
                nonce=nonce,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
                created_at=now,
                expires_at=now + self._ttl_seconds,
            )
            self._sessions[session.session_id] = session

        logger.debug("Session created", extra={"session_id": session.session_id})
        return session

    async def get(self, session_id: str) -> Optional[AuthorizationSession]:
        async with self._lock:
            return self._live(session_id, self._clock())

    async def claim(self, session_id: str) -> Optional[AuthorizationSession]:
        async with self._lock:
            session = self._live(session_id, self._clock())
            if session is None or session.claimed:
                return None
            session.claimed = True
            return session

    async def release(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.claimed = False

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug("Session deleted", extra={"session_id": session_id})
        return removed

    async def sweep(self) -> int:
        """Remove every expired session. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]

        if expired:
            logger.info("Cleaned up expired sessions", extra={"count": len(expired)})
        return len(expired)

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            now = self._clock()
            return {
                "total": len(self._sessions),
                "active": sum(1 for s in self._sessions.values() if not s.is_expired(now)),
            }


async def run_periodic_sweep(store, interval_seconds: float, name: str) -> None:
    """
    Call ``store.sweep()`` every ``interval_seconds`` until cancelled.

    Sweep failures are logged and the loop keeps running.
    """
    logger.info(f"Starting {name} sweeper", extra={"interval_seconds": interval_seconds})
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.sweep()
        except Exception as e:
            logger.error(f"{name} sweep failed: {e}", exc_info=True)

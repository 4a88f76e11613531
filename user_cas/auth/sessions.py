"""Registry of CAS-bound sessions for single logout."""

import threading

import structlog
from cachetools import TTLCache

from ..logging import ticket_fingerprint
from .models import AuthenticationSession

logger = structlog.get_logger()


class SessionRegistry:
    """Tracks which ticket established which session.

    Session data itself lives in the host session (a signed cookie); the
    registry only remembers tickets so that a single logout notification can
    end the matching session on its next request.
    """

    def __init__(self, ttl_seconds: int = 86400, maxsize: int = 100000):
        self._active: TTLCache[str, AuthenticationSession] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds
        )
        self._revoked: TTLCache[str, str] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._lock = threading.Lock()

    def register(self, session: AuthenticationSession) -> None:
        if not session.ticket:
            return
        with self._lock:
            self._active[session.ticket] = session
        logger.debug(
            "Session registered", uid=session.uid, ticket=ticket_fingerprint(session.ticket)
        )

    def revoke(self, ticket: str) -> AuthenticationSession | None:
        """Mark the session established with ``ticket`` as logged out."""
        with self._lock:
            session = self._active.pop(ticket, None)
            self._revoked[ticket] = session.uid if session else ""
        logger.info(
            "Session revoked by single logout",
            ticket=ticket_fingerprint(ticket),
            uid=session.uid if session else None,
            known=session is not None,
        )
        return session

    def forget(self, ticket: str) -> None:
        """Drop a ticket after a regular logout."""
        with self._lock:
            self._active.pop(ticket, None)

    def is_revoked(self, ticket: str | None) -> bool:
        if not ticket:
            return False
        with self._lock:
            return ticket in self._revoked

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

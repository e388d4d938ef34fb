from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import Session, utcnow
from .state import StateStore


logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=14)


class SessionStore:
    """
    Single-slot store of the authenticated browser state per portal.

    At most one valid session exists per portal: `save` invalidates the previous one in the same
    transaction that inserts the new one.
    """

    def __init__(self, state: StateStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._state = state
        self._clock = clock

    def get(self, portal: str) -> Optional[Session]:
        session = self._state.get_latest_valid_session(portal)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.info("Stored %s session expired at %s; discarding.", portal, session.expires_at.isoformat())
            self._state.invalidate_sessions(portal)
            return None
        return session

    def save(self, portal: str, state: str, ttl: timedelta = DEFAULT_SESSION_TTL) -> Session:
        now = self._clock()
        session = self._state.replace_session(portal, state, created_at=now, expires_at=now + ttl)
        logger.debug("Saved %s session valid until %s", portal, session.expires_at.isoformat())
        return session

    def invalidate(self, portal: str) -> None:
        n = self._state.invalidate_sessions(portal)
        if n:
            logger.info("Invalidated %d stored %s session(s).", n, portal)

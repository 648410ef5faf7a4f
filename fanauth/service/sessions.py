from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from fanauth.logging import get_logger
from fanauth.service.errors import InvalidSessionError, SessionExpiredError
from fanauth.storage.interfaces import SessionStore
from fanauth.storage.models import Session, utcnow

logger = get_logger(__name__)

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad", re.IGNORECASE)

# First match wins, so more specific tokens come first
_PLATFORM_PATTERNS = (
    ("Android", re.compile(r"Android", re.IGNORECASE)),
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.IGNORECASE)),
    ("Windows", re.compile(r"Windows", re.IGNORECASE)),
    ("macOS", re.compile(r"Macintosh|Mac OS X", re.IGNORECASE)),
    ("Linux", re.compile(r"Linux|X11", re.IGNORECASE)),
)
_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.IGNORECASE)),
    ("Opera", re.compile(r"OPR/|Opera", re.IGNORECASE)),
    ("Firefox", re.compile(r"Firefox/|FxiOS/", re.IGNORECASE)),
    ("Chrome", re.compile(r"Chrome/|CriOS/", re.IGNORECASE)),
    ("Safari", re.compile(r"Safari/", re.IGNORECASE)),
)


def parse_device_info(user_agent: Optional[str]) -> Dict[str, Any]:
    ua = user_agent or ""
    platform = next((name for name, rx in _PLATFORM_PATTERNS if rx.search(ua)), "Unknown")
    browser = next((name for name, rx in _BROWSER_PATTERNS if rx.search(ua)), "Unknown")
    return {
        "user_agent": ua,
        "platform": platform,
        "browser": browser,
        "is_mobile": bool(_MOBILE_RE.search(ua)),
    }


class SessionManager:
    """Create, validate and retire session records in the external store.

    Expiry is fixed at creation and re-checked against the clock on every
    validation; nothing about a session is cached in process.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        max_concurrent_sessions: int = 3,
        session_duration: timedelta = timedelta(hours=24),
        remember_me_duration: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_concurrent_sessions < 1:
            raise ValueError("max_concurrent_sessions must be at least 1")
        self.store = store
        self.max_concurrent_sessions = max_concurrent_sessions
        self.session_duration = session_duration
        self.remember_me_duration = remember_me_duration
        self._clock = clock or utcnow

    def create(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        remember_me: bool = False,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        duration = self.remember_me_duration if remember_me else self.session_duration
        session = Session.new(
            user_id,
            duration,
            now=self._clock(),
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=parse_device_info(user_agent),
            remember_me=remember_me,
            meta=meta,
        )
        self.store.insert_session(session)
        logger.info(
            "session_created",
            user_id=user_id,
            remember_me=remember_me,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    def validate(self, token: str) -> Session:
        """Return the live session for ``token`` after bumping its activity.

        Raises ``InvalidSessionError`` for unknown or deactivated tokens and
        ``SessionExpiredError`` (deactivating the row) once past ``expires_at``.
        """
        if not token:
            raise InvalidSessionError()
        return self._check_live(self.store.find_session_by_token(token))

    def resolve(self, session_id: str) -> Session:
        """Like ``validate`` but looked up by the public session id carried in tokens."""
        if not session_id:
            raise InvalidSessionError()
        return self._check_live(self.store.find_session_by_id(session_id))

    def _check_live(self, session: Optional[Session]) -> Session:
        if session is None or not session.is_active:
            raise InvalidSessionError()
        now = self._clock()
        if session.is_expired(now):
            self.store.deactivate_session(session.token, now)
            logger.info("session_expired", user_id=session.user_id)
            raise SessionExpiredError()
        self.store.update_session_activity(session.token, now)
        return replace(session, last_activity=now)

    def touch(self, token: str) -> None:
        self.store.update_session_activity(token, self._clock())

    def deactivate(self, token: str) -> bool:
        return self.store.deactivate_session(token, self._clock())

    def list_active(self, user_id: str) -> List[Session]:
        now = self._clock()
        return [
            s for s in self.store.list_active_sessions_by_user(user_id)
            if not s.is_expired(now)
        ]

    def enforce_cap(self, user_id: str) -> List[Session]:
        """Make room for one new session and return the sessions evicted.

        Expired rows that are still flagged active are retired first; then the
        least recently active sessions go until ``cap - 1`` remain.
        """
        now = self._clock()
        sessions = self.store.list_active_sessions_by_user(user_id)
        live: List[Session] = []
        for session in sessions:
            if session.is_expired(now):
                self.store.deactivate_session(session.token, now)
            else:
                live.append(session)
        live.sort(key=lambda s: s.last_activity, reverse=True)
        evicted = live[self.max_concurrent_sessions - 1:]
        for session in evicted:
            self.store.deactivate_session(session.token, now)
        if evicted:
            logger.info(
                "sessions_evicted",
                user_id=user_id,
                count=len(evicted),
                cap=self.max_concurrent_sessions,
            )
        return evicted


__all__ = ["SessionManager", "parse_device_info"]

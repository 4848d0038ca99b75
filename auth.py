"""
Admin sessions.

Logging in with the configured password issues a random token valid for a
fixed lifetime. Sessions live in this process only and vanish on restart.
"""
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from fastapi import Header, Request

from errors import InvalidCredentials, Unauthorized

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdminSession:
    token: str
    created_at: datetime
    expires_at: datetime


class SessionStore:
    def __init__(self, password: str, ttl: timedelta = timedelta(hours=24),
                 clock: Callable[[], datetime] = _utcnow):
        self._password = password
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, AdminSession] = {}

    def __len__(self):
        return len(self._sessions)

    def login(self, password: str) -> str:
        # An unset password disables admin login entirely
        if not self._password or not hmac.compare_digest(password.encode(), self._password.encode()):
            raise InvalidCredentials("Invalid password")
        self._evict_expired()
        now = self._clock()
        token = secrets.token_hex(32)
        self._sessions[token] = AdminSession(token=token, created_at=now, expires_at=now + self.ttl)
        return token

    def authorize(self, token: Optional[str]) -> AdminSession:
        if not token:
            raise Unauthorized()
        session = self._sessions.get(token)
        if session is None:
            raise Unauthorized()
        if self._clock() >= session.expires_at:
            del self._sessions[token]
            raise Unauthorized()
        return session

    def logout(self, token: Optional[str]) -> None:
        if token:
            self._sessions.pop(token, None)

    def _evict_expired(self) -> None:
        now = self._clock()
        for token in [t for t, s in self._sessions.items() if now >= s.expires_at]:
            del self._sessions[token]


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def require_admin(request: Request, authorization: Optional[str] = Header(None)) -> AdminSession:
    """FastAPI dependency guarding the admin routes."""
    return request.app.state.sessions.authorize(bearer_token(authorization))

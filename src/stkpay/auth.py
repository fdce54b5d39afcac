"""Authentication, caller sessions and rate limiting helpers."""

import os
import secrets
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Protocol

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .errors import SessionExpiredError

logger = logging.getLogger(__name__)

security = HTTPBearer()

USER_HEADER = "X-User-Id"


def get_caller_key(request: Request) -> str:
    """Rate-limit key: the calling user when known, else the client address."""
    user_id = request.headers.get(USER_HEADER)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


# Rate limiter
limiter = Limiter(key_func=get_caller_key)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


@dataclass(frozen=True)
class CallerSession:
    """Authenticated caller of ``initiate``.

    ``expires_at`` of ``None`` means the session does not expire (service
    callers authenticated by API key).
    """
    user_id: str
    expires_at: Optional[datetime] = None
    access_token: Optional[str] = None

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.utcnow()
        return self.expires_at - now <= timedelta(seconds=seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())


class SessionRefresher(Protocol):
    """Something that can renew a caller session before it lapses."""

    async def refresh(self, session: CallerSession) -> CallerSession:
        ...


async def ensure_fresh_session(
    session: Optional[CallerSession],
    refresher: Optional[SessionRefresher] = None,
    threshold_seconds: float = 300.0,
    now: Optional[datetime] = None,
) -> CallerSession:
    """Return a session that is valid for at least ``threshold_seconds``.

    Raises:
        SessionExpiredError: If there is no session, it has already expired,
            or it is close to expiry and cannot be refreshed.
    """
    if session is None:
        raise SessionExpiredError("No active session. Please log in again.")
    now = now or datetime.utcnow()
    if session.is_expired(now):
        raise SessionExpiredError(
            "Your session has expired. Please log in again.",
            details={"user_id": session.user_id},
        )
    if not session.expires_within(threshold_seconds, now):
        return session

    if refresher is None:
        raise SessionExpiredError(
            "Your session is about to expire. Please log in again.",
            details={"user_id": session.user_id},
        )
    logger.info(f"Refreshing session for user {session.user_id} before initiation")
    refreshed = await refresher.refresh(session)
    if refreshed.is_expired(now):
        raise SessionExpiredError("Session refresh failed. Please log in again.")
    return refreshed


class StaticSessionRefresher:
    """Refresher that extends a session by a fixed lifetime."""

    def __init__(self, lifetime_seconds: float = 3600.0):
        self.lifetime_seconds = lifetime_seconds

    async def refresh(self, session: CallerSession) -> CallerSession:
        return replace(
            session,
            expires_at=datetime.utcnow() + timedelta(seconds=self.lifetime_seconds),
        )

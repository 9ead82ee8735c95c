"""
Browser session cookie for the interactive login flow.
The cookie value is a short HS256 JWT (sub, iat, exp); expiry slides on activity.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt
from starlette.responses import Response

from identity_server.config import SESSION_COOKIE_NAME, SESSION_LIFETIME_SECONDS
from identity_server.models import User
from identity_server.users import UserStore

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TYPE = "session"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionCookie:
    value: str
    expires_at: datetime
    issued_at: datetime


@dataclass(frozen=True)
class SessionValidation:
    status: SessionStatus
    user: User | None = None
    # Set when the session was renewed; the caller must send it back to the browser
    renewed: SessionCookie | None = None
    auth_time: datetime | None = None

    @property
    def is_valid(self) -> bool:
        return self.status is SessionStatus.VALID


class SessionManager:
    def __init__(
        self,
        users: UserStore,
        secret: str,
        *,
        lifetime: timedelta = timedelta(seconds=SESSION_LIFETIME_SECONDS),
        now: Callable[[], datetime] = utc_now,
        cookie_name: str = SESSION_COOKIE_NAME,
    ):
        if not secret:
            raise ValueError("Session secret is required")
        self.users = users
        self.secret = secret
        self.lifetime = lifetime
        self.now = now
        self.cookie_name = cookie_name

    def create_session(self, user: User, auth_time: datetime | None = None) -> SessionCookie:
        issued_at = self.now()
        expires_at = issued_at + self.lifetime
        auth_time = auth_time or issued_at
        payload = {
            "typ": _TOKEN_TYPE,
            "sub": user.id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "auth_time": int(auth_time.timestamp()),
        }
        value = jwt.encode(payload, self.secret, algorithm=_ALGORITHM)
        return SessionCookie(value=value, expires_at=expires_at, issued_at=issued_at)

    def validate_session(self, value: str | None) -> SessionValidation:
        """
        Resolve a session cookie to its user. Expiry is checked against the injected clock.
        Past half of its lifetime the session is renewed (sliding expiration).
        """
        if not value:
            return SessionValidation(SessionStatus.INVALID)
        try:
            payload = jwt.decode(
                value,
                self.secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": ["sub", "exp", "iat"]},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("Session cookie rejected: %s", e)
            return SessionValidation(SessionStatus.INVALID)
        if payload.get("typ") != _TOKEN_TYPE:
            return SessionValidation(SessionStatus.INVALID)

        now = self.now()
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        if expires_at <= now:
            return SessionValidation(SessionStatus.EXPIRED)

        user = self.users.find_by_id(payload["sub"])
        if user is None or not user.is_active:
            return SessionValidation(SessionStatus.INVALID)

        issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
        auth_time = datetime.fromtimestamp(payload.get("auth_time", payload["iat"]), tz=timezone.utc)
        renewed = None
        if now - issued_at > self.lifetime / 2:
            renewed = self.create_session(user, auth_time=auth_time)
        return SessionValidation(SessionStatus.VALID, user=user, renewed=renewed, auth_time=auth_time)

    def set_cookie(self, response: Response, cookie: SessionCookie) -> None:
        # Lax: sent on top-level navigations (authorize redirects), not on cross-site POSTs
        response.set_cookie(
            self.cookie_name,
            cookie.value,
            max_age=int((cookie.expires_at - cookie.issued_at).total_seconds()),
            expires=cookie.expires_at,
            path="/",
            httponly=True,
            secure=True,
            samesite="lax",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(self.cookie_name, path="/", httponly=True, secure=True, samesite="lax")

"""
auth/session.py -- Signed cookie session codec.

The session IS the cookie: there is no server-side session table. The cookie
value is an HS256 JWT (python-jose) carrying the user id, the username and an
expiry. The server only verifies the signature and reads the claims.

Contract:
  create(user_id, username) -> Session
  commit(session)           -> SessionCookie carrying the signed token
  read(cookie_header)       -> Session, or None for absent/malformed/forged/expired
  destroy()                 -> SessionCookie that deletes the cookie

read() never raises. Callers treat None as "anonymous".

Cookie attributes:
  HttpOnly       JS cannot read the cookie (XSS mitigation).
  SameSite=Lax   not sent on cross-site POST (CSRF mitigation for form posts).
  Secure         only when SECURE_COOKIES=true (production behind HTTPS).
  Max-Age        matches the JWT exp claim so both lapse together.

Layer rule: no imports from api/ or web/. The codec never formats headers
itself: SessionCookie is an instruction that auth.dependencies.to_response()
applies with Response.set_cookie() / Response.delete_cookie().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import cookie_parser

logger = logging.getLogger("licenseportal.auth")

SESSION_COOKIE_NAME = "__session"
SESSION_MAX_AGE_SECONDS = 60 * 60 * 24 * 7

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionCookie:
    """A cookie to set (or delete) on the response.

    Path=/, HttpOnly and SameSite=Lax are fixed; the boundary applies them.
    """

    name: str
    value: str = ""
    max_age: int = 0
    secure: bool = False
    delete: bool = False


@dataclass(frozen=True)
class Session:
    """Identity claim carried by the session cookie."""

    user_id: int
    username: str


class SessionCodec:
    """Encode and decode the __session cookie.

    Constructed once at startup with the secret from Settings and placed on
    app.state; flows receive it as an argument.
    """

    def __init__(
        self,
        secret_key: str,
        max_age: int = SESSION_MAX_AGE_SECONDS,
        secure: bool = False,
        cookie_name: str = SESSION_COOKIE_NAME,
    ) -> None:
        self._secret_key = secret_key
        self.max_age = max_age
        self.secure = secure
        self.cookie_name = cookie_name

    def create(self, user_id: int, username: str) -> Session:
        return Session(user_id=user_id, username=username)

    def encode(self, session: Session, now: datetime | None = None) -> str:
        """Return the signed token for session (the cookie value, without attributes)."""
        issued = now or datetime.now(timezone.utc)
        payload = {
            "sub": session.username,
            "user_id": session.user_id,
            "iat": issued,
            "exp": issued + timedelta(seconds=self.max_age),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def decode(self, token: str) -> Session | None:
        """Verify a token and return its Session, or None on any failure."""
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        user_id = payload.get("user_id")
        username = payload.get("sub")
        # bool is a subclass of int; reject it explicitly.
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            return None
        if not isinstance(username, str) or not username:
            return None
        return Session(user_id=user_id, username=username)

    def commit(self, session: Session, now: datetime | None = None) -> SessionCookie:
        """Return the cookie instruction that stores session for max_age seconds."""
        token = self.encode(session, now=now)
        return SessionCookie(self.cookie_name, token, max_age=self.max_age, secure=self.secure)

    def read(self, cookie_header: str | None) -> Session | None:
        """Return the Session from a raw Cookie request header, or None."""
        if not cookie_header:
            return None
        token = cookie_parser(cookie_header).get(self.cookie_name)
        if not token:
            return None
        session = self.decode(token)
        if session is None:
            logger.info("Rejected invalid or expired session cookie")
        return session

    def destroy(self) -> SessionCookie:
        """Return the cookie instruction that deletes the session cookie."""
        return SessionCookie(self.cookie_name, secure=self.secure, delete=True)

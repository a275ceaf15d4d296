# Visitor session flags, the signed session cookie, and the role guard

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx
from fastapi import Depends, Request
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from .api_client import PortalAPI
from .config import (
    SESSION_ALGORITHM, SESSION_COOKIE_NAME, SESSION_COOKIE_SECURE, SESSION_MAX_AGE_HOURS,
    SESSION_SECRET,
)
from .models import UserRole

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Session flags
# ---------------------------------------------------------------------------
class Session(BaseModel):
    """The plain flags a visitor's browser holds between requests.

    Claim names match the flags the portal has always kept client-side
    (``userType``, ``isAuthenticated``, ``userEmail`` ...). ``cookies`` holds
    the remote API's own session cookies for this visitor.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_type: Optional[UserRole] = Field(None, alias="userType")
    is_authenticated: bool = Field(False, alias="isAuthenticated")
    user_name: Optional[str] = Field(None, alias="userName")
    user_email: Optional[str] = Field(None, alias="userEmail")
    citizen_email: Optional[str] = Field(None, alias="citizenEmail")
    upstream_cookies: Dict[str, str] = Field(default_factory=dict, alias="cookies")
    flash: Optional[str] = None

    @property
    def role(self) -> str:
        if self.is_authenticated and self.user_type:
            return self.user_type.value
        return "none"

    @property
    def is_empty(self) -> bool:
        return self.snapshot() == {}

    def sign_in(self, role: UserRole, name: str, email: str) -> None:
        self.user_type = role
        self.is_authenticated = True
        self.user_name = name
        self.user_email = email
        self.citizen_email = email if role == UserRole.CITIZEN else None

    def clear(self) -> None:
        """Drop every flag. Mutates in place; the API client shares ``upstream_cookies``."""
        self.user_type = None
        self.is_authenticated = False
        self.user_name = None
        self.user_email = None
        self.citizen_email = None
        self.upstream_cookies.clear()
        self.flash = None

    def pop_flash(self) -> Optional[str]:
        message, self.flash = self.flash, None
        return message

    def snapshot(self) -> dict:
        data = self.model_dump(by_alias=True, mode="json", exclude_none=True, exclude_defaults=True,
                               exclude={"upstream_cookies"})
        if self.upstream_cookies:
            data["cookies"] = dict(self.upstream_cookies)
        return data

    def encode(self) -> str:
        claims = self.snapshot()
        claims["exp"] = datetime.now(timezone.utc) + timedelta(hours=SESSION_MAX_AGE_HOURS)
        return jwt.encode(claims, SESSION_SECRET, algorithm=SESSION_ALGORITHM)

    @classmethod
    def decode(cls, token: Optional[str]) -> "Session":
        """Rebuild a session from its cookie; anything unreadable is no session at all."""
        if not token:
            return cls()
        try:
            claims = jwt.decode(token, SESSION_SECRET, algorithms=[SESSION_ALGORITHM])
            claims.pop("exp", None)
            return cls.model_validate(claims)
        except (JWTError, ValidationError) as e:
            logger.info("Discarding unreadable session cookie: %s", e)
            return cls()


class SessionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        token = request.cookies.get(SESSION_COOKIE_NAME)
        session = Session.decode(token)
        before = session.snapshot()
        request.state.session = session
        response = await call_next(request)
        if session.is_empty:
            if token:
                response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        elif session.snapshot() != before:
            response.set_cookie(
                key=SESSION_COOKIE_NAME,
                value=session.encode(),
                max_age=SESSION_MAX_AGE_HOURS * 3600,
                httponly=True,
                secure=SESSION_COOKIE_SECURE,
                samesite="lax",
                path="/",
            )
        return response

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_session(request: Request) -> Session:
    session = getattr(request.state, "session", None)
    if session is None:
        # Requests that bypassed the middleware get a throwaway session
        session = request.state.session = Session()
    return session


def get_api_transport() -> Optional[httpx.AsyncBaseTransport]:
    return None


async def get_api(request: Request, transport: Optional[httpx.AsyncBaseTransport] = Depends(get_api_transport)):
    session = get_session(request)
    async with PortalAPI(cookies=session.upstream_cookies, transport=transport) as api:
        yield api

# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------
class AccessDenied(Exception):
    def __init__(self, redirect_to: str = "/"):
        super().__init__(redirect_to)
        self.redirect_to = redirect_to


async def authorize(session: Session, role: str, api: PortalAPI) -> bool:
    """Decide whether ``session`` may view a page restricted to ``role``.

    A missing or different cached role is refused without a remote call. A
    matching role is confirmed with the remote once; any answer other than 200
    (or no answer) clears the session.
    """
    if not session.is_authenticated or session.user_type is None or session.user_type.value != role:
        return False
    if not await api.check_session(role):
        logger.info("Remote rejected %s session for %s; signing out", role, session.user_email)
        session.clear()
        api.forget_cookies()
        return False
    return True


def require_role(role: UserRole, redirect_to: str = "/"):
    async def role_checker(request: Request, api: PortalAPI = Depends(get_api)) -> Session:
        session = get_session(request)
        if not await authorize(session, role.value, api):
            raise AccessDenied(redirect_to)
        return session
    return role_checker


async def header_session(request: Request, api: PortalAPI = Depends(get_api)) -> Session:
    """Session for public pages: a claimed login is re-checked and dropped if stale."""
    session = get_session(request)
    if session.is_authenticated:
        if session.user_type is None:
            session.clear()
            api.forget_cookies()
        else:
            await authorize(session, session.user_type.value, api)
    return session

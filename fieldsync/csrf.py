"""
Double-submit CSRF tokens bound to the session.

Token format: {nonce}.{issued_at}.{signature}. The signature is an HMAC of the
session binding (sha256 of the session token), nonce and timestamp, so a token
minted for one session does not validate for another and nothing is stored
server-side.
"""

import hashlib
import hmac
import secrets
import time
from enum import Enum
from typing import Callable, Optional, Tuple

from fastapi import HTTPException, Request, Response, status

from .auth import get_token_from_request
from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)

CSRF_COOKIE_NAME = "fieldsync-csrf-token"
CSRF_HEADER_NAME = "x-csrf-token"
SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


class TokenState(str, Enum):
    VALID = "valid"
    # Authentic but past its lifetime, still inside the grace period
    STALE = "stale"
    INVALID = "invalid"


class CsrfManager:
    def __init__(
        self,
        secret: Optional[str] = None,
        max_age: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self._max_age = max_age
        self.clock = clock

    @property
    def secret(self) -> str:
        return self._secret or settings.SECRET_KEY

    @property
    def max_age(self) -> int:
        return self._max_age or settings.CSRF_TOKEN_MAX_AGE

    @staticmethod
    def _binding(session: Optional[str]) -> str:
        return hashlib.sha256((session or "anonymous").encode()).hexdigest()

    def _sign(self, session: Optional[str], nonce: str, issued_at: str) -> str:
        message = f"{self._binding(session)}.{nonce}.{issued_at}"
        return hmac.new(self.secret.encode(), message.encode(), hashlib.sha256).hexdigest()

    def issue(self, session: Optional[str]) -> str:
        nonce = secrets.token_urlsafe(24)
        issued_at = str(int(self.clock()))
        return f"{nonce}.{issued_at}.{self._sign(session, nonce, issued_at)}"

    def check(self, token: Optional[str], session: Optional[str]) -> TokenState:
        if not token:
            return TokenState.INVALID
        try:
            nonce, issued_at, signature = token.split(".")
            age = self.clock() - int(issued_at)
        except (ValueError, TypeError):
            return TokenState.INVALID

        if not hmac.compare_digest(signature, self._sign(session, nonce, issued_at)):
            return TokenState.INVALID
        if age < 0 or age >= 2 * self.max_age:
            return TokenState.INVALID
        if age >= self.max_age:
            return TokenState.STALE
        return TokenState.VALID

    def get_or_issue(self, session: Optional[str], existing: Optional[str]) -> Tuple[str, bool]:
        """Reuse a still-valid token, otherwise mint one. Returns (token, reused)."""
        if existing and self.check(existing, session) == TokenState.VALID:
            return existing, True
        return self.issue(session), False

    def set_cookie(self, response: Response, token: str):
        response.set_cookie(
            key=CSRF_COOKIE_NAME,
            value=token,
            max_age=self.max_age,
            httponly=True,
            secure=settings.is_production,
            samesite="strict",
            path="/",
        )


csrf_manager = CsrfManager()


async def require_csrf(request: Request):
    """
    FastAPI dependency validating the double-submitted token on mutating requests

    A stale but authentic token stays accepted until it is twice max_age old.
    Each such request gets a fresh token, which `apply_reissued_token` puts on
    whatever response the handler ends up returning.
    """
    if request.method in SAFE_METHODS:
        return

    header_token = request.headers.get(CSRF_HEADER_NAME)
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME)
    if not header_token or not cookie_token:
        logger.warning("CSRF token missing", extra={"extra": {"path": request.url.path}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="CSRF token missing")

    if not hmac.compare_digest(header_token.encode(), cookie_token.encode()):
        logger.warning("CSRF token mismatch", extra={"extra": {"path": request.url.path}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid CSRF token")

    session = get_token_from_request(request)
    state = csrf_manager.check(cookie_token, session)
    if state == TokenState.INVALID:
        logger.warning("CSRF token rejected", extra={"extra": {"path": request.url.path}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid CSRF token")

    if state == TokenState.STALE:
        request.state.csrf_reissued = csrf_manager.issue(session)
        logger.info("CSRF token reissued", extra={"extra": {"path": request.url.path}})


def apply_reissued_token(request: Request, response: Response) -> Response:
    fresh = getattr(request.state, "csrf_reissued", None)
    if fresh:
        csrf_manager.set_cookie(response, fresh)
        response.headers["X-CSRF-Token"] = fresh
    return response

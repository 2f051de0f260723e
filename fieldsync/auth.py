"""
Session tokens issued by the auth provider.

Token format: {user_id}.{issued_at}.{signature}, where the HMAC-SHA256
signature covers user id and timestamp. Tokens travel in the session cookie
or an Authorization: Bearer header.
"""

import hashlib
import hmac
import time
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from .config import settings
from .database import Database, get_database
from .logging_config import get_logger
from .models import User
from .repositories import UserRepository

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "fieldsync_session"


def _sign(payload: str) -> str:
    return hmac.new(settings.SECRET_KEY.encode(), payload.encode(), hashlib.sha256).hexdigest()


def create_session_token(user_id: str, issued_at: Optional[int] = None) -> str:
    timestamp = str(int(time.time()) if issued_at is None else issued_at)
    payload = f"{user_id}.{timestamp}"
    return f"{payload}.{_sign(payload)}"


def validate_session_token(token: str, now: Optional[float] = None) -> Optional[str]:
    """
    Validate a session token

    Returns:
        The user id, or None when the token is malformed, forged or expired
    """
    try:
        user_id, timestamp, signature = token.split(".")
        if not hmac.compare_digest(signature, _sign(f"{user_id}.{timestamp}")):
            return None

        now = time.time() if now is None else now
        if now - int(timestamp) >= settings.SESSION_MAX_AGE:
            return None

        return user_id
    except (ValueError, TypeError):
        return None


def get_token_from_request(request: Request) -> Optional[str]:
    """Authorization header first (cross-origin clients), then the session cookie"""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(SESSION_COOKIE_NAME)


def get_session_user_id(request: Request) -> Optional[str]:
    token = get_token_from_request(request)
    if not token:
        return None
    return validate_session_token(token)


async def require_user(request: Request, database: Database = Depends(get_database)) -> User:
    """
    FastAPI dependency that requires an authenticated user

    Raises:
        HTTPException 401 when there is no valid session or the user is unknown
    """
    user_id = get_session_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user = UserRepository(database).get(user_id)
    if user is None:
        logger.warning("Session for unknown user", extra={"extra": {"user_id": user_id}})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    request.state.user_id = user.id
    return user

"""
First-party session resolution. The login UI (hosted elsewhere) sets an HS256-signed session cookie;
this module only reads it and maps it to a user. Endpoints depend on get_current_user so tests can
override it.
"""
import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.config import SESSION_COOKIE_NAME, SESSION_SECRET
from oidc_provider.database import get_db
from oidc_provider.models import User

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(days=7)


def create_session_token(user: User, *, ttl: timedelta = SESSION_TTL) -> str:
    """Session cookie value for user, set by POST /login."""
    now = datetime.now(timezone.utc)
    payload = {"userId": user.id, "email": user.email, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, SESSION_SECRET, algorithm="HS256")


def resolve_session_user(db: Session, session_token: str | None) -> User | None:
    if not session_token:
        return None
    try:
        payload = jwt.decode(session_token, SESSION_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        logger.debug("Session cookie rejected: %s", e)
        return None
    user_id = payload.get("userId")
    if not isinstance(user_id, str):
        return None
    return store.get_user(db, user_id)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    """Dependency: the authenticated end-user for this request, or None."""
    return resolve_session_user(db, request.cookies.get(SESSION_COOKIE_NAME))

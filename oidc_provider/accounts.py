"""
First-party accounts: POST /register creates an unverified user, POST /login checks email/password and
sets the session cookie that /authorize reads. The pages that call these are hosted elsewhere.
"""
import logging
import re

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.audit import AuditEvent, Outcome, get_client_ip, log_audit
from oidc_provider.config import ISSUER, PASSWORD_MIN_LENGTH, RATE_LIMIT_LOGIN_PER_MINUTE, SESSION_COOKIE_NAME
from oidc_provider.credentials import authenticate_user, hash_password
from oidc_provider.database import get_db
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.models import User
from oidc_provider.rate_limit import check_and_consume
from oidc_provider.session import SESSION_TTL, create_session_token

logger = logging.getLogger(__name__)
router = APIRouter()

_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def _normalize_email(value: str) -> str:
    value = value.strip().casefold()
    if not _EMAIL_RE.fullmatch(value):
        raise ValueError("Invalid email address")
    return value


class RegisterRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=1024)
    name: str | None = Field(default=None, min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


def _user_json(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "email_verified": bool(user.email_verified),
    }


def _duplicate() -> OAuthError:
    return OAuthError(ErrorCode.INVALID_REQUEST, "User with this email already exists", status_code=409)


@router.post("/register", status_code=201)
def register(body: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """Create a password user. Email is case-folded; a duplicate email is 409."""
    if store.get_user_by_email(db, body.email) is not None:
        raise _duplicate()
    try:
        user = store.create_user(
            db,
            email=body.email,
            password_hash=hash_password(body.password),
            name=body.name,
            email_verified=False,
        )
    except IntegrityError:
        # Concurrent registration of the same email won the unique index
        db.rollback()
        raise _duplicate()
    log_audit(db, AuditEvent.USER_REGISTERED, user_id=user.id, ip=get_client_ip(request))
    db.commit()
    logger.info("Registered user id=%s", user.id)
    return JSONResponse(status_code=201, content=_user_json(user), headers={"Cache-Control": "no-store"})


@router.post("/login")
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """Verify email/password and set the session cookie."""
    ip = get_client_ip(request)
    allowed, retry_after = check_and_consume(f"login:{ip}", RATE_LIMIT_LOGIN_PER_MINUTE)
    if not allowed:
        raise OAuthError(
            ErrorCode.ACCESS_DENIED,
            "Too many login attempts",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )

    user = authenticate_user(db, body.email, body.password)
    if user is None:
        log_audit(db, AuditEvent.LOGIN_FAIL, ip=ip, outcome=Outcome.FAIL)
        db.commit()
        # Same answer for unknown email and wrong password
        raise OAuthError(ErrorCode.ACCESS_DENIED, "Invalid email or password", status_code=401)

    log_audit(db, AuditEvent.LOGIN_OK, user_id=user.id, ip=ip)
    db.commit()
    response = JSONResponse(content=_user_json(user), headers={"Cache-Control": "no-store"})
    response.set_cookie(
        SESSION_COOKIE_NAME,
        create_session_token(user),
        max_age=int(SESSION_TTL.total_seconds()),
        path="/",
        httponly=True,
        secure=ISSUER.startswith("https://"),
        samesite="lax",
    )
    return response

"""
Token endpoint (POST /token). Client authentication is mandatory for every grant.
Supported grants: authorization_code (with PKCE S256) and refresh_token (with rotation).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.audit import AuditEvent, Outcome, get_client_ip, log_audit
from oidc_provider.client_auth import require_client_auth
from oidc_provider.config import ACCESS_TOKEN_EXPIRES, RATE_LIMIT_TOKEN_PER_MINUTE, REFRESH_TOKEN_EXPIRES
from oidc_provider.database import get_db
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.models import OAuthClient, as_utc, split_scope
from oidc_provider.rate_limit import check_and_consume
from oidc_provider.tokens import issue_access_token, issue_id_token, issue_refresh_token, verify_pkce

logger = logging.getLogger(__name__)
router = APIRouter()


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class AuthorizationCodeGrant:
    code: str
    redirect_uri: str
    code_verifier: str | None = None


@dataclass(frozen=True)
class RefreshTokenGrant:
    refresh_token: str


Grant = AuthorizationCodeGrant | RefreshTokenGrant


def parse_grant(
    grant_type: str | None,
    *,
    code: str | None = None,
    redirect_uri: str | None = None,
    code_verifier: str | None = None,
    refresh_token: str | None = None,
) -> Grant:
    """Turn form fields into a typed grant. Raises unsupported_grant_type / invalid_request."""
    if not grant_type:
        raise OAuthError(ErrorCode.INVALID_REQUEST, "grant_type is required")
    try:
        kind = GrantType(grant_type)
    except ValueError:
        raise OAuthError(ErrorCode.UNSUPPORTED_GRANT_TYPE, f'Grant type "{grant_type}" is not supported')
    if kind is GrantType.AUTHORIZATION_CODE:
        if not code or not redirect_uri:
            raise OAuthError(ErrorCode.INVALID_REQUEST, "code and redirect_uri are required")
        return AuthorizationCodeGrant(code=code, redirect_uri=redirect_uri, code_verifier=code_verifier or None)
    if kind is GrantType.REFRESH_TOKEN:
        if not refresh_token:
            raise OAuthError(ErrorCode.INVALID_REQUEST, "refresh_token is required")
        return RefreshTokenGrant(refresh_token=refresh_token)
    raise AssertionError(f"Unhandled grant type {kind}")


def _invalid_grant(description: str) -> OAuthError:
    return OAuthError(ErrorCode.INVALID_GRANT, description)


def _token_response(
    db: Session,
    user_id: str,
    client_id: str,
    scope: str,
    *,
    nonce: str | None = None,
) -> dict:
    """Issue access + refresh (+ ID) tokens inside the caller's transaction."""
    user = store.get_user(db, user_id)
    if user is None:
        # Grant points at a user that no longer exists; nothing the client can fix
        raise OAuthError(ErrorCode.SERVER_ERROR, "Internal server error")
    access_token, _ = issue_access_token(db, user, client_id, scope)
    refresh = issue_refresh_token(db, user.id, client_id, scope)
    response = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "refresh_token": refresh.token,
        "refresh_expires_in": REFRESH_TOKEN_EXPIRES,
        "scope": scope,
    }
    if "openid" in split_scope(scope):
        response["id_token"] = issue_id_token(user, client_id, scope, nonce)
    return response


def _exchange_authorization_code(db: Session, client: OAuthClient, grant: AuthorizationCodeGrant) -> dict:
    auth_code = store.get_authorization_code(db, grant.code)
    if auth_code is None:
        raise _invalid_grant("Invalid authorization code")
    if auth_code.used:
        logger.warning("Replay of used authorization code for client_id=%s", client.client_id)
        raise _invalid_grant("Authorization code already used")
    if as_utc(auth_code.expires_at) <= datetime.now(timezone.utc):
        raise _invalid_grant("Authorization code expired")
    if auth_code.client_id != client.client_id:
        raise _invalid_grant("Client ID mismatch")
    if auth_code.redirect_uri != grant.redirect_uri:
        raise _invalid_grant("Redirect URI mismatch")
    if auth_code.code_challenge:
        if not grant.code_verifier:
            raise _invalid_grant("Code verifier required for PKCE")
        if not verify_pkce(grant.code_verifier, auth_code.code_challenge, auth_code.code_challenge_method):
            raise _invalid_grant("PKCE verification failed")

    # Compare-and-set; a concurrent redemption that got here first wins
    if not store.consume_authorization_code(db, grant.code):
        db.rollback()
        raise _invalid_grant("Authorization code already used")

    return _token_response(db, auth_code.user_id, client.client_id, auth_code.scope, nonce=auth_code.nonce)


def _exchange_refresh_token(db: Session, client: OAuthClient, grant: RefreshTokenGrant) -> dict:
    rt = store.get_refresh_token(db, grant.refresh_token)
    if rt is None:
        raise _invalid_grant("Invalid refresh token")
    if rt.revoked:
        logger.warning("Revoked refresh token presented by client_id=%s", client.client_id)
        raise _invalid_grant("Refresh token revoked")
    if as_utc(rt.expires_at) <= datetime.now(timezone.utc):
        raise _invalid_grant("Refresh token expired")
    if rt.client_id != client.client_id:
        raise _invalid_grant("Refresh token was issued to a different client")

    # Rotation: revoke-old and issue-new commit together
    if not store.revoke_refresh_token(db, grant.refresh_token, client_id=client.client_id):
        db.rollback()
        raise _invalid_grant("Refresh token revoked")

    return _token_response(db, rt.user_id, client.client_id, rt.scope)


def exchange(db: Session, client: OAuthClient, grant: Grant) -> dict:
    """Dispatch a parsed grant. Changes are flushed but not committed."""
    if isinstance(grant, AuthorizationCodeGrant):
        return _exchange_authorization_code(db, client, grant)
    if isinstance(grant, RefreshTokenGrant):
        return _exchange_refresh_token(db, client, grant)
    raise AssertionError(f"Unhandled grant {type(grant).__name__}")


@router.post("/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """
    authorization_code: exchange code (+ PKCE verifier) for access_token, refresh_token and id_token.
    refresh_token: exchange refresh_token for new tokens; the presented refresh token is revoked.
    """
    ip = get_client_ip(request)
    allowed, retry_after = check_and_consume(f"token:{ip}", RATE_LIMIT_TOKEN_PER_MINUTE)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "slow_down", "error_description": "Too many token requests"},
            headers={"Retry-After": str(retry_after)},
        )

    try:
        client = require_client_auth(db, request, client_id, client_secret)
    except OAuthError:
        log_audit(db, AuditEvent.CLIENT_AUTH_FAIL, client_id=client_id, ip=ip, outcome=Outcome.FAIL)
        db.commit()
        raise

    grant = parse_grant(
        grant_type,
        code=code,
        redirect_uri=redirect_uri,
        code_verifier=code_verifier,
        refresh_token=refresh_token,
    )
    try:
        body = exchange(db, client, grant)
    except OAuthError as e:
        db.rollback()
        if e.error is ErrorCode.INVALID_GRANT:
            log_audit(db, AuditEvent.GRANT_REJECTED, client_id=client.client_id, ip=ip, outcome=Outcome.FAIL)
            db.commit()
        raise

    event = AuditEvent.TOKEN_REFRESHED if isinstance(grant, RefreshTokenGrant) else AuditEvent.TOKEN_ISSUED
    log_audit(db, event, client_id=client.client_id, ip=ip)
    db.commit()
    logger.info("%s grant: tokens issued for client_id=%s", grant_type, client.client_id)
    return JSONResponse(content=body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

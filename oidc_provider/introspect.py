"""
Token introspection endpoint (POST /introspect). RFC 7662.
Caller must authenticate as a client and only learns about its own tokens.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.client_auth import require_client_auth
from oidc_provider.database import get_db
from oidc_provider.errors import OAuthError
from oidc_provider.models import OAuthClient, as_utc
from oidc_provider.revoke import TokenTypeHint, parse_hint
from oidc_provider.tokens import verify_access_token

logger = logging.getLogger(__name__)
router = APIRouter()

_INACTIVE = {"active": False}


def _introspect_access_token(db: Session, client: OAuthClient, token: str) -> dict | None:
    try:
        claims = verify_access_token(db, token, audience=client.client_id)
    except OAuthError:
        return None
    return {
        "active": True,
        "token_type": "Bearer",
        "scope": claims.get("scope", ""),
        "client_id": claims.get("aud"),
        "sub": claims.get("sub"),
        "exp": claims.get("exp"),
        "iat": claims.get("iat"),
        "iss": claims.get("iss"),
        "aud": claims.get("aud"),
        "jti": claims.get("jti"),
    }


def _introspect_refresh_token(db: Session, client: OAuthClient, token: str) -> dict | None:
    rt = store.get_refresh_token(db, token)
    if rt is None or rt.revoked or rt.client_id != client.client_id:
        return None
    expires_at = as_utc(rt.expires_at)
    if expires_at <= datetime.now(timezone.utc):
        return None
    return {
        "active": True,
        "token_type": "refresh_token",
        "scope": rt.scope or "",
        "client_id": rt.client_id,
        "sub": rt.user_id,
        "exp": int(expires_at.timestamp()),
    }


@router.post("/introspect")
def introspect(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """Return whether the token is active and, if so, its metadata."""
    client = require_client_auth(db, request, client_id, client_secret)
    token_value = (token or "").strip()
    headers = {"Cache-Control": "no-store"}
    if not token_value:
        return JSONResponse(content=_INACTIVE, headers=headers)

    if parse_hint(token_type_hint) is TokenTypeHint.REFRESH_TOKEN:
        lookups = (_introspect_refresh_token, _introspect_access_token)
    else:
        lookups = (_introspect_access_token, _introspect_refresh_token)
    for lookup in lookups:
        result = lookup(db, client, token_value)
        if result is not None:
            return JSONResponse(content=result, headers=headers)
    return JSONResponse(content=_INACTIVE, headers=headers)

"""
Token revocation endpoint (POST /revoke). RFC 7009.
Always answers 200 with an empty body, whether or not the token existed, was already revoked or was
malformed, so the endpoint cannot be used to probe token validity.
"""
import logging
from enum import Enum

import jwt
from fastapi import APIRouter, Depends, Form, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.audit import AuditEvent, Outcome, get_client_ip, log_audit
from oidc_provider.client_auth import get_client_credentials_from_request
from oidc_provider.credentials import authenticate_client
from oidc_provider.database import get_db
from oidc_provider.tokens import decode_signed_token

logger = logging.getLogger(__name__)
router = APIRouter()


class TokenTypeHint(str, Enum):
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"


def parse_hint(value: str | None) -> TokenTypeHint | None:
    """Unknown hints are ignored (RFC 7009 §2.1): the server searches all token types."""
    if not value:
        return None
    try:
        return TokenTypeHint(value.strip().lower())
    except ValueError:
        return None


def _revoke_refresh(db: Session, token: str, client_id: str | None) -> bool:
    return store.revoke_refresh_token(db, token, client_id=client_id)


def _revoke_access(db: Session, token: str, client_id: str | None) -> bool:
    """Accepts either the jti or the full signed access token."""
    if store.revoke_access_token(db, token, client_id=client_id):
        return True
    if token.count(".") != 2:
        return False
    try:
        claims = decode_signed_token(token)
    except jwt.InvalidTokenError:
        return False
    jti = claims.get("jti")
    return bool(jti) and store.revoke_access_token(db, jti, client_id=client_id)


_REVOKERS = {
    TokenTypeHint.REFRESH_TOKEN: _revoke_refresh,
    TokenTypeHint.ACCESS_TOKEN: _revoke_access,
}


def revoke_token(db: Session, token: str, hint: TokenTypeHint | None, client_id: str | None = None) -> bool:
    """
    Try the hinted token type first, then the other one (refresh first when there is no hint).
    When client_id is given only that client's tokens are revoked. Returns whether anything was revoked.
    """
    first = hint or TokenTypeHint.REFRESH_TOKEN
    order = [first] + [kind for kind in TokenTypeHint if kind is not first]
    for kind in order:
        if _REVOKERS[kind](db, token, client_id):
            return True
    return False


@router.post("/revoke")
def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """
    Revoke a refresh token or an access token. Client credentials are optional; when supplied they
    must verify, otherwise nothing is revoked. The response is 200 and empty either way.
    """
    ip = get_client_ip(request)
    token_value = (token or "").strip()
    if not token_value:
        return Response(status_code=200)

    cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
    owner = None
    if cid or csecret:
        client = authenticate_client(db, cid, csecret)
        if client is None:
            logger.info("Revocation with invalid client credentials ignored (client_id=%s)", cid)
            log_audit(db, AuditEvent.CLIENT_AUTH_FAIL, client_id=cid, ip=ip, outcome=Outcome.FAIL)
            db.commit()
            return Response(status_code=200)
        owner = client.client_id

    try:
        revoked = revoke_token(db, token_value, parse_hint(token_type_hint), owner)
        if revoked:
            log_audit(db, AuditEvent.TOKEN_REVOKED, client_id=owner, ip=ip)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Revocation failed; reporting success per RFC 7009")
        return Response(status_code=200)

    logger.debug("Revocation processed (revoked=%s)", revoked)
    return Response(status_code=200)

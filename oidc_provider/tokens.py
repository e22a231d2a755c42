"""
Token issuance and verification: signed access tokens (RS256 JWT + revocable record keyed by jti),
OIDC ID tokens, opaque refresh tokens and authorization codes, and PKCE challenge checks.
"""
import hashlib
import hmac
import logging
import secrets
import uuid
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from enum import Enum

import jwt
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.config import (
    ACCESS_TOKEN_EXPIRES,
    CODE_TTL_SECONDS,
    ID_TOKEN_EXPIRES,
    ISSUER,
    REFRESH_TOKEN_EXPIRES,
)
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.keys import get_public_key_for_kid, get_signing_key
from oidc_provider.models import AccessToken, AuthorizationCode, RefreshToken, User, as_utc, split_scope

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"

# Random bytes before urlsafe encoding
_CODE_BYTES = 32
_REFRESH_TOKEN_BYTES = 64


class CodeChallengeMethod(str, Enum):
    S256 = "S256"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sign(payload: dict) -> str:
    private_key, kid = get_signing_key()
    token = jwt.encode(payload, private_key, algorithm=ALGORITHM, headers={"kid": kid, "typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


# --- PKCE (RFC 7636) ---


def derive_code_challenge(code_verifier: str, method: CodeChallengeMethod) -> str:
    if method is CodeChallengeMethod.S256:
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def verify_pkce(code_verifier: str | None, code_challenge: str, method: str | None) -> bool:
    """Check a verifier against the stored challenge. Missing verifier or unknown method fails."""
    if not code_verifier:
        return False
    try:
        parsed = CodeChallengeMethod(method)
        computed = derive_code_challenge(code_verifier, parsed)
    except (ValueError, UnicodeEncodeError):
        return False
    return hmac.compare_digest(computed, code_challenge)


# --- access tokens ---


def issue_access_token(db: Session, user: User, client_id: str, scope: str) -> tuple[str, AccessToken]:
    """Sign an access token and persist its jti record with the same expiry."""
    now = _now()
    exp = now + timedelta(seconds=ACCESS_TOKEN_EXPIRES)
    jti = uuid.uuid4().hex
    payload = {
        "iss": ISSUER,
        "sub": user.id,
        "aud": client_id,
        "exp": int(exp.timestamp()),
        "iat": int(now.timestamp()),
        "jti": jti,
        "scope": scope,
        "email": user.email,
        "name": user.name,
        "email_verified": bool(user.email_verified),
    }
    token = _sign(payload)
    record = store.create_access_token_record(
        db,
        jti=jti,
        user_id=user.id,
        client_id=client_id,
        scope=scope,
        expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
    )
    return token, record


def decode_signed_token(token: str, *, audience: str | None = None) -> dict:
    """
    Verify signature (key resolved by kid), algorithm, issuer, expiry and, when given, audience.
    Raises jwt.InvalidTokenError.
    """
    header = jwt.get_unverified_header(token)
    if header.get("alg") != ALGORITHM:
        raise jwt.InvalidAlgorithmError("Unexpected token algorithm")
    public_key = get_public_key_for_kid(header.get("kid"))
    if public_key is None:
        raise jwt.InvalidTokenError("Unknown signing key")
    options = {"require": ["exp", "iat", "iss", "sub"]}
    if audience is None:
        options["verify_aud"] = False
    return jwt.decode(
        token,
        public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=audience,
        options=options,
    )


def verify_access_token(db: Session, token: str, *, audience: str | None = None) -> dict:
    """
    Return claims of a live access token. The signature alone is not enough: the jti record must
    exist, belong to the token's audience and not be revoked.
    """
    invalid = OAuthError(
        ErrorCode.INVALID_TOKEN,
        "Invalid or expired access token",
        headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
    )
    if not token:
        raise invalid
    try:
        claims = decode_signed_token(token, audience=audience)
    except jwt.InvalidTokenError as e:
        logger.debug("Access token rejected: %s", e)
        raise invalid
    record = store.get_access_token_record(db, claims.get("jti"))
    if record is None or record.revoked:
        logger.debug("Access token jti unknown or revoked")
        raise invalid
    if record.client_id != claims.get("aud") or record.user_id != claims.get("sub"):
        logger.warning("Access token claims do not match stored record jti=%s", record.jti)
        raise invalid
    if as_utc(record.expires_at) <= _now():
        raise invalid
    return claims


# --- ID tokens ---


def issue_id_token(user: User, client_id: str, scope: str, nonce: str | None = None) -> str:
    """OIDC ID token for the client (aud=client_id), with identity claims filtered by scope."""
    now = _now()
    scopes = split_scope(scope)
    payload = {
        "iss": ISSUER,
        "sub": user.id,
        "aud": client_id,
        "exp": int((now + timedelta(seconds=ID_TOKEN_EXPIRES)).timestamp()),
        "iat": int(now.timestamp()),
        "auth_time": int(now.timestamp()),
    }
    if nonce:
        payload["nonce"] = nonce
    if "email" in scopes:
        payload["email"] = user.email
        payload["email_verified"] = bool(user.email_verified)
    if "profile" in scopes:
        if user.name is not None:
            payload["name"] = user.name
        if user.picture is not None:
            payload["picture"] = user.picture
    return _sign(payload)


# --- opaque credentials ---


def issue_refresh_token(db: Session, user_id: str, client_id: str, scope: str) -> RefreshToken:
    return store.create_refresh_token(
        db,
        token=secrets.token_urlsafe(_REFRESH_TOKEN_BYTES),
        user_id=user_id,
        client_id=client_id,
        scope=scope,
        expires_at=_now() + timedelta(seconds=REFRESH_TOKEN_EXPIRES),
    )


def issue_authorization_code(
    db: Session,
    *,
    user_id: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
) -> AuthorizationCode:
    return store.create_authorization_code(
        db,
        code=secrets.token_urlsafe(_CODE_BYTES),
        user_id=user_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        expires_at=_now() + timedelta(seconds=CODE_TTL_SECONDS),
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )

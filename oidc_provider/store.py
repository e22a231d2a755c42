"""
Typed operations over the persisted authorization records. This module owns every write.

Create helpers add and flush (so unique constraints fire inside the caller's transaction) but do
not commit; the calling controller commits once per request. One-time transitions (code redemption,
refresh rotation, revocation) are single conditional UPDATE statements whose affected-row count
decides the winner, so concurrent requests cannot both succeed.
"""
import json
import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from oidc_provider.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    User,
    UserConsent,
    split_scope,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- users ---


def get_user(db: Session, user_id: str) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> User | None:
    if not email:
        return None
    return db.query(User).filter(User.email == email.strip().casefold()).first()


def create_user(
    db: Session,
    *,
    email: str,
    password_hash: str = "",
    name: str | None = None,
    picture: str | None = None,
    email_verified: bool = False,
) -> User:
    user = User(
        email=email.strip().casefold(),
        password_hash=password_hash,
        name=name,
        picture=picture,
        email_verified=email_verified,
    )
    db.add(user)
    db.flush()
    return user


def update_password_hash(db: Session, user: User, password_hash: str) -> None:
    user.password_hash = password_hash
    db.flush()


# --- clients (read-only from the core's perspective; create is for seeding) ---


def get_client(db: Session, client_id: str) -> OAuthClient | None:
    if not client_id:
        return None
    return db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()


def create_client(
    db: Session,
    *,
    client_id: str,
    client_secret_hash: str,
    redirect_uris: list[str],
    allowed_scopes: list[str],
    name: str = "",
    description: str | None = None,
    logo: str | None = None,
    trusted: bool = False,
) -> OAuthClient:
    client = OAuthClient(
        client_id=client_id,
        client_secret_hash=client_secret_hash,
        redirect_uris=json.dumps(redirect_uris),
        allowed_scopes=json.dumps(allowed_scopes),
        name=name or client_id,
        description=description,
        logo=logo,
        trusted=trusted,
    )
    db.add(client)
    db.flush()
    return client


# --- authorization codes ---


def create_authorization_code(
    db: Session,
    *,
    code: str,
    user_id: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    expires_at: datetime,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
) -> AuthorizationCode:
    row = AuthorizationCode(
        code=code,
        user_id=user_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        code_challenge=code_challenge or None,
        code_challenge_method=code_challenge_method or None,
        nonce=nonce or None,
        expires_at=expires_at,
    )
    db.add(row)
    db.flush()
    return row


def get_authorization_code(db: Session, code: str) -> AuthorizationCode | None:
    if not code:
        return None
    return db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()


def consume_authorization_code(db: Session, code: str) -> bool:
    """
    Mark an unused, unexpired code as used. Returns True only for the single caller that
    performed the false -> true transition.
    """
    result = db.execute(
        update(AuthorizationCode)
        .where(
            AuthorizationCode.code == code,
            AuthorizationCode.used.is_(False),
            AuthorizationCode.expires_at > _utc_now(),
        )
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# --- access-token records ---


def create_access_token_record(
    db: Session,
    *,
    jti: str,
    user_id: str,
    client_id: str,
    scope: str,
    expires_at: datetime,
) -> AccessToken:
    row = AccessToken(jti=jti, user_id=user_id, client_id=client_id, scope=scope, expires_at=expires_at)
    db.add(row)
    db.flush()
    return row


def get_access_token_record(db: Session, jti: str) -> AccessToken | None:
    if not jti:
        return None
    return db.query(AccessToken).filter(AccessToken.jti == jti).first()


def revoke_access_token(db: Session, jti: str, *, client_id: str | None = None) -> bool:
    """Revoke by jti. When client_id is given, only that client's token is touched."""
    stmt = update(AccessToken).where(AccessToken.jti == jti, AccessToken.revoked.is_(False))
    if client_id is not None:
        stmt = stmt.where(AccessToken.client_id == client_id)
    result = db.execute(stmt.values(revoked=True).execution_options(synchronize_session=False))
    return result.rowcount == 1


# --- refresh tokens ---


def create_refresh_token(
    db: Session,
    *,
    token: str,
    user_id: str,
    client_id: str,
    scope: str,
    expires_at: datetime,
) -> RefreshToken:
    row = RefreshToken(token=token, user_id=user_id, client_id=client_id, scope=scope, expires_at=expires_at)
    db.add(row)
    db.flush()
    return row


def get_refresh_token(db: Session, token: str) -> RefreshToken | None:
    if not token:
        return None
    return db.query(RefreshToken).filter(RefreshToken.token == token).first()


def revoke_refresh_token(db: Session, token: str, *, client_id: str | None = None) -> bool:
    """
    Revoke a live refresh token. Returns True only for the caller that flipped revoked
    false -> true; rotation relies on this so a token can be exchanged at most once.
    """
    stmt = update(RefreshToken).where(RefreshToken.token == token, RefreshToken.revoked.is_(False))
    if client_id is not None:
        stmt = stmt.where(RefreshToken.client_id == client_id)
    result = db.execute(stmt.values(revoked=True).execution_options(synchronize_session=False))
    return result.rowcount == 1


def revoke_all_for_user(db: Session, user_id: str) -> tuple[int, int]:
    """Revoke every access-token record and refresh token of a user. Returns (access, refresh) counts."""
    access = db.execute(
        update(AccessToken)
        .where(AccessToken.user_id == user_id, AccessToken.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    refresh = db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    return access.rowcount, refresh.rowcount


# --- consents ---


def get_consent(db: Session, user_id: str, client_id: str) -> UserConsent | None:
    return (
        db.query(UserConsent)
        .filter(UserConsent.user_id == user_id, UserConsent.client_id == client_id)
        .first()
    )


def upsert_consent(db: Session, user_id: str, client_id: str, scope: str) -> UserConsent:
    """Union scope into the stored consent for (user, client); never removes scopes."""
    consent = get_consent(db, user_id, client_id)
    if consent is None:
        consent = UserConsent(user_id=user_id, client_id=client_id, scope=" ".join(split_scope(scope)))
        db.add(consent)
    else:
        merged = split_scope(consent.scope)
        merged.extend(s for s in split_scope(scope) if s not in merged)
        consent.scope = " ".join(merged)
    db.flush()
    return consent

"""
Consent decisions: whether a user has already approved a client for a scope, recording approvals, and
the signed ticket that ties a consent POST to the authorization request the user was actually shown.
"""
import logging
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.config import CONSENT_TICKET_TTL, SESSION_SECRET
from oidc_provider.models import OAuthClient, split_scope

logger = logging.getLogger(__name__)

_TICKET_TYPE = "consent"


def has_consent(db: Session, user_id: str, client_id: str, requested_scope: str) -> bool:
    """True only if every requested scope is in the stored consent. No record means no consent."""
    consent = store.get_consent(db, user_id, client_id)
    if consent is None:
        return False
    granted = set(split_scope(consent.scope))
    return all(s in granted for s in split_scope(requested_scope))


def save_consent(db: Session, user_id: str, client_id: str, scope: str) -> str:
    """Record approval; returns the full stored scope after the union."""
    consent = store.upsert_consent(db, user_id, client_id, scope)
    logger.debug("Consent stored for user=%s client=%s", user_id, client_id)
    return consent.scope


def consent_required(db: Session, user_id: str, client: OAuthClient, requested_scope: str) -> bool:
    if client.trusted:
        return False
    return not has_consent(db, user_id, client.client_id, requested_scope)


def issue_consent_ticket(user_id: str, params: dict[str, str], *, ttl: int = CONSENT_TICKET_TTL) -> str:
    """HS256 ticket over the user and the exact authorization parameters forwarded to the consent surface."""
    now = datetime.now(timezone.utc)
    payload = {
        "typ": _TICKET_TYPE,
        "sub": user_id,
        "req": params,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    return jwt.encode(payload, SESSION_SECRET, algorithm="HS256")


def verify_consent_ticket(ticket: str | None, user_id: str, params: dict[str, str]) -> bool:
    if not ticket:
        return False
    try:
        claims = jwt.decode(ticket, SESSION_SECRET, algorithms=["HS256"], options={"require": ["exp", "sub"]})
    except jwt.InvalidTokenError as e:
        logger.info("Consent ticket rejected: %s", e)
        return False
    if claims.get("typ") != _TICKET_TYPE or claims.get("sub") != user_id:
        return False
    return claims.get("req") == params

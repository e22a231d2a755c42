"""
Seed one user and one OAuth client from environment. No hardcoded credentials.
Optional: OAUTH_SEED_USER_EMAIL + OAUTH_SEED_USER_PASSWORD; OAUTH_SEED_CLIENT_ID + OAUTH_SEED_CLIENT_SECRET
+ OAUTH_SEED_REDIRECT_URIS (comma-separated), with OAUTH_SEED_SCOPES and OAUTH_SEED_TRUSTED.
"""
import logging
import os

from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.config import DEFAULT_SCOPE
from oidc_provider.credentials import hash_password

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _split_list(value: str | None, sep: str | None = ",") -> list[str]:
    return [v.strip() for v in (value or "").split(sep) if v.strip()]


def seed_from_env(db: Session) -> None:
    """Create the configured user and/or client when they do not exist yet."""
    email = os.environ.get("OAUTH_SEED_USER_EMAIL")
    password = os.environ.get("OAUTH_SEED_USER_PASSWORD")
    if email and password:
        if store.get_user_by_email(db, email) is None:
            store.create_user(
                db,
                email=email,
                password_hash=hash_password(password),
                name=os.environ.get("OAUTH_SEED_USER_NAME") or None,
                email_verified=True,
            )
            db.commit()
            logger.info("Seeded user: %s", email)
        else:
            logger.debug("User already exists: %s", email)

    client_id = os.environ.get("OAUTH_SEED_CLIENT_ID")
    client_secret = os.environ.get("OAUTH_SEED_CLIENT_SECRET")
    uris = _split_list(os.environ.get("OAUTH_SEED_REDIRECT_URIS"))
    if not (client_id and client_secret and uris):
        return
    if store.get_client(db, client_id) is not None:
        logger.debug("Client already exists: %s", client_id)
        return
    scopes = _split_list(os.environ.get("OAUTH_SEED_SCOPES"), None) or [DEFAULT_SCOPE]
    trusted = os.environ.get("OAUTH_SEED_TRUSTED", "").strip().lower() in _TRUTHY
    store.create_client(
        db,
        client_id=client_id,
        client_secret_hash=hash_password(client_secret),
        redirect_uris=uris,
        allowed_scopes=scopes,
        trusted=trusted,
    )
    db.commit()
    logger.info("Seeded client: %s (scopes=%s, trusted=%s)", client_id, " ".join(scopes), trusted)

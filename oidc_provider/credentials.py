"""
Credential verification for end-users and OAuth clients.
New hashes are Argon2id; bcrypt hashes from earlier deployments still verify.
"""
import logging

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.models import OAuthClient, User

logger = logging.getLogger(__name__)

# 64 MiB, 3 passes, single lane
_hasher = PasswordHasher(time_cost=3, memory_cost=2**16, parallelism=1, type=Type.ID)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(plain: str, hashed: str | None) -> bool:
    """True when plain matches hashed. Empty or unknown hash formats never match."""
    if not plain or not hashed:
        return False
    if hashed.startswith(_BCRYPT_PREFIXES):
        # Bcrypt has a 72-byte limit
        raw = plain.encode("utf-8")[:72]
        try:
            return bcrypt.checkpw(raw, hashed.encode("utf-8"))
        except ValueError:
            logger.warning("Malformed bcrypt hash encountered")
            return False
    try:
        return _hasher.verify(hashed, plain)
    except (VerificationError, InvalidHashError):
        return False


def needs_rehash(hashed: str) -> bool:
    if hashed.startswith(_BCRYPT_PREFIXES):
        return True
    try:
        return _hasher.check_needs_rehash(hashed)
    except InvalidHashError:
        return True


def authenticate_user(db: Session, email: str, password: str) -> User | None:
    """Return the user when email/password match. Upgrades legacy hashes on success."""
    user = store.get_user_by_email(db, email)
    if user is None or not verify_password(password, user.password_hash):
        return None
    if needs_rehash(user.password_hash):
        store.update_password_hash(db, user, hash_password(password))
        db.commit()
        logger.info("Upgraded password hash for user id=%s", user.id)
    return user


def authenticate_client(db: Session, client_id: str | None, client_secret: str | None) -> OAuthClient | None:
    """Return the client when client_id/client_secret verify, else None."""
    if not client_id or not client_secret:
        return None
    client = store.get_client(db, client_id)
    if client is None:
        return None
    if not verify_password(client_secret, client.client_secret_hash):
        return None
    return client

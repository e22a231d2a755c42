"""
Pytest configuration for oidc_provider. Use in-memory SQLite so tests don't touch the filesystem.
Environment must be set before any oidc_provider module is imported (config reads it at import time).
"""
import os
import tempfile

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OAUTH_ISSUER"] = "http://testserver"
os.environ["OAUTH_SIGNING_KEY_PATH"] = os.path.join(tempfile.mkdtemp(prefix="oidc-test-"), "signing_key.pem")
os.environ["OAUTH_SESSION_SECRET"] = "test-session-secret"
os.environ["OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE"] = "0"
os.environ["OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE"] = "0"
# Avoid seed_from_env picking up credentials from the developer's shell
for _name in [n for n in os.environ if n.startswith("OAUTH_SEED_")]:
    del os.environ[_name]

import pytest  # noqa: E402
from fastapi import Depends  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from oidc_provider import rate_limit, store  # noqa: E402
from oidc_provider.credentials import hash_password  # noqa: E402
from oidc_provider.database import SessionLocal, engine, get_db, init_db  # noqa: E402
from oidc_provider.main import app  # noqa: E402
from oidc_provider.models import Base  # noqa: E402
from oidc_provider.session import get_current_user  # noqa: E402

ACME_CLIENT_ID = "acme"
ACME_SECRET = "acme-secret"
ACME_REDIRECT = "https://acme.example/cb"
USER_EMAIL = "alice@example.com"
USER_PASSWORD = "correct horse battery staple"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        rate_limit.reset()


@pytest.fixture
def user(db):
    u = store.create_user(
        db,
        email=USER_EMAIL,
        password_hash=hash_password(USER_PASSWORD),
        name="Alice",
        picture="https://img.example/alice.png",
        email_verified=True,
    )
    db.commit()
    return u


@pytest.fixture
def make_client(db):
    def _make(
        client_id=ACME_CLIENT_ID,
        secret=ACME_SECRET,
        redirect_uris=(ACME_REDIRECT,),
        scopes=("openid", "email", "profile"),
        trusted=False,
    ):
        c = store.create_client(
            db,
            client_id=client_id,
            client_secret_hash=hash_password(secret),
            redirect_uris=list(redirect_uris),
            allowed_scopes=list(scopes),
            trusted=trusted,
        )
        db.commit()
        return c

    return _make


@pytest.fixture
def acme(make_client):
    """Untrusted client: consent applies."""
    return make_client()


@pytest.fixture
def trusted_acme(make_client):
    """First-party client: consent is skipped."""
    return make_client(trusted=True)


@pytest.fixture
def login_as():
    """Make get_current_user resolve to the given user id for subsequent requests."""

    def _login(user_id):
        def _current_user(db: Session = Depends(get_db)):
            return store.get_user(db, user_id)

        app.dependency_overrides[get_current_user] = _current_user

    return _login

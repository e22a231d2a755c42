"""
Tests for credentials, consent, session resolution, seeding, logout and rate limiting.
"""
from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

from oidc_provider import consent, rate_limit, store
from oidc_provider.config import SESSION_COOKIE_NAME
from oidc_provider.credentials import (
    authenticate_client,
    authenticate_user,
    hash_password,
    needs_rehash,
    verify_password,
)
from oidc_provider.models import AccessToken, AuditLog, RefreshToken, split_scope
from oidc_provider.seed import seed_from_env
from oidc_provider.session import create_session_token, resolve_session_user
from oidc_provider.tokens import issue_access_token, issue_refresh_token

# --- credentials ---


def test_argon2_hash_roundtrip():
    hashed = hash_password("s3cret")
    assert hashed.startswith("$argon2id$")
    assert verify_password("s3cret", hashed)
    assert not verify_password("S3cret", hashed)
    assert not needs_rehash(hashed)


def test_legacy_bcrypt_hash_verifies_and_needs_rehash():
    legacy = bcrypt.hashpw(b"old-password", bcrypt.gensalt()).decode("utf-8")
    assert verify_password("old-password", legacy)
    assert not verify_password("other", legacy)
    assert needs_rehash(legacy)


def test_empty_or_garbage_hash_never_matches():
    assert not verify_password("x", "")
    assert not verify_password("x", None)
    assert not verify_password("x", "plaintext")
    assert not verify_password("", hash_password("x"))


def test_authenticate_user_case_insensitive_email(db, user):
    assert authenticate_user(db, "Alice@Example.COM", "correct horse battery staple").id == user.id
    assert authenticate_user(db, "alice@example.com", "wrong") is None
    assert authenticate_user(db, "nobody@example.com", "correct horse battery staple") is None


def test_authenticate_user_upgrades_bcrypt_hash(db):
    legacy = bcrypt.hashpw(b"pw", bcrypt.gensalt()).decode("utf-8")
    u = store.create_user(db, email="legacy@example.com", password_hash=legacy)
    db.commit()
    assert authenticate_user(db, "legacy@example.com", "pw") is not None
    db.refresh(u)
    assert u.password_hash.startswith("$argon2id$")
    assert authenticate_user(db, "legacy@example.com", "pw") is not None


def test_authenticate_client(db, acme):
    assert authenticate_client(db, "acme", "acme-secret").client_id == "acme"
    assert authenticate_client(db, "acme", "nope") is None
    assert authenticate_client(db, "ghost", "acme-secret") is None
    assert authenticate_client(db, "acme", None) is None


# --- consent ---


def test_no_consent_record_means_no_consent(db, acme, user):
    assert consent.has_consent(db, user.id, "acme", "openid") is False
    assert consent.consent_required(db, user.id, acme, "openid") is True


def test_consent_union_never_shrinks(db, acme, user):
    assert consent.save_consent(db, user.id, "acme", "openid email") == "openid email"
    assert consent.save_consent(db, user.id, "acme", "profile openid") == "openid email profile"
    db.commit()
    assert consent.has_consent(db, user.id, "acme", "email")
    assert consent.has_consent(db, user.id, "acme", "openid profile")
    assert not consent.has_consent(db, user.id, "acme", "openid offline_access")


def test_trusted_client_skips_consent(db, trusted_acme, user):
    assert consent.consent_required(db, user.id, trusted_acme, "openid email") is False


def test_split_scope_keeps_order_and_dedupes():
    assert split_scope("openid  email openid profile") == ["openid", "email", "profile"]
    assert split_scope(None) == []


# --- session ---


def test_session_token_resolves_user(db, user):
    assert resolve_session_user(db, create_session_token(user)).id == user.id


def test_expired_or_tampered_session_rejected(db, user):
    expired = create_session_token(user, ttl=timedelta(seconds=-10))
    assert resolve_session_user(db, expired) is None
    assert resolve_session_user(db, create_session_token(user) + "x") is None
    assert resolve_session_user(db, None) is None


# --- seed ---


def test_seed_from_env_creates_user_and_client(db, monkeypatch):
    monkeypatch.setenv("OAUTH_SEED_USER_EMAIL", "Seed@Example.com")
    monkeypatch.setenv("OAUTH_SEED_USER_PASSWORD", "seed-pass")
    monkeypatch.setenv("OAUTH_SEED_CLIENT_ID", "seeded")
    monkeypatch.setenv("OAUTH_SEED_CLIENT_SECRET", "seeded-secret")
    monkeypatch.setenv("OAUTH_SEED_REDIRECT_URIS", "https://a.example/cb, https://b.example/cb")
    monkeypatch.setenv("OAUTH_SEED_SCOPES", "openid email")
    monkeypatch.setenv("OAUTH_SEED_TRUSTED", "true")
    seed_from_env(db)
    seed_from_env(db)

    assert authenticate_user(db, "seed@example.com", "seed-pass") is not None
    c = authenticate_client(db, "seeded", "seeded-secret")
    assert c.get_redirect_uris_list() == ["https://a.example/cb", "https://b.example/cb"]
    assert c.get_allowed_scopes() == ["openid", "email"]
    assert c.trusted is True


def test_seed_from_env_without_variables_creates_nothing(db):
    seed_from_env(db)
    assert store.get_client(db, "seeded") is None


# --- logout ---


def test_logout_revokes_everything_and_clears_cookie(client, db, acme, user, login_as):
    issue_access_token(db, user, "acme", "openid")
    issue_refresh_token(db, user.id, "acme", "openid")
    issue_refresh_token(db, user.id, "acme", "openid email")
    db.commit()
    login_as(user.id)

    response = client.post("/logout", params={"returnTo": "/goodbye"}, follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/goodbye"
    assert f"{SESSION_COOKIE_NAME}=" in response.headers["set-cookie"]

    db.expire_all()
    assert all(row.revoked for row in db.query(AccessToken).all())
    assert all(row.revoked for row in db.query(RefreshToken).all())
    assert db.query(AuditLog).filter(AuditLog.event_type == "logout").count() == 1


@pytest.mark.parametrize("return_to", ["https://evil.example/", "//evil.example/", "/\\evil.example"])
def test_logout_rejects_offsite_return(client, acme, return_to):
    response = client.post("/logout", params={"returnTo": return_to}, follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/"


# --- rate limit ---


def test_rate_limit_window():
    rate_limit.reset()
    assert rate_limit.check_and_consume("k", 2) == (True, None)
    assert rate_limit.check_and_consume("k", 2) == (True, None)
    allowed, retry_after = rate_limit.check_and_consume("k", 2)
    assert allowed is False
    assert retry_after >= 1
    assert rate_limit.check_and_consume("other", 2) == (True, None)
    rate_limit.reset()


def test_rate_limit_disabled_with_zero():
    for _ in range(100):
        assert rate_limit.check_and_consume("k0", 0) == (True, None)


def test_rate_limit_forgets_idle_keys():
    now = [1000.0]
    limiter = rate_limit.SlidingWindowLimiter(window_seconds=60, clock=lambda: now[0])
    for i in range(50):
        limiter.hit(f"ip-{i}", 5)
    assert limiter.tracked_keys() == 50
    now[0] += 61
    limiter.hit("fresh", 5)
    assert limiter.tracked_keys() == 1
    assert "ip-0" not in limiter._hits


def test_rate_limit_window_slides():
    now = [0.0]
    limiter = rate_limit.SlidingWindowLimiter(window_seconds=60, clock=lambda: now[0])
    assert limiter.hit("k", 1) == (True, None)
    now[0] += 30
    assert limiter.hit("k", 1) == (False, 30)
    now[0] += 31
    assert limiter.hit("k", 1) == (True, None)


def test_token_endpoint_returns_429_when_limited(client, acme, monkeypatch):
    monkeypatch.setattr("oidc_provider.token_endpoint.RATE_LIMIT_TOKEN_PER_MINUTE", 1)
    data = {"grant_type": "refresh_token", "refresh_token": "x", "client_id": "acme", "client_secret": "acme-secret"}
    assert client.post("/token", data=data).status_code == 400
    response = client.post("/token", data=data)
    assert response.status_code == 429
    assert int(response.headers["retry-after"]) >= 1


def test_refresh_token_record_expiry(db, user):
    rt = issue_refresh_token(db, user.id, "acme", "openid")
    db.commit()
    db.refresh(rt)
    remaining = rt.expires_at.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
    assert timedelta(days=29) < remaining <= timedelta(days=30)

"""
Tests for POST /token: authorization_code (with PKCE) and refresh_token grants, client authentication.
"""
import base64
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import jwt
import pytest

from oidc_provider import store
from oidc_provider.config import ACCESS_TOKEN_EXPIRES, ISSUER
from oidc_provider.database import SessionLocal
from oidc_provider.errors import OAuthError
from oidc_provider.keys import get_public_key_for_kid
from oidc_provider.models import AuditLog, RefreshToken
from oidc_provider.token_endpoint import AuthorizationCodeGrant, RefreshTokenGrant, parse_grant
from oidc_provider.tokens import CodeChallengeMethod, derive_code_challenge, issue_authorization_code

REDIRECT = "https://acme.example/cb"
SECRET = "acme-secret"


def _authorize(client, scope="openid email", **extra):
    params = {
        "response_type": "code",
        "client_id": "acme",
        "redirect_uri": REDIRECT,
        "scope": scope,
        "state": "xyz",
    }
    params.update(extra)
    response = client.get("/authorize", params=params, follow_redirects=False)
    assert response.status_code == 302
    q = parse_qs(urlparse(response.headers["location"]).query)
    return q["code"][0]


def _exchange(client, code, **extra):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT,
        "client_id": "acme",
        "client_secret": SECRET,
    }
    data.update(extra)
    return client.post("/token", data=data)


def _refresh(client, refresh_token, secret=SECRET):
    return client.post(
        "/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": "acme",
            "client_secret": secret,
        },
    )


@pytest.fixture
def signed_in(trusted_acme, user, login_as):
    login_as(user.id)
    return user


# --- authorization_code ---


def test_exchange_acme_scenario_then_replay(client, signed_in):
    code = _authorize(client)
    response = _exchange(client, code)
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "Bearer"
    assert body["expires_in"] == ACCESS_TOKEN_EXPIRES
    assert body["scope"] == "openid email"
    assert body["access_token"]
    assert body["refresh_token"]
    assert response.headers["cache-control"] == "no-store"

    replay = _exchange(client, code)
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"


def test_access_token_claims(client, signed_in):
    body = _exchange(client, _authorize(client)).json()
    header = jwt.get_unverified_header(body["access_token"])
    assert header["alg"] == "RS256"
    claims = jwt.decode(
        body["access_token"],
        get_public_key_for_kid(header["kid"]),
        algorithms=["RS256"],
        audience="acme",
        issuer=ISSUER,
    )
    assert claims["sub"] == signed_in.id
    assert claims["scope"] == "openid email"
    assert claims["jti"]
    assert claims["exp"] - claims["iat"] == ACCESS_TOKEN_EXPIRES


def test_id_token_issued_with_openid_scope_and_carries_nonce(client, signed_in):
    body = _exchange(client, _authorize(client, nonce="n-0S6")).json()
    header = jwt.get_unverified_header(body["id_token"])
    claims = jwt.decode(
        body["id_token"],
        get_public_key_for_kid(header["kid"]),
        algorithms=["RS256"],
        audience="acme",
        issuer=ISSUER,
    )
    assert claims["sub"] == signed_in.id
    assert claims["nonce"] == "n-0S6"
    assert claims["email"] == "alice@example.com"
    # profile not granted
    assert "name" not in claims


def test_no_id_token_without_openid_scope(client, signed_in):
    body = _exchange(client, _authorize(client, scope="email")).json()
    assert "id_token" not in body
    assert body["scope"] == "email"


def test_exchange_wrong_redirect_uri(client, signed_in):
    code = _authorize(client)
    response = _exchange(client, code, redirect_uri="https://acme.example/other")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_failed_exchange_does_not_burn_code(client, signed_in):
    code = _authorize(client)
    assert _exchange(client, code, redirect_uri="https://acme.example/other").status_code == 400
    assert _exchange(client, code).status_code == 200


def test_exchange_unknown_code(client, signed_in):
    response = _exchange(client, "does-not-exist")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_exchange_expired_code(client, db, signed_in):
    code = _authorize(client)
    row = store.get_authorization_code(db, code)
    row.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()
    response = _exchange(client, code)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_exchange_code_issued_to_other_client(client, db, signed_in, make_client):
    make_client(client_id="other", secret="other-secret", redirect_uris=(REDIRECT,))
    code = _authorize(client)
    response = _exchange(client, code, client_id="other", client_secret="other-secret")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"
    # Still redeemable by its owner
    assert _exchange(client, code).status_code == 200


# --- PKCE ---


def test_pkce_scenario(client, signed_in):
    verifier = secrets.token_urlsafe(48)
    challenge = derive_code_challenge(verifier, CodeChallengeMethod.S256)
    code = _authorize(client, code_challenge=challenge, code_challenge_method="S256")

    missing = _exchange(client, code)
    assert missing.status_code == 400
    assert missing.json()["error"] == "invalid_grant"

    wrong = _exchange(client, code, code_verifier=secrets.token_urlsafe(48))
    assert wrong.status_code == 400
    assert wrong.json()["error"] == "invalid_grant"

    ok = _exchange(client, code, code_verifier=verifier)
    assert ok.status_code == 200
    assert ok.json()["access_token"]


def test_pkce_incorrect_verifier_on_fresh_code(client, signed_in):
    verifier = secrets.token_urlsafe(48)
    challenge = derive_code_challenge(verifier, CodeChallengeMethod.S256)
    code = _authorize(client, code_challenge=challenge, code_challenge_method="S256")
    response = _exchange(client, code, code_verifier=verifier[:-1] + ("A" if verifier[-1] != "A" else "B"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


# --- single redemption under concurrency ---


def test_concurrent_redemption_single_winner(db, trusted_acme, user):
    auth_code = issue_authorization_code(
        db,
        user_id=user.id,
        client_id="acme",
        redirect_uri=REDIRECT,
        scope="openid",
    )
    db.commit()
    code = auth_code.code

    first = SessionLocal()
    second = SessionLocal()
    try:
        # Both requests have read the code as unused before either writes
        assert store.get_authorization_code(first, code).used is False
        assert store.get_authorization_code(second, code).used is False

        assert store.consume_authorization_code(first, code) is True
        first.commit()
        assert store.consume_authorization_code(second, code) is False
        second.rollback()
    finally:
        first.close()
        second.close()


def test_refresh_rotation_cas_single_winner(db, trusted_acme, user):
    rt = store.create_refresh_token(
        db,
        token="rt-concurrent",
        user_id=user.id,
        client_id="acme",
        scope="openid",
        expires_at=datetime.now(timezone.utc) + timedelta(days=1),
    )
    db.commit()

    first = SessionLocal()
    second = SessionLocal()
    try:
        assert store.revoke_refresh_token(first, rt.token, client_id="acme") is True
        first.commit()
        assert store.revoke_refresh_token(second, "rt-concurrent", client_id="acme") is False
    finally:
        first.close()
        second.close()


# --- refresh_token ---


def test_refresh_rotation(client, db, signed_in):
    first = _exchange(client, _authorize(client)).json()
    response = _refresh(client, first["refresh_token"])
    assert response.status_code == 200
    second = response.json()
    assert second["refresh_token"] != first["refresh_token"]
    assert second["access_token"] != first["access_token"]
    assert second["scope"] == "openid email"
    assert "id_token" in second

    old = db.query(RefreshToken).filter(RefreshToken.token == first["refresh_token"]).one()
    assert old.revoked is True

    replay = _refresh(client, first["refresh_token"])
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"

    # The rotated token keeps working
    assert _refresh(client, second["refresh_token"]).status_code == 200


def test_refresh_expired(client, db, signed_in):
    body = _exchange(client, _authorize(client)).json()
    rt = store.get_refresh_token(db, body["refresh_token"])
    rt.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()
    response = _refresh(client, body["refresh_token"])
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_refresh_by_other_client_rejected_and_not_revoked(client, db, signed_in, make_client):
    make_client(client_id="other", secret="other-secret", redirect_uris=(REDIRECT,))
    body = _exchange(client, _authorize(client)).json()
    response = client.post(
        "/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": body["refresh_token"],
            "client_id": "other",
            "client_secret": "other-secret",
        },
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"
    assert _refresh(client, body["refresh_token"]).status_code == 200


def test_refresh_missing_token(client, signed_in):
    response = client.post(
        "/token",
        data={"grant_type": "refresh_token", "client_id": "acme", "client_secret": SECRET},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


# --- client authentication and grant parsing ---


def test_unsupported_grant_type(client, signed_in):
    response = client.post(
        "/token",
        data={"grant_type": "password", "client_id": "acme", "client_secret": SECRET},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "unsupported_grant_type"


def test_missing_grant_type_is_invalid_request(client, signed_in):
    response = client.post("/token", data={"client_id": "acme", "client_secret": SECRET})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_missing_client_secret(client, signed_in):
    code = _authorize(client)
    response = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT, "client_id": "acme"},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    assert response.headers["www-authenticate"].startswith("Basic")


def test_wrong_client_secret_is_audited_and_keeps_code(client, db, signed_in):
    code = _authorize(client)
    response = _exchange(client, code, client_secret="wrong")
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    row = db.query(AuditLog).filter(AuditLog.event_type == "client_auth_fail").one()
    assert row.outcome == "fail"
    assert _exchange(client, code).status_code == 200


def test_client_secret_basic(client, signed_in):
    code = _authorize(client)
    credentials = base64.b64encode(f"acme:{SECRET}".encode()).decode()
    response = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT},
        headers={"Authorization": f"Basic {credentials}"},
    )
    assert response.status_code == 200


def test_token_success_is_audited(client, db, signed_in):
    _exchange(client, _authorize(client))
    events = [row.event_type for row in db.query(AuditLog).all()]
    assert "token_issued" in events


def test_parse_grant_variants():
    assert parse_grant("authorization_code", code="c", redirect_uri="r") == AuthorizationCodeGrant(
        code="c", redirect_uri="r"
    )
    assert parse_grant("refresh_token", refresh_token="t") == RefreshTokenGrant(refresh_token="t")
    with pytest.raises(OAuthError) as exc:
        parse_grant(None)
    assert exc.value.error.value == "invalid_request"
    with pytest.raises(OAuthError) as exc:
        parse_grant("")
    assert exc.value.error.value == "invalid_request"
    with pytest.raises(OAuthError) as exc:
        parse_grant("password")
    assert exc.value.error.value == "unsupported_grant_type"
    with pytest.raises(OAuthError) as exc:
        parse_grant("authorization_code", code="c")
    assert exc.value.error.value == "invalid_request"

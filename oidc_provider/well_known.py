"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from oidc_provider.config import DISCOVERY_MAX_AGE, ISSUER, SUPPORTED_SCOPES
from oidc_provider.keys import get_jwks

router = APIRouter()


def discovery_document(issuer: str = ISSUER) -> dict:
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "revocation_endpoint": f"{issuer}/revoke",
        "introspection_endpoint": f"{issuer}/introspect",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "revocation_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "code_challenge_methods_supported": ["S256"],
        "claims_supported": [
            "sub",
            "iss",
            "aud",
            "exp",
            "iat",
            "email",
            "email_verified",
            "name",
            "picture",
        ],
    }


@router.get("/.well-known/jwks.json")
def jwks_json():
    """JSON Web Key Set for token signature verification."""
    return JSONResponse(content=get_jwks(), headers={"Cache-Control": f"public, max-age={DISCOVERY_MAX_AGE}"})


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    """OpenID Connect discovery document."""
    return JSONResponse(
        content=discovery_document(),
        headers={"Cache-Control": f"public, max-age={DISCOVERY_MAX_AGE}"},
    )

"""
OIDC UserInfo endpoint (GET /userinfo). Bearer access token required; claims are projected by scope.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.database import get_db
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.models import User, split_scope
from oidc_provider.tokens import verify_access_token

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=False)

_BEARER_CHALLENGE = {"WWW-Authenticate": 'Bearer error="invalid_token"'}


def project_claims(user: User, scope: str) -> dict:
    """sub always; email + email_verified with 'email'; name + picture (when set) with 'profile'."""
    scopes = split_scope(scope)
    claims = {"sub": user.id}
    if "email" in scopes:
        claims["email"] = user.email
        claims["email_verified"] = bool(user.email_verified)
    if "profile" in scopes:
        if user.name:
            claims["name"] = user.name
        if user.picture:
            claims["picture"] = user.picture
    return claims


@router.get("/userinfo")
def userinfo(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    """Return claims for the token's subject, filtered by the token's granted scope."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise OAuthError(
            ErrorCode.INVALID_TOKEN,
            "Missing or invalid Authorization header",
            headers=_BEARER_CHALLENGE,
        )
    payload = verify_access_token(db, credentials.credentials)

    user = store.get_user(db, payload.get("sub"))
    if user is None:
        raise OAuthError(ErrorCode.INVALID_TOKEN, "User not found", status_code=404)

    return project_claims(user, payload.get("scope") or "")

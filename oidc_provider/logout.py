"""
First-party logout (POST /logout): revoke every token issued to the session user, clear the session
cookie and redirect to a same-site path.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from oidc_provider import store
from oidc_provider.audit import AuditEvent, get_client_ip, log_audit
from oidc_provider.config import SESSION_COOKIE_NAME
from oidc_provider.database import get_db
from oidc_provider.models import User
from oidc_provider.session import get_current_user

logger = logging.getLogger(__name__)
router = APIRouter()


def safe_return_path(return_to: str | None) -> str:
    """Only same-site absolute paths; anything else (including //host and backslash tricks) becomes '/'."""
    if not return_to or not return_to.startswith("/") or return_to.startswith("//") or "\\" in return_to:
        return "/"
    return return_to


@router.post("/logout")
def logout(
    request: Request,
    returnTo: str | None = None,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_current_user),
):
    """Revoke all of the user's access-token records and refresh tokens, then drop the session."""
    if user is not None:
        access_count, refresh_count = store.revoke_all_for_user(db, user.id)
        log_audit(db, AuditEvent.LOGOUT, user_id=user.id, ip=get_client_ip(request))
        db.commit()
        logger.info(
            "Logout user id=%s: revoked %d access token(s), %d refresh token(s)",
            user.id,
            access_count,
            refresh_count,
        )
    response = RedirectResponse(url=safe_return_path(returnTo), status_code=303)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response

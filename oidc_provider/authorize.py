"""
Authorization endpoint.
GET /authorize: validate the request, then redirect to login, to consent, or back to the client with a code.
POST /authorize/consent: the action a consent screen submits; records approval and issues the code.

Errors found before redirect_uri is verified are returned as JSON and never redirected.
"""
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from oidc_provider import consent, store
from oidc_provider.audit import AuditEvent, get_client_ip, log_audit
from oidc_provider.config import CONSENT_URL, DEFAULT_SCOPE, LOGIN_URL
from oidc_provider.database import get_db
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.models import OAuthClient, User, split_scope
from oidc_provider.session import get_current_user
from oidc_provider.tokens import CodeChallengeMethod, issue_authorization_code

logger = logging.getLogger(__name__)
router = APIRouter()


@dataclass
class AuthorizeRequest:
    response_type: str | None
    client_id: str | None
    redirect_uri: str | None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None

    @property
    def normalized_scope(self) -> str:
        """Requested scope, de-duplicated in request order; 'openid' when absent."""
        return " ".join(split_scope(self.scope)) or DEFAULT_SCOPE

    def query_params(self) -> dict[str, str]:
        """All non-empty original parameters, for forwarding to the consent surface."""
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.normalized_scope,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "nonce": self.nonce,
        }
        return {k: v for k, v in params.items() if v}


def _with_params(uri: str, params: dict[str, str]) -> str:
    return f"{uri}{'&' if '?' in uri else '?'}{urlencode(params)}"


def _redirect_error(redirect_uri: str, error: ErrorCode, error_description: str, state: str | None) -> str:
    params = {"error": error.value, "error_description": error_description}
    if state:
        params["state"] = state
    return _with_params(redirect_uri, params)


def validate_client_and_redirect(db: Session, req: AuthorizeRequest) -> OAuthClient:
    """Steps that must pass before anything may be sent to redirect_uri. Raises OAuthError."""
    if req.response_type != "code":
        raise OAuthError(ErrorCode.INVALID_REQUEST, 'response_type must be "code"')
    if not req.client_id:
        raise OAuthError(ErrorCode.INVALID_REQUEST, "client_id is required")
    if not req.redirect_uri:
        raise OAuthError(ErrorCode.INVALID_REQUEST, "redirect_uri is required")

    client = store.get_client(db, req.client_id)
    if client is None:
        raise OAuthError(ErrorCode.INVALID_CLIENT, "Client not found")

    # Exact match only; this is the open-redirect defense
    if not client.redirect_uri_allowed(req.redirect_uri):
        logger.warning("Rejected unregistered redirect_uri for client_id=%s", req.client_id)
        raise OAuthError(ErrorCode.INVALID_REQUEST, "redirect_uri is not registered for this client")
    return client


def check_redirectable_errors(client: OAuthClient, req: AuthorizeRequest) -> str | None:
    """Return an error redirect URL for failures reported to the (verified) redirect_uri, else None."""
    if not client.scope_allowed(req.normalized_scope):
        return _redirect_error(req.redirect_uri, ErrorCode.INVALID_SCOPE, "Requested scope is not allowed", req.state)
    if req.code_challenge:
        # Absent method means "plain", which is not supported
        if req.code_challenge_method not in {m.value for m in CodeChallengeMethod}:
            return _redirect_error(
                req.redirect_uri,
                ErrorCode.INVALID_REQUEST,
                "code_challenge_method must be S256",
                req.state,
            )
    elif req.code_challenge_method:
        return _redirect_error(
            req.redirect_uri, ErrorCode.INVALID_REQUEST, "code_challenge_method without code_challenge", req.state
        )
    return None


def _issue_code_redirect(db: Session, request: Request | None, user: User, req: AuthorizeRequest) -> str:
    auth_code = issue_authorization_code(
        db,
        user_id=user.id,
        client_id=req.client_id,
        redirect_uri=req.redirect_uri,
        scope=req.normalized_scope,
        code_challenge=req.code_challenge,
        code_challenge_method=req.code_challenge_method,
        nonce=req.nonce,
    )
    log_audit(db, AuditEvent.CODE_ISSUED, client_id=req.client_id, user_id=user.id, ip=get_client_ip(request))
    db.commit()
    params = {"code": auth_code.code}
    if req.state:
        params["state"] = req.state
    return _with_params(req.redirect_uri, params)


def authorize(db: Session, req: AuthorizeRequest, user: User | None, request_url: str, request: Request | None = None) -> str:
    """
    Run the authorization state machine and return the URL to redirect to.
    Raises OAuthError for failures that must not be redirected.
    """
    client = validate_client_and_redirect(db, req)

    error_url = check_redirectable_errors(client, req)
    if error_url:
        return error_url

    if user is None:
        return _with_params(LOGIN_URL, {"returnTo": request_url})

    if consent.consent_required(db, user.id, client, req.normalized_scope):
        params = req.query_params()
        params["consent_ticket"] = consent.issue_consent_ticket(user.id, params)
        return _with_params(CONSENT_URL, params)

    return _issue_code_redirect(db, request, user, req)


@router.get("/authorize")
def authorize_get(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_current_user),
):
    """OAuth 2.0 authorization endpoint (authorization code flow only)."""
    req = AuthorizeRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    url = authorize(db, req, user, str(request.url), request)
    return RedirectResponse(url=url, status_code=302)


@router.post("/authorize/consent")
def authorize_consent(
    request: Request,
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    scope: str | None = Form(None),
    state: str | None = Form(None),
    response_type: str = Form("code"),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
    nonce: str | None = Form(None),
    allow: str = Form("false"),
    consent_ticket: str | None = Form(None),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_current_user),
):
    """
    Consent decision. Allow: union the scope into the stored consent and redirect with a code.
    Deny: redirect with error=access_denied.
    """
    req = AuthorizeRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    client = validate_client_and_redirect(db, req)
    error_url = check_redirectable_errors(client, req)
    if error_url:
        return RedirectResponse(url=error_url, status_code=302)
    if user is None:
        raise OAuthError(ErrorCode.ACCESS_DENIED, "Login required", status_code=401)
    if not consent.verify_consent_ticket(consent_ticket, user.id, req.query_params()):
        # Not tied to a consent screen this server issued for this user and request
        logger.warning("Consent decision without a valid ticket for client_id=%s", client.client_id)
        raise OAuthError(ErrorCode.ACCESS_DENIED, "Invalid or expired consent ticket")

    if allow.strip().lower() not in ("true", "1", "yes", "allow"):
        log_audit(
            db, AuditEvent.CONSENT_DENY, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request)
        )
        db.commit()
        url = _redirect_error(req.redirect_uri, ErrorCode.ACCESS_DENIED, "User denied authorization", req.state)
        return RedirectResponse(url=url, status_code=302)

    consent.save_consent(db, user.id, client.client_id, req.normalized_scope)
    log_audit(db, AuditEvent.CONSENT_ALLOW, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request))
    url = _issue_code_redirect(db, request, user, req)
    return RedirectResponse(url=url, status_code=302)

"""
Audit trail for security-relevant events, written to the audit_log table in the caller's transaction.
Rows carry identifiers only; tokens, codes, passwords and client secrets are never recorded.
"""
from enum import Enum

from fastapi import Request
from sqlalchemy.orm import Session

from oidc_provider.models import AuditLog


class AuditEvent(str, Enum):
    CODE_ISSUED = "code_issued"
    CONSENT_ALLOW = "consent_allow"
    CONSENT_DENY = "consent_deny"
    TOKEN_ISSUED = "token_issued"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REVOKED = "token_revoked"
    CLIENT_AUTH_FAIL = "client_auth_fail"
    GRANT_REJECTED = "grant_rejected"
    LOGOUT = "logout"
    LOGIN_OK = "login_ok"
    LOGIN_FAIL = "login_fail"
    USER_REGISTERED = "user_registered"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    # Peer address only; X-Forwarded-For belongs to the proxy in front
    client = request.client if request is not None else None
    return client.host if client is not None else None


def log_audit(
    db: Session,
    event: AuditEvent,
    *,
    client_id: str | None = None,
    user_id: str | None = None,
    ip: str | None = None,
    outcome: Outcome = Outcome.SUCCESS,
) -> AuditLog:
    """Stage one audit row; it is committed with the rest of the request's changes."""
    row = AuditLog(event_type=event.value, client_id=client_id, user_id=user_id, ip=ip, outcome=outcome.value)
    db.add(row)
    return row

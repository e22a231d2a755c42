"""
Client authentication (RFC 6749 §2.3.1). Every client is confidential and must present its secret,
either as Authorization: Basic base64(client_id:client_secret) or as client_id + client_secret form fields.
"""
import base64
import binascii
import logging
from urllib.parse import unquote_plus

from fastapi import Request
from sqlalchemy.orm import Session

from oidc_provider.credentials import authenticate_client
from oidc_provider.errors import ErrorCode, OAuthError
from oidc_provider.models import OAuthClient

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    encoded = header_value.strip()[6:].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # Both halves are form-urlencoded before base64 (RFC 6749 §2.3.1)
    return unquote_plus(client_id), unquote_plus(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """
    Get (client_id, client_secret) from Authorization Basic or from form.
    Form takes precedence if both client_id and client_secret are present there.
    """
    if client_id_form and client_secret_form is not None:
        return client_id_form.strip(), client_secret_form
    auth_header = request.headers.get("Authorization")
    basic = _parse_basic(auth_header) if auth_header else None
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def require_client_auth(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> OAuthClient:
    """Resolve and authenticate the client, or raise 401 invalid_client."""
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    challenge = {"WWW-Authenticate": 'Basic realm="oauth"'}
    if not client_id or not client_secret:
        raise OAuthError(ErrorCode.INVALID_CLIENT, "Client authentication failed", headers=challenge)
    client = authenticate_client(db, client_id, client_secret)
    if client is None:
        logger.info("Client authentication failed for client_id=%s", client_id)
        raise OAuthError(ErrorCode.INVALID_CLIENT, "Invalid client credentials", headers=challenge)
    return client

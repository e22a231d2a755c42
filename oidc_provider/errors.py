"""
OAuth 2.0 error taxonomy and the JSON rendering used by /token, /revoke, /userinfo and /introspect.
Errors on /authorize that happen after the redirect URI is verified are carried on the redirect instead.
"""
import logging
from enum import Enum

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    INVALID_SCOPE = "invalid_scope"
    INVALID_TOKEN = "invalid_token"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    ACCESS_DENIED = "access_denied"
    SERVER_ERROR = "server_error"


_DEFAULT_STATUS = {
    ErrorCode.INVALID_CLIENT: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.SERVER_ERROR: 500,
}


class OAuthError(HTTPException):
    """HTTP exception carrying an OAuth error code and description."""

    def __init__(
        self,
        error: ErrorCode,
        description: str,
        *,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.error = error
        self.description = description
        super().__init__(
            status_code=status_code or _DEFAULT_STATUS.get(error, 400),
            detail={"error": error.value, "error_description": description},
            headers=headers,
        )

    def to_dict(self) -> dict:
        return {"error": self.error.value, "error_description": self.description}


def _error_response(status_code: int, body: dict, headers: dict[str, str] | None = None) -> JSONResponse:
    response_headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if headers:
        response_headers.update(headers)
    return JSONResponse(status_code=status_code, content=body, headers=response_headers)


def register_error_handlers(app: FastAPI) -> None:
    """Render OAuthError as a flat {error, error_description} body; never leak internals."""

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        return _error_response(exc.status_code, exc.to_dict(), exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        missing = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        description = "Malformed request"
        if missing:
            description = f"Missing or invalid parameter(s): {', '.join(missing)}"
        return _error_response(400, {"error": ErrorCode.INVALID_REQUEST.value, "error_description": description})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(
            500,
            {"error": ErrorCode.SERVER_ERROR.value, "error_description": "Internal server error"},
        )

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from credgate.api.schemas import ChallengeResponse, Envelope, ErrorBody
from credgate.logging import get_logger
from credgate.service.errors import ServiceError
from credgate.service.results import AuthErrorKind, Err
from credgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}

_AUTH_ERROR_STATUS = {
    AuthErrorKind.INVALID_CREDENTIALS: 401,
    AuthErrorKind.ACCOUNT_LOCKED: 423,
    AuthErrorKind.ACCOUNT_INACTIVE: 403,
    AuthErrorKind.MFA_REQUIRED: 401,
    AuthErrorKind.INVALID_MFA_CODE: 401,
    AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND: 401,
    AuthErrorKind.TOKEN_INVALID_OR_EXPIRED: 401,
    AuthErrorKind.SERVER_ERROR: 500,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def auth_error_response(err: Err) -> JSONResponse:
    """Render a typed authentication failure as an error envelope.

    ``MFA_REQUIRED`` carries the pending challenge in ``details``.
    """
    details = None
    if err.challenge is not None:
        details = ChallengeResponse.from_descriptor(err.challenge).model_dump(mode="json")
    return _error_response(
        _AUTH_ERROR_STATUS.get(err.kind, 500), err.message, details, code=err.kind.value
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                details = error_obj.get("details")
                if exc.status_code >= 500:
                    logger.error(
                        "http_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                elif exc.status_code >= 400:
                    logger.warning(
                        "http_client_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")

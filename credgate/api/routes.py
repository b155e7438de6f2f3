from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from credgate.api.error_handling import auth_error_response
from credgate.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    ChallengeResponse,
    Envelope,
    LoginRequest,
    MfaChallengeRequest,
    MfaDisableRequest,
    MfaSetupRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaValidateRequest,
    TokenRefreshRequest,
    TokenRevokeRequest,
    TokenValidateRequest,
    UserResponse,
)
from credgate.logging import get_logger
from credgate.service import auth as auth_service
from credgate.service.errors import ValidationError
from credgate.service.results import Err, Principal
from credgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    token = _extract_bearer(authorization)
    if not token or not await runtime.tokens.validate_token(token):
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    principal = runtime.tokens.get_principal(token)
    if principal is None:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return principal


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with username and password.

    Accounts with MFA enrolled receive ``mfa_required`` and a challenge
    descriptor unless a valid code is submitted with the request.
    """
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        auth_service.LoginRequest(
            username=body.username,
            password=body.password,
            mfa_code=body.mfa_code,
            challenge_id=body.challenge_id,
        )
    )
    if isinstance(result, Err):
        return auth_error_response(result)
    return Envelope(status="ok", data=AuthResponse.from_result(result.value))


@router.post("/auth/mfa/validate", response_model=Envelope, tags=["auth"])
async def validate_mfa(body: MfaValidateRequest):
    runtime = get_runtime()
    result = await runtime.auth.complete_mfa(body.challenge_id, body.code)
    if isinstance(result, Err):
        return auth_error_response(result)
    return Envelope(status="ok", data=AuthResponse.from_result(result.value))


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["auth"])
async def resend_mfa_challenge(body: MfaChallengeRequest):
    runtime = get_runtime()
    result = await runtime.mfa.resend_challenge(body.challenge_id)
    if isinstance(result, Err):
        return auth_error_response(result)
    return Envelope(status="ok", data=ChallengeResponse.from_descriptor(result.value))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.tokens.refresh_token(body.refresh_token)
    if isinstance(result, Err):
        return auth_error_response(result)
    return Envelope(status="ok", data=AuthResponse.from_result(result.value))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke_tokens(
    body: TokenRevokeRequest,
    authorization: Optional[str] = Header(None),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    if body.revoke_all:
        revoked = await runtime.tokens.revoke_all_user_tokens(principal.user_id)
    elif body.refresh_token:
        revoked = int(
            await runtime.tokens.revoke_token(body.refresh_token, user_id=principal.user_id)
        )
    else:
        raise ValidationError("refresh_token or revoke_all is required")
    # The access token used for this call is retired as well
    await runtime.tokens.revoke_access_token(_extract_bearer(authorization))
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(body: TokenValidateRequest):
    runtime = get_runtime()
    return Envelope(status="ok", data={"valid": await runtime.tokens.validate_token(body.token)})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    info = await runtime.auth.get_user_from_token(_extract_bearer(authorization))
    if info is None:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return Envelope(status="ok", data=UserResponse.from_info(info))


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_mfa(body: MfaSetupRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.mfa.setup_mfa(
        principal.user_id, body.method, phone_number=body.phone_number
    )
    return Envelope(status="ok", data=MfaSetupResponse.from_result(result))


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(body: MfaDisableRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    if not await runtime.mfa.disable_mfa(principal.user_id, body.code):
        raise _http_error("unauthorized", "invalid verification code", status_code=401)
    return Envelope(status="ok", data={"enabled": False})


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.mfa.get_mfa_status(principal.user_id)
    return Envelope(status="ok", data=MfaStatusResponse.from_status(status))


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def regenerate_backup_codes(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    codes = await runtime.mfa.regenerate_backup_codes(principal.user_id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))

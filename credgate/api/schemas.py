from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from credgate.logging import current_request_id
from credgate.service.results import (
    AuthErrorKind,
    AuthResult,
    ChallengeDescriptor,
    MfaSetupResult,
    MfaStatus,
    UserInfo,
)

# Stable error codes carried in the envelope
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "mfa_misuse",
} | {kind.value for kind in AuthErrorKind}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=current_request_id)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., min_length=1, max_length=1024)
    mfa_code: Optional[str] = Field(default=None, max_length=16)
    challenge_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username must not be blank")
        return value


class MfaValidateRequest(BaseModel):
    challenge_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class MfaChallengeRequest(BaseModel):
    challenge_id: str = Field(..., max_length=64)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class TokenRevokeRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    revoke_all: bool = False


class TokenValidateRequest(BaseModel):
    token: str = Field(..., max_length=8192)


class MfaSetupRequest(BaseModel):
    method: str = Field(..., description="TOTP, SMS or Email")
    phone_number: Optional[str] = Field(default=None, max_length=32)


class MfaDisableRequest(BaseModel):
    code: str = Field(..., max_length=16, description="TOTP code or a backup code")


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    display_name: str
    roles: List[str] = Field(default_factory=list)
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_info(cls, info: UserInfo) -> "UserResponse":
        return cls(
            id=info.id,
            username=info.username,
            email=info.email,
            display_name=info.display_name,
            roles=list(info.roles),
            last_login_at=info.last_login_at,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: Optional[UserResponse] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_at=result.expires_at,
            user=UserResponse.from_info(result.user) if result.user else None,
        )


class ChallengeResponse(BaseModel):
    challenge_id: str
    method: str
    expires_at: datetime
    masked_destination: str = ""

    @classmethod
    def from_descriptor(cls, descriptor: ChallengeDescriptor) -> "ChallengeResponse":
        return cls(
            challenge_id=descriptor.challenge_id,
            method=descriptor.method.value,
            expires_at=descriptor.expires_at,
            masked_destination=descriptor.masked_destination,
        )


class MfaSetupResponse(BaseModel):
    method: str
    backup_codes: List[str]
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code: Optional[str] = Field(default=None, description="PNG data URI")

    @classmethod
    def from_result(cls, result: MfaSetupResult) -> "MfaSetupResponse":
        return cls(
            method=result.method.value,
            backup_codes=list(result.backup_codes),
            secret=result.secret,
            provisioning_uri=result.provisioning_uri,
            qr_code=result.qr_code,
        )


class MfaStatusResponse(BaseModel):
    enabled: bool
    method: str
    backup_codes_count: int
    has_backup_codes: bool
    masked_phone_number: str = ""
    masked_email: str = ""
    last_validation_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: MfaStatus) -> "MfaStatusResponse":
        return cls(
            enabled=status.is_enabled,
            method=status.method.value,
            backup_codes_count=status.backup_codes_count,
            has_backup_codes=status.has_backup_codes,
            masked_phone_number=status.masked_phone_number,
            masked_email=status.masked_email,
            last_validation_at=status.last_validation_at,
        )


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str = "New backup codes generated. Please store them securely."

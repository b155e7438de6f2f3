"""Typed outcomes for user-facing authentication flows.

Every public flow returns ``Ok(value)`` or ``Err(kind, message)`` instead of
raising, so call sites handle the failure branch explicitly::

    result = await gate.authenticate(request)
    if isinstance(result, Err):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar, Union

from credgate.storage.models import MfaChallenge, MfaMethod, User

T = TypeVar("T")


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"
    CHALLENGE_EXPIRED_OR_NOT_FOUND = "challenge_expired_or_not_found"
    TOKEN_INVALID_OR_EXPIRED = "token_invalid_or_expired"
    SERVER_ERROR = "server_error"


# User-facing messages; never include exception detail
ERROR_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid username or password.",
    AuthErrorKind.ACCOUNT_LOCKED: "Account is temporarily locked due to multiple failed login attempts.",
    AuthErrorKind.ACCOUNT_INACTIVE: "Account is disabled.",
    AuthErrorKind.MFA_REQUIRED: "Multi-factor authentication required.",
    AuthErrorKind.INVALID_MFA_CODE: "Invalid verification code.",
    AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND: "Invalid or expired MFA challenge.",
    AuthErrorKind.TOKEN_INVALID_OR_EXPIRED: "Invalid or expired refresh token.",
    AuthErrorKind.SERVER_ERROR: "An error occurred during authentication.",
}


@dataclass(frozen=True)
class ChallengeDescriptor:
    """What the client needs to answer a pending MFA challenge."""

    challenge_id: str
    method: MfaMethod
    expires_at: datetime
    masked_destination: str = ""

    @classmethod
    def from_challenge(
        cls, challenge: MfaChallenge, *, masked_destination: str = ""
    ) -> "ChallengeDescriptor":
        return cls(
            challenge_id=challenge.id,
            method=challenge.method,
            expires_at=challenge.expires_at,
            masked_destination=masked_destination,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: AuthErrorKind
    message: str = ""
    challenge: Optional[ChallengeDescriptor] = None

    @classmethod
    def of(
        cls, kind: AuthErrorKind, *, challenge: Optional[ChallengeDescriptor] = None
    ) -> "Err":
        return cls(kind=kind, message=ERROR_MESSAGES[kind], challenge=challenge)


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class UserInfo:
    id: str
    username: str
    email: str
    display_name: str
    roles: List[str]
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            roles=sorted(user.roles),
            last_login_at=user.last_login_at,
        )


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: Optional[UserInfo] = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class Principal:
    """Claims extracted from a signed access token."""

    user_id: str
    username: Optional[str]
    email: Optional[str]
    display_name: Optional[str]
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    token_id: Optional[str] = None


@dataclass(frozen=True)
class MfaSetupResult:
    method: MfaMethod
    backup_codes: List[str]
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code: Optional[str] = None


@dataclass(frozen=True)
class MfaStatus:
    is_enabled: bool
    method: MfaMethod
    backup_codes_count: int
    masked_phone_number: str
    masked_email: str
    last_validation_at: Optional[datetime] = None

    @property
    def has_backup_codes(self) -> bool:
        return self.backup_codes_count > 0

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Set, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MfaMethod(str, Enum):
    """Second factors a user can enroll."""

    NONE = "None"
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "Email"

    @classmethod
    def parse(cls, value: "MfaMethod | str") -> "MfaMethod":
        """Resolve a method from its value, case-insensitively."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"unknown MFA method: {value!r}")


@dataclass(frozen=True)
class TotpEnrollment:
    """Authenticator-app enrollment; carries the shared base32 secret."""

    secret: str

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("TOTP enrollment requires a secret")

    @property
    def method(self) -> MfaMethod:
        return MfaMethod.TOTP


@dataclass(frozen=True)
class SmsEnrollment:
    """Text-message enrollment; carries the destination phone number."""

    phone_number: str

    def __post_init__(self) -> None:
        if not self.phone_number or not self.phone_number.strip():
            raise ValueError("SMS enrollment requires a phone number")

    @property
    def method(self) -> MfaMethod:
        return MfaMethod.SMS


@dataclass(frozen=True)
class EmailEnrollment:
    """E-mail enrollment; codes go to the account address."""

    @property
    def method(self) -> MfaMethod:
        return MfaMethod.EMAIL


MfaEnrollment = Union[TotpEnrollment, SmsEnrollment, EmailEnrollment]


@dataclass
class User:
    id: str
    username: str
    email: str
    display_name: str = ""
    password_hash: Optional[str] = None
    is_active: bool = True
    mfa: Optional[MfaEnrollment] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    roles: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    last_mfa_validation_at: Optional[datetime] = None

    @property
    def is_mfa_enabled(self) -> bool:
        return self.mfa is not None

    @property
    def mfa_method(self) -> MfaMethod:
        return self.mfa.method if self.mfa is not None else MfaMethod.NONE

    @property
    def mfa_secret(self) -> Optional[str]:
        return self.mfa.secret if isinstance(self.mfa, TotpEnrollment) else None

    @property
    def phone_number(self) -> Optional[str]:
        return self.mfa.phone_number if isinstance(self.mfa, SmsEnrollment) else None


@dataclass
class LockoutState:
    username: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshTokenRecord:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    revoked: bool = False

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class MfaChallenge:
    id: str
    user_id: str
    method: MfaMethod
    created_at: datetime
    expires_at: datetime
    challenge_code: Optional[str] = None
    used: bool = False
    failed_attempts: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        method: MfaMethod,
        now: datetime,
        *,
        ttl_minutes: int = 5,
        challenge_code: Optional[str] = None,
    ) -> "MfaChallenge":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            method=method,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            challenge_code=challenge_code,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class AuditEntry:
    action: str
    actor_id: str
    entity_type: str
    entity_id: str
    details: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

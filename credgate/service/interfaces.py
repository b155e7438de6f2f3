"""Collaborator contracts consumed by the authentication core."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from credgate.storage.models import LockoutState, MfaChallenge, RefreshTokenRecord, User


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def validate_credentials(self, username: str, password: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def get_permissions(self, user_id: str) -> List[str]: ...

    def remove_backup_code_hash(self, user_id: str, code_hash: str) -> bool: ...


class AuthCache(Protocol):
    """Key-value backend with TTLs and atomic updates.

    Holds lockout counters, refresh tokens, the access-token denylist, MFA
    challenges and short per-user locks.
    """

    async def get_lockout(self, username: str) -> Optional[LockoutState]: ...

    async def record_failed_login(
        self, username: str, max_attempts: int, window_seconds: int
    ) -> LockoutState: ...

    async def clear_failed_logins(self, username: str) -> None: ...

    async def record_mfa_attempt(self, user_id: str, window_seconds: int) -> int: ...

    async def clear_mfa_attempts(self, user_id: str) -> None: ...

    async def store_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    async def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    async def revoke_refresh_token(self, token: str) -> bool: ...

    async def rotate_refresh_token(
        self, old_token: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool: ...

    async def list_user_refresh_tokens(self, user_id: str) -> List[str]: ...

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_access_token_denylisted(self, jti: str) -> bool: ...

    async def create_challenge(self, challenge: MfaChallenge) -> None: ...

    async def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]: ...

    async def mark_challenge_used(self, challenge_id: str) -> bool: ...

    async def record_challenge_failure(
        self, challenge_id: str, max_attempts: int
    ) -> int: ...

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]: ...

    async def release_lock(self, key: str, token: str) -> None: ...


class AuditSink(Protocol):
    async def log(
        self,
        action: str,
        actor_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[str] = None,
    ) -> None: ...


class SmsGateway(Protocol):
    async def send(self, destination: str, message: str) -> bool: ...


class EmailGateway(Protocol):
    async def send(
        self, destination: str, message: str, *, subject: str = "Verification Code"
    ) -> bool: ...


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, hashed: str) -> bool: ...

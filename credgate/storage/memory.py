from __future__ import annotations

import copy
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from credgate.logging import get_logger
from credgate.service.interfaces import PasswordHasher
from credgate.storage.errors import ConstraintViolation
from credgate.storage.models import (
    AuditEntry,
    LockoutState,
    MfaChallenge,
    RefreshTokenRecord,
    User,
)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryUserStore:
    """In-process user store for tests and local development."""

    def __init__(self, hasher: PasswordHasher) -> None:
        self.logger = get_logger(__name__)
        self.hasher = hasher
        self.users: Dict[str, User] = {}
        self.permissions: Dict[str, List[str]] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def create_user(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(u.username.lower() == username.lower() for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"username": username}
                )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email or f"{username}@example.com",
                display_name=display_name or username,
                password_hash=self.hasher.hash(password),
                is_active=is_active,
                roles=set(roles),
            )
            self.users[user.id] = user
            self.permissions[user.id] = list(permissions)
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username.lower() == username.lower():
                    return copy.deepcopy(user)
        return None

    def validate_credentials(self, username: str, password: str) -> Optional[User]:
        user = self.get_user_by_username(username)
        if not user or not user.password_hash:
            return None
        if not self.hasher.verify(password, user.password_hash):
            return None
        return user

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            self.users[user.id] = copy.deepcopy(user)
            return user

    def get_permissions(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.permissions.get(user_id, []))

    def remove_backup_code_hash(self, user_id: str, code_hash: str) -> bool:
        """Remove one backup-code hash if it is still present."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.backup_code_hashes:
                return False
            user.backup_code_hashes.remove(code_hash)
            return True


class MemoryCache:
    """In-process implementation of the auth cache contract.

    Every compound operation runs under one lock, which gives the same
    atomicity the Redis scripts give across processes. Expiry is evaluated
    lazily against the injected clock.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._failed: Dict[str, Tuple[int, datetime]] = {}
        self._mfa_attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, LockoutState] = {}
        self._refresh: Dict[str, RefreshTokenRecord] = {}
        self._user_refresh: Dict[str, Set[str]] = {}
        self._denylist: Dict[str, datetime] = {}
        self._challenges: Dict[str, MfaChallenge] = {}
        self._locks: Dict[str, Tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        return self._clock()

    # Lockout -------------------------------------------------------------

    async def get_lockout(self, username: str) -> Optional[LockoutState]:
        key = username.lower()
        now = self._now()
        with self._lock:
            state = self._lockouts.get(key)
            if state and state.locked_until and state.locked_until <= now:
                self._lockouts.pop(key, None)
                return None
            return replace(state) if state else None

    async def record_failed_login(
        self, username: str, max_attempts: int, window_seconds: int
    ) -> LockoutState:
        key = username.lower()
        now = self._now()
        with self._lock:
            count, expires_at = self._failed.get(key, (0, now))
            if expires_at <= now:
                count = 0
            count += 1
            self._failed[key] = (count, now + timedelta(seconds=window_seconds))
            state = LockoutState(username=username, failed_attempts=count)
            if count >= max_attempts:
                state.locked_until = now + timedelta(seconds=window_seconds)
                self._lockouts[key] = replace(state)
            return state

    async def clear_failed_logins(self, username: str) -> None:
        key = username.lower()
        with self._lock:
            self._failed.pop(key, None)
            self._lockouts.pop(key, None)

    async def record_mfa_attempt(self, user_id: str, window_seconds: int) -> int:
        now = self._now()
        with self._lock:
            count, expires_at = self._mfa_attempts.get(user_id, (0, now))
            if expires_at <= now:
                count = 0
                expires_at = now + timedelta(seconds=window_seconds)
            count += 1
            self._mfa_attempts[user_id] = (count, expires_at)
            return count

    async def clear_mfa_attempts(self, user_id: str) -> None:
        with self._lock:
            self._mfa_attempts.pop(user_id, None)

    # Refresh tokens ------------------------------------------------------

    def _live_refresh(self, token: str) -> Optional[RefreshTokenRecord]:
        record = self._refresh.get(token)
        if record and record.expires_at <= self._now():
            self._refresh.pop(token, None)
            self._user_refresh.get(record.user_id, set()).discard(token)
            return None
        return record

    async def store_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            self._refresh[record.token] = replace(record)
            self._user_refresh.setdefault(record.user_id, set()).add(record.token)

    async def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            record = self._live_refresh(token)
            return replace(record) if record else None

    async def revoke_refresh_token(self, token: str) -> bool:
        with self._lock:
            record = self._live_refresh(token)
            if not record:
                return False
            record.revoked = True
            return True

    async def rotate_refresh_token(
        self, old_token: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        with self._lock:
            record = self._live_refresh(old_token)
            if not record or not record.is_usable(now):
                return False
            record.revoked = True
            self._refresh[new_record.token] = replace(new_record)
            self._user_refresh.setdefault(new_record.user_id, set()).add(new_record.token)
            return True

    async def list_user_refresh_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            tokens = list(self._user_refresh.get(user_id, set()))
            return [t for t in tokens if self._live_refresh(t)]

    # Access-token denylist -----------------------------------------------

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._denylist[jti] = self._now() + timedelta(seconds=max(1, ttl_seconds))

    async def is_access_token_denylisted(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._denylist.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._now():
                self._denylist.pop(jti, None)
                return False
            return True

    # MFA challenges ------------------------------------------------------

    async def create_challenge(self, challenge: MfaChallenge) -> None:
        with self._lock:
            self._challenges[challenge.id] = replace(challenge)

    async def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if not challenge:
                return None
            if challenge.is_expired(self._now()):
                self._challenges.pop(challenge_id, None)
                return None
            return replace(challenge)

    async def mark_challenge_used(self, challenge_id: str) -> bool:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if not challenge or challenge.used or challenge.is_expired(self._now()):
                return False
            challenge.used = True
            return True

    async def record_challenge_failure(self, challenge_id: str, max_attempts: int) -> int:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if not challenge:
                return max_attempts
            challenge.failed_attempts += 1
            if challenge.failed_attempts >= max_attempts:
                self._challenges.pop(challenge_id, None)
            return challenge.failed_attempts

    # Locks ---------------------------------------------------------------

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        now = self._now()
        with self._lock:
            held = self._locks.get(key)
            if held and held[1] > now:
                return None
            token = secrets.token_hex(8)
            self._locks[key] = (token, now + timedelta(seconds=ttl_seconds))
            return token

    async def release_lock(self, key: str, token: str) -> None:
        with self._lock:
            held = self._locks.get(key)
            if held and held[0] == token:
                self._locks.pop(key, None)


class MemoryAuditSink:
    """Collects audit entries in process and mirrors them to the log."""

    def __init__(self) -> None:
        self.logger = get_logger("credgate.audit")
        self.entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    async def log(
        self,
        action: str,
        actor_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[str] = None,
    ) -> None:
        entry = AuditEntry(
            action=action,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
        with self._lock:
            self.entries.append(entry)
        self.logger.info(
            "audit_event",
            action=action,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )

    def actions(self) -> List[str]:
        with self._lock:
            return [entry.action for entry in self.entries]

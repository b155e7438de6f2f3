from __future__ import annotations

import asyncio
import base64
import secrets
import uuid
from typing import Awaitable, Callable, List, Optional

from credgate.logging import get_logger
from credgate.service import audit
from credgate.service.interfaces import AuditSink, AuthCache, PasswordHasher, UserStore

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 8
DEFAULT_BACKUP_CODE_COUNT = 8


def _normalize(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


class BackupCodeVault:
    """Issues and redeems single-use backup codes.

    Only argon2 hashes are persisted. Redemption holds a short per-user lock
    and removes the matched hash through a conditional store update, so at
    most one caller can redeem a given code.
    """

    lock_ttl_seconds = 10
    lock_attempts = 3
    lock_retry_delay = 0.05

    def __init__(
        self,
        users: UserStore,
        cache: AuthCache,
        hasher: PasswordHasher,
        audit_sink: AuditSink,
    ) -> None:
        self.users = users
        self.cache = cache
        self.hasher = hasher
        self.audit_sink = audit_sink
        self.logger = logger

    def _generate_code(self) -> str:
        raw = base64.b64encode(secrets.token_bytes(9)).decode("ascii")
        code = raw.replace("+", "").replace("/", "").replace("=", "").upper()
        if len(code) >= BACKUP_CODE_LENGTH:
            return code[:BACKUP_CODE_LENGTH]
        return uuid.uuid4().hex[:BACKUP_CODE_LENGTH].upper()

    def generate_backup_codes(self, count: int = DEFAULT_BACKUP_CODE_COUNT) -> List[str]:
        """Return ``count`` fresh plaintext codes; callers show them exactly once."""
        if count < 1:
            raise ValueError("count must be positive")
        codes = [self._generate_code() for _ in range(count)]
        self.logger.info("backup_codes_generated", count=count)
        return codes

    def hash_codes(self, codes: List[str]) -> List[str]:
        return [self.hasher.hash(_normalize(code)) for code in codes]

    async def _acquire_user_lock(self, key: str) -> Optional[str]:
        for attempt in range(self.lock_attempts):
            token = await self.cache.acquire_lock(key, self.lock_ttl_seconds)
            if token:
                return token
            if attempt < self.lock_attempts - 1:
                await asyncio.sleep(self.lock_retry_delay)
        return None

    async def validate_and_consume(
        self,
        user_id: str,
        candidate: Optional[str],
        *,
        before_consume: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> bool:
        """Redeem ``candidate`` if it matches a stored hash.

        ``before_consume`` runs after a match and before the hash is removed,
        still under the per-user lock. When it returns False the code stays
        redeemable and the call returns False.
        """
        if not candidate:
            return False
        normalized = _normalize(candidate)
        if len(normalized) != BACKUP_CODE_LENGTH:
            return False

        lock_key = f"backup_codes:{user_id}"
        lock_token = await self._acquire_user_lock(lock_key)
        if lock_token is None:
            # Another redemption for this user is in flight
            self.logger.warning("backup_code_lock_unavailable", user_id=user_id)
            return False
        try:
            user = self.users.get_user(user_id)
            if not user or not user.backup_code_hashes:
                return False
            for code_hash in list(user.backup_code_hashes):
                if not self.hasher.verify(normalized, code_hash):
                    continue
                if before_consume is not None and not await before_consume():
                    self.logger.info("backup_code_kept", user_id=user_id)
                    return False
                if not self.users.remove_backup_code_hash(user_id, code_hash):
                    self.logger.warning("backup_code_already_consumed", user_id=user_id)
                    return False
                remaining = len(user.backup_code_hashes) - 1
                self.logger.info(
                    "backup_code_consumed", user_id=user_id, remaining=remaining
                )
                await audit.safe_audit(
                    self.audit_sink,
                    audit.BACKUP_CODE_USED,
                    user_id,
                    audit.ENTITY_USER,
                    user_id,
                    f"remaining={remaining}",
                )
                return True
            return False
        finally:
            await self.cache.release_lock(lock_key, lock_token)

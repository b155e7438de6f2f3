from __future__ import annotations

import json
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from credgate.storage.models import (
    LockoutState,
    MfaChallenge,
    MfaMethod,
    RefreshTokenRecord,
)


def _to_ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), timezone.utc)


class RedisCache:
    """Redis backend for lockout counters, refresh tokens and MFA challenges.

    Every read-modify-write runs inside a Lua script so concurrent requests
    across processes observe a single ordering.
    """

    # Atomic failed-login increment; writes the lockout entry at the threshold
    _FAILED_LOGIN_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[2])
if attempts >= tonumber(ARGV[1]) then
  local locked_until = tonumber(ARGV[3]) + tonumber(ARGV[2])
  redis.call('HSET', KEYS[2], 'failed_attempts', attempts, 'locked_until', tostring(locked_until))
  redis.call('EXPIRE', KEYS[2], ARGV[2])
  return {attempts, tostring(locked_until)}
end
return {attempts, ''}
"""

    # Fixed window: the expiry is set by the first attempt only
    _MFA_ATTEMPT_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    # Revoke the presented refresh token and store its successor in one step
    _ROTATE_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local record = cjson.decode(raw)
if record['revoked'] or tonumber(record['expires_ts']) <= tonumber(ARGV[1]) then
  return 0
end
record['revoked'] = true
local ttl = redis.call('TTL', KEYS[1])
if ttl < 1 then
  ttl = 1
end
redis.call('SET', KEYS[1], cjson.encode(record), 'EX', ttl)
redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[3])
redis.call('SADD', KEYS[3], ARGV[4])
redis.call('EXPIRE', KEYS[3], ARGV[3])
return 1
"""

    _REVOKE_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local record = cjson.decode(raw)
record['revoked'] = true
local ttl = redis.call('TTL', KEYS[1])
if ttl < 1 then
  ttl = 1
end
redis.call('SET', KEYS[1], cjson.encode(record), 'EX', ttl)
return 1
"""

    # Compare-and-set on the challenge's used flag
    _MARK_CHALLENGE_USED_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local challenge = cjson.decode(raw)
if challenge['used'] or tonumber(challenge['expires_ts']) <= tonumber(ARGV[1]) then
  return 0
end
challenge['used'] = true
local ttl = redis.call('TTL', KEYS[1])
if ttl < 1 then
  ttl = 1
end
redis.call('SET', KEYS[1], cjson.encode(challenge), 'EX', ttl)
return 1
"""

    _CHALLENGE_FAILURE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return tonumber(ARGV[1])
end
local challenge = cjson.decode(raw)
local attempts = (tonumber(challenge['failed_attempts']) or 0) + 1
if attempts >= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return attempts
end
challenge['failed_attempts'] = attempts
local ttl = redis.call('TTL', KEYS[1])
if ttl < 1 then
  ttl = 1
end
redis.call('SET', KEYS[1], cjson.encode(challenge), 'EX', ttl)
return attempts
"""

    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failed_login = self.client.register_script(self._FAILED_LOGIN_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)
        self._rotate_refresh = self.client.register_script(self._ROTATE_REFRESH_SCRIPT)
        self._revoke_refresh = self.client.register_script(self._REVOKE_REFRESH_SCRIPT)
        self._mark_challenge_used = self.client.register_script(
            self._MARK_CHALLENGE_USED_SCRIPT
        )
        self._challenge_failure = self.client.register_script(self._CHALLENGE_FAILURE_SCRIPT)
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    @staticmethod
    def _now_ts() -> float:
        return datetime.now(timezone.utc).timestamp()

    @classmethod
    def _ttl_seconds(cls, expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        return max(1, int(_to_ts(expires_at) - cls._now_ts()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # Lockout -------------------------------------------------------------

    @staticmethod
    def _attempts_key(username: str) -> str:
        return f"auth:failed_logins:{username.lower()}"

    @staticmethod
    def _lockout_key(username: str) -> str:
        return f"auth:lockout:{username.lower()}"

    async def get_lockout(self, username: str) -> Optional[LockoutState]:
        data = await self.client.hgetall(self._lockout_key(username))
        if not data:
            return None
        return LockoutState(
            username=username,
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=_from_ts(data.get("locked_until")),
        )

    async def record_failed_login(
        self, username: str, max_attempts: int, window_seconds: int
    ) -> LockoutState:
        attempts, locked_until = await self._failed_login(
            keys=[self._attempts_key(username), self._lockout_key(username)],
            args=[max_attempts, window_seconds, int(self._now_ts())],
        )
        return LockoutState(
            username=username,
            failed_attempts=int(attempts),
            locked_until=_from_ts(locked_until),
        )

    async def clear_failed_logins(self, username: str) -> None:
        await self.client.delete(self._attempts_key(username), self._lockout_key(username))

    @staticmethod
    def _mfa_attempts_key(user_id: str) -> str:
        return f"auth:mfa_attempts:{user_id}"

    async def record_mfa_attempt(self, user_id: str, window_seconds: int) -> int:
        result = await self._mfa_attempt(
            keys=[self._mfa_attempts_key(user_id)], args=[window_seconds]
        )
        return int(result)

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(self._mfa_attempts_key(user_id))

    # Refresh tokens ------------------------------------------------------

    @staticmethod
    def _refresh_key(token: str) -> str:
        return f"auth:refresh:{token}"

    @staticmethod
    def _user_refresh_key(user_id: str) -> str:
        return f"auth:user_refresh:{user_id}"

    @staticmethod
    def _encode_refresh(record: RefreshTokenRecord) -> str:
        return json.dumps(
            {
                "user_id": record.user_id,
                "created_ts": _to_ts(record.created_at),
                "expires_ts": _to_ts(record.expires_at),
                "revoked": record.revoked,
            }
        )

    @staticmethod
    def _decode_refresh(token: str, raw: str) -> RefreshTokenRecord:
        data = json.loads(raw)
        return RefreshTokenRecord(
            token=token,
            user_id=data["user_id"],
            created_at=_from_ts(data["created_ts"]),
            expires_at=_from_ts(data["expires_ts"]),
            revoked=bool(data.get("revoked")),
        )

    async def store_refresh_token(self, record: RefreshTokenRecord) -> None:
        ttl = self._ttl_seconds(record.expires_at)
        pipe = self.client.pipeline()
        pipe.set(self._refresh_key(record.token), self._encode_refresh(record), ex=ttl)
        # Track tokens per user for bulk revocation
        pipe.sadd(self._user_refresh_key(record.user_id), record.token)
        pipe.expire(self._user_refresh_key(record.user_id), ttl)
        await pipe.execute()

    async def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        raw = await self.client.get(self._refresh_key(token))
        if not raw:
            return None
        return self._decode_refresh(token, raw)

    async def revoke_refresh_token(self, token: str) -> bool:
        result = await self._revoke_refresh(keys=[self._refresh_key(token)], args=[])
        return bool(result)

    async def rotate_refresh_token(
        self, old_token: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        result = await self._rotate_refresh(
            keys=[
                self._refresh_key(old_token),
                self._refresh_key(new_record.token),
                self._user_refresh_key(new_record.user_id),
            ],
            args=[
                _to_ts(now),
                self._encode_refresh(new_record),
                self._ttl_seconds(new_record.expires_at),
                new_record.token,
            ],
        )
        return bool(result)

    async def list_user_refresh_tokens(self, user_id: str) -> List[str]:
        key = self._user_refresh_key(user_id)
        tokens = await self.client.smembers(key)
        live: List[str] = []
        stale: List[str] = []
        for token in tokens:
            if await self.client.exists(self._refresh_key(token)):
                live.append(token)
            else:
                stale.append(token)
        if stale:
            await self.client.srem(key, *stale)
        return live

    # Access-token denylist -----------------------------------------------

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add access token JTI to denylist with TTL matching token expiry."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    # MFA challenges ------------------------------------------------------

    @staticmethod
    def _challenge_key(challenge_id: str) -> str:
        return f"auth:mfa_challenge:{challenge_id}"

    async def create_challenge(self, challenge: MfaChallenge) -> None:
        payload: Dict[str, Any] = {
            "user_id": challenge.user_id,
            "method": challenge.method.value,
            "challenge_code": challenge.challenge_code,
            "created_ts": _to_ts(challenge.created_at),
            "expires_ts": _to_ts(challenge.expires_at),
            "used": challenge.used,
            "failed_attempts": challenge.failed_attempts,
        }
        await self.client.set(
            self._challenge_key(challenge.id),
            json.dumps(payload),
            ex=self._ttl_seconds(challenge.expires_at),
        )

    async def get_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        raw = await self.client.get(self._challenge_key(challenge_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return MfaChallenge(
            id=challenge_id,
            user_id=data["user_id"],
            method=MfaMethod(data["method"]),
            created_at=_from_ts(data["created_ts"]),
            expires_at=_from_ts(data["expires_ts"]),
            challenge_code=data.get("challenge_code"),
            used=bool(data.get("used")),
            failed_attempts=int(data.get("failed_attempts") or 0),
        )

    async def mark_challenge_used(self, challenge_id: str) -> bool:
        result = await self._mark_challenge_used(
            keys=[self._challenge_key(challenge_id)], args=[self._now_ts()]
        )
        return bool(result)

    async def record_challenge_failure(self, challenge_id: str, max_attempts: int) -> int:
        result = await self._challenge_failure(
            keys=[self._challenge_key(challenge_id)], args=[max_attempts]
        )
        return int(result)

    # Locks ---------------------------------------------------------------

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = secrets.token_hex(8)
        acquired = await self.client.set(f"lock:{key}", token, ex=ttl_seconds, nx=True)
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> None:
        await self._release_lock(keys=[f"lock:{key}"], args=[token])

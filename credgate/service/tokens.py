from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from credgate.config import Settings
from credgate.logging import get_logger
from credgate.service import audit
from credgate.service.interfaces import AuditSink, AuthCache, UserStore
from credgate.service.results import (
    AuthErrorKind,
    AuthResult,
    Err,
    Ok,
    Principal,
    Result,
    UserInfo,
)
from credgate.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)


class TokenIssuer:
    """Mints, rotates, validates and revokes bearer and refresh tokens.

    Access tokens are HS256 JWTs. Refresh tokens are opaque random strings
    whose validity lives entirely in the cache.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        cache: AuthCache,
        audit_sink: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.cache = cache
        self.audit_sink = audit_sink
        self._secret = settings.require_signing_secret().encode("utf-8")
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # JWT encoding ---------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: Optional[str], *, verify_lifetime: bool = True
    ) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            alg = header.get("alg") if isinstance(header, dict) else None
            if alg != "HS256":
                self.logger.warning("jwt_invalid_algorithm", alg=alg)
                return None
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        if not verify_lifetime:
            return payload
        try:
            exp_ts = float(payload.get("exp"))
            nbf_ts = float(payload.get("nbf", 0))
        except (TypeError, ValueError):
            return None
        now_ts = self._now().timestamp()
        if exp_ts <= now_ts or nbf_ts > now_ts:
            return None
        return payload

    # Issuance -------------------------------------------------------------

    def _mint_access_token(self, user: User) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        issued_ts = int(now.timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "name": user.username,
            "email": user.email,
            "display_name": user.display_name,
            "roles": sorted(user.roles),
            "permissions": list(self.users.get_permissions(user.id)),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": issued_ts,
            "nbf": issued_ts,
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def generate_access_token(self, user: User) -> str:
        token, _ = self._mint_access_token(user)
        return token

    def _new_refresh_record(self, user_id: str, now: datetime) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token=secrets.token_urlsafe(48),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )

    async def issue_for_user(self, user: User) -> AuthResult:
        access_token, expires_at = self._mint_access_token(user)
        record = self._new_refresh_record(user.id, self._now())
        await self.cache.store_refresh_token(record)
        self.logger.info("tokens_issued", user_id=user.id)
        return AuthResult(
            access_token=access_token,
            refresh_token=record.token,
            expires_at=expires_at,
            user=UserInfo.from_user(user),
        )

    async def refresh_token(self, presented: Optional[str]) -> Result[AuthResult]:
        if not presented:
            return Err.of(AuthErrorKind.TOKEN_INVALID_OR_EXPIRED)
        try:
            now = self._now()
            record = await self.cache.get_refresh_token(presented)
            if not record or not record.is_usable(now):
                self.logger.warning("refresh_token_rejected")
                return Err.of(AuthErrorKind.TOKEN_INVALID_OR_EXPIRED)
            user = self.users.get_user(record.user_id)
            if not user or not user.is_active:
                self.logger.warning("refresh_token_owner_inactive", user_id=record.user_id)
                return Err.of(AuthErrorKind.ACCOUNT_INACTIVE)
            new_record = self._new_refresh_record(user.id, now)
            if not await self.cache.rotate_refresh_token(presented, new_record, now):
                # A concurrent refresh already rotated this token
                self.logger.warning("refresh_token_rotation_lost", user_id=user.id)
                return Err.of(AuthErrorKind.TOKEN_INVALID_OR_EXPIRED)
            access_token, expires_at = self._mint_access_token(user)
        except Exception as exc:
            self.logger.error("token_refresh_failed", error=str(exc))
            return Err.of(AuthErrorKind.SERVER_ERROR)
        await audit.safe_audit(
            self.audit_sink, audit.TOKEN_REFRESHED, user.id, audit.ENTITY_USER, user.id
        )
        self.logger.info("tokens_refreshed", user_id=user.id)
        return Ok(
            AuthResult(
                access_token=access_token,
                refresh_token=new_record.token,
                expires_at=expires_at,
                user=UserInfo.from_user(user),
            )
        )

    # Validation -----------------------------------------------------------

    async def validate_token(self, token: Optional[str]) -> bool:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return False
        jti = payload.get("jti")
        if not jti:
            return False
        try:
            if await self.cache.is_access_token_denylisted(jti):
                return False
        except Exception as exc:
            self.logger.error("access_token_denylist_check_failed", error=str(exc))
            return False
        return True

    def get_principal(self, token: Optional[str]) -> Optional[Principal]:
        """Extract claims from a signed token without checking its lifetime."""
        payload = self._decode_jwt(token, verify_lifetime=False)
        if not payload or not payload.get("sub"):
            return None
        expires_at = None
        exp = payload.get("exp")
        if isinstance(exp, (int, float)):
            expires_at = datetime.fromtimestamp(exp, timezone.utc)
        return Principal(
            user_id=str(payload["sub"]),
            username=payload.get("name"),
            email=payload.get("email"),
            display_name=payload.get("display_name"),
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
            expires_at=expires_at,
            token_id=payload.get("jti"),
        )

    # Revocation -----------------------------------------------------------

    async def revoke_token(
        self, refresh_token: Optional[str], *, user_id: Optional[str] = None
    ) -> bool:
        """Mark a refresh token revoked; repeating the call is harmless.

        With ``user_id`` only a token owned by that user is revoked.
        """
        if not refresh_token:
            return False
        try:
            record = await self.cache.get_refresh_token(refresh_token)
            if user_id is not None and (record is None or record.user_id != user_id):
                return False
            revoked = await self.cache.revoke_refresh_token(refresh_token)
        except Exception as exc:
            self.logger.error("refresh_token_revoke_failed", error=str(exc))
            return False
        if revoked and record:
            await audit.safe_audit(
                self.audit_sink,
                audit.TOKEN_REVOKED,
                record.user_id,
                audit.ENTITY_USER,
                record.user_id,
            )
        return revoked

    async def revoke_access_token(self, token: Optional[str]) -> bool:
        """Denylist a still-valid access token until it would have expired."""
        payload = self._decode_jwt(token)
        if not payload or not payload.get("jti"):
            return False
        ttl = int(float(payload["exp"]) - self._now().timestamp())
        if ttl <= 0:
            return False
        try:
            await self.cache.denylist_access_token(payload["jti"], ttl)
        except Exception as exc:
            self.logger.warning("access_token_denylist_failed", error=str(exc))
            return False
        return True

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        """Revoke every live refresh token of a user and return the count."""
        revoked_count = 0
        try:
            for token in await self.cache.list_user_refresh_tokens(user_id):
                record = await self.cache.get_refresh_token(token)
                if not record or record.revoked:
                    continue
                if await self.cache.revoke_refresh_token(token):
                    revoked_count += 1
        except Exception as exc:
            self.logger.warning("revoke_user_tokens_failed", user_id=user_id, error=str(exc))
        if revoked_count:
            await audit.safe_audit(
                self.audit_sink,
                audit.TOKEN_REVOKED,
                user_id,
                audit.ENTITY_USER,
                user_id,
                f"revoked={revoked_count}",
            )
        return revoked_count

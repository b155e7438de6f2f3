from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from credgate.config import Settings
from credgate.logging import get_logger
from credgate.service import audit
from credgate.service.interfaces import AuditSink, AuthCache, UserStore
from credgate.service.mfa import MfaOrchestrator
from credgate.service.results import (
    AuthErrorKind,
    AuthResult,
    Err,
    Ok,
    Result,
    UserInfo,
)
from credgate.service.tokens import TokenIssuer
from credgate.storage.models import User

logger = get_logger(__name__)


@dataclass
class LoginRequest:
    username: str
    password: str
    mfa_code: Optional[str] = None
    challenge_id: Optional[str] = None


class CredentialGate:
    """Entry point for password logins.

    Runs the lockout check, credential validation, the active-account check
    and MFA gating in that order, then hands off to the token issuer. Every
    outcome is returned as ``Ok`` or ``Err``; collaborator failures become a
    generic server error.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        cache: AuthCache,
        tokens: TokenIssuer,
        mfa: MfaOrchestrator,
        audit_sink: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.cache = cache
        self.tokens = tokens
        self.mfa = mfa
        self.audit_sink = audit_sink
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def _lockout_window_seconds(self) -> int:
        return self.settings.lockout_duration_minutes * 60

    async def authenticate(
        self, request: Union[LoginRequest, str], password: Optional[str] = None
    ) -> Result[AuthResult]:
        if isinstance(request, str):
            request = LoginRequest(username=request, password=password or "")
        username = (request.username or "").strip()
        if not username or not request.password:
            return Err.of(AuthErrorKind.INVALID_CREDENTIALS)
        try:
            return await self._authenticate(request, username)
        except Exception as exc:
            self.logger.error(
                "authentication_error",
                username=username,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Err.of(AuthErrorKind.SERVER_ERROR)

    async def _authenticate(self, request: LoginRequest, username: str) -> Result[AuthResult]:
        lockout = await self.cache.get_lockout(username)
        if lockout and lockout.is_locked(self._now()):
            self.logger.warning("login_blocked_account_locked", username=username)
            await audit.safe_audit(
                self.audit_sink,
                audit.SECURITY_VIOLATION,
                username,
                audit.ENTITY_USER,
                username,
                "login attempt while account locked",
            )
            return Err.of(AuthErrorKind.ACCOUNT_LOCKED)

        user = self.users.validate_credentials(username, request.password)
        if not user:
            return await self._record_failure(username)

        if not user.is_active:
            self.logger.warning("login_inactive_account", user_id=user.id)
            await audit.safe_audit(
                self.audit_sink,
                audit.SECURITY_VIOLATION,
                user.id,
                audit.ENTITY_USER,
                user.id,
                "login attempt on inactive account",
            )
            return Err.of(AuthErrorKind.ACCOUNT_INACTIVE)

        await self.cache.clear_failed_logins(username)

        if user.is_mfa_enabled and self.settings.enable_mfa:
            if request.challenge_id and request.mfa_code:
                result = await self.mfa.validate_challenge(
                    request.challenge_id, request.mfa_code, user_id=user.id
                )
                if isinstance(result, Err):
                    return result
                return Ok(await self._complete_login(user.id, result.value))

            if request.mfa_code:
                attempts = await self.cache.record_mfa_attempt(
                    user.id, self._lockout_window_seconds
                )
                if attempts > self.settings.mfa_max_challenge_attempts:
                    self.logger.warning(
                        "login_mfa_attempts_exhausted", user_id=user.id, attempts=attempts
                    )
                    await audit.safe_audit(
                        self.audit_sink,
                        audit.SECURITY_VIOLATION,
                        user.id,
                        audit.ENTITY_USER,
                        user.id,
                        f"code submitted with login after {attempts - 1} attempts",
                    )
                    return Err.of(AuthErrorKind.INVALID_MFA_CODE)
                verified, used_backup_code = await self.mfa.verify_user_code(
                    user, request.mfa_code
                )
                if not verified:
                    self.logger.warning(
                        "login_mfa_code_invalid", user_id=user.id, attempts=attempts
                    )
                    await audit.safe_audit(
                        self.audit_sink,
                        audit.MFA_CHALLENGE_FAILED,
                        user.id,
                        audit.ENTITY_USER,
                        user.id,
                        f"invalid code submitted with login; attempts={attempts}",
                    )
                    return Err.of(AuthErrorKind.INVALID_MFA_CODE)
                await self.cache.clear_mfa_attempts(user.id)
                await audit.safe_audit(
                    self.audit_sink,
                    audit.MFA_VALIDATED,
                    user.id,
                    audit.ENTITY_USER,
                    user.id,
                    f"method={user.mfa_method.value}; backup_code={used_backup_code}",
                )
            else:
                challenge = await self.mfa.initiate_challenge(user.id)
                self.logger.info(
                    "login_mfa_required", user_id=user.id, challenge_id=challenge.id
                )
                return Err.of(
                    AuthErrorKind.MFA_REQUIRED,
                    challenge=self.mfa.describe_challenge(challenge),
                )

        auth = await self.tokens.issue_for_user(user)
        return Ok(await self._complete_login(user.id, auth))

    async def _record_failure(self, username: str) -> Err:
        state = await self.cache.record_failed_login(
            username, self.settings.max_login_attempts, self._lockout_window_seconds
        )
        if state.is_locked(self._now()):
            self.logger.warning(
                "account_locked",
                username=username,
                failed_attempts=state.failed_attempts,
                locked_until=state.locked_until.isoformat() if state.locked_until else None,
            )
            await audit.safe_audit(
                self.audit_sink,
                audit.SECURITY_VIOLATION,
                username,
                audit.ENTITY_USER,
                username,
                f"account locked after {state.failed_attempts} failed login attempts",
            )
            return Err.of(AuthErrorKind.ACCOUNT_LOCKED)
        self.logger.warning(
            "login_failed", username=username, failed_attempts=state.failed_attempts
        )
        return Err.of(AuthErrorKind.INVALID_CREDENTIALS)

    async def _complete_login(self, user_id: str, auth: AuthResult) -> AuthResult:
        user: Optional[User] = self.users.get_user(user_id)
        if user is None:
            return auth
        user.last_login_at = self._now()
        self.users.update_user(user)
        await audit.safe_audit(
            self.audit_sink, audit.LOGIN, user.id, audit.ENTITY_USER, user.id
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return replace(auth, user=UserInfo.from_user(user))

    async def complete_mfa(self, challenge_id: str, code: Optional[str]) -> Result[AuthResult]:
        """Finish a login that was answered with ``MFA_REQUIRED``."""
        try:
            result = await self.mfa.validate_challenge(challenge_id, code)
            if isinstance(result, Err):
                return result
            user_info = result.value.user
            if user_info is None:
                return result
            return Ok(await self._complete_login(user_info.id, result.value))
        except Exception as exc:
            self.logger.error(
                "mfa_login_error", error_type=type(exc).__name__, error=str(exc)
            )
            return Err.of(AuthErrorKind.SERVER_ERROR)

    async def get_user_from_token(self, token: Optional[str]) -> Optional[UserInfo]:
        if not await self.tokens.validate_token(token):
            return None
        principal = self.tokens.get_principal(token)
        if principal is None:
            return None
        user = self.users.get_user(principal.user_id)
        if not user or not user.is_active:
            return None
        return UserInfo.from_user(user)

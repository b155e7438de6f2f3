from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, Union

from credgate.config import Settings
from credgate.logging import get_logger, mask_email, mask_phone
from credgate.service import audit
from credgate.service.backup_codes import BackupCodeVault
from credgate.service.errors import MfaMisuseError, NotFoundError, ValidationError
from credgate.service.interfaces import (
    AuditSink,
    AuthCache,
    EmailGateway,
    SmsGateway,
    UserStore,
)
from credgate.service.results import (
    AuthErrorKind,
    AuthResult,
    ChallengeDescriptor,
    Err,
    MfaSetupResult,
    MfaStatus,
    Ok,
    Result,
)
from credgate.service.tokens import TokenIssuer
from credgate.service.totp import (
    generate_numeric_code,
    generate_secret,
    provisioning_uri,
    render_qr_data_uri,
    verify_totp,
)
from credgate.storage.models import (
    EmailEnrollment,
    MfaChallenge,
    MfaEnrollment,
    MfaMethod,
    SmsEnrollment,
    TotpEnrollment,
    User,
)

logger = get_logger(__name__)

EMAIL_SUBJECT = "Verification Code"

_SETUP_ACTIONS = {
    MfaMethod.TOTP: audit.MFA_SETUP_TOTP,
    MfaMethod.SMS: audit.MFA_SETUP_SMS,
    MfaMethod.EMAIL: audit.MFA_SETUP_EMAIL,
}


class MfaOrchestrator:
    """Challenge lifecycle and enrollment management for second factors.

    A challenge moves from created to exactly one terminal state: validated
    (``used`` flipped by compare-and-set), expired (its TTL elapsed) or
    exhausted (too many wrong codes, after which the cache drops it).
    """

    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        cache: AuthCache,
        vault: BackupCodeVault,
        tokens: TokenIssuer,
        sms_gateway: SmsGateway,
        email_gateway: EmailGateway,
        audit_sink: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.cache = cache
        self.vault = vault
        self.tokens = tokens
        self.sms_gateway = sms_gateway
        self.email_gateway = email_gateway
        self.audit_sink = audit_sink
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _delivery_message(self, code: str) -> str:
        minutes = self.settings.mfa_code_expiration_minutes
        return (
            f"Your verification code is: {code}. "
            f"This code will expire in {minutes} minutes."
        )

    # Challenges -----------------------------------------------------------

    async def initiate_challenge(self, user_id: str) -> MfaChallenge:
        """Persist a new challenge and deliver its code where the method needs one.

        Raises:
            MfaMisuseError: if the user does not exist or has no MFA enrolled
        """
        user = self.users.get_user(user_id)
        if not user or not user.is_mfa_enabled:
            raise MfaMisuseError(
                "MFA challenge requested for a user without MFA enabled",
                detail={"user_id": user_id},
            )
        return await self._issue_challenge(user)

    async def _issue_challenge(self, user: User, *, failed_attempts: int = 0) -> MfaChallenge:
        now = self._now()
        ttl = self.settings.mfa_code_expiration_minutes
        method = user.mfa_method

        if method == MfaMethod.TOTP:
            # The authenticator app computes the code; nothing to deliver
            challenge = MfaChallenge.new(user.id, method, now, ttl_minutes=ttl)
            challenge.failed_attempts = failed_attempts
            await self.cache.create_challenge(challenge)
        else:
            code = generate_numeric_code()
            challenge = MfaChallenge.new(
                user.id, method, now, ttl_minutes=ttl, challenge_code=code
            )
            challenge.failed_attempts = failed_attempts
            await self.cache.create_challenge(challenge)
            await self._deliver_code(user, method, code)

        self.logger.info(
            "mfa_challenge_created",
            user_id=user.id,
            challenge_id=challenge.id,
            method=challenge.method.value,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    async def _deliver_code(self, user: User, method: MfaMethod, code: str) -> bool:
        message = self._delivery_message(code)
        if isinstance(user.mfa, SmsEnrollment):
            delivered = await self.sms_gateway.send(user.mfa.phone_number, message)
        else:
            delivered = await self.email_gateway.send(
                user.email, message, subject=EMAIL_SUBJECT
            )
        if not delivered:
            self.logger.warning(
                "mfa_code_delivery_failed",
                user_id=user.id,
                method=method.value,
                to=self.masked_destination(user),
            )
        return delivered

    def masked_destination(self, user: User) -> str:
        """Where the user's codes go, masked for display; empty for TOTP."""
        if isinstance(user.mfa, SmsEnrollment):
            return mask_phone(user.mfa.phone_number)
        if isinstance(user.mfa, EmailEnrollment):
            return mask_email(user.email)
        return ""

    def describe_challenge(self, challenge: MfaChallenge) -> ChallengeDescriptor:
        user = self.users.get_user(challenge.user_id)
        masked = self.masked_destination(user) if user else ""
        return ChallengeDescriptor.from_challenge(challenge, masked_destination=masked)

    async def resend_challenge(self, challenge_id: str) -> Result[ChallengeDescriptor]:
        """Send a fresh code for a pending challenge.

        The pending challenge is retired and replaced by a new one that keeps
        its failed-attempt count, so resending never resets the attempt cap.
        TOTP challenges have nothing to send and are returned unchanged.
        """
        try:
            now = self._now()
            challenge = await self.cache.get_challenge(challenge_id) if challenge_id else None
            if not challenge or challenge.used or challenge.is_expired(now):
                self.logger.warning("mfa_challenge_not_found", challenge_id=challenge_id)
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)

            user = self.users.get_user(challenge.user_id)
            if not user or not user.is_mfa_enabled:
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)
            if not user.is_active:
                return Err.of(AuthErrorKind.ACCOUNT_INACTIVE)

            if challenge.method == MfaMethod.TOTP and user.mfa_method == MfaMethod.TOTP:
                return Ok(self.describe_challenge(challenge))

            if not await self.cache.mark_challenge_used(challenge.id):
                self.logger.warning("mfa_challenge_already_used", challenge_id=challenge.id)
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)
            fresh = await self._issue_challenge(user, failed_attempts=challenge.failed_attempts)
        except Exception as exc:
            self.logger.error(
                "mfa_challenge_resend_failed", challenge_id=challenge_id, error=str(exc)
            )
            return Err.of(AuthErrorKind.SERVER_ERROR)

        self.logger.info(
            "mfa_challenge_resent",
            user_id=user.id,
            previous_challenge_id=challenge.id,
            challenge_id=fresh.id,
        )
        return Ok(self.describe_challenge(fresh))

    def _matches_challenge_code(self, challenge: MfaChallenge, code: str) -> bool:
        if not challenge.challenge_code:
            return False
        return hmac.compare_digest(
            challenge.challenge_code.encode(), code.strip().encode()
        )

    async def validate_challenge(
        self, challenge_id: str, code: Optional[str], *, user_id: Optional[str] = None
    ) -> Result[AuthResult]:
        """Redeem a challenge; ``user_id`` pins it to the account that logged in."""
        try:
            now = self._now()
            challenge = await self.cache.get_challenge(challenge_id) if challenge_id else None
            if not challenge or challenge.used or challenge.is_expired(now):
                self.logger.warning("mfa_challenge_not_found", challenge_id=challenge_id)
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)

            if user_id is not None and challenge.user_id != user_id:
                self.logger.warning(
                    "mfa_challenge_user_mismatch", challenge_id=challenge.id, user_id=user_id
                )
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)

            user = self.users.get_user(challenge.user_id)
            if not user:
                self.logger.error(
                    "mfa_challenge_user_missing",
                    challenge_id=challenge.id,
                    user_id=challenge.user_id,
                )
                return Err.of(AuthErrorKind.SERVER_ERROR)
            if not user.is_active:
                return Err.of(AuthErrorKind.ACCOUNT_INACTIVE)

            candidate = (code or "").strip()
            if challenge.method == MfaMethod.TOTP:
                verified = verify_totp(user.mfa_secret, candidate, now.timestamp())
            else:
                verified = self._matches_challenge_code(challenge, candidate)
            used_backup_code = False
            claimed: List[bool] = []
            if not verified and candidate:

                async def claim() -> bool:
                    won = await self.cache.mark_challenge_used(challenge.id)
                    claimed.append(won)
                    return won

                verified = await self.vault.validate_and_consume(
                    user.id, candidate, before_consume=claim
                )
                used_backup_code = verified
                if claimed and not verified:
                    # Lost the challenge or the code to a concurrent request
                    self.logger.warning("mfa_challenge_already_used", challenge_id=challenge.id)
                    return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)

            if not verified:
                attempts = await self.cache.record_challenge_failure(
                    challenge.id, self.settings.mfa_max_challenge_attempts
                )
                self.logger.warning(
                    "mfa_challenge_code_invalid",
                    user_id=user.id,
                    challenge_id=challenge.id,
                    attempts=attempts,
                )
                await audit.safe_audit(
                    self.audit_sink,
                    audit.MFA_CHALLENGE_FAILED,
                    user.id,
                    audit.ENTITY_MFA_CHALLENGE,
                    challenge.id,
                    f"method={challenge.method.value}; attempts={attempts}",
                )
                return Err.of(AuthErrorKind.INVALID_MFA_CODE)

            if not claimed and not await self.cache.mark_challenge_used(challenge.id):
                # A concurrent validation already consumed this challenge
                self.logger.warning("mfa_challenge_already_used", challenge_id=challenge.id)
                return Err.of(AuthErrorKind.CHALLENGE_EXPIRED_OR_NOT_FOUND)

            user = self._record_validation(user.id, now)
            auth = await self.tokens.issue_for_user(user)
        except Exception as exc:
            self.logger.error(
                "mfa_challenge_validation_failed",
                challenge_id=challenge_id,
                error=str(exc),
            )
            return Err.of(AuthErrorKind.SERVER_ERROR)

        await audit.safe_audit(
            self.audit_sink,
            audit.MFA_VALIDATED,
            user.id,
            audit.ENTITY_MFA_CHALLENGE,
            challenge.id,
            f"method={challenge.method.value}; backup_code={used_backup_code}",
        )
        self.logger.info(
            "mfa_challenge_validated",
            user_id=user.id,
            challenge_id=challenge.id,
            backup_code=used_backup_code,
        )
        return Ok(auth)

    async def verify_user_code(self, user: User, code: Optional[str]) -> Tuple[bool, bool]:
        """Check a code submitted without a challenge.

        Tries the TOTP secret first and then the backup codes. Returns
        ``(verified, used_backup_code)``.
        """
        candidate = (code or "").strip()
        if not candidate:
            return False, False
        now = self._now()
        if verify_totp(user.mfa_secret, candidate, now.timestamp()):
            self._record_validation(user.id, now)
            return True, False
        if await self.vault.validate_and_consume(user.id, candidate):
            self._record_validation(user.id, now)
            return True, True
        return False, False

    def _record_validation(self, user_id: str, now: datetime) -> User:
        # Re-read so a backup code consumed above is not written back
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        user.last_mfa_validation_at = now
        return self.users.update_user(user)

    # Enrollment -----------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def setup_mfa(
        self,
        user_id: str,
        method: Union[MfaMethod, str],
        *,
        phone_number: Optional[str] = None,
    ) -> MfaSetupResult:
        """Enroll a second factor and issue a fresh batch of backup codes.

        Raises:
            MfaMisuseError: if MFA is disabled globally
            NotFoundError: if the user does not exist
            ValidationError: for an unknown method or a missing phone number
        """
        if not self.settings.enable_mfa:
            raise MfaMisuseError("multi-factor authentication is disabled")
        user = self._require_user(user_id)
        try:
            selected = MfaMethod.parse(method)
        except ValueError as exc:
            raise ValidationError("unsupported MFA method", detail={"method": str(method)}) from exc

        secret: Optional[str] = None
        uri: Optional[str] = None
        qr_code: Optional[str] = None
        enrollment: MfaEnrollment
        if selected == MfaMethod.TOTP:
            secret = generate_secret()
            uri = provisioning_uri(secret, user.email or user.username, self.settings.totp_issuer)
            qr_code = render_qr_data_uri(uri)
            enrollment = TotpEnrollment(secret=secret)
        elif selected == MfaMethod.SMS:
            if not phone_number or not phone_number.strip():
                raise ValidationError("phone_number is required for SMS verification")
            # Activated without a verification round trip
            enrollment = SmsEnrollment(phone_number=phone_number.strip())
        elif selected == MfaMethod.EMAIL:
            enrollment = EmailEnrollment()
        else:
            raise ValidationError("unsupported MFA method", detail={"method": selected.value})

        codes = self.vault.generate_backup_codes(self.settings.backup_code_count)
        user.mfa = enrollment
        user.backup_code_hashes = self.vault.hash_codes(codes)
        self.users.update_user(user)

        await audit.safe_audit(
            self.audit_sink,
            _SETUP_ACTIONS[selected],
            user.id,
            audit.ENTITY_USER,
            user.id,
        )
        self.logger.info("mfa_enabled", user_id=user.id, method=selected.value)
        return MfaSetupResult(
            method=selected,
            backup_codes=codes,
            secret=secret,
            provisioning_uri=uri,
            qr_code=qr_code,
        )

    async def disable_mfa(self, user_id: str, verification_code: Optional[str]) -> bool:
        user = self.users.get_user(user_id)
        if not user or not user.is_mfa_enabled:
            return False
        candidate = (verification_code or "").strip()
        if isinstance(user.mfa, TotpEnrollment):
            verified = verify_totp(user.mfa_secret, candidate, self._now().timestamp())
        else:
            verified = await self.vault.validate_and_consume(user.id, candidate)
        if not verified:
            self.logger.warning("mfa_disable_rejected", user_id=user.id)
            return False

        user = self._require_user(user_id)
        previous = user.mfa_method
        user.mfa = None
        user.backup_code_hashes = []
        self.users.update_user(user)
        await audit.safe_audit(
            self.audit_sink,
            audit.MFA_DISABLED,
            user.id,
            audit.ENTITY_USER,
            user.id,
            f"method={previous.value}",
        )
        self.logger.info("mfa_disabled", user_id=user.id, method=previous.value)
        return True

    def get_mfa_status(self, user_id: str) -> MfaStatus:
        user = self._require_user(user_id)
        return MfaStatus(
            is_enabled=user.is_mfa_enabled,
            method=user.mfa_method,
            backup_codes_count=len(user.backup_code_hashes),
            masked_phone_number=mask_phone(user.phone_number),
            masked_email=mask_email(user.email),
            last_validation_at=user.last_mfa_validation_at,
        )

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        """Replace every stored backup code with a fresh batch.

        Raises:
            MfaMisuseError: if the user has no MFA enrolled
        """
        user = self._require_user(user_id)
        if not user.is_mfa_enabled:
            raise MfaMisuseError("MFA must be enabled to generate backup codes")
        codes = self.vault.generate_backup_codes(self.settings.backup_code_count)
        user.backup_code_hashes = self.vault.hash_codes(codes)
        self.users.update_user(user)
        await audit.safe_audit(
            self.audit_sink,
            audit.BACKUP_CODES_GENERATED,
            user.id,
            audit.ENTITY_USER,
            user.id,
            f"count={len(codes)}",
        )
        self.logger.info("backup_codes_regenerated", user_id=user.id, count=len(codes))
        return codes

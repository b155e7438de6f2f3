from __future__ import annotations

from typing import Optional

from credgate.logging import get_logger
from credgate.service.interfaces import AuditSink

logger = get_logger(__name__)

# Audit action names
LOGIN = "Login"
SECURITY_VIOLATION = "SecurityViolation"
TOKEN_REFRESHED = "TokenRefreshed"
TOKEN_REVOKED = "TokenRevoked"
MFA_VALIDATED = "MFA_VALIDATED"
MFA_CHALLENGE_FAILED = "MFA_CHALLENGE_FAILED"
MFA_SETUP_TOTP = "MFA_SETUP_TOTP"
MFA_SETUP_SMS = "MFA_SETUP_SMS"
MFA_SETUP_EMAIL = "MFA_SETUP_EMAIL"
MFA_DISABLED = "MFA_DISABLED"
BACKUP_CODE_USED = "BACKUP_CODE_USED"
BACKUP_CODES_GENERATED = "BACKUP_CODES_GENERATED"

ENTITY_USER = "User"
ENTITY_MFA_CHALLENGE = "MfaChallenge"


async def safe_audit(
    sink: AuditSink,
    action: str,
    actor_id: str,
    entity_type: str,
    entity_id: str,
    details: Optional[str] = None,
) -> None:
    """Record an audit entry; sink failures are logged and never propagated."""
    try:
        await sink.log(action, actor_id, entity_type, entity_id, details)
    except Exception as exc:
        logger.error(
            "audit_log_failed",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            error=str(exc),
        )

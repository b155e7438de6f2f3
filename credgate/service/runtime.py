from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from credgate.config import get_settings, reset_settings_cache
from credgate.logging import get_logger
from credgate.service.auth import CredentialGate
from credgate.service.backup_codes import BackupCodeVault
from credgate.service.mfa import MfaOrchestrator
from credgate.service.notifications import EmailService, WebhookSmsGateway
from credgate.service.passwords import Argon2PasswordHasher
from credgate.service.tokens import TokenIssuer
from credgate.storage.memory import MemoryAuditSink, MemoryCache, MemoryUserStore
from credgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        # Fails startup when the signing secret is missing or weak
        self.settings.require_signing_secret()

        if self.settings.test_mode:
            self.hasher = Argon2PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)
        else:
            self.hasher = Argon2PasswordHasher()
        self.users = MemoryUserStore(self.hasher)
        self.audit = MemoryAuditSink()

        self.cache: Union[MemoryCache, RedisCache, None] = None
        redis_error: Exception | None = None
        if not self.settings.use_memory_cache and self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.use_memory_cache:
                raise RuntimeError(
                    "Redis is required for lockout counters, refresh tokens and MFA challenges; "
                    "start Redis or set USE_MEMORY_CACHE=true for a single-process deployment."
                ) from redis_error
            if redis_error is not None or not self.settings.use_memory_cache:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    mode="TEST_MODE",
                )
            self.cache = MemoryCache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = WebhookSmsGateway(
            webhook_url=self.settings.sms_webhook_url,
            api_key=self.settings.sms_api_key,
            sender_id=self.settings.sms_sender_id,
        )

        self.vault = BackupCodeVault(self.users, self.cache, self.hasher, self.audit)
        self.tokens = TokenIssuer(self.settings, self.users, self.cache, self.audit)
        self.mfa = MfaOrchestrator(
            self.settings,
            self.users,
            self.cache,
            self.vault,
            self.tokens,
            self.sms,
            self.email,
            self.audit,
        )
        self.auth = CredentialGate(
            self.settings, self.users, self.cache, self.tokens, self.mfa, self.audit
        )

        if self.settings.bootstrap_username and self.settings.bootstrap_password:
            self.users.create_user(
                self.settings.bootstrap_username,
                self.settings.bootstrap_password,
                email=self.settings.bootstrap_email,
                roles=["admin"],
            )
            logger.info("bootstrap_user_created", username=self.settings.bootstrap_username)

        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            mfa_enabled=self.settings.enable_mfa,
        )

    async def close(self) -> None:
        await self.sms.close()
        if isinstance(self.cache, RedisCache):
            await self.cache.close()


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger
from portalauth.service.auth import CredentialStore, SessionManager
from portalauth.service.email import EmailService
from portalauth.service.guards import AttemptPolicy
from portalauth.service.passwords import PasswordHasher
from portalauth.service.sessions import KeyValueStore, RevocationLedger, SessionStore
from portalauth.service.tokens import TokenCodec
from portalauth.storage.memory import MemoryStore
from portalauth.storage.memory_cache import MemoryCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Explicitly constructed service graph shared by request handlers.

    Built once by the application factory (or a test) and stored on
    ``app.state.runtime``; nothing here is a module-level singleton.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        cache: Optional[KeyValueStore] = None,
        email: Optional[EmailService] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # fails fast when the signing secret is missing or short
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.store = store or self._build_store()
        self.cache = cache or self._build_cache()
        self.email = email or EmailService(
            resend_api_key=self.settings.resend_api_key,
            resend_api_url=self.settings.resend_api_url,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            app_name=self.settings.app_name,
            base_url=self.settings.app_base_url,
            support_email=self.settings.support_email,
            otp_ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.hasher = hasher or PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.sessions = SessionStore(self.cache, ttl_seconds=self.settings.session_ttl_seconds)
        self.revocations = RevocationLedger(self.cache)
        self.auth = SessionManager(
            self.store,
            self.codec,
            self.sessions,
            self.revocations,
            self.hasher,
            self.email,
            login_policy=AttemptPolicy.login(
                self.settings.login_max_attempts, self.settings.lockout_minutes
            ),
            otp_policy=AttemptPolicy.otp(
                self.settings.otp_max_attempts, self.settings.lockout_minutes
            ),
            otp_ttl_seconds=self.settings.otp_ttl_seconds,
            password_reset_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            anti_enumeration_floor_ms=self.settings.anti_enumeration_floor_ms,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_store(self) -> CredentialStore:
        if self.settings.use_memory_store or self.settings.test_mode:
            return MemoryStore()
        from portalauth.storage.postgres import PostgresStore

        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> KeyValueStore:
        if self.settings.test_mode:
            return MemoryCache()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            from portalauth.storage.redis_cache import RedisCache

            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, revocations and rate limits; "
                "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Sessions and rate limits are in-process only",
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()

from __future__ import annotations

import asyncio
import contextlib
import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional, Protocol, Tuple

from portalauth.logging import get_logger, hash_email
from portalauth.service.email import EmailService
from portalauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidOTPError,
    NotFoundError,
    OTPLockedError,
    SessionExpiredError,
    UnauthorizedError,
    ValidationError,
)
from portalauth.service.guards import AttemptPolicy
from portalauth.service.otp import code_matches, generate_code, hash_code
from portalauth.service.passwords import PasswordHasher
from portalauth.service.results import Outcome
from portalauth.service.sessions import RevocationLedger, SessionStore
from portalauth.service.tokens import ACCESS, REFRESH, TokenCodec, token_hash
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    BLOCKED_STATUSES,
    SELF_SERVICE_ROLES,
    AccountStatus,
    OTPRecord,
    PasswordResetToken,
    Principal,
    Role,
    SessionRecord,
    normalize_email,
)

logger = get_logger(__name__)

RESEND_MESSAGE = "If the account exists and is not yet verified, a new code has been sent"
RESET_REQUEST_MESSAGE = "If an account exists, a reset link has been sent to your email"


class CredentialStore(Protocol):
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        role: str,
        *,
        status: str = AccountStatus.INACTIVE.value,
        verified: bool = False,
    ) -> Principal: ...

    def get_user(self, user_id: str) -> Optional[Principal]: ...

    def get_user_by_email(self, email: str) -> Optional[Principal]: ...

    def register_login_failure(
        self, user_id: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]: ...

    def reset_login_failures(self, user_id: str) -> None: ...

    def record_login(self, user_id: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> Optional[Principal]: ...

    def update_user_status(self, user_id: str, status: str) -> Optional[Principal]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[Principal]: ...

    def save_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def replace_otp(self, email: str, code_hash: str, expires_at: datetime) -> OTPRecord: ...

    def get_otp(self, email: str) -> Optional[OTPRecord]: ...

    def get_otp_lock(self, email: str) -> Optional[datetime]: ...

    def register_otp_failure(
        self, email: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]: ...

    def delete_otps(self, email: str) -> None: ...

    def replace_password_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def consume_password_reset_token(self, token_hash: str) -> Optional[str]: ...

    def verify_connection(self) -> None: ...


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class SignupResult:
    user_id: str
    name: str
    email: str
    role: str
    verified: bool = False


@dataclass(frozen=True)
class SignInResult:
    principal: Principal
    tokens: Optional[IssuedTokens]
    session_established: bool = True

    @property
    def verified(self) -> bool:
        return self.principal.verified


@dataclass(frozen=True)
class RefreshedSession:
    principal: Principal
    tokens: IssuedTokens


class SessionManager:
    """Signup, verification, sign-in, rotation and sign-out for principals.

    Anticipated failures come back as ``Outcome.failure`` carrying a typed
    error; only unexpected store or codec faults raise.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        sessions: SessionStore,
        revocations: RevocationLedger,
        hasher: PasswordHasher,
        email: EmailService,
        *,
        login_policy: Optional[AttemptPolicy] = None,
        otp_policy: Optional[AttemptPolicy] = None,
        otp_ttl_seconds: int = 5 * 60,
        password_reset_ttl: timedelta = timedelta(minutes=15),
        anti_enumeration_floor_ms: int = 800,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations
        self.hasher = hasher
        self.email = email
        self.login_policy = login_policy or AttemptPolicy.login()
        self.otp_policy = otp_policy or AttemptPolicy.otp()
        self.otp_ttl = timedelta(seconds=otp_ttl_seconds)
        self.password_reset_ttl = password_reset_ttl
        self.anti_enumeration_floor = max(0, anti_enumeration_floor_ms) / 1000.0

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.asynccontextmanager
    async def _enumeration_floor(self) -> AsyncIterator[None]:
        """Pad the wrapped work up to a constant wall-clock duration."""
        started = time.monotonic()
        try:
            yield
        finally:
            remaining = self.anti_enumeration_floor - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    # -- signup and verification -------------------------------------------

    async def signup(
        self, name: str, email: str, password: str, role: str = Role.JOB_SEEKER.value
    ) -> Outcome[SignupResult]:
        email = normalize_email(email)
        try:
            requested_role = Role(role)
        except ValueError:
            return Outcome.failure(ValidationError("invalid role", detail={"field": "role"}))
        if requested_role not in SELF_SERVICE_ROLES:
            return Outcome.failure(ValidationError("invalid role", detail={"field": "role"}))
        if self.store.get_user_by_email(email):
            return Outcome.failure(ConflictError("email already registered", detail={"field": "email"}))

        password_hash = await self.hasher.hash(password)
        try:
            principal = self.store.create_user(
                name.strip(), email, password_hash, requested_role.value
            )
        except ConstraintViolation:
            return Outcome.failure(ConflictError("email already registered", detail={"field": "email"}))

        logger.info("signup_completed", user_id=principal.id, role=principal.role)
        await self._issue_verification_code(principal)
        return Outcome.success(
            SignupResult(
                user_id=principal.id,
                name=principal.name,
                email=principal.email,
                role=principal.role,
                verified=principal.verified,
            )
        )

    async def _issue_verification_code(self, principal: Principal) -> None:
        code = generate_code()
        self.store.replace_otp(
            principal.email, hash_code(principal.email, code), self._now() + self.otp_ttl
        )
        try:
            delivered = await self.email.deliver_verification_code(
                principal.email, principal.name, code
            )
        except Exception as exc:
            logger.error(
                "verification_email_failed",
                user_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("verification_email_not_delivered", user_id=principal.id)

    async def verify_email(self, email: str, code: str) -> Outcome[Principal]:
        email = normalize_email(email)
        now = self._now()
        locked_until = self.store.get_otp_lock(email)
        if self.otp_policy.is_locked(locked_until, now):
            return Outcome.failure(
                OTPLockedError(self.otp_policy.minutes_remaining(locked_until, now))
            )

        record = self.store.get_otp(email)
        if record is None:
            return Outcome.failure(InvalidOTPError())

        if record.expires_at <= now or not code_matches(record.code_hash, email, code):
            attempts, locked_until = self.store.register_otp_failure(
                email,
                threshold=self.otp_policy.max_attempts,
                lockout=self.otp_policy.lockout,
            )
            if attempts >= self.otp_policy.max_attempts and self.otp_policy.is_locked(locked_until):
                logger.warning(
                    "otp_lockout_triggered", email_hash=hash_email(email), attempts=attempts
                )
                return Outcome.failure(
                    OTPLockedError(self.otp_policy.minutes_remaining(locked_until))
                )
            logger.info("otp_mismatch", email_hash=hash_email(email), attempts=attempts)
            return Outcome.failure(InvalidOTPError())

        principal = self.store.get_user_by_email(email)
        if principal is None:
            self.store.delete_otps(email)
            return Outcome.failure(InvalidOTPError())
        verified = self.store.mark_email_verified(principal.id) or principal
        # no still-unexpired code may be replayed after success
        self.store.delete_otps(email)
        logger.info("email_verified", user_id=principal.id)
        return Outcome.success(verified)

    async def resend_verification(self, email: str) -> Outcome[str]:
        email = normalize_email(email)
        async with self._enumeration_floor():
            principal = self.store.get_user_by_email(email)
            if principal and not principal.verified:
                await self._issue_verification_code(principal)
                logger.info("verification_code_resent", user_id=principal.id)
            else:
                logger.info("verification_resend_skipped", email_hash=hash_email(email))
        return Outcome.success(RESEND_MESSAGE)

    # -- sign-in -------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Outcome[SignInResult]:
        email = normalize_email(email)
        principal = self.store.get_user_by_email(email)
        if principal is None:
            await self.hasher.dummy_verify(password)
            logger.info("signin_failed", email_hash=hash_email(email), reason="unknown_email")
            return Outcome.failure(UnauthorizedError())

        now = self._now()
        if self.login_policy.is_locked(principal.locked_until, now):
            return Outcome.failure(
                AccountLockedError(self.login_policy.minutes_remaining(principal.locked_until, now))
            )

        if not await self.hasher.verify(principal.password_hash, password):
            attempts, locked_until = self.store.register_login_failure(
                principal.id,
                threshold=self.login_policy.max_attempts,
                lockout=self.login_policy.lockout,
            )
            if attempts >= self.login_policy.max_attempts and self.login_policy.is_locked(locked_until):
                logger.warning(
                    "account_lockout_triggered", user_id=principal.id, attempts=attempts
                )
                return Outcome.failure(
                    AccountLockedError(self.login_policy.minutes_remaining(locked_until))
                )
            logger.info("signin_failed", user_id=principal.id, reason="bad_password", attempts=attempts)
            return Outcome.failure(UnauthorizedError())

        if principal.failed_login_attempts or principal.locked_until:
            self.store.reset_login_failures(principal.id)
        if principal.status in BLOCKED_STATUSES or (
            principal.verified and principal.status != AccountStatus.ACTIVE.value
        ):
            logger.info("signin_refused_disabled", user_id=principal.id, status=principal.status)
            return Outcome.failure(AccountDisabledError(principal.status))

        self.store.record_login(principal.id)
        tokens = self._issue_pair(principal)
        try:
            await self.sessions.save(
                SessionRecord.from_claims(principal.claims(), token_hash(tokens.refresh_token))
            )
        except Exception as exc:
            logger.critical(
                "session_persist_failed",
                user_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Outcome.success(
                SignInResult(principal=principal, tokens=None, session_established=False)
            )
        logger.info("signin_succeeded", user_id=principal.id, verified=principal.verified)
        return Outcome.success(SignInResult(principal=principal, tokens=tokens))

    def _issue_pair(self, principal: Principal) -> IssuedTokens:
        return IssuedTokens(
            access_token=self.codec.issue_access(principal.claims()),
            refresh_token=self.codec.issue_refresh(principal.id),
        )

    # -- rotation ------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: Optional[str]) -> Optional[RefreshedSession]:
        """Rotate a refresh token. Returns None on any failure."""
        claims = self.codec.verify(refresh_token).of_type(REFRESH)
        if claims is None:
            return None
        user_id = str(claims["userId"])
        presented_hash = token_hash(refresh_token)

        try:
            record = await self.sessions.load(user_id)
        except Exception as exc:
            logger.warning("refresh_session_lookup_failed", user_id=user_id, error=str(exc))
            return None
        if record is None:
            return None

        if not hmac.compare_digest(record.token_hash, presented_hash):
            logger.warning("refresh_token_mismatch", user_id=user_id)
            await self._invalidate(user_id, reason="refresh_token_mismatch")
            return None

        principal = self.store.get_user(user_id)
        if principal is None or principal.status in BLOCKED_STATUSES:
            await self._invalidate(user_id, reason="principal_unavailable")
            return None

        remaining = max(1, int(float(claims["exp"]) - time.time()))
        try:
            claimed = await self.revocations.claim(user_id, presented_hash, remaining)
        except Exception as exc:
            logger.warning("refresh_revocation_unavailable", user_id=user_id, error=str(exc))
            return None
        if not claimed:
            logger.warning("refresh_token_reuse_detected", user_id=user_id)
            await self._invalidate(user_id, reason="refresh_token_reuse")
            return None

        tokens = self._issue_pair(principal)
        try:
            await self.sessions.save(
                SessionRecord.from_claims(principal.claims(), token_hash(tokens.refresh_token))
            )
        except Exception as exc:
            logger.error("refresh_session_persist_failed", user_id=user_id, error=str(exc))
            return None
        logger.info("refresh_token_rotated", user_id=user_id)
        return RefreshedSession(principal=principal, tokens=tokens)

    async def _invalidate(self, user_id: str, *, reason: str) -> None:
        try:
            await self.sessions.delete(user_id)
        except Exception as exc:
            logger.error(
                "session_invalidation_failed", user_id=user_id, reason=reason, error=str(exc)
            )
            return
        logger.info("session_invalidated", user_id=user_id, reason=reason)

    async def sign_out(self, user_id: str) -> Outcome[None]:
        await self.sessions.delete(user_id)
        logger.info("signout_completed", user_id=user_id)
        return Outcome.success(None)

    # -- point-of-use checks -------------------------------------------------

    def authenticate(self, access_token: Optional[str]) -> Outcome[Principal]:
        """Resolve an access token to the current stored principal."""
        claims = self.codec.verify(access_token).of_type(ACCESS)
        if claims is None:
            return Outcome.failure(SessionExpiredError())
        principal = self.store.get_user(str(claims["userId"]))
        if principal is None:
            return Outcome.failure(UnauthorizedError("authentication required"))
        if principal.status in BLOCKED_STATUSES:
            return Outcome.failure(AccountDisabledError(principal.status))
        return Outcome.success(principal)

    def subject_of(self, token: Optional[str]) -> Optional[str]:
        """Principal id from any valid token, used where only identity matters."""
        verification = self.codec.verify(token)
        if not verification.ok:
            return None
        return str(verification.claims["userId"])

    @staticmethod
    def require_verified(principal: Principal) -> Outcome[Principal]:
        if not principal.verified:
            return Outcome.failure(ForbiddenError("email verification required"))
        return Outcome.success(principal)

    @staticmethod
    def require_roles(principal: Principal, roles: Iterable[str]) -> Outcome[Principal]:
        allowed = {Role(r).value for r in roles}
        if principal.role not in allowed:
            return Outcome.failure(
                ForbiddenError("insufficient permissions", detail={"required": sorted(allowed)})
            )
        return Outcome.success(principal)

    # -- password reset ------------------------------------------------------

    async def request_password_reset(self, email: str) -> Outcome[str]:
        email = normalize_email(email)
        async with self._enumeration_floor():
            principal = self.store.get_user_by_email(email)
            if principal and principal.status not in BLOCKED_STATUSES:
                token = secrets.token_urlsafe(32)
                self.store.replace_password_reset_token(
                    email, token_hash(token), self._now() + self.password_reset_ttl
                )
                try:
                    delivered = await self.email.deliver_password_reset(email, token)
                except Exception as exc:
                    logger.error(
                        "password_reset_email_failed",
                        user_id=principal.id,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    delivered = False
                logger.info("password_reset_requested", user_id=principal.id, delivered=delivered)
            else:
                logger.info("password_reset_skipped", email_hash=hash_email(email))
        return Outcome.success(RESET_REQUEST_MESSAGE)

    async def reset_password(self, token: str, new_password: str) -> Outcome[None]:
        email = self.store.consume_password_reset_token(token_hash(token))
        principal = self.store.get_user_by_email(email) if email else None
        if principal is None:
            logger.warning("password_reset_invalid_token")
            return Outcome.failure(BadRequestError("invalid or expired reset link"))
        self.store.save_password_hash(principal.id, await self.hasher.hash(new_password))
        self.store.reset_login_failures(principal.id)
        await self._invalidate(principal.id, reason="password_reset")
        logger.info("password_reset_completed", user_id=principal.id)
        return Outcome.success(None)

    # -- administration ------------------------------------------------------

    async def set_account_status(self, principal_id: str, status: str) -> Outcome[Principal]:
        try:
            new_status = AccountStatus(status)
        except ValueError:
            return Outcome.failure(ValidationError("invalid status", detail={"field": "status"}))
        principal = self.store.update_user_status(principal_id, new_status.value)
        if principal is None:
            return Outcome.failure(NotFoundError("principal not found"))
        if new_status != AccountStatus.ACTIVE:
            await self._invalidate(principal_id, reason=f"status_{new_status.value}")
        logger.info("account_status_changed", user_id=principal_id, status=new_status.value)
        return Outcome.success(principal)

    async def unlock_account(self, principal_id: str) -> Outcome[Principal]:
        principal = self.store.get_user(principal_id)
        if principal is None:
            return Outcome.failure(NotFoundError("principal not found"))
        self.store.reset_login_failures(principal_id)
        logger.info("account_unlocked", user_id=principal_id)
        return Outcome.success(self.store.get_user(principal_id) or principal)

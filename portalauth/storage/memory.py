from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    AccountStatus,
    OTPRecord,
    PasswordResetToken,
    Principal,
    normalize_email,
)


class MemoryStore:
    """In-process credential store used for tests and local development.

    Every read-modify-write runs under one re-entrant lock so counter
    increments are atomic per identifier, matching the row-level
    guarantees of the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Principal] = {}
        self.otps: Dict[str, OTPRecord] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def verify_connection(self) -> None:
        return None

    # -- principals --------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        role: str,
        *,
        status: str = AccountStatus.INACTIVE.value,
        verified: bool = False,
    ) -> Principal:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = Principal.new(
                name, normalized, password_hash, role, status=status, verified=verified
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[Principal]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def register_login_failure(
        self, user_id: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold:
                user.locked_until = self._now() + lockout
            return user.failed_login_attempts, user.locked_until

    def reset_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.failed_login_attempts = 0
                user.locked_until = None

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = self._now()

    def mark_email_verified(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.verified = True
            user.verified_at = self._now()
            user.status = AccountStatus.ACTIVE.value
            return replace(user)

    def update_user_status(self, user_id: str, status: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    def save_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash

    # -- verification codes ------------------------------------------------

    def replace_otp(self, email: str, code_hash: str, expires_at: datetime) -> OTPRecord:
        normalized = normalize_email(email)
        with self._data_lock:
            previous = self.otps.get(normalized)
            carried_lock = None
            if previous and previous.locked_until and previous.locked_until > self._now():
                carried_lock = previous.locked_until
            record = OTPRecord(
                id=str(uuid.uuid4()),
                email=normalized,
                code_hash=code_hash,
                expires_at=expires_at,
                attempts=previous.attempts if carried_lock else 0,
                locked_until=carried_lock,
            )
            self.otps[normalized] = record
            return replace(record)

    def get_otp(self, email: str) -> Optional[OTPRecord]:
        with self._data_lock:
            record = self.otps.get(normalize_email(email))
            return replace(record) if record else None

    def get_otp_lock(self, email: str) -> Optional[datetime]:
        with self._data_lock:
            record = self.otps.get(normalize_email(email))
            if record and record.locked_until and record.locked_until > self._now():
                return record.locked_until
            return None

    def register_otp_failure(
        self, email: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        with self._data_lock:
            record = self.otps.get(normalize_email(email))
            if not record:
                return 0, None
            record.attempts += 1
            if record.attempts >= threshold:
                record.locked_until = self._now() + lockout
            return record.attempts, record.locked_until

    def delete_otps(self, email: str) -> None:
        with self._data_lock:
            self.otps.pop(normalize_email(email), None)

    # -- password reset ----------------------------------------------------

    def replace_password_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        normalized = normalize_email(email)
        with self._data_lock:
            for key, existing in list(self.reset_tokens.items()):
                if existing.email == normalized:
                    self.reset_tokens.pop(key, None)
            token = PasswordResetToken(
                id=str(uuid.uuid4()),
                email=normalized,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.reset_tokens[token_hash] = token
            return replace(token)

    def consume_password_reset_token(self, token_hash: str) -> Optional[str]:
        """Remove the token and return its email if it was still valid."""
        with self._data_lock:
            token = self.reset_tokens.pop(token_hash, None)
            if not token or token.expires_at <= self._now():
                return None
            return token.email

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    EMPLOYER = "employer"
    JOB_SEEKER = "job_seeker"


SELF_SERVICE_ROLES = frozenset({Role.EMPLOYER, Role.JOB_SEEKER})


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


# Statuses that refuse sign-in and refresh even with valid credentials
BLOCKED_STATUSES = frozenset({AccountStatus.SUSPENDED, AccountStatus.DEACTIVATED})


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Principal:
    id: str
    name: str
    email: str
    password_hash: Optional[str] = None
    role: str = Role.JOB_SEEKER.value
    status: str = AccountStatus.INACTIVE.value
    verified: bool = False
    verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        password_hash: Optional[str],
        role: str = Role.JOB_SEEKER.value,
        *,
        status: str = AccountStatus.INACTIVE.value,
        verified: bool = False,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=normalize_email(email),
            password_hash=password_hash,
            role=role,
            status=status,
            verified=verified,
        )

    def claims(self) -> Dict[str, Any]:
        """Identity snapshot carried in access tokens and session records."""
        return {
            "userId": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "verified": self.verified,
        }


@dataclass
class OTPRecord:
    id: str
    email: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PasswordResetToken:
    id: str
    email: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class SessionRecord:
    """Current session for a principal, kept in the key-value store."""

    user_id: str
    email: str
    name: str
    role: str
    verified: bool
    token_hash: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any], token_hash: str) -> "SessionRecord":
        return cls(
            user_id=claims["userId"],
            email=claims["email"],
            name=claims["name"],
            role=claims["role"],
            verified=bool(claims["verified"]),
            token_hash=token_hash,
        )

    def to_json(self) -> str:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)

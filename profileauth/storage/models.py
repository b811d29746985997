from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

_DEVICE_INFO_MAX_LENGTH = 256


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_security_stamp() -> str:
    """Return a fresh opaque security stamp (32 hex chars)."""
    return uuid.UUID(bytes=secrets.token_bytes(16)).hex


def truncate_device_info(device_info: Optional[str]) -> Optional[str]:
    if not device_info:
        return None
    return device_info[:_DEVICE_INFO_MAX_LENGTH]


class AccountStatus(str, Enum):
    ACTIVE = "active"
    PENDING_DELETION = "pending_deletion"
    BANNED = "banned"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class AccountType(str, Enum):
    """Kind of principal behind an account; only some may log in directly."""

    PERSONAL = "personal"
    ORGANIZATION = "organization"
    APPLICATION = "application"
    SYSTEM = "system"


class AccountRole(str, Enum):
    ROOT = "root"
    ADMIN = "admin"
    USER = "user"


class VerificationPurpose(str, Enum):
    """What a verification code proves possession for."""

    REGISTRATION = "registration"
    LOGIN = "login"
    RESET_PASSWORD = "reset_password"
    VERIFY_EMAIL = "verify_email"
    SUDO = "sudo"


@dataclass
class Account:
    id: str
    account_name: str
    primary_email: Optional[str] = None
    type: AccountType = AccountType.PERSONAL
    role: AccountRole = AccountRole.USER
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    last_login: Optional[datetime] = None


@dataclass
class Credential:
    account_id: str
    password_hash: str
    password_salt: str
    security_stamp: str = field(default_factory=new_security_stamp)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshToken:
    token: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class VerificationCode:
    identifier: str
    code: str
    purpose: VerificationPurpose
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

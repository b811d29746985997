from __future__ import annotations

import asyncio
import secrets
import string
from datetime import timedelta
from typing import TYPE_CHECKING, Optional, Protocol

from profileauth.clock import Clock, SystemClock
from profileauth.config import Settings
from profileauth.logging import get_logger, redact_email
from profileauth.service.errors import (
    InvalidOrExpiredTokenError,
    NotFoundError,
    NotifierUnavailableError,
)
from profileauth.storage.models import Account, VerificationCode, VerificationPurpose

if TYPE_CHECKING:
    from profileauth.service.sessions import SessionManager

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 9


class Notifier(Protocol):
    @property
    def is_enabled(self) -> bool: ...

    def send_verification_message(self, target: str, display_name: str, code: str) -> bool: ...


class CodeStore(Protocol):
    def replace_verification_code(self, record: VerificationCode) -> None: ...

    def take_verification_code(
        self, identifier: str, purpose: VerificationPurpose, code: str
    ) -> Optional[VerificationCode]: ...

    def find_account_by_login(self, identifier: str) -> Optional[Account]: ...


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class VerificationCodeManager:
    """Issues and redeems single-use out-of-band verification codes.

    At most one code is live per (identifier, purpose); issuing a new one
    replaces the old in the same store call. Delivery happens after the code is
    stored and never inside a store transaction.
    """

    def __init__(
        self,
        store: CodeStore,
        notifier: Notifier,
        *,
        ttl: timedelta = timedelta(minutes=15),
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CodeStore,
        notifier: Notifier,
        *,
        clock: Optional[Clock] = None,
    ) -> "VerificationCodeManager":
        return cls(
            store,
            notifier,
            ttl=timedelta(minutes=settings.verification_code_ttl_minutes),
            clock=clock,
        )

    async def generate_and_send(
        self,
        identifier: str,
        purpose: VerificationPurpose,
        display_name: Optional[str] = None,
    ) -> bool:
        if not self.notifier.is_enabled:
            self.logger.warning("verification_notifier_disabled", purpose=str(purpose))
            raise NotifierUnavailableError()

        purpose = VerificationPurpose(purpose)
        now = self.clock.now()
        record = VerificationCode(
            identifier=identifier,
            code=generate_code(),
            purpose=purpose,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.replace_verification_code(record)

        try:
            delivered = await asyncio.to_thread(
                self.notifier.send_verification_message,
                identifier,
                display_name or identifier,
                record.code,
            )
        except Exception as exc:
            self.logger.error(
                "verification_delivery_failed",
                target=redact_email(identifier),
                purpose=purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info(
            "verification_code_issued",
            target=redact_email(identifier),
            purpose=purpose.value,
            delivered=bool(delivered),
        )
        return bool(delivered)

    async def validate(
        self, identifier: str, purpose: VerificationPurpose, code: Optional[str]
    ) -> bool:
        normalized = normalize_code(code)
        if not normalized or not identifier:
            return False
        purpose = VerificationPurpose(purpose)
        record = self.store.take_verification_code(identifier, purpose, normalized)
        if record is None:
            self.logger.info(
                "verification_code_rejected",
                target=redact_email(identifier),
                purpose=purpose.value,
                reason="not_found",
            )
            return False
        if record.is_expired(self.clock.now()):
            # Row is already gone; expired codes are dropped on first touch
            self.logger.info(
                "verification_code_rejected",
                target=redact_email(identifier),
                purpose=purpose.value,
                reason="expired",
            )
            return False
        self.logger.info(
            "verification_code_accepted",
            target=redact_email(identifier),
            purpose=purpose.value,
        )
        return True

    async def reset_password(
        self,
        identifier: str,
        code: str,
        new_password: str,
        sessions: "SessionManager",
    ) -> int:
        """Redeem a password-reset code and install ``new_password``.

        Returns the number of sessions that were signed out.
        """
        account = self.store.find_account_by_login(identifier)
        if not account or not account.primary_email:
            raise NotFoundError("account not found")
        accepted = await self.validate(
            account.primary_email, VerificationPurpose.RESET_PASSWORD, code
        )
        if not accepted:
            raise InvalidOrExpiredTokenError("Invalid or expired verification code.")
        return await sessions.set_password(account.id, new_password)


__all__ = [
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "CodeStore",
    "Notifier",
    "VerificationCodeManager",
    "generate_code",
    "normalize_code",
]

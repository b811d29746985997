from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from profileauth.clock import Clock, SystemClock
from profileauth.logging import get_logger
from profileauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    LoginNotSupportedError,
    NotFoundError,
    ValidationError,
)
from profileauth.service.hashing import CredentialHasher
from profileauth.service.tokens import TokenIssuer
from profileauth.storage.errors import ConstraintViolation
from profileauth.storage.models import (
    Account,
    AccountStatus,
    AccountType,
    Credential,
    RefreshToken,
    new_security_stamp,
    truncate_device_info,
)

_REVOKING_STATUSES = frozenset({AccountStatus.BANNED, AccountStatus.SUSPENDED})
_NON_INTERACTIVE_TYPES = frozenset({AccountType.ORGANIZATION, AccountType.APPLICATION})


class SessionStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def find_account_by_login(self, identifier: str) -> Optional[Account]: ...

    def update_last_login(self, account_id: str, when: datetime) -> None: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]: ...

    def save_credential(
        self, account_id: str, password_hash: str, password_salt: str, *, now: datetime
    ) -> Credential: ...

    def get_credential(self, account_id: str) -> Optional[Credential]: ...

    def insert_refresh_token(self, record: RefreshToken) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]: ...

    def revoke_account_tokens(
        self, account_id: str, security_stamp: str, *, now: datetime
    ) -> int: ...

    def reset_credential(
        self,
        account_id: str,
        password_hash: str,
        password_salt: str,
        security_stamp: str,
        *,
        now: datetime,
    ) -> int: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class AccessPrincipal:
    """Identity carried by an access token that passed every check."""

    account_id: str
    account_name: str
    role: str
    status: AccountStatus
    expires_at: datetime


class SessionManager:
    """Login, refresh-token rotation and account-wide revocation.

    Store calls are synchronous; argon2 work is pushed to a worker thread so the
    event loop keeps serving other requests while a password is checked.
    """

    def __init__(
        self,
        store: SessionStore,
        hasher: CredentialHasher,
        issuer: TokenIssuer,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    async def login(
        self, identifier: str, password: str, device_info: Optional[str] = None
    ) -> TokenPair:
        account = self.store.find_account_by_login(identifier.strip()) if identifier else None
        credential = self.store.get_credential(account.id) if account else None
        if not account or not credential:
            await asyncio.to_thread(self.hasher.burn_dummy, password or "")
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()

        verified = await asyncio.to_thread(
            self.hasher.verify_password,
            password or "",
            credential.password_hash,
            credential.password_salt,
        )
        if not verified:
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()
        if account.type in _NON_INTERACTIVE_TYPES:
            self.logger.info("login_blocked", account_id=account.id, account_type=account.type.value)
            raise LoginNotSupportedError()
        if account.status == AccountStatus.BANNED:
            self.logger.warning("login_blocked", account_id=account.id, status=account.status.value)
            raise AccountLockedError()

        now = self.clock.now()
        self.store.update_last_login(account.id, now)
        pair, record = self._issue_pair(account, credential, device_info)
        self.store.insert_refresh_token(record)
        self.logger.info(
            "login_succeeded", account_id=account.id, status=account.status.value
        )
        return pair

    async def refresh(
        self, access_token: Optional[str], refresh_token: str
    ) -> TokenPair:
        record = self.store.get_refresh_token(refresh_token) if refresh_token else None
        if record is None or record.is_expired(self.clock.now()):
            self.logger.info("refresh_rejected", reason="missing_or_expired")
            raise InvalidOrExpiredTokenError()

        if access_token:
            # Signature must hold; expiry is expected to have passed already
            claims = self.issuer.decode_access_token(access_token, verify_exp=False)
            if claims.account_id != record.account_id:
                self.logger.warning(
                    "refresh_rejected", reason="subject_mismatch", account_id=record.account_id
                )
                raise InvalidOrExpiredTokenError()

        account = self.store.get_account(record.account_id)
        credential = self.store.get_credential(record.account_id)
        if not account or not credential:
            self.logger.warning("refresh_rejected", reason="account_missing", account_id=record.account_id)
            raise InvalidOrExpiredTokenError()
        if account.type in _NON_INTERACTIVE_TYPES:
            self.logger.info("refresh_blocked", account_id=account.id, account_type=account.type.value)
            raise LoginNotSupportedError()
        if account.status == AccountStatus.BANNED:
            self.logger.warning("refresh_blocked", account_id=account.id)
            raise AccountLockedError("Account access has been revoked.")

        pair, new_record = self._issue_pair(account, credential, record.device_info)
        if not self.store.rotate_refresh_token(refresh_token, new_record):
            self.logger.warning("refresh_rejected", reason="already_rotated", account_id=account.id)
            raise InvalidOrExpiredTokenError()
        self.logger.info("refresh_rotated", account_id=account.id)
        return pair

    async def logout(self, refresh_token: str) -> None:
        if not refresh_token:
            return
        removed = self.store.delete_refresh_token(refresh_token)
        self.logger.info("logout", removed=removed)

    async def revoke_all(self, account_id: str) -> int:
        try:
            removed = self.store.revoke_account_tokens(
                account_id, new_security_stamp(), now=self.clock.now()
            )
        except ConstraintViolation as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc
        self.logger.info("sessions_revoked", account_id=account_id, removed=removed)
        return removed

    async def authenticate(self, access_token: str) -> AccessPrincipal:
        """Verify an access token and check it against the stored security stamp."""
        if not access_token:
            raise InvalidOrExpiredTokenError("Invalid or expired access token.")
        claims = self.issuer.decode_access_token(access_token)
        credential = self.store.get_credential(claims.account_id)
        account = self.store.get_account(claims.account_id)
        if not credential or not account or credential.security_stamp != claims.security_stamp:
            self.logger.info("access_token_revoked", account_id=claims.account_id)
            raise InvalidOrExpiredTokenError("Invalid or expired access token.")
        if account.status == AccountStatus.BANNED:
            raise AccountLockedError()
        return AccessPrincipal(
            account_id=account.id,
            account_name=account.account_name,
            role=claims.role,
            status=account.status,
            expires_at=claims.expires_at,
        )

    async def register_credential(self, account_id: str, password: str) -> Credential:
        if not password:
            raise ValidationError("password is required")
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if self.store.get_credential(account_id):
            raise ConflictError("credential already exists", detail={"account_id": account_id})
        password_hash, password_salt = await asyncio.to_thread(self.hasher.hash_password, password)
        credential = self.store.save_credential(
            account_id, password_hash, password_salt, now=self.clock.now()
        )
        self.logger.info("credential_registered", account_id=account_id)
        return credential

    async def change_password(
        self, account_id: str, old_password: str, new_password: str
    ) -> int:
        credential = self.store.get_credential(account_id)
        if not credential:
            raise InvalidCredentialsError()
        verified = await asyncio.to_thread(
            self.hasher.verify_password,
            old_password or "",
            credential.password_hash,
            credential.password_salt,
        )
        if not verified:
            self.logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError()
        return await self.set_password(account_id, new_password)

    async def set_password(self, account_id: str, new_password: str) -> int:
        """Store a new password and sign the account out everywhere.

        The credential, the security stamp and the refresh tokens change in a
        single store call. Returns the number of sessions signed out.
        """
        if not new_password:
            raise ValidationError("password is required")
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        password_hash, password_salt = await asyncio.to_thread(
            self.hasher.hash_password, new_password
        )
        try:
            removed = self.store.reset_credential(
                account_id,
                password_hash,
                password_salt,
                new_security_stamp(),
                now=self.clock.now(),
            )
        except ConstraintViolation as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc
        self.logger.info("password_changed", account_id=account_id, removed=removed)
        return removed

    async def set_account_status(self, account_id: str, status: AccountStatus) -> Account:
        account = self.store.set_account_status(account_id, AccountStatus(status))
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.logger.info("account_status_changed", account_id=account_id, status=account.status.value)
        if account.status in _REVOKING_STATUSES:
            await self.revoke_all(account_id)
        return account

    async def list_sessions(self, account_id: str) -> List[RefreshToken]:
        now = self.clock.now()
        return [r for r in self.store.list_refresh_tokens(account_id) if not r.is_expired(now)]

    def _issue_pair(
        self, account: Account, credential: Credential, device_info: Optional[str]
    ) -> Tuple[TokenPair, RefreshToken]:
        access_token, access_expires_at = self.issuer.issue_access_token(
            account, credential.security_stamp
        )
        record = RefreshToken(
            token=self.issuer.issue_refresh_token(),
            account_id=account.id,
            created_at=self.clock.now(),
            expires_at=self.issuer.refresh_token_expiry(),
            device_info=truncate_device_info(device_info),
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=record.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
        )
        return pair, record


__all__ = ["AccessPrincipal", "SessionManager", "SessionStore", "TokenPair"]

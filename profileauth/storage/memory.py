from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from profileauth.logging import get_logger
from profileauth.storage.errors import ConstraintViolation
from profileauth.storage.models import (
    Account,
    AccountRole,
    AccountStatus,
    AccountType,
    Credential,
    RefreshToken,
    VerificationCode,
    VerificationPurpose,
    new_security_stamp,
)


class MemoryStore:
    """In-process store for accounts, credentials, refresh tokens and codes.

    Every public method takes ``_data_lock`` for its whole body, so each call is
    one atomic step from the point of view of concurrent callers. Records are
    copied on the way in and out; callers never share mutable state with the
    store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Credential] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # (identifier, purpose) -> code record
        self.verification_codes: Dict[tuple[str, VerificationPurpose], VerificationCode] = {}
        # RLock so cascade helpers can nest inside public methods
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self,
        account_name: str,
        primary_email: Optional[str] = None,
        *,
        role: AccountRole = AccountRole.USER,
        status: AccountStatus = AccountStatus.ACTIVE,
        account_type: AccountType = AccountType.PERSONAL,
    ) -> Account:
        """Create an account.

        Names and primary emails share one login namespace: neither may equal
        an existing account's name or email.
        """
        with self._data_lock:
            for existing in self.accounts.values():
                taken = {existing.account_name, existing.primary_email}
                if account_name in taken:
                    raise ConstraintViolation(
                        "account name already exists", {"field": "account_name"}
                    )
                if primary_email and primary_email in taken:
                    raise ConstraintViolation(
                        "email already exists", {"field": "primary_email"}
                    )
            account = Account(
                id=str(uuid.uuid4()),
                account_name=account_name,
                primary_email=primary_email,
                type=AccountType(account_type),
                role=AccountRole(role),
                status=AccountStatus(status),
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def find_account_by_login(self, identifier: str) -> Optional[Account]:
        """Resolve a login name or primary email; a name match wins."""
        with self._data_lock:
            by_email = None
            for account in self.accounts.values():
                if account.account_name == identifier:
                    return replace(account)
                if by_email is None and account.primary_email == identifier:
                    by_email = account
            return replace(by_email) if by_email else None

    def update_last_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login = when

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = AccountStatus(status)
            return replace(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.credentials.pop(account_id, None)
            self._drop_account_tokens(account_id)
            return True

    # credentials
    def save_credential(
        self,
        account_id: str,
        password_hash: str,
        password_salt: str,
        *,
        now: datetime,
    ) -> Credential:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credential", {"account_id": account_id}
                )
            existing = self.credentials.get(account_id)
            credential = Credential(
                account_id=account_id,
                password_hash=password_hash,
                password_salt=password_salt,
                security_stamp=existing.security_stamp if existing else new_security_stamp(),
                updated_at=now,
            )
            self.credentials[account_id] = credential
            return replace(credential)

    def get_credential(self, account_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(account_id)
            return replace(credential) if credential else None

    # refresh tokens
    def insert_refresh_token(self, record: RefreshToken) -> None:
        with self._data_lock:
            self._insert_token(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        """Consume ``old_token`` and insert ``new_record`` as one step.

        Returns False (and inserts nothing) when the old token is already gone.
        """
        with self._data_lock:
            if old_token not in self.refresh_tokens:
                return False
            if new_record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens.pop(old_token)
            self._insert_token(new_record)
            return True

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [
                replace(r) for r in self.refresh_tokens.values() if r.account_id == account_id
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def revoke_account_tokens(
        self, account_id: str, security_stamp: str, *, now: datetime
    ) -> int:
        """Delete every refresh token of the account and install a new stamp."""
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            removed = self._drop_account_tokens(account_id)
            credential = self.credentials.get(account_id)
            if credential:
                credential.security_stamp = security_stamp
                credential.updated_at = now
            return removed

    def reset_credential(
        self,
        account_id: str,
        password_hash: str,
        password_salt: str,
        security_stamp: str,
        *,
        now: datetime,
    ) -> int:
        """Install a new password and stamp and drop every refresh token.

        Returns the number of refresh tokens removed.
        """
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            self.credentials[account_id] = Credential(
                account_id=account_id,
                password_hash=password_hash,
                password_salt=password_salt,
                security_stamp=security_stamp,
                updated_at=now,
            )
            return self._drop_account_tokens(account_id)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [t for t, r in self.refresh_tokens.items() if r.expires_at < now]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            return len(stale)

    # verification codes
    def replace_verification_code(self, record: VerificationCode) -> None:
        """Store ``record`` as the only code for its (identifier, purpose) pair."""
        with self._data_lock:
            key = (record.identifier, VerificationPurpose(record.purpose))
            self.verification_codes[key] = replace(record)

    def take_verification_code(
        self, identifier: str, purpose: VerificationPurpose, code: str
    ) -> Optional[VerificationCode]:
        """Delete and return the matching code, or None when nothing matches."""
        with self._data_lock:
            key = (identifier, VerificationPurpose(purpose))
            record = self.verification_codes.get(key)
            if record is None or record.code != code:
                return None
            return self.verification_codes.pop(key)

    def delete_verification_codes(
        self, identifier: str, purpose: Optional[VerificationPurpose] = None
    ) -> int:
        with self._data_lock:
            stale = [
                key
                for key in self.verification_codes
                if key[0] == identifier and (purpose is None or key[1] == purpose)
            ]
            for key in stale:
                self.verification_codes.pop(key, None)
            return len(stale)

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key for key, rec in self.verification_codes.items() if rec.expires_at < now
            ]
            for key in stale:
                self.verification_codes.pop(key, None)
            return len(stale)

    def _insert_token(self, record: RefreshToken) -> None:
        if record.token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        if record.account_id not in self.accounts:
            raise ConstraintViolation(
                "refresh token account missing", {"account_id": record.account_id}
            )
        self.refresh_tokens[record.token] = replace(record)

    def _drop_account_tokens(self, account_id: str) -> int:
        stale = [t for t, r in self.refresh_tokens.items() if r.account_id == account_id]
        for token in stale:
            self.refresh_tokens.pop(token, None)
        return len(stale)

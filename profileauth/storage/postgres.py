from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from profileauth.logging import get_logger
from profileauth.storage.errors import ConstraintViolation, StorageUnavailable
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        account_name TEXT NOT NULL UNIQUE,
        primary_email TEXT UNIQUE,
        type TEXT NOT NULL DEFAULT 'personal',
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    "ALTER TABLE account ADD COLUMN IF NOT EXISTS type TEXT NOT NULL DEFAULT 'personal'",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL,
        security_stamp TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        device_info VARCHAR(256)
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        identifier TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (identifier, purpose)
    )
    """,
    "CREATE INDEX IF NOT EXISTS verification_code_expires_idx ON verification_code (expires_at)",
)


def _account_from_row(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        account_name=row["account_name"],
        primary_email=row.get("primary_email"),
        type=AccountType(row.get("type") or AccountType.PERSONAL.value),
        role=AccountRole(row.get("role") or AccountRole.USER.value),
        status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
        created_at=row["created_at"],
        last_login=row.get("last_login"),
    )


def _credential_from_row(row: Dict[str, Any]) -> Credential:
    return Credential(
        account_id=str(row["account_id"]),
        password_hash=row["password_hash"],
        password_salt=row["password_salt"],
        security_stamp=row["security_stamp"],
        updated_at=row["updated_at"],
    )


def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token=row["token"],
        account_id=str(row["account_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        device_info=row.get("device_info"),
    )


def _is_uuid(value: Any) -> bool:
    """Account ids are UUID columns; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _code_from_row(row: Dict[str, Any]) -> VerificationCode:
    return VerificationCode(
        identifier=row["identifier"],
        code=row["code"],
        purpose=VerificationPurpose(row["purpose"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


class PostgresStore:
    """Postgres-backed store for accounts, credentials, refresh tokens and codes.

    Multi-statement operations (rotation, revoke-all, code replacement) run in
    a single transaction so concurrent callers observe them as one step.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.IntegrityError:
            # Callers map these to ConstraintViolation
            raise
        except (psycopg.Error, PoolTimeout) as exc:
            self.logger.error("storage_unavailable", error=str(exc), error_type=type(exc).__name__)
            raise StorageUnavailable(detail={"reason": type(exc).__name__}) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                clash = conn.execute(
                    """
                    SELECT account_name, primary_email FROM account
                    WHERE account_name IN (%s, %s) OR primary_email IN (%s, %s)
                    LIMIT 1
                    """,
                    (account_name, primary_email, account_name, primary_email),
                ).fetchone()
                if clash:
                    field_name = (
                        "account_name" if account_name in clash.values() else "primary_email"
                    )
                    raise ConstraintViolation("account already exists", {"field": field_name})
                row = conn.execute(
                    """
                    INSERT INTO account (id, account_name, primary_email, type, role, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        account_name,
                        primary_email,
                        AccountType(account_type).value,
                        AccountRole(role).value,
                        AccountStatus(status).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("account already exists", {"field": "account_name"})
        return _account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return _account_from_row(row) if row else None

    def find_account_by_login(self, identifier: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account
                WHERE account_name = %s OR primary_email = %s
                ORDER BY (account_name = %s) DESC
                LIMIT 1
                """,
                (identifier, identifier, identifier),
            ).fetchone()
        return _account_from_row(row) if row else None

    def update_last_login(self, account_id: str, when: datetime) -> None:
        if not _is_uuid(account_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login = %s WHERE id = %s", (when, account_id)
            )

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET status = %s WHERE id = %s RETURNING *",
                (AccountStatus(status).value, account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        if not _is_uuid(account_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return row is not None

    # credentials
    def save_credential(
        self,
        account_id: str,
        password_hash: str,
        password_salt: str,
        *,
        now: datetime,
    ) -> Credential:
        if not _is_uuid(account_id):
            raise ConstraintViolation(
                "account not found for credential", {"account_id": account_id}
            )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_salt, security_stamp, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_salt = EXCLUDED.password_salt,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (account_id, password_hash, password_salt, new_security_stamp(), now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credential", {"account_id": account_id}
            )
        return _credential_from_row(row)

    def get_credential(self, account_id: str) -> Optional[Credential]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        return _credential_from_row(row) if row else None

    # refresh tokens
    def insert_refresh_token(self, record: RefreshToken) -> None:
        if not _is_uuid(record.account_id):
            raise ConstraintViolation(
                "refresh token account missing", {"account_id": record.account_id}
            )
        try:
            with self._connect() as conn:
                self._insert_token(conn, record)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(
                "refresh token rejected", {"reason": type(exc).__name__}
            )

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        """Consume ``old_token`` and insert ``new_record`` in one transaction.

        Returns False when another caller already consumed the old token.
        """
        if not _is_uuid(new_record.account_id):
            raise ConstraintViolation(
                "refresh token account missing", {"account_id": new_record.account_id}
            )
        try:
            with self._connect() as conn, conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM refresh_token WHERE token = %s RETURNING token",
                    (old_token,),
                ).fetchone()
                if not deleted:
                    return False
                self._insert_token(conn, new_record)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(
                "refresh token rejected", {"reason": type(exc).__name__}
            )
        return True

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING token", (token,)
            ).fetchone()
        return row is not None

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        if not _is_uuid(account_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [_token_from_row(row) for row in rows]

    def revoke_account_tokens(
        self, account_id: str, security_stamp: str, *, now: datetime
    ) -> int:
        """Delete every refresh token of the account and install a new stamp."""
        if not _is_uuid(account_id):
            raise ConstraintViolation("account not found", {"account_id": account_id})
        with self._connect() as conn, conn.transaction():
            # Lock the account row so concurrent logins serialize behind the revoke
            exists = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not exists:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            removed = conn.execute(
                "DELETE FROM refresh_token WHERE account_id = %s", (account_id,)
            ).rowcount
            conn.execute(
                """
                UPDATE account_credential
                SET security_stamp = %s, updated_at = %s
                WHERE account_id = %s
                """,
                (security_stamp, now, account_id),
            )
        return removed or 0

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

        All three writes commit together or not at all.
        """
        if not _is_uuid(account_id):
            raise ConstraintViolation("account not found", {"account_id": account_id})
        with self._connect() as conn, conn.transaction():
            exists = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not exists:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            conn.execute(
                """
                INSERT INTO account_credential (account_id, password_hash, password_salt, security_stamp, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_salt = EXCLUDED.password_salt,
                    security_stamp = EXCLUDED.security_stamp,
                    updated_at = EXCLUDED.updated_at
                """,
                (account_id, password_hash, password_salt, security_stamp, now),
            )
            removed = conn.execute(
                "DELETE FROM refresh_token WHERE account_id = %s", (account_id,)
            ).rowcount
        return removed or 0

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (now,))
        return cursor.rowcount or 0

    # verification codes
    def replace_verification_code(self, record: VerificationCode) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "DELETE FROM verification_code WHERE identifier = %s AND purpose = %s",
                (record.identifier, VerificationPurpose(record.purpose).value),
            )
            conn.execute(
                """
                INSERT INTO verification_code (identifier, purpose, code, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    record.identifier,
                    VerificationPurpose(record.purpose).value,
                    record.code,
                    record.created_at,
                    record.expires_at,
                ),
            )

    def take_verification_code(
        self, identifier: str, purpose: VerificationPurpose, code: str
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM verification_code
                WHERE identifier = %s AND purpose = %s AND code = %s
                RETURNING *
                """,
                (identifier, VerificationPurpose(purpose).value, code),
            ).fetchone()
        return _code_from_row(row) if row else None

    def delete_verification_codes(
        self, identifier: str, purpose: Optional[VerificationPurpose] = None
    ) -> int:
        with self._connect() as conn:
            if purpose is None:
                cursor = conn.execute(
                    "DELETE FROM verification_code WHERE identifier = %s", (identifier,)
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM verification_code WHERE identifier = %s AND purpose = %s",
                    (identifier, VerificationPurpose(purpose).value),
                )
        return cursor.rowcount or 0

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM verification_code WHERE expires_at < %s", (now,)
            )
        return cursor.rowcount or 0

    def _insert_token(self, conn: Any, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, account_id, created_at, expires_at, device_info)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.account_id,
                record.created_at,
                record.expires_at,
                record.device_info,
            ),
        )


__all__ = ["PostgresStore"]

from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from typing import Tuple

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from profileauth.config import Settings
from profileauth.logging import get_logger
from profileauth.service.errors import ValidationError

SALT_BYTES = 16
HASH_BYTES = 32

logger = get_logger(__name__)


class CredentialHasher:
    """Argon2id hashing with the salt stored beside the digest.

    Both values are base64 strings. The cost parameters come from settings and
    must stay stable for stored credentials to keep verifying.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 8192,
        parallelism: int = 2,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        # Hashed against when the identifier is unknown so both paths cost the same
        self._dummy_hash, self._dummy_salt = self.hash_password(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash_password(self, password: str) -> Tuple[str, str]:
        """Return ``(hash_b64, salt_b64)`` for ``password`` with a fresh salt.

        Raises ``ValidationError`` when the password is not valid UTF-8 text.
        """
        try:
            secret = password.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValidationError("password contains invalid characters") from exc
        salt = secrets.token_bytes(SALT_BYTES)
        digest = self._derive(secret, salt)
        return base64.b64encode(digest).decode("ascii"), base64.b64encode(salt).decode("ascii")

    def verify_password(self, password: str, password_hash: str, password_salt: str) -> bool:
        try:
            salt = base64.b64decode(password_salt, validate=True)
            expected = base64.b64decode(password_hash, validate=True)
        except (binascii.Error, ValueError, TypeError):
            logger.warning("password_record_malformed")
            return False
        if not salt or len(expected) != HASH_BYTES:
            logger.warning("password_record_malformed")
            return False
        try:
            actual = self._derive(password.encode("utf-8"), salt)
        except UnicodeEncodeError:
            # Lone surrogates can never match a stored hash
            return False
        except HashingError as exc:
            logger.warning("password_hashing_failed", error=str(exc))
            return False
        return hmac.compare_digest(actual, expected)

    def burn_dummy(self, password: str) -> None:
        """Run a full verification against a throwaway record."""
        self.verify_password(password, self._dummy_hash, self._dummy_salt)

    def _derive(self, secret: bytes, salt: bytes) -> bytes:
        return hash_secret_raw(
            secret=secret,
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=HASH_BYTES,
            type=Type.ID,
        )


__all__ = ["CredentialHasher", "SALT_BYTES", "HASH_BYTES"]

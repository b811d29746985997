from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

from profileauth.clock import Clock, SystemClock
from profileauth.config import Settings
from profileauth.logging import get_logger
from profileauth.service.errors import InvalidOrExpiredTokenError
from profileauth.storage.models import Account

JWT_ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 64

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    account_name: str
    role: str
    security_stamp: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None


class TokenIssuer:
    """Signs short-lived access tokens and mints opaque refresh tokens.

    Expiry is checked against the injected clock rather than the wall clock so
    that lifetimes stay testable; PyJWT still verifies signature, issuer and
    audience.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Optional[Clock] = None,
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock or SystemClock()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            clock=clock,
        )

    def access_token_expiry(self) -> datetime:
        return self.clock.now() + self.access_ttl

    def refresh_token_expiry(self) -> datetime:
        return self.clock.now() + self.refresh_ttl

    def issue_access_token(self, account: Account, security_stamp: str) -> Tuple[str, datetime]:
        issued_at = self.clock.now()
        expires_at = issued_at + self.access_ttl
        payload: Dict[str, Any] = {
            "sub": account.id,
            "name": account.account_name,
            "role": getattr(account.role, "value", account.role),
            "stamp": security_stamp,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        token = jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)
        return token, expires_at

    def issue_refresh_token(self) -> str:
        """Return an opaque 512-bit random token, hex encoded."""
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    def decode_access_token(self, token: str, *, verify_exp: bool = True) -> AccessClaims:
        """Verify ``token`` and return its claims.

        With ``verify_exp=False`` an expired but correctly signed token is still
        accepted; refresh uses this to bind an access token to its refresh token.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "stamp", "exp", "iat"],
                },
            )
        except jwt.InvalidTokenError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredTokenError("Invalid or expired access token.") from exc

        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidOrExpiredTokenError("Invalid or expired access token.") from exc
        if verify_exp and self.clock.now() >= expires_at:
            raise InvalidOrExpiredTokenError("Invalid or expired access token.")

        return AccessClaims(
            account_id=str(payload["sub"]),
            account_name=str(payload.get("name", "")),
            role=str(payload.get("role", "")),
            security_stamp=str(payload["stamp"]),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=payload.get("jti"),
        )


__all__ = ["AccessClaims", "TokenIssuer", "JWT_ALGORITHM"]

from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from profileauth.config import Settings
from profileauth.logging import get_logger, redact_email

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 30


class EmailNotifier:
    """Delivers verification codes over SMTP.

    Supports:
    - STARTTLS (``smtp_use_tls``) or implicit SSL
    - Optional SMTP login
    - Subject/body templates with ``{Username}`` and ``{Code}`` placeholders
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "OpenProfile Server",
        subject_template: str = "Verify your email - OpenProfile",
        body_template: str = "Hello {Username}, your verification code is: {Code}",
    ) -> None:
        self.enabled = enabled
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.subject_template = subject_template
        self.body_template = body_template

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            enabled=settings.email_enabled,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            subject_template=settings.email_verification_subject,
            body_template=settings.email_verification_body,
        )

    @property
    def is_enabled(self) -> bool:
        return bool(self.enabled and self.smtp_host and self.smtp_host.strip())

    def render(self, display_name: str, code: str) -> tuple[str, str]:
        def fill(template: str) -> str:
            return template.replace("{Username}", display_name).replace("{Code}", code)

        return fill(self.subject_template), fill(self.body_template)

    def send_verification_message(self, target: str, display_name: str, code: str) -> bool:
        subject, body = self.render(display_name, code)
        return self._send_email(target, subject, body)

    def check_connection(self) -> bool:
        """Open and authenticate an SMTP session without sending anything."""
        if not self.is_enabled:
            return False
        try:
            with self._open() as server:
                server.noop()
            return True
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connection_check_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
            try:
                server.starttls(context=context)
            except (smtplib.SMTPException, ssl.SSLError, OSError):
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            try:
                server.login(self.smtp_user, self.smtp_password)
            except (smtplib.SMTPException, OSError):
                server.close()
                raise
        return server

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_enabled:
            logger.warning("email_disabled_skipped", to=redact_email(to_email))
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(body, "html"))

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            with self._open() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True


__all__ = ["EmailNotifier"]

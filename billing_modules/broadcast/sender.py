"""Email delivery for broadcasts."""

import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Protocol

from billing_kernel.exceptions import ConfigurationError
from billing_kernel.logging_config import get_logger
from billing_modules.broadcast.config import SmtpSettings

logger = get_logger("modules.broadcast.sender")


class EmailSender(Protocol):
    """Sends one plain-text message.  Raises on delivery failure."""

    def send(self, to: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    """EmailSender over SMTP (STARTTLS + login when configured)."""

    def __init__(self, settings: SmtpSettings):
        self._settings = settings

    def send(self, to: str, subject: str, body: str) -> None:
        settings = self._settings
        if settings.use_tls and not settings.has_credentials:
            raise ConfigurationError(
                "SMTP username and password are required", field="broadcast.smtp"
            )

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((settings.sender_name, settings.sender_email))
        msg["To"] = to

        with smtplib.SMTP(
            settings.host, settings.port, timeout=settings.timeout_seconds
        ) as server:
            if settings.use_tls:
                server.starttls()
            if settings.has_credentials:
                server.login(settings.username, settings.password)
            server.sendmail(settings.sender_email, [to], msg.as_string())

        logger.debug("email_sent", extra={"recipient": to})

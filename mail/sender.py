"""
mail/sender.py -- Outbound mail over SMTP (SSL).

send() returns True/False and never raises: a mail outage must not abort the
operation that wanted to send (a verification code stays valid and
redeemable even if its email never arrives). Each attempt is bounded by
SMTP_TIMEOUT_SECONDS and is not retried inline.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from core.config import Settings

logger = logging.getLogger("idgate.mail")


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str = "",
        timeout: float = 10.0,
        enabled: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout
        self._enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpMailer:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
            timeout=settings.smtp_timeout_seconds,
            enabled=settings.mail_delivery_enabled,
        )

    @property
    def enabled(self) -> bool:
        """True when delivery is switched on and credentials are present."""
        return bool(self._enabled and self.user and self.password and self.sender)

    def send(self, to_address: str, subject: str, body: str) -> bool:
        if not self.enabled or not to_address:
            return False

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to_address
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Mail delivery to %s failed: %s", to_address, e)
            return False
        logger.info("Mail delivered to %s", to_address)
        return True

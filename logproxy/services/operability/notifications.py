from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage

from logproxy.core.config import Settings, get_settings
from logproxy.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


class EmailNotifier:
    """Sends alert mail over SMTP; blocking I/O runs in a worker thread."""

    def __init__(self, settings: Settings | None = None, *, telemetry: Telemetry | None = None) -> None:
        self._settings = settings or get_settings()
        self._telemetry = telemetry or Telemetry()

    @property
    def configured(self) -> bool:
        settings = self._settings
        return bool(settings.smtp_host and settings.alert_email_from)

    def _build_message(self, subject: str, body: str, to: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.alert_email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self._settings
        # Port 465 is implicit TLS; anything else negotiates STARTTLS when offered.
        if settings.smtp_port == 465:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_s)
        else:
            smtp = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_s)
        with smtp:
            if settings.smtp_port != 465:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_password)
            smtp.send_message(message)

    async def send_alert(self, subject: str, body: str, to: str | None = None) -> bool:
        """Return True when the message was handed to the SMTP server.

        Missing transport settings skip the send and return False; transport
        failures propagate to the caller.
        """
        recipient = (to or "").strip() or self._settings.alert_email_to
        if not self.configured or not recipient:
            logger.warning("alert_email_skipped reason=missing_settings subject=%s", subject)
            return False
        message = self._build_message(subject, body, recipient)
        await asyncio.to_thread(self._deliver, message)
        self._telemetry.increment("alert_emails_sent")
        logger.info("alert_email_sent to=%s subject=%s", recipient, subject)
        return True

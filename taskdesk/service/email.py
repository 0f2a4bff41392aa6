from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from taskdesk.logging import get_logger
from taskdesk.service.mail_templates import MailMessage

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_FAILURE_EVENTS = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_connect_failed"),
)


class EmailService:
    """Assignment, update, reminder and account notices over SMTP.

    Without an SMTP host the service only logs what it would have sent.
    ``send`` reports failure by returning ``False``; the triggering request
    has already committed by the time mail goes out.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Taskdesk",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, body: str, html_body: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        return msg

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def send(self, to_email: str, subject: str, body: str, html_body: Optional[str] = None) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=to_email, subject=subject, body_preview=body[:200])
            return True

        message = self._compose(to_email, subject, body, html_body)
        try:
            with self._open() as server:
                server.send_message(message)
        except OSError as exc:
            # smtplib and ssl errors are all OSError subclasses
            event = next(name for exc_type, name in _FAILURE_EVENTS if isinstance(exc, exc_type))
            logger.error(
                event,
                recipient=to_email,
                subject=subject,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", recipient=to_email, subject=subject)
        return True

    async def dispatch(self, message: MailMessage, to_email: str) -> bool:
        """Send ``message`` from a worker thread so the event loop keeps serving."""
        try:
            sent = await asyncio.to_thread(self.send, to_email, message.subject, message.body)
        except Exception as exc:
            logger.error(
                "email_dispatch_failed",
                recipient=to_email,
                subject=message.subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning("email_not_delivered", recipient=to_email, subject=message.subject)
        return sent

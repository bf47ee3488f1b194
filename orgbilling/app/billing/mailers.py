"""Transports that deliver rendered billing notices."""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Tuple

from .config import EmailSettings, MailTransport

logger = logging.getLogger(__name__)

TEMPLATE_HEADER = "X-Billing-Template"


@dataclass(frozen=True)
class BillingEmail:
    """A billing notice rendered for one recipient."""

    recipient: str
    subject: str
    text_body: str
    html_body: str
    template_id: str
    bcc: Tuple[str, ...] = ()

    @property
    def envelope_recipients(self) -> List[str]:
        recipients = [self.recipient]
        recipients.extend(address for address in self.bcc if address not in recipients)
        return recipients


class Mailer:
    """Base transport for billing notices."""

    transport = "base"

    def __init__(self, settings: EmailSettings) -> None:
        self.settings = settings

    def deliver(self, email: BillingEmail) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        return {"mail_transport": self.transport, "email_sender": self.settings.from_email}


class LogMailer(Mailer):
    """Logs billing notices instead of sending them."""

    transport = MailTransport.LOG.value

    def deliver(self, email: BillingEmail) -> None:
        logger.info(
            "Billing email not sent (log transport)",
            extra={
                "email_recipient": email.recipient,
                "email_subject": email.subject,
                "template_id": email.template_id,
                "email_bcc": list(email.bcc),
            },
        )


class SMTPMailer(Mailer):
    """Sends billing notices through an SMTP relay."""

    transport = MailTransport.SMTP.value

    def build_message(self, email: BillingEmail) -> MIMEMultipart:
        # Bcc addresses only go on the envelope.
        message = MIMEMultipart("alternative")
        message["From"] = self.settings.sender
        message["To"] = email.recipient
        message["Subject"] = email.subject
        if self.settings.reply_to:
            message["Reply-To"] = self.settings.reply_to
        message[TEMPLATE_HEADER] = email.template_id
        message.attach(MIMEText(email.text_body, "plain", "utf-8"))
        message.attach(MIMEText(email.html_body, "html", "utf-8"))
        return message

    def deliver(self, email: BillingEmail) -> None:
        settings = self.settings
        payload = self.build_message(email).as_string()
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds) as client:
            if settings.smtp_use_tls:
                client.starttls()
            if settings.smtp_username and settings.smtp_password:
                client.login(settings.smtp_username, settings.smtp_password)
            client.sendmail(settings.from_email, email.envelope_recipients, payload)


def create_mailer(settings: EmailSettings) -> Mailer:
    if settings.transport == MailTransport.SMTP:
        return SMTPMailer(settings)
    return LogMailer(settings)


__all__ = ["BillingEmail", "LogMailer", "Mailer", "SMTPMailer", "create_mailer"]

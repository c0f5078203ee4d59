from __future__ import annotations

import html
import logging
import smtplib
from collections.abc import Sequence
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Protocol

from ..excel.writer import Attachment
from ..models.config_models import MailConfig

"""Mail transport.

The dispatcher never builds its transport: the CLI constructs one
SmtpMailTransport at start-up and passes it to ``dispatch_reports``. Anything
with a ``send_mail(message) -> str`` method can stand in (tests use a fake).
"""

__all__ = [
    "SendFailure",
    "MailMessage",
    "MailTransport",
    "SmtpMailTransport",
    "compose_report_mail",
]

logger = logging.getLogger(__name__)


class SendFailure(Exception):
    """Rendering or transport failure inside one condition."""


@dataclass(frozen=True)
class MailMessage:
    from_address: str
    to: tuple[str, ...]
    subject: str
    html: str
    text: str
    attachments: tuple[Attachment, ...] = ()

    @property
    def to_header(self) -> str:
        return ",".join(self.to)


class MailTransport(Protocol):
    def send_mail(self, message: MailMessage) -> str:
        """Deliver the message and return its message id, or raise."""
        ...


def _to_email_message(message: MailMessage) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = message.from_address
    msg["To"] = message.to_header
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()
    msg.set_content(message.text)
    msg.add_alternative(message.html, subtype="html")
    for att in message.attachments:
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
    return msg


class SmtpMailTransport:
    """smtplib based transport (implicit TLS when ``secure`` else STARTTLS)."""

    def __init__(self, config: MailConfig) -> None:
        if not config.host:
            raise ValueError("SMTP host is not configured")
        self.config = config

    def _connect(self) -> smtplib.SMTP:
        cfg = self.config
        if cfg.secure:
            return smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        server.starttls()
        return server

    def send_mail(self, message: MailMessage) -> str:
        msg = _to_email_message(message)
        try:
            with self._connect() as server:
                if self.config.user:
                    server.login(self.config.user, self.config.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise SendFailure(f"SMTP send failed: {e}") from e
        logger.debug("mail sent to=%s subject=%s", message.to_header, message.subject)
        return str(msg["Message-ID"])


def compose_report_mail(
    from_address: str,
    recipients: Sequence[str],
    subject: str,
    greeting: str,
    lines: Sequence[str],
    record_count: int,
    attachment: Attachment,
) -> MailMessage:
    """Plain report email: greeting, a few lines, record count, attachment."""
    body_html = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    html_body = (
        f"<p>Dear {html.escape(greeting)},</p>"
        f"{body_html}"
        f"<p>Total Records: <strong>{record_count}</strong></p>"
        "<br><p>Best regards,<br>Attendance Management System</p>"
    )
    text_body = "\n\n".join(
        [f"Dear {greeting},", *lines, f"Total Records: {record_count}",
         "Best regards,\nAttendance Management System"]
    )
    return MailMessage(
        from_address=from_address,
        to=tuple(recipients),
        subject=subject,
        html=html_body,
        text=text_body,
        attachments=(attachment,),
    )

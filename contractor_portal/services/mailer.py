import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import List, Optional

import structlog

from ..config import Settings, settings as default_settings
from ..schemas.work_orders import WorkOrderSnapshot
from .time_rules import format_local


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LinkEmail:
    to: str
    subject: str
    body: str


def build_link_email(
    work_order: WorkOrderSnapshot,
    url: str,
    expires_at: datetime,
    settings: Optional[Settings] = None,
    renewed: bool = False,
) -> LinkEmail:
    settings = settings or default_settings
    lines = [
        f"Work order: {work_order.title}",
    ]
    if work_order.estimated_cost is not None:
        lines.append(f"Estimated cost: {work_order.estimated_cost}")
    if work_order.requested_start_date or work_order.requested_end_date:
        lines.append(
            f"Requested dates: {work_order.requested_start_date or '-'} to {work_order.requested_end_date or '-'}"
        )
    if work_order.acceptance_deadline is not None:
        lines.append(f"Please respond by: {format_local(work_order.acceptance_deadline, settings.tz_default)}")
    lines += [
        "",
        f"Open the work order: {url}",
        f"This link is valid until {format_local(expires_at, settings.tz_default)}.",
    ]
    subject = f"{'New link for' if renewed else 'Work order from'} {settings.app_name}: {work_order.title}"
    return LinkEmail(to=work_order.contractor_email, subject=subject, body="\n".join(lines))


class LinkMailer:
    """Delivers magic link emails. Returns False when nothing was sent."""

    def send(self, email: LinkEmail) -> bool:
        raise NotImplementedError


class SmtpLinkMailer(LinkMailer):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def send(self, email: LinkEmail) -> bool:
        s = self.settings
        if not (s.enable_email and s.smtp_host and s.mail_from):
            return False
        try:
            msg = EmailMessage()
            msg["Subject"] = email.subject
            msg["From"] = s.mail_from
            msg["To"] = email.to
            msg.set_content(email.body)
            with smtplib.SMTP(s.smtp_host, s.smtp_port) as smtp:
                if s.smtp_tls:
                    smtp.starttls()
                if s.smtp_username and s.smtp_password:
                    smtp.login(s.smtp_username, s.smtp_password)
                smtp.send_message(msg)
        except Exception as e:
            logger.warning("link_email_failed", to=email.to, error=str(e))
            return False
        return True


class OutboxMailer(LinkMailer):
    """Keeps messages in memory; used by tests and local runs without SMTP."""

    def __init__(self):
        self.outbox: List[LinkEmail] = []

    def send(self, email: LinkEmail) -> bool:
        self.outbox.append(email)
        return True

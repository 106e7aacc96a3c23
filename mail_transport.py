"""
SMTP delivery for planned notifications.

Every outgoing message passes the schedule gate first. Each send is isolated:
a failure is logged and recorded, and the remaining messages still go out.
"""

from __future__ import annotations

import csv
import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Callable, Iterable

from notify_dispatch import DispatchPlan, NotificationRequest, SkippedAccount
from settings import ConfigError, Settings

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 30

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
_ANY_DAY = {"any", "*", "daily", "all"}

EMAIL_LOG_FIELDS = [
    "timestamp",
    "kind",
    "account_name",
    "recipient",
    "subject",
    "status",
    "message_id",
    "error",
]


class MailHostError(RuntimeError):
    pass


SendGate = Callable[[datetime], bool]


def always_send(now: datetime) -> bool:
    return True


def make_weekday_gate(weekdays: Iterable[str], tz: tzinfo | None = None) -> SendGate:
    """
    Build should_send_now(now) from weekday names; empty or 'any' sends every day.

    Names match on a prefix of at least three letters ("tue", "tues", "thurs").
    The weekday is read in `tz`, or in the host's local zone when tz is None.
    """
    names = [name.strip().lower() for name in weekdays if name and name.strip()]
    if not names or any(name in _ANY_DAY for name in names):
        return always_send

    allowed = set()
    for name in names:
        matches = [index for day, index in WEEKDAYS.items() if len(name) >= 3 and day.startswith(name)]
        if not matches:
            raise ConfigError(f"Unknown weekday in SEND_WEEKDAYS: '{name}'")
        allowed.add(matches[0])

    def should_send_now(now: datetime) -> bool:
        return now.astimezone(tz).weekday() in allowed

    return should_send_now


def build_email_message(request: NotificationRequest, from_email: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = request.subject
    msg["From"] = from_email
    msg["To"] = ", ".join(request.recipients)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    if request.account_name:
        msg["X-Account-Name"] = request.account_name

    msg.attach(MIMEText(request.text_body, "plain", "utf-8"))
    msg.attach(MIMEText(request.html_body, "html", "utf-8"))
    return msg


def _open_smtp(settings: Settings) -> smtplib.SMTP:
    if settings.smtp_port == 465:
        server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
    else:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
    try:
        if settings.smtp_port != 465:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        if settings.smtp_user and settings.smtp_pass:
            server.login(settings.smtp_user, settings.smtp_pass)
    except Exception:
        server.close()
        raise
    return server


def check_mail_host(settings: Settings) -> None:
    """Fail fast when the mail host cannot be reached or refuses our login."""
    try:
        server = _open_smtp(settings)
        try:
            server.noop()
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as exc:
        raise MailHostError(f"Cannot reach mail host {settings.smtp_host}:{settings.smtp_port}: {exc}") from exc


def send_email(request: NotificationRequest, settings: Settings, dry_run: bool) -> tuple[bool, str, str]:
    try:
        msg = build_email_message(request, settings.from_email)
        if dry_run:
            logger.info("[DRY-RUN] Would send to %s | subject=%s", ", ".join(request.recipients), request.subject)
            return True, "dry-run-no-message-id", ""

        server = _open_smtp(settings)
        try:
            server.send_message(msg)
        finally:
            server.quit()
        return True, msg["Message-ID"], ""
    except Exception as exc:
        return False, "", str(exc)


def log_email_attempt(log_path: str, row: dict) -> None:
    file_exists = os.path.exists(log_path)
    with open(log_path, "a", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=EMAIL_LOG_FIELDS)
        if not file_exists:
            writer.writeheader()
        writer.writerow({k: row.get(k, "") for k in EMAIL_LOG_FIELDS})


@dataclass
class DeliverySummary:
    sent: int = 0
    failed: int = 0
    gated: int = 0
    skipped: int = 0
    dry_run: int = 0


def _log_skipped(log_path: str | None, skipped: SkippedAccount, timestamp: str) -> None:
    if not log_path:
        return
    log_email_attempt(
        log_path,
        {
            "timestamp": timestamp,
            "kind": "user",
            "account_name": skipped.account_name,
            "status": "skipped",
            "error": skipped.reason,
        },
    )


def deliver(
    plan: DispatchPlan,
    settings: Settings,
    should_send_now: SendGate = always_send,
    now: datetime | None = None,
    dry_run: bool = False,
    log_path: str | None = None,
) -> DeliverySummary:
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat()
    summary = DeliverySummary()

    for skipped in plan.skipped:
        summary.skipped += 1
        _log_skipped(log_path, skipped, timestamp)

    gate_open = should_send_now(now)
    if not gate_open and plan.requests:
        logger.info("Schedule gate closed for %s; holding %d message(s)", now.strftime("%A"), len(plan.requests))

    for request in plan.requests:
        row = {
            "timestamp": timestamp,
            "kind": request.kind,
            "account_name": request.account_name,
            "recipient": ";".join(request.recipients),
            "subject": request.subject,
        }
        if not gate_open:
            summary.gated += 1
            row["status"] = "gated"
        else:
            ok, message_id, error = send_email(request, settings, dry_run)
            row["message_id"] = message_id
            row["error"] = error
            if not ok:
                summary.failed += 1
                row["status"] = "failed"
                logger.warning("Failed to send %s notice to %s: %s", request.kind, row["recipient"], error)
            elif dry_run:
                summary.dry_run += 1
                row["status"] = "dry_run"
            else:
                summary.sent += 1
                row["status"] = "sent"
                logger.info("Sent %s notice to %s", request.kind, row["recipient"])
        if log_path:
            log_email_attempt(log_path, row)

    return summary

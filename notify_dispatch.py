"""Decide which notifications a run produces. Sending is left to mail_transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from account_status import ReportBuckets
from report_render import render_user_notice_html, render_user_notice_text, user_notice_subject

logger = logging.getLogger(__name__)

KIND_USER = "user"
KIND_DIGEST = "digest"

SKIP_MISSING_EMAIL = "missing_email"


@dataclass(frozen=True)
class NotificationRequest:
    recipients: tuple[str, ...]
    subject: str
    html_body: str
    text_body: str
    kind: str = KIND_USER
    account_name: str = ""


@dataclass(frozen=True)
class SkippedAccount:
    account_name: str
    display_name: str
    status: str
    reason: str


@dataclass
class DispatchPlan:
    requests: list[NotificationRequest] = field(default_factory=list)
    skipped: list[SkippedAccount] = field(default_factory=list)

    @property
    def user_requests(self) -> list[NotificationRequest]:
        return [request for request in self.requests if request.kind == KIND_USER]

    @property
    def digest_requests(self) -> list[NotificationRequest]:
        return [request for request in self.requests if request.kind == KIND_DIGEST]


def plan_notifications(
    buckets: ReportBuckets,
    report_only: bool,
    admin_recipients: Sequence[str],
    digest_subject: str,
    digest_html: str,
    digest_text: str,
    footer_html: str | None = None,
    footer_text: str | None = None,
) -> DispatchPlan:
    plan = DispatchPlan()
    if report_only:
        logger.info("Report-only mode: no notifications planned")
        return plan

    for result in buckets.notify_candidates():
        email = (result.email or "").strip()
        if not email:
            logger.warning(
                "No email address for %s (%s); skipping %s notice",
                result.account_name,
                result.display_name,
                result.status,
            )
            plan.skipped.append(
                SkippedAccount(
                    account_name=result.account_name,
                    display_name=result.display_name,
                    status=result.status,
                    reason=SKIP_MISSING_EMAIL,
                )
            )
            continue
        plan.requests.append(
            NotificationRequest(
                recipients=(email,),
                subject=user_notice_subject(result),
                html_body=render_user_notice_html(result, footer_html),
                text_body=render_user_notice_text(result, footer_text),
                kind=KIND_USER,
                account_name=result.account_name,
            )
        )

    admins = tuple(email for email in admin_recipients if email)
    if admins and buckets.total > 0:
        plan.requests.append(
            NotificationRequest(
                recipients=admins,
                subject=digest_subject,
                html_body=digest_html,
                text_body=digest_text,
                kind=KIND_DIGEST,
            )
        )
    elif not admins:
        logger.info("No admin recipients configured; digest will not be emailed")

    logger.info(
        "Planned %d user notice(s), %d digest(s), %d skipped",
        len(plan.user_requests),
        len(plan.digest_requests),
        len(plan.skipped),
    )
    return plan

"""
Rendering for the password expiration digest and per-user notices.

Buckets are first turned into a ReportDocument (summary counts, policy table,
account sections) and the document is then rendered to HTML or plain text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from html import escape
from pathlib import Path

from account_status import (
    STATUS_CRITICAL,
    STATUS_EXPIRED,
    STATUS_WARNING,
    ClassificationResult,
    PolicyThresholds,
    ReportBuckets,
)

REPORT_TITLE = "Password Expiration Report"
REPORT_FILENAME_PREFIX = "PasswordExpirationReport"
DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M UTC"

EXPIRY_COLUMNS = ("Name", "Account", "Email", "Expires", "Days Left")
PLAIN_COLUMNS = ("Name", "Account", "Email", "Enabled")
DISABLED_COLUMNS = ("Name", "Account", "Email", "Status")

STATUS_COLORS = {
    STATUS_EXPIRED: "#c0392b",
    STATUS_CRITICAL: "#e67e22",
    STATUS_WARNING: "#d4ac0d",
}


@dataclass(frozen=True)
class ReportSection:
    key: str
    title: str
    columns: tuple[str, ...]
    rows: tuple[ClassificationResult, ...]
    visible: bool = True
    color: str = "#1a1a2e"


@dataclass(frozen=True)
class ReportDocument:
    title: str
    generated_at: datetime
    organizational_unit: str
    summary: tuple[tuple[str, int], ...]
    policy: tuple[tuple[str, str], ...]
    sections: tuple[ReportSection, ...] = field(default_factory=tuple)

    @property
    def visible_sections(self) -> list[ReportSection]:
        return [section for section in self.sections if section.visible]


def format_duration(value: timedelta | None) -> str:
    if value is None:
        return "-"
    total_minutes = int(value.total_seconds() // 60)
    if total_minutes == 0:
        return "0 minutes"
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return " ".join(parts)


def _format_optional(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "Enabled" if value else "Disabled"
    return str(value)


def _policy_rows(policy, thresholds: PolicyThresholds) -> tuple[tuple[str, str], ...]:
    # policy is a DomainPasswordPolicy; None when only thresholds are known.
    rows = [("Maximum password age", format_duration(thresholds.max_password_age))]
    if policy is not None:
        lockout = policy.lockout_threshold
        rows.extend(
            [
                ("Minimum password age", format_duration(policy.min_password_age)),
                ("Minimum length", _format_optional(policy.min_length)),
                ("Complexity", _format_optional(policy.complexity_enabled)),
                ("Password history", _format_optional(policy.history_count)),
                ("Lockout threshold", "Never" if lockout == 0 else _format_optional(lockout)),
                ("Lockout duration", format_duration(policy.lockout_duration)),
            ]
        )
    rows.append(("Warning threshold", f"{thresholds.warning_threshold_days} days"))
    rows.append(("Critical threshold", f"{thresholds.critical_threshold_days} days"))
    return tuple(rows)


def build_report_document(
    buckets: ReportBuckets,
    thresholds: PolicyThresholds,
    organizational_unit: str,
    generated_at: datetime,
    policy=None,
) -> ReportDocument:
    counts = buckets.counts
    summary = (
        ("Total accounts", buckets.total),
        ("Expired", counts["expired"]),
        ("Critical", counts["critical"]),
        ("Warning", counts["warning"]),
        ("Never expires", counts["never_expires"]),
        ("Never logged in", counts["never_logged_in"]),
        ("Disabled", counts["disabled"]),
    )
    sections = (
        ReportSection("expired", "Expired Passwords", EXPIRY_COLUMNS, buckets.expired, color=STATUS_COLORS[STATUS_EXPIRED]),
        ReportSection(
            "critical",
            f"Critical (expires within {thresholds.critical_threshold_days} days)",
            EXPIRY_COLUMNS,
            buckets.critical,
            color=STATUS_COLORS[STATUS_CRITICAL],
        ),
        ReportSection(
            "warning",
            f"Warning (expires within {thresholds.warning_threshold_days} days)",
            EXPIRY_COLUMNS,
            buckets.warning,
            color=STATUS_COLORS[STATUS_WARNING],
        ),
        ReportSection(
            "never_expires",
            "Password Never Expires",
            PLAIN_COLUMNS,
            buckets.never_expires,
            visible=buckets.show_never_expires,
        ),
        ReportSection("never_logged_in", "Never Logged In", PLAIN_COLUMNS, buckets.never_logged_in),
        ReportSection(
            "disabled",
            "Disabled Accounts",
            DISABLED_COLUMNS,
            buckets.disabled,
            visible=buckets.show_disabled,
        ),
    )
    return ReportDocument(
        title=REPORT_TITLE,
        generated_at=generated_at,
        organizational_unit=organizational_unit,
        summary=summary,
        policy=_policy_rows(policy, thresholds),
        sections=sections,
    )


def _cell_values(section: ReportSection, result: ClassificationResult) -> list[str]:
    values = [result.display_name, result.account_name, result.email or "-"]
    if section.columns == EXPIRY_COLUMNS:
        expires = result.expiration_date.strftime(DATE_FORMAT) if result.expiration_date else "-"
        days_left = "-" if result.days_left is None else str(result.days_left)
        values.extend([expires, days_left])
    elif section.columns == DISABLED_COLUMNS:
        values.append(result.status)
    else:
        values.append("Yes" if result.enabled else "No")
    return values


def _section_html(section: ReportSection) -> str:
    parts = [f'<h2 style="color: {section.color};">{escape(section.title)} ({len(section.rows)})</h2>']
    if not section.rows:
        parts.append("<p><em>No accounts in this category.</em></p>")
        return "\n".join(parts)

    parts.append('<table border="1" cellpadding="6" cellspacing="0" style="border-collapse: collapse; width: 100%;">')
    parts.append("<tr>" + "".join(f"<th>{escape(column)}</th>" for column in section.columns) + "</tr>")
    for result in section.rows:
        cells = "".join(f"<td>{escape(value)}</td>" for value in _cell_values(section, result))
        parts.append(f"<tr>{cells}</tr>")
    parts.append("</table>")
    return "\n".join(parts)


def render_report_html(document: ReportDocument, footer_html: str | None = None) -> str:
    html: list[str] = []
    html.append("<!DOCTYPE html>")
    html.append('<html><head><meta charset="utf-8"></head>')
    html.append('<body style="font-family: Arial, sans-serif; max-width: 900px; margin: 0 auto; padding: 20px; background-color: #f7f9fc;">')
    html.append('<div style="background-color: #ffffff; padding: 24px; border-radius: 8px;">')

    html.append(f'<h1 style="margin-top: 0; color: #1a1a2e;">{escape(document.title)}</h1>')
    html.append(
        f'<p style="color: #555;">{document.generated_at.strftime(DATETIME_FORMAT)} | '
        f"{escape(document.organizational_unit)}</p>"
    )

    html.append('<div style="background-color: #eef5ff; padding: 14px; border-radius: 6px; margin: 16px 0;">')
    html.append("<table cellpadding=\"4\" cellspacing=\"0\">")
    for label, count in document.summary:
        html.append(f"<tr><td><strong>{escape(label)}</strong></td><td>{count}</td></tr>")
    html.append("</table>")
    html.append("</div>")

    for section in document.visible_sections:
        html.append(_section_html(section))

    html.append("<h2>Domain Password Policy</h2>")
    html.append('<table border="1" cellpadding="6" cellspacing="0" style="border-collapse: collapse;">')
    for label, value in document.policy:
        html.append(f"<tr><td>{escape(label)}</td><td>{escape(value)}</td></tr>")
    html.append("</table>")

    if footer_html:
        html.append(footer_html)

    html.append("</div></body></html>")
    return "\n".join(html)


def render_report_text(document: ReportDocument, footer_text: str | None = None) -> str:
    lines = [
        document.title,
        f"{document.generated_at.strftime(DATETIME_FORMAT)} | {document.organizational_unit}",
        "",
        "Summary",
    ]
    for label, count in document.summary:
        lines.append(f"  {label}: {count}")

    for section in document.visible_sections:
        lines.append("")
        lines.append(f"{section.title} ({len(section.rows)})")
        if not section.rows:
            lines.append("  No accounts in this category.")
            continue
        for result in section.rows:
            lines.append("  " + " | ".join(_cell_values(section, result)))

    lines.append("")
    lines.append("Domain Password Policy")
    for label, value in document.policy:
        lines.append(f"  {label}: {value}")

    if footer_text:
        lines.append("")
        lines.append(footer_text)
    return "\n".join(lines)


def digest_subject(buckets: ReportBuckets, generated_at: datetime) -> str:
    return (
        f"{REPORT_TITLE} - {generated_at.strftime(DATE_FORMAT)} "
        f"({buckets.attention_count} need attention)"
    )


def user_notice_subject(result: ClassificationResult) -> str:
    if result.status == STATUS_EXPIRED:
        return "Your password has expired"
    if result.days_left == 0:
        return "Your password expires today"
    if result.days_left == 1:
        return "Your password expires in 1 day"
    return f"Your password expires in {result.days_left} days"


def _notice_sentence(result: ClassificationResult) -> str:
    expires = result.expiration_date.strftime(DATETIME_FORMAT) if result.expiration_date else "an unknown date"
    if result.status == STATUS_EXPIRED:
        return f"The password for your account {result.account_name} expired on {expires}."
    if result.days_left == 0:
        return f"The password for your account {result.account_name} expires today ({expires})."
    unit = "day" if result.days_left == 1 else "days"
    return f"The password for your account {result.account_name} expires in {result.days_left} {unit}, on {expires}."


def _notice_action(result: ClassificationResult) -> str:
    if result.status == STATUS_EXPIRED:
        return "Please contact the service desk to reset your password."
    return "Please change your password before it expires to avoid losing access."


def render_user_notice_html(result: ClassificationResult, footer_html: str | None = None) -> str:
    color = STATUS_COLORS.get(result.status, "#1a1a2e")
    html = [
        "<!DOCTYPE html>",
        '<html><head><meta charset="utf-8"></head>',
        '<body style="font-family: Arial, sans-serif; max-width: 640px; margin: 0 auto; padding: 20px;">',
        f"<p>Hello {escape(result.display_name)},</p>",
        f'<p style="color: {color};"><strong>{escape(_notice_sentence(result))}</strong></p>',
        f"<p>{escape(_notice_action(result))}</p>",
    ]
    if footer_html:
        html.append(footer_html)
    html.append("</body></html>")
    return "\n".join(html)


def render_user_notice_text(result: ClassificationResult, footer_text: str | None = None) -> str:
    lines = [
        f"Hello {result.display_name},",
        "",
        _notice_sentence(result),
        _notice_action(result),
    ]
    if footer_text:
        lines.append("")
        lines.append(footer_text)
    return "\n".join(lines)


def report_filename(generated_at: datetime, extension: str = "html") -> str:
    return f"{REPORT_FILENAME_PREFIX}_{generated_at.strftime('%Y%m%d_%H%M')}.{extension}"


def write_report(content: str, report_dir: Path, generated_at: datetime, extension: str = "html") -> Path:
    """Write the report atomically (write temp, then rename)."""
    report_dir.mkdir(parents=True, exist_ok=True)
    output_path = report_dir / report_filename(generated_at, extension)
    temp_path = output_path.with_suffix(".tmp")
    temp_path.write_text(content, encoding="utf-8")
    temp_path.replace(output_path)
    return output_path

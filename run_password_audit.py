#!/usr/bin/env python3
"""
Password expiration audit entrypoint.

Queries the directory for user accounts under TARGET_OU, classifies each
password against the domain policy, writes the HTML report and emails
per-user warnings plus the administrator digest.

Features:
- Fetch-time inclusion of disabled / never-expiring accounts
- Report-only mode (write the report, send nothing)
- Dry-run mode (build every message, send nothing)
- Weekday schedule gate for all outgoing mail
- CSV email log under the report directory

Usage:
    python run_password_audit.py
    python run_password_audit.py --report-only --output-dir reports
    python run_password_audit.py --dry-run --log-level DEBUG
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from account_status import PolicyThresholds, aggregate, classify_all
from directory_client import (
    DirectoryError,
    connect,
    domain_dn_from,
    fetch_accounts,
    fetch_domain_password_policy,
    verify_organizational_unit,
)
from email_footer import build_footer_html, build_footer_text
from mail_transport import MailHostError, SendGate, always_send, check_mail_host, deliver, make_weekday_gate
from notify_dispatch import plan_notifications
from report_render import (
    build_report_document,
    digest_subject,
    render_report_html,
    render_report_text,
    write_report,
)
from settings import ConfigError, Settings, load_environment, parse_bool, preflight_missing_vars

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP_ERROR = 1


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_audit(
    settings: Settings,
    conn,
    now: datetime | None = None,
    dry_run: bool = False,
    should_send_now: SendGate = always_send,
) -> int:
    """Run one audit over an already-bound directory connection."""
    now = now or datetime.now(timezone.utc)

    verify_organizational_unit(conn, settings.target_ou)
    policy = fetch_domain_password_policy(conn, domain_dn_from(settings.target_ou))
    logger.info("Domain maximum password age: %s", policy.max_password_age)

    records = fetch_accounts(
        conn,
        settings.target_ou,
        include_disabled=settings.include_disabled,
        include_never_expires=settings.include_never_expires,
    )
    if not records:
        print(f"NO_MATCHING_ACCOUNTS ou={settings.target_ou}")
        logger.info("No matching accounts under %s; nothing to report", settings.target_ou)
        return EXIT_OK

    thresholds = PolicyThresholds(
        warning_threshold_days=settings.warning_threshold_days,
        critical_threshold_days=settings.critical_threshold_days,
        max_password_age=policy.max_password_age,
        include_disabled=settings.include_disabled,
        include_never_expires=settings.include_never_expires,
    )
    results = classify_all(records, thresholds, now)
    buckets = aggregate(
        results,
        include_disabled=thresholds.include_disabled,
        include_never_expires=thresholds.include_never_expires,
    )
    counts = buckets.counts
    logger.info(
        "Classified %d account(s): %s",
        buckets.total,
        ", ".join(f"{name}={count}" for name, count in counts.items()),
    )

    footer_html = build_footer_html(settings.signature)
    footer_text = build_footer_text(settings.signature)
    document = build_report_document(buckets, thresholds, settings.target_ou, now, policy)
    report_html = render_report_html(document, footer_html)
    report_text = render_report_text(document, footer_text)

    report_path = write_report(report_html, settings.report_dir, now)
    print(f"REPORT_WRITTEN path={report_path}")

    plan = plan_notifications(
        buckets,
        report_only=settings.report_only,
        admin_recipients=settings.admin_recipients,
        digest_subject=digest_subject(buckets, now),
        digest_html=report_html,
        digest_text=report_text,
        footer_html=footer_html,
        footer_text=footer_text,
    )
    if settings.report_only:
        print("REPORT_ONLY notifications disabled")
        return EXIT_OK

    summary = deliver(
        plan,
        settings,
        should_send_now=should_send_now,
        now=now,
        dry_run=dry_run,
        log_path=str(settings.report_dir / "email_log.csv"),
    )
    print(
        f"DELIVERY_SUMMARY sent={summary.sent} failed={summary.failed} gated={summary.gated} "
        f"skipped={summary.skipped} dry_run={summary.dry_run}"
    )
    if summary.failed:
        logger.warning("%d notification(s) failed; see email log", summary.failed)
    return EXIT_OK


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit directory password expiration and send notices")
    parser.add_argument("--report-only", action="store_true", help="Write the report without sending any email")
    parser.add_argument("--dry-run", action="store_true", help="Build every message but do not send")
    parser.add_argument("--output-dir", default="", help="Report directory (overrides REPORT_DIR)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()
    setup_logging(args.log_level)

    repo_root = Path(__file__).resolve().parent
    load_environment(repo_root)

    try:
        report_only = args.report_only or parse_bool("REPORT_ONLY", os.environ.get("REPORT_ONLY"))
        missing = preflight_missing_vars(os.environ, report_only, args.dry_run)
        if missing:
            print(f"CONFIG_ERROR missing variables: {', '.join(missing)}", file=sys.stderr)
            raise SystemExit(EXIT_SETUP_ERROR)
        settings = Settings.from_env(report_only=report_only)
        if args.output_dir:
            settings = replace(settings, report_dir=Path(args.output_dir))
        gate = make_weekday_gate(settings.send_weekdays, settings.send_timezone)
    except ConfigError as exc:
        print(f"CONFIG_ERROR {exc}", file=sys.stderr)
        raise SystemExit(EXIT_SETUP_ERROR)

    if not settings.report_only and not args.dry_run:
        try:
            check_mail_host(settings)
        except MailHostError as exc:
            print(f"SETUP_ERROR {exc}", file=sys.stderr)
            raise SystemExit(EXIT_SETUP_ERROR)

    try:
        conn = connect(settings)
    except DirectoryError as exc:
        print(f"SETUP_ERROR {exc}", file=sys.stderr)
        raise SystemExit(EXIT_SETUP_ERROR)

    try:
        exit_code = run_audit(settings, conn, dry_run=args.dry_run, should_send_now=gate)
    except DirectoryError as exc:
        print(f"SETUP_ERROR {exc}", file=sys.stderr)
        exit_code = EXIT_SETUP_ERROR
    finally:
        conn.unbind()

    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()

"""Run configuration read once from the environment (and .env when present)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


DEFAULT_WARNING_THRESHOLD_DAYS = 14
DEFAULT_CRITICAL_THRESHOLD_DAYS = 7
DEFAULT_SIGNATURE = "IT Service Desk"
DEFAULT_REPORT_DIR = "out"

REQUIRED_DIRECTORY_VARS = ["TARGET_OU", "LDAP_SERVER", "LDAP_BIND_USER", "LDAP_BIND_PASSWORD"]
REQUIRED_MAIL_VARS = ["SMTP_HOST", "SMTP_PORT"]

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off", ""}


class ConfigError(ValueError):
    pass


def load_environment(repo_root: Path) -> None:
    """Load .env for scheduler contexts where env vars are not inherited."""
    dotenv_path = repo_root / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)


def parse_bool(name: str, value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False if text else default
    raise ConfigError(f"{name} must be true or false (got '{value}')")


def parse_int(name: str, value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{value}')") from None


def parse_timezone(name: str, value: str | None) -> tzinfo | None:
    """Blank means the host's local zone (None)."""
    if value is None or not value.strip():
        return None
    try:
        return ZoneInfo(value.strip())
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"{name} is not a known time zone (got '{value}')") from None


def parse_recipients(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    seen: list[str] = []
    for email in value.replace(";", ",").split(","):
        email = email.strip().lower()
        if email and email not in seen:
            seen.append(email)
    return tuple(seen)


def preflight_missing_vars(environ: Mapping[str, str], report_only: bool, dry_run: bool) -> list[str]:
    """Return a concise list of missing required environment variables."""
    missing = [key for key in REQUIRED_DIRECTORY_VARS if not (environ.get(key) or "").strip()]
    if not report_only and not dry_run:
        missing.extend(key for key in REQUIRED_MAIL_VARS if not (environ.get(key) or "").strip())
    return missing


@dataclass(frozen=True)
class Settings:
    target_ou: str
    ldap_server: str
    ldap_port: int
    ldap_use_ssl: bool
    ldap_bind_user: str
    ldap_bind_password: str
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    from_email: str = ""
    admin_recipients: tuple[str, ...] = ()
    warning_threshold_days: int = DEFAULT_WARNING_THRESHOLD_DAYS
    critical_threshold_days: int = DEFAULT_CRITICAL_THRESHOLD_DAYS
    signature: str = DEFAULT_SIGNATURE
    include_disabled: bool = False
    include_never_expires: bool = False
    report_only: bool = False
    send_weekdays: tuple[str, ...] = ()
    send_timezone: tzinfo | None = None
    report_dir: Path = Path(DEFAULT_REPORT_DIR)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, report_only: bool = False) -> "Settings":
        env = os.environ if environ is None else environ

        def get(key: str, default: str = "") -> str:
            return (env.get(key) or default).strip()

        use_ssl = parse_bool("LDAP_USE_SSL", env.get("LDAP_USE_SSL"), default=True)
        smtp_user = get("SMTP_USER")
        warning_days = parse_int("WARNING_THRESHOLD_DAYS", env.get("WARNING_THRESHOLD_DAYS"), DEFAULT_WARNING_THRESHOLD_DAYS)
        critical_days = parse_int("CRITICAL_THRESHOLD_DAYS", env.get("CRITICAL_THRESHOLD_DAYS"), DEFAULT_CRITICAL_THRESHOLD_DAYS)
        if warning_days < 0 or critical_days < 0:
            raise ConfigError("Threshold days cannot be negative")

        weekdays = tuple(
            day.strip().lower() for day in get("SEND_WEEKDAYS").split(",") if day.strip()
        )

        return cls(
            target_ou=get("TARGET_OU"),
            ldap_server=get("LDAP_SERVER"),
            ldap_port=parse_int("LDAP_PORT", env.get("LDAP_PORT"), 636 if use_ssl else 389),
            ldap_use_ssl=use_ssl,
            ldap_bind_user=get("LDAP_BIND_USER"),
            ldap_bind_password=env.get("LDAP_BIND_PASSWORD") or "",
            smtp_host=get("SMTP_HOST"),
            smtp_port=parse_int("SMTP_PORT", env.get("SMTP_PORT"), 587),
            smtp_user=smtp_user,
            smtp_pass=env.get("SMTP_PASS") or "",
            from_email=get("FROM_EMAIL") or smtp_user,
            admin_recipients=parse_recipients(env.get("ADMIN_EMAILS")),
            warning_threshold_days=warning_days,
            critical_threshold_days=critical_days,
            signature=get("EMAIL_SIGNATURE", DEFAULT_SIGNATURE),
            include_disabled=parse_bool("INCLUDE_DISABLED", env.get("INCLUDE_DISABLED")),
            include_never_expires=parse_bool("INCLUDE_NEVER_EXPIRES", env.get("INCLUDE_NEVER_EXPIRES")),
            report_only=report_only or parse_bool("REPORT_ONLY", env.get("REPORT_ONLY")),
            send_weekdays=weekdays,
            send_timezone=parse_timezone("SEND_TIMEZONE", env.get("SEND_TIMEZONE")),
            report_dir=Path(get("REPORT_DIR", DEFAULT_REPORT_DIR)),
        )

"""
Active Directory access for the password expiration audit.

Connects with ldap3, validates the target OU, reads the domain password
policy and fetches user accounts under the OU. Inclusion of disabled and
never-expiring accounts is decided here, at fetch time, from a single table
indexed by the two include flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ldap3 import ALL, BASE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from account_status import AccountRecord
from settings import Settings

logger = logging.getLogger(__name__)

UAC_ACCOUNTDISABLE = 0x0002
UAC_DONT_EXPIRE_PASSWORD = 0x10000
DOMAIN_PASSWORD_COMPLEX = 0x0001

PAGE_SIZE = 500
CONNECT_TIMEOUT_SECONDS = 10

USER_ATTRIBUTES = [
    "displayName",
    "cn",
    "sAMAccountName",
    "mail",
    "pwdLastSet",
    "userAccountControl",
]
POLICY_ATTRIBUTES = [
    "maxPwdAge",
    "minPwdAge",
    "minPwdLength",
    "pwdProperties",
    "pwdHistoryLength",
    "lockoutThreshold",
    "lockoutDuration",
]

_FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
_FILETIME_NEVER = 0x7FFFFFFFFFFFFFFF
_TICKS_PER_SECOND = 10_000_000

_BASE_USER_FILTER = "(objectCategory=person)(objectClass=user)"
_ENABLED_ONLY = "(!(userAccountControl:1.2.840.113556.1.4.803:=2))"
_EXPIRING_ONLY = "(!(userAccountControl:1.2.840.113556.1.4.803:=65536))"


class DirectoryError(RuntimeError):
    pass


@dataclass(frozen=True)
class InclusionRule:
    ldap_filter: str
    accepts: Callable[[AccountRecord], bool]


# Keyed by (include_disabled, include_never_expires).
INCLUSION_RULES: dict[tuple[bool, bool], InclusionRule] = {
    (False, False): InclusionRule(
        ldap_filter=f"(&{_BASE_USER_FILTER}{_ENABLED_ONLY}{_EXPIRING_ONLY})",
        accepts=lambda record: record.enabled and not record.password_never_expires,
    ),
    (True, False): InclusionRule(
        ldap_filter=f"(&{_BASE_USER_FILTER}{_EXPIRING_ONLY})",
        accepts=lambda record: not record.password_never_expires,
    ),
    (False, True): InclusionRule(
        ldap_filter=f"(&{_BASE_USER_FILTER}{_ENABLED_ONLY})",
        accepts=lambda record: record.enabled,
    ),
    (True, True): InclusionRule(
        ldap_filter=f"(&{_BASE_USER_FILTER})",
        accepts=lambda record: True,
    ),
}


@dataclass(frozen=True)
class DomainPasswordPolicy:
    max_password_age: timedelta
    min_password_age: timedelta | None = None
    min_length: int | None = None
    complexity_enabled: bool | None = None
    history_count: int | None = None
    lockout_threshold: int | None = None
    lockout_duration: timedelta | None = None


def inclusion_rule(include_disabled: bool, include_never_expires: bool) -> InclusionRule:
    return INCLUSION_RULES[(bool(include_disabled), bool(include_never_expires))]


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_int(value: Any) -> int | None:
    value = _first(value)
    if value is None or value == "":
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def filetime_to_datetime(value: Any) -> datetime | None:
    """Convert an AD timestamp (FILETIME ticks or ldap3 datetime) to UTC; None when never set."""
    value = _first(value)
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value.year <= 1601:
            return None
        return value.astimezone(timezone.utc)
    ticks = _as_int(value)
    if not ticks or ticks >= _FILETIME_NEVER:
        return None
    return _FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def interval_to_timedelta(value: Any) -> timedelta | None:
    """AD stores policy intervals as negative tick counts; ldap3 may already format them."""
    value = _first(value)
    if value is None:
        return None
    if isinstance(value, timedelta):
        if value == timedelta.max or value == timedelta.min:
            return None
        return abs(value)
    ticks = _as_int(value)
    if ticks is None or abs(ticks) >= _FILETIME_NEVER:
        return None
    return timedelta(seconds=abs(ticks) / _TICKS_PER_SECOND)


def account_from_attributes(attributes: dict[str, Any]) -> AccountRecord:
    account_name = str(_first(attributes.get("sAMAccountName")) or "").strip()
    display_name = (
        str(_first(attributes.get("displayName")) or "").strip()
        or str(_first(attributes.get("cn")) or "").strip()
        or account_name
    )
    email = str(_first(attributes.get("mail")) or "").strip() or None
    uac = _as_int(attributes.get("userAccountControl")) or 0
    return AccountRecord(
        display_name=display_name,
        account_name=account_name,
        email=email,
        password_last_set=filetime_to_datetime(attributes.get("pwdLastSet")),
        password_never_expires=bool(uac & UAC_DONT_EXPIRE_PASSWORD),
        enabled=not bool(uac & UAC_ACCOUNTDISABLE),
    )


def domain_dn_from(distinguished_name: str) -> str:
    parts = [part.strip() for part in distinguished_name.split(",")]
    return ",".join(part for part in parts if part.upper().startswith("DC="))


def connect(settings: Settings) -> Connection:
    """Bind to the directory or raise DirectoryError."""
    server = Server(
        settings.ldap_server,
        port=settings.ldap_port,
        use_ssl=settings.ldap_use_ssl,
        get_info=ALL,
        connect_timeout=CONNECT_TIMEOUT_SECONDS,
    )
    try:
        conn = Connection(
            server,
            user=settings.ldap_bind_user,
            password=settings.ldap_bind_password,
            auto_bind=True,
        )
    except LDAPException as exc:
        raise DirectoryError(f"Cannot bind to {settings.ldap_server}:{settings.ldap_port}: {exc}") from exc
    logger.info("Bound to directory %s as %s", settings.ldap_server, settings.ldap_bind_user)
    return conn


def verify_organizational_unit(conn: Connection, organizational_unit: str) -> None:
    try:
        found = conn.search(organizational_unit, "(objectClass=*)", search_scope=BASE, attributes=["distinguishedName"])
    except LDAPException as exc:
        raise DirectoryError(f"Invalid organizational unit '{organizational_unit}': {exc}") from exc
    if not found or not conn.entries:
        raise DirectoryError(f"Organizational unit not found: {organizational_unit}")


def fetch_domain_password_policy(conn: Connection, domain_dn: str) -> DomainPasswordPolicy:
    if not domain_dn:
        raise DirectoryError("Cannot determine domain DN for password policy lookup")
    try:
        found = conn.search(domain_dn, "(objectClass=domain)", search_scope=BASE, attributes=POLICY_ATTRIBUTES)
    except LDAPException as exc:
        raise DirectoryError(f"Password policy query failed: {exc}") from exc
    if not found or not conn.response:
        raise DirectoryError(f"Domain password policy not available at {domain_dn}")

    attributes = conn.response[0].get("attributes") or {}
    max_age = interval_to_timedelta(attributes.get("maxPwdAge"))
    if not max_age:
        raise DirectoryError("Domain policy has no maximum password age; passwords never expire")

    complexity = _as_int(attributes.get("pwdProperties"))
    return DomainPasswordPolicy(
        max_password_age=max_age,
        min_password_age=interval_to_timedelta(attributes.get("minPwdAge")),
        min_length=_as_int(attributes.get("minPwdLength")),
        complexity_enabled=None if complexity is None else bool(complexity & DOMAIN_PASSWORD_COMPLEX),
        history_count=_as_int(attributes.get("pwdHistoryLength")),
        lockout_threshold=_as_int(attributes.get("lockoutThreshold")),
        lockout_duration=interval_to_timedelta(attributes.get("lockoutDuration")),
    )


def fetch_accounts(
    conn: Connection,
    organizational_unit: str,
    include_disabled: bool = False,
    include_never_expires: bool = False,
) -> list[AccountRecord]:
    rule = inclusion_rule(include_disabled, include_never_expires)
    logger.debug("Searching %s with filter %s", organizational_unit, rule.ldap_filter)
    try:
        response = conn.extend.standard.paged_search(
            search_base=organizational_unit,
            search_filter=rule.ldap_filter,
            search_scope=SUBTREE,
            attributes=USER_ATTRIBUTES,
            paged_size=PAGE_SIZE,
            generator=False,
        )
    except LDAPException as exc:
        raise DirectoryError(f"Account search under {organizational_unit} failed: {exc}") from exc

    records: list[AccountRecord] = []
    dropped = 0
    for entry in response or []:
        if entry.get("type") != "searchResEntry":
            continue
        record = account_from_attributes(entry.get("attributes") or {})
        if not record.account_name:
            continue
        if not rule.accepts(record):
            dropped += 1
            continue
        records.append(record)

    if dropped:
        logger.info("Dropped %d account(s) the directory filter did not exclude", dropped)
    logger.info("Fetched %d account(s) under %s", len(records), organizational_unit)
    return records

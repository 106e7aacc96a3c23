"""
Password status rules for directory accounts.

classify() maps one account to a status against the domain policy and the
configured thresholds. aggregate() partitions classified accounts into the
report buckets used for rendering and dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable


STATUS_EXPIRED = "Expired"
STATUS_CRITICAL = "Critical"
STATUS_WARNING = "Warning"
STATUS_OK = "OK"
STATUS_NEVER_EXPIRES = "NeverExpires"
STATUS_NEVER_LOGGED_IN = "NeverLoggedIn"

STATUSES = (
    STATUS_EXPIRED,
    STATUS_CRITICAL,
    STATUS_WARNING,
    STATUS_OK,
    STATUS_NEVER_EXPIRES,
    STATUS_NEVER_LOGGED_IN,
)

# Statuses that trigger a per-user notice.
NOTIFY_STATUSES = (STATUS_EXPIRED, STATUS_CRITICAL, STATUS_WARNING)

BUCKET_NAMES = (
    "expired",
    "critical",
    "warning",
    "never_expires",
    "never_logged_in",
    "disabled",
)


@dataclass(frozen=True)
class AccountRecord:
    display_name: str
    account_name: str
    email: str | None = None
    password_last_set: datetime | None = None
    password_never_expires: bool = False
    enabled: bool = True


@dataclass(frozen=True)
class PolicyThresholds:
    """Run-wide thresholds. critical_threshold_days <= warning_threshold_days is up to the caller."""

    warning_threshold_days: int
    critical_threshold_days: int
    max_password_age: timedelta
    include_disabled: bool = False
    include_never_expires: bool = False


@dataclass(frozen=True)
class ClassificationResult:
    display_name: str
    account_name: str
    email: str | None
    enabled: bool
    password_never_expires: bool
    status: str
    expiration_date: datetime | None = None
    days_left: int | None = None

    @property
    def needs_notice(self) -> bool:
        return self.status in NOTIFY_STATUSES


@dataclass(frozen=True)
class ReportBuckets:
    expired: tuple[ClassificationResult, ...] = ()
    critical: tuple[ClassificationResult, ...] = ()
    warning: tuple[ClassificationResult, ...] = ()
    never_expires: tuple[ClassificationResult, ...] = ()
    never_logged_in: tuple[ClassificationResult, ...] = ()
    disabled: tuple[ClassificationResult, ...] = ()
    total: int = 0
    show_disabled: bool = False
    show_never_expires: bool = False

    @property
    def counts(self) -> dict[str, int]:
        return {name: len(getattr(self, name)) for name in BUCKET_NAMES}

    @property
    def attention_count(self) -> int:
        return len(self.expired) + len(self.critical) + len(self.warning)

    def notify_candidates(self) -> list[ClassificationResult]:
        """Expired, critical and warning results in report order."""
        return [*self.expired, *self.critical, *self.warning]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify(
    record: AccountRecord,
    policy: PolicyThresholds,
    now: datetime | None = None,
) -> ClassificationResult:
    base = {
        "display_name": record.display_name,
        "account_name": record.account_name,
        "email": record.email,
        "enabled": record.enabled,
        "password_never_expires": record.password_never_expires,
    }

    if record.password_last_set is None:
        return ClassificationResult(status=STATUS_NEVER_LOGGED_IN, **base)
    if record.password_never_expires:
        return ClassificationResult(status=STATUS_NEVER_EXPIRES, **base)

    current = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    expiration_date = _as_utc(record.password_last_set) + policy.max_password_age
    # timedelta.days floors toward negative infinity.
    days_left = (expiration_date - current).days

    if days_left < 0:
        status = STATUS_EXPIRED
    elif days_left <= policy.critical_threshold_days:
        status = STATUS_CRITICAL
    elif days_left <= policy.warning_threshold_days:
        status = STATUS_WARNING
    else:
        status = STATUS_OK

    return ClassificationResult(
        status=status,
        expiration_date=expiration_date,
        days_left=days_left,
        **base,
    )


def classify_all(
    records: Iterable[AccountRecord],
    policy: PolicyThresholds,
    now: datetime | None = None,
) -> list[ClassificationResult]:
    current = now if now is not None else datetime.now(timezone.utc)
    return [classify(record, policy, current) for record in records]


def _by_status(results: list[ClassificationResult], status: str) -> list[ClassificationResult]:
    return [result for result in results if result.status == status]


def _soonest_first(results: list[ClassificationResult]) -> tuple[ClassificationResult, ...]:
    return tuple(sorted(results, key=lambda result: result.days_left))


def aggregate(
    results: Iterable[ClassificationResult],
    include_disabled: bool = False,
    include_never_expires: bool = False,
) -> ReportBuckets:
    """
    Group classified accounts into report buckets.

    Inclusion is decided upstream at fetch time; the flags here only travel
    with the buckets so the renderer knows which optional sections to show.
    """
    items = list(results)
    return ReportBuckets(
        expired=_soonest_first(_by_status(items, STATUS_EXPIRED)),
        critical=_soonest_first(_by_status(items, STATUS_CRITICAL)),
        warning=_soonest_first(_by_status(items, STATUS_WARNING)),
        never_expires=tuple(_by_status(items, STATUS_NEVER_EXPIRES)),
        never_logged_in=tuple(_by_status(items, STATUS_NEVER_LOGGED_IN)),
        disabled=tuple(result for result in items if not result.enabled),
        total=len(items),
        show_disabled=include_disabled,
        show_never_expires=include_never_expires,
    )

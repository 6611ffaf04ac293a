"""Anomaly detection over fresh check results."""

import logging
import math
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime

from . import database
from .models import AnomalyRecord, AnomalyType, CheckResult, Severity, Site, SiteSettings

logger = logging.getLogger(__name__)

# Number of prior checks used as the baseline for relative thresholds
ROLLING_WINDOW = 10

SLOW_RESPONSE_MULTIPLIER = 2
SLOW_RESPONSE_HIGH_MULTIPLIER = 4

SECONDS_PER_DAY = 86400

SECURITY_HEADERS = (
    "strict-transport-security",
    "content-security-policy",
    "x-content-type-options",
    "x-frame-options",
    "x-xss-protection",
    "referrer-policy",
    "permissions-policy",
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def should_notify(settings: SiteSettings | None, anomaly_type: AnomalyType, severity: Severity) -> bool:
    """Decide whether an anomaly is eligible for notification.

    A type is disabled only by an explicit ``False`` toggle. The severity must
    reach the site's severity floor. A site without settings notifies everything.
    """
    if settings is None:
        return True
    if settings.notify_toggle(anomaly_type) is False:
        return False
    return severity.rank >= settings.severity_threshold.rank


class _Collector:
    """Accumulates anomaly records for one check."""

    def __init__(self, check_id: int, site_id: int, now: datetime) -> None:
        self.check_id = check_id
        self.site_id = site_id
        self.now = now
        self.records: list[AnomalyRecord] = []

    def add(self, anomaly_type: AnomalyType, description: str, severity: Severity) -> None:
        self.records.append(
            AnomalyRecord(
                check_id=self.check_id,
                site_id=self.site_id,
                type=anomaly_type,
                description=description,
                severity=severity,
                created_at=self.now,
            )
        )


def _check_downtime(current: CheckResult, out: _Collector) -> None:
    if current.status_code is None:
        description = f"site unreachable: {current.error_message}" if current.error_message else "site unreachable"
        out.add(AnomalyType.DOWNTIME, description, Severity.CRITICAL)
    elif current.status_code >= 500:
        out.add(AnomalyType.DOWNTIME, f"server error: HTTP {current.status_code}", Severity.CRITICAL)


def _check_slow_response(
    current: CheckResult,
    history: list[CheckResult],
    settings: SiteSettings,
    out: _Collector,
) -> None:
    elapsed = current.response_time_ms
    if elapsed is None:
        return

    threshold = settings.response_time_threshold
    if threshold is not None:
        # An absolute threshold replaces the rolling average entirely.
        if elapsed > threshold:
            severity = Severity.HIGH if elapsed > threshold * 2 else Severity.MEDIUM
            out.add(
                AnomalyType.SLOW_RESPONSE,
                f"response time {elapsed}ms exceeds threshold ({threshold}ms)",
                severity,
            )
        return

    times = [check.response_time_ms for check in history if check.response_time_ms is not None]
    if not times:
        return

    avg = sum(times) / len(times)
    if elapsed > avg * SLOW_RESPONSE_MULTIPLIER:
        severity = Severity.HIGH if elapsed > avg * SLOW_RESPONSE_HIGH_MULTIPLIER else Severity.MEDIUM
        out.add(
            AnomalyType.SLOW_RESPONSE,
            f"response time {elapsed}ms exceeds 2x rolling average ({round(avg)}ms)",
            severity,
        )


def _check_status_code(current: CheckResult, out: _Collector) -> None:
    code = current.status_code
    if code is None:
        return
    if 400 <= code < 500:
        severity = Severity.HIGH if code in (401, 403) else Severity.MEDIUM
        out.add(AnomalyType.STATUS_CODE, f"client error: HTTP {code}", severity)
    elif 300 <= code < 400:
        out.add(AnomalyType.STATUS_CODE, f"redirect: HTTP {code}", Severity.LOW)


def _check_content_change(current: CheckResult, history: list[CheckResult], out: _Collector) -> None:
    if current.body_hash is None or not history:
        return

    # No lookback bound: the newest hashed check may be arbitrarily old.
    previous = next((check.body_hash for check in history if check.body_hash is not None), None)
    if previous is not None and previous != current.body_hash:
        out.add(AnomalyType.CONTENT_CHANGE, "response body content changed since last check", Severity.LOW)


def _check_ssl(current: CheckResult, site: Site, settings: SiteSettings, now: datetime, out: _Collector) -> None:
    if not site.url.lower().startswith("https://"):
        return

    if current.ssl_valid is False:
        out.add(AnomalyType.SSL_ISSUE, "ssl certificate is invalid", Severity.CRITICAL)

    if current.ssl_expiry is not None:
        days = math.floor((current.ssl_expiry - now).total_seconds() / SECONDS_PER_DAY)
        if days <= 0:
            out.add(AnomalyType.SSL_ISSUE, f"ssl certificate expired {abs(days)} days ago", Severity.CRITICAL)
        elif days <= settings.ssl_expiry_warning_days:
            out.add(AnomalyType.SSL_ISSUE, f"ssl certificate expires in {days} days", Severity.HIGH)


def _check_headers(current: CheckResult, history: list[CheckResult], out: _Collector) -> None:
    if current.headers_snapshot is None or not history:
        return

    previous = next((check.headers_snapshot for check in history if check.headers_snapshot is not None), None)
    if previous is None:
        return

    current_headers = {key.lower(): value for key, value in current.headers_snapshot.items()}
    previous_headers = {key.lower(): value for key, value in previous.items()}

    removed: list[str] = []
    changed: list[str] = []
    for header in SECURITY_HEADERS:
        before = previous_headers.get(header)
        after = current_headers.get(header)
        if before is None:
            continue
        if after is None:
            removed.append(header)
        elif before != after:
            changed.append(header)

    if removed:
        out.add(AnomalyType.HEADER_ANOMALY, f"security headers removed: {', '.join(removed)}", Severity.HIGH)
    if changed:
        out.add(AnomalyType.HEADER_ANOMALY, f"security headers changed: {', '.join(changed)}", Severity.MEDIUM)


def evaluate(
    current: CheckResult,
    history: list[CheckResult],
    site: Site,
    settings: SiteSettings,
    now: datetime,
    check_id: int,
    site_id: int,
) -> list[AnomalyRecord]:
    """Run every detection rule against a check.

    Args:
        current: The check under evaluation.
        history: Prior checks for the same site, newest first.
        site: The site the check belongs to.
        settings: Effective per-site settings (defaults when none are stored).
        now: Reference time for certificate expiry and record timestamps.
        check_id: Id of the stored check.
        site_id: Id of the site.

    Returns:
        Detected anomalies in rule order (may be empty).
    """
    out = _Collector(check_id, site_id, now)
    _check_downtime(current, out)
    _check_slow_response(current, history, settings, out)
    _check_status_code(current, out)
    _check_content_change(current, history, out)
    _check_ssl(current, site, settings, now, out)
    _check_headers(current, history, out)
    return out.records


class AnomalyDetector:
    """Loads a stored check with its context and evaluates it.

    Detection never writes to the database; the caller persists the returned
    records.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = _utcnow) -> None:
        self._conn = conn
        self._clock = clock

    def detect(self, check_id: int, site_id: int) -> list[AnomalyRecord]:
        """Classify a stored check into anomalies.

        Returns an empty list (and logs) when the check or its site is missing.

        Raises:
            DatabaseError: If loading the check context fails.
        """
        current = database.get_check(self._conn, check_id)
        if current is None:
            logger.warning("Check %d not found, skipping detection", check_id)
            return []

        site = database.get_site(self._conn, site_id)
        if site is None:
            logger.warning("Site %d not found, skipping detection for check %d", site_id, check_id)
            return []

        history = database.get_recent_checks(self._conn, site_id, ROLLING_WINDOW, exclude_id=check_id)
        settings = database.get_site_settings(self._conn, site_id) or SiteSettings(site_id=site_id)

        anomalies = evaluate(current, history, site, settings, self._clock(), check_id, site_id)
        if anomalies:
            logger.info(
                "Detected %d anomalies for %s: %s",
                len(anomalies),
                site.name,
                ", ".join(a.type.value for a in anomalies),
            )
        return anomalies

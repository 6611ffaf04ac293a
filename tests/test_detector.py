"""Tests for the anomaly detection engine."""

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sitewatch.database import add_site, init_db, insert_check, upsert_site_settings
from sitewatch.detector import AnomalyDetector, evaluate, should_notify
from sitewatch.models import AnomalyType, CheckResult, Severity, Site, SiteSettings

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

HTTPS_SITE = Site(id=1, url="https://example.com", name="Example")
HTTP_SITE = Site(id=1, url="http://example.com", name="Example")


def _check(**overrides) -> CheckResult:
    values = {
        "status_code": 200,
        "response_time_ms": 100,
        "is_up": True,
        "error_message": None,
        "checked_at": NOW,
    }
    values.update(overrides)
    return CheckResult(**values)


def _history(*times: int | None, **overrides) -> list[CheckResult]:
    return [
        _check(response_time_ms=t, checked_at=NOW - timedelta(minutes=i + 1), **overrides)
        for i, t in enumerate(times)
    ]


def _evaluate(
    current: CheckResult,
    history: list[CheckResult] | None = None,
    site: Site = HTTP_SITE,
    settings: SiteSettings | None = None,
):
    return evaluate(current, history or [], site, settings or SiteSettings(site_id=site.id), NOW, 10, site.id)


def _of_type(anomalies, anomaly_type: AnomalyType):
    return [a for a in anomalies if a.type == anomaly_type]


class TestDowntimeRule:
    """Tests for the downtime rule."""

    def test_server_error_scenario(self) -> None:
        """A 503 yields one critical downtime anomaly citing the code."""
        anomalies = _evaluate(_check(status_code=503, is_up=False))

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.type == AnomalyType.DOWNTIME
        assert anomaly.severity == Severity.CRITICAL
        assert "503" in anomaly.description
        assert anomaly.check_id == 10
        assert anomaly.site_id == 1
        assert anomaly.created_at == NOW

    @pytest.mark.parametrize("status_code", [500, 502, 504, 599])
    def test_every_5xx_is_one_critical_downtime(self, status_code: int) -> None:
        """Every 5xx status produces exactly one critical downtime record."""
        downtime = _of_type(_evaluate(_check(status_code=status_code, is_up=False)), AnomalyType.DOWNTIME)

        assert len(downtime) == 1
        assert downtime[0].severity == Severity.CRITICAL
        assert str(status_code) in downtime[0].description

    def test_unreachable_with_message(self) -> None:
        """The error message appears verbatim in the description."""
        current = _check(status_code=None, response_time_ms=None, is_up=False, error_message="connect ECONNREFUSED")
        [anomaly] = _evaluate(current)

        assert anomaly.type == AnomalyType.DOWNTIME
        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.description == "site unreachable: connect ECONNREFUSED"

    def test_unreachable_without_message(self) -> None:
        """A failure without message gets the generic description."""
        [anomaly] = _evaluate(_check(status_code=None, response_time_ms=None, is_up=False))
        assert anomaly.description == "site unreachable"

    def test_up_check_has_no_downtime(self) -> None:
        """Healthy checks produce nothing."""
        assert _evaluate(_check()) == []


class TestSlowResponseRule:
    """Tests for the slow response rule."""

    def test_rolling_average_scenario(self) -> None:
        """250ms against a 100ms average is a medium slow response."""
        anomalies = _evaluate(_check(response_time_ms=250), _history(100, 100, 100, 100, 100))

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.type == AnomalyType.SLOW_RESPONSE
        assert anomaly.severity == Severity.MEDIUM
        assert anomaly.description == "response time 250ms exceeds 2x rolling average (100ms)"

    def test_above_four_times_average_is_high(self) -> None:
        """More than 4x the average is high severity."""
        [anomaly] = _evaluate(_check(response_time_ms=401), _history(100, 100))
        assert anomaly.severity == Severity.HIGH

    def test_exactly_twice_average_is_not_flagged(self) -> None:
        """The comparison is strictly greater than 2x."""
        assert _evaluate(_check(response_time_ms=200), _history(100, 100)) == []

    def test_null_history_times_are_ignored(self) -> None:
        """Failed checks without timing do not drag the average down."""
        [anomaly] = _evaluate(_check(response_time_ms=250), _history(100, None, None))
        assert anomaly.description.endswith("(100ms)")

    def test_no_history_no_evaluation(self) -> None:
        """Nothing can be anomalous against an empty baseline."""
        assert _evaluate(_check(response_time_ms=5000)) == []

    def test_absolute_threshold_medium(self) -> None:
        """The per-site threshold flags values above it."""
        settings = SiteSettings(site_id=1, response_time_threshold=500)
        [anomaly] = _evaluate(_check(response_time_ms=600), settings=settings)

        assert anomaly.severity == Severity.MEDIUM
        assert anomaly.description == "response time 600ms exceeds threshold (500ms)"

    def test_absolute_threshold_high(self) -> None:
        """More than twice the threshold is high severity."""
        settings = SiteSettings(site_id=1, response_time_threshold=500)
        [anomaly] = _evaluate(_check(response_time_ms=1001), settings=settings)
        assert anomaly.severity == Severity.HIGH

    def test_absolute_threshold_replaces_average(self) -> None:
        """With an override the rolling average is never consulted."""
        settings = SiteSettings(site_id=1, response_time_threshold=1000)
        assert _evaluate(_check(response_time_ms=900), _history(100, 100), settings=settings) == []

    def test_missing_response_time(self) -> None:
        """Checks without timing skip the rule."""
        settings = SiteSettings(site_id=1, response_time_threshold=1)
        assert _evaluate(_check(response_time_ms=None), settings=settings) == []


class TestStatusCodeRule:
    """Tests for the status code rule."""

    @pytest.mark.parametrize(
        ("status_code", "severity", "description"),
        [
            (404, Severity.MEDIUM, "client error: HTTP 404"),
            (429, Severity.MEDIUM, "client error: HTTP 429"),
            (401, Severity.HIGH, "client error: HTTP 401"),
            (403, Severity.HIGH, "client error: HTTP 403"),
            (301, Severity.LOW, "redirect: HTTP 301"),
        ],
    )
    def test_classifies_status(self, status_code: int, severity: Severity, description: str) -> None:
        """3xx and 4xx statuses are classified by range."""
        [anomaly] = _evaluate(_check(status_code=status_code))

        assert anomaly.type == AnomalyType.STATUS_CODE
        assert anomaly.severity == severity
        assert anomaly.description == description

    def test_server_errors_are_left_to_downtime(self) -> None:
        """5xx produces no status_code record."""
        anomalies = _evaluate(_check(status_code=500, is_up=False))
        assert _of_type(anomalies, AnomalyType.STATUS_CODE) == []


class TestContentChangeRule:
    """Tests for the content change rule."""

    def test_changed_hash(self) -> None:
        """A different hash from the latest hashed check is a low anomaly."""
        [anomaly] = _evaluate(_check(body_hash="new"), _history(100, body_hash="old"))

        assert anomaly.type == AnomalyType.CONTENT_CHANGE
        assert anomaly.severity == Severity.LOW
        assert anomaly.description == "response body content changed since last check"

    def test_same_hash(self) -> None:
        """An identical hash is not an anomaly."""
        assert _evaluate(_check(body_hash="same"), _history(100, body_hash="same")) == []

    def test_first_observation(self) -> None:
        """No prior hash means no comparison."""
        assert _evaluate(_check(body_hash="new"), _history(100, 100)) == []

    def test_skips_unhashed_checks(self) -> None:
        """Checks without a hash are skipped when looking for the baseline."""
        history = [
            _check(status_code=None, response_time_ms=None, is_up=False, checked_at=NOW - timedelta(minutes=1)),
            _check(status_code=None, response_time_ms=None, is_up=False, checked_at=NOW - timedelta(minutes=2)),
            _check(body_hash="old", checked_at=NOW - timedelta(days=3)),
        ]
        anomalies = _evaluate(_check(body_hash="new", response_time_ms=None), history)

        assert [a.type for a in anomalies] == [AnomalyType.CONTENT_CHANGE]

    def test_compares_against_newest_hash(self) -> None:
        """Only the newest hashed check is compared."""
        history = [
            _check(body_hash="same", checked_at=NOW - timedelta(minutes=1)),
            _check(body_hash="older", checked_at=NOW - timedelta(minutes=2)),
        ]
        assert _evaluate(_check(body_hash="same"), history) == []


class TestSslRule:
    """Tests for the SSL rule."""

    def test_expiring_soon_scenario(self) -> None:
        """A certificate expiring in 3 days is a high anomaly."""
        anomalies = _evaluate(
            _check(ssl_valid=True, ssl_expiry=NOW + timedelta(days=3)),
            site=HTTPS_SITE,
        )

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.type == AnomalyType.SSL_ISSUE
        assert anomaly.severity == Severity.HIGH
        assert "3 days" in anomaly.description

    def test_invalid_certificate(self) -> None:
        """An invalid certificate is critical."""
        [anomaly] = _evaluate(_check(ssl_valid=False), site=HTTPS_SITE)

        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.description == "ssl certificate is invalid"

    def test_expired_certificate(self) -> None:
        """An expired certificate states how long ago it expired."""
        [anomaly] = _evaluate(_check(ssl_valid=True, ssl_expiry=NOW - timedelta(days=2)), site=HTTPS_SITE)

        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.description == "ssl certificate expired 2 days ago"

    def test_expiring_within_a_day_counts_as_expired(self) -> None:
        """Whole days are floored, so under one day left is day zero."""
        [anomaly] = _evaluate(_check(ssl_valid=True, ssl_expiry=NOW + timedelta(hours=5)), site=HTTPS_SITE)

        assert anomaly.severity == Severity.CRITICAL
        assert anomaly.description == "ssl certificate expired 0 days ago"

    def test_invalid_and_expiring(self) -> None:
        """Invalid and expiring are independent findings."""
        anomalies = _evaluate(_check(ssl_valid=False, ssl_expiry=NOW + timedelta(days=5)), site=HTTPS_SITE)

        assert [a.severity for a in anomalies] == [Severity.CRITICAL, Severity.HIGH]

    def test_outside_warning_window(self) -> None:
        """Certificates beyond the warning window are fine."""
        assert _evaluate(_check(ssl_valid=True, ssl_expiry=NOW + timedelta(days=30)), site=HTTPS_SITE) == []

    def test_custom_warning_window(self) -> None:
        """The per-site warning window widens the check."""
        settings = SiteSettings(site_id=1, ssl_expiry_warning_days=45)
        [anomaly] = _evaluate(
            _check(ssl_valid=True, ssl_expiry=NOW + timedelta(days=30)),
            site=HTTPS_SITE,
            settings=settings,
        )
        assert anomaly.description == "ssl certificate expires in 30 days"

    def test_http_site_ignored(self) -> None:
        """Non-https sites skip the rule entirely."""
        assert _evaluate(_check(ssl_valid=False, ssl_expiry=NOW - timedelta(days=1)), site=HTTP_SITE) == []


class TestHeaderRule:
    """Tests for the security header rule."""

    def test_removed_header_scenario(self) -> None:
        """A dropped x-frame-options is a high anomaly naming the header."""
        history = _history(100, headers_snapshot={"x-frame-options": "DENY", "server": "nginx"})
        anomalies = _evaluate(_check(headers_snapshot={"server": "nginx"}), history)

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.type == AnomalyType.HEADER_ANOMALY
        assert anomaly.severity == Severity.HIGH
        assert "x-frame-options" in anomaly.description

    def test_removed_and_changed(self) -> None:
        """Removed and changed headers produce one record each."""
        previous = {
            "strict-transport-security": "max-age=31536000",
            "content-security-policy": "default-src 'self'",
            "x-content-type-options": "nosniff",
            "referrer-policy": "no-referrer",
        }
        current = {
            "strict-transport-security": "max-age=0",
            "referrer-policy": "origin",
        }
        anomalies = _evaluate(_check(headers_snapshot=current), _history(100, headers_snapshot=previous))

        assert [(a.severity, a.description) for a in anomalies] == [
            (Severity.HIGH, "security headers removed: content-security-policy, x-content-type-options"),
            (Severity.MEDIUM, "security headers changed: strict-transport-security, referrer-policy"),
        ]

    def test_new_headers_are_not_anomalies(self) -> None:
        """Adding a security header is fine."""
        history = _history(100, headers_snapshot={})
        assert _evaluate(_check(headers_snapshot={"x-frame-options": "DENY"}), history) == []

    def test_non_security_headers_ignored(self) -> None:
        """Only the fixed security headers are compared."""
        history = _history(100, headers_snapshot={"server": "nginx", "etag": "a"})
        assert _evaluate(_check(headers_snapshot={"etag": "b"}), history) == []

    def test_uses_newest_prior_snapshot(self) -> None:
        """Checks without a snapshot are skipped when finding the baseline."""
        history = [
            _check(status_code=None, response_time_ms=None, is_up=False, checked_at=NOW - timedelta(minutes=1)),
            _check(headers_snapshot={"x-frame-options": "DENY"}, checked_at=NOW - timedelta(minutes=2)),
        ]
        anomalies = _evaluate(_check(headers_snapshot={}, response_time_ms=None), history)

        assert [a.type for a in anomalies] == [AnomalyType.HEADER_ANOMALY]

    def test_no_prior_snapshot(self) -> None:
        """Without a prior snapshot nothing is compared."""
        assert _evaluate(_check(headers_snapshot={}), _history(100)) == []


class TestShouldNotify:
    """Tests for notification eligibility."""

    def test_no_settings_notifies_everything(self) -> None:
        """A site without settings is notified for every anomaly."""
        assert should_notify(None, AnomalyType.CONTENT_CHANGE, Severity.LOW) is True

    def test_unset_toggle_is_enabled(self) -> None:
        """A None toggle counts as enabled."""
        assert should_notify(SiteSettings(site_id=1), AnomalyType.DOWNTIME, Severity.CRITICAL) is True

    def test_explicit_false_disables_type(self) -> None:
        """Only an explicit False disables a type."""
        settings = SiteSettings(site_id=1, notify_ssl_issue=False)
        assert should_notify(settings, AnomalyType.SSL_ISSUE, Severity.CRITICAL) is False
        assert should_notify(settings, AnomalyType.DOWNTIME, Severity.CRITICAL) is True

    @pytest.mark.parametrize(
        ("severity", "expected"),
        [
            (Severity.LOW, False),
            (Severity.MEDIUM, False),
            (Severity.HIGH, True),
            (Severity.CRITICAL, True),
        ],
    )
    def test_severity_floor(self, severity: Severity, expected: bool) -> None:
        """Severities below the floor are not notified."""
        settings = SiteSettings(site_id=1, severity_threshold=Severity.HIGH)
        assert should_notify(settings, AnomalyType.STATUS_CODE, severity) is expected


class TestAnomalyDetector:
    """Tests for AnomalyDetector against a real database."""

    @pytest.fixture
    def db_conn(self, tmp_path: Path) -> sqlite3.Connection:
        """Create a database connection with initialized tables."""
        conn = init_db(str(tmp_path / "test.db"))
        yield conn
        conn.close()

    @pytest.fixture
    def detector(self, db_conn: sqlite3.Connection) -> AnomalyDetector:
        """Create a detector with a fixed clock."""
        return AnomalyDetector(db_conn, clock=lambda: NOW)

    def test_detects_from_stored_history(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """History is loaded from the store, excluding the current check."""
        site_id = add_site(db_conn, "https://example.com", "Example")
        for i in range(5):
            insert_check(db_conn, site_id, _check(checked_at=NOW - timedelta(minutes=5 - i)))
        check_id = insert_check(db_conn, site_id, _check(response_time_ms=250))

        [anomaly] = detector.detect(check_id, site_id)

        assert anomaly.type == AnomalyType.SLOW_RESPONSE
        assert anomaly.check_id == check_id
        assert anomaly.site_id == site_id

    def test_rolling_window_limited_to_ten(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """Only the ten most recent prior checks form the baseline."""
        site_id = add_site(db_conn, "http://example.com", "Example")
        for i in range(20):
            # Old checks are slow, the ten newest are fast.
            elapsed = 1000 if i < 10 else 100
            insert_check(db_conn, site_id, _check(response_time_ms=elapsed, checked_at=NOW - timedelta(minutes=20 - i)))
        check_id = insert_check(db_conn, site_id, _check(response_time_ms=300))

        [anomaly] = detector.detect(check_id, site_id)
        assert anomaly.description.endswith("(100ms)")

    def test_uses_stored_settings(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """Per-site overrides are read from the store."""
        site_id = add_site(db_conn, "http://example.com", "Example")
        upsert_site_settings(db_conn, SiteSettings(site_id=site_id, response_time_threshold=50))
        check_id = insert_check(db_conn, site_id, _check(response_time_ms=80))

        [anomaly] = detector.detect(check_id, site_id)
        assert anomaly.description == "response time 80ms exceeds threshold (50ms)"

    def test_missing_check(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """An unknown check id yields no anomalies."""
        site_id = add_site(db_conn, "http://example.com", "Example")
        assert detector.detect(999, site_id) == []

    def test_missing_site(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """An unknown site id yields no anomalies."""
        site_id = add_site(db_conn, "http://example.com", "Example")
        check_id = insert_check(db_conn, site_id, _check(status_code=503, is_up=False))
        assert detector.detect(check_id, 999) == []

    def test_does_not_persist(self, db_conn: sqlite3.Connection, detector: AnomalyDetector) -> None:
        """Detection leaves the anomalies table untouched."""
        site_id = add_site(db_conn, "http://example.com", "Example")
        check_id = insert_check(db_conn, site_id, _check(status_code=503, is_up=False))

        assert len(detector.detect(check_id, site_id)) == 1
        assert db_conn.execute("SELECT COUNT(*) FROM anomalies").fetchone()[0] == 0

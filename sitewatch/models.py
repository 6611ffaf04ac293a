"""Data models for sites, probe results and detected anomalies."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AnomalyType(str, Enum):
    """Kinds of anomaly the detector can report."""

    DOWNTIME = "downtime"
    SLOW_RESPONSE = "slow_response"
    STATUS_CODE = "status_code"
    CONTENT_CHANGE = "content_change"
    SSL_ISSUE = "ssl_issue"
    HEADER_ANOMALY = "header_anomaly"


class Severity(str, Enum):
    """Anomaly severity, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Position of this severity in the total order (0..3)."""
        return SEVERITY_LEVELS[self]


SEVERITY_LEVELS: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class Site:
    """A monitored site as stored in the database."""

    id: int
    url: str
    name: str
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SiteSettings:
    """Per-site overrides for detection and notification.

    A missing settings row is equivalent to ``SiteSettings(site_id)``: every
    field below carries its default. Notification toggles use ``None`` for
    "not set", which counts as enabled.

    Attributes:
        site_id: Site these settings belong to.
        response_time_threshold: Absolute slow-response threshold (ms). When set,
            replaces the rolling-average comparison.
        ssl_expiry_warning_days: Days before certificate expiry to warn.
        check_interval: Seconds between checks of this site.
        custom_name: Display name used in alerts instead of the site name.
        severity_threshold: Lowest severity that is notified.
        escalation_threshold_minutes: Continuous downtime before alerts escalate.
    """

    site_id: int
    response_time_threshold: int | None = None
    ssl_expiry_warning_days: int = 7
    check_interval: int = 60
    custom_name: str | None = None
    notify_downtime: bool | None = None
    notify_slow_response: bool | None = None
    notify_status_code: bool | None = None
    notify_content_change: bool | None = None
    notify_ssl_issue: bool | None = None
    notify_header_anomaly: bool | None = None
    severity_threshold: Severity = Severity.LOW
    escalation_threshold_minutes: int = 5

    def notify_toggle(self, anomaly_type: AnomalyType) -> bool | None:
        """Return the notification toggle for an anomaly type."""
        toggles: dict[AnomalyType, bool | None] = {
            AnomalyType.DOWNTIME: self.notify_downtime,
            AnomalyType.SLOW_RESPONSE: self.notify_slow_response,
            AnomalyType.STATUS_CODE: self.notify_status_code,
            AnomalyType.CONTENT_CHANGE: self.notify_content_change,
            AnomalyType.SSL_ISSUE: self.notify_ssl_issue,
            AnomalyType.HEADER_ANOMALY: self.notify_header_anomaly,
        }
        return toggles[anomaly_type]


@dataclass(frozen=True)
class RedirectHop:
    """One redirect response traversed before the final response."""

    url: str
    status_code: int


@dataclass(frozen=True)
class SslCertificate:
    """Peer certificate details captured for HTTPS targets."""

    issuer: str | None = None
    subject: str | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    serial_number: str | None = None
    fingerprint256: str | None = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of probing a site once.

    Attributes:
        status_code: HTTP status of the final response, or None if no response.
        response_time_ms: Time until the final response arrived, or None.
        is_up: True when a response arrived with a status below 500.
        error_message: Failure description, None on success.
        error_code: Failure kind (e.g. ETIMEDOUT, REDIRECT_LOOP), None on success.
        headers_snapshot: Final response headers with lower-cased keys.
        body_hash: SHA-256 hex digest of the final response body.
        ssl_valid: Whether the peer certificate verified, None if not captured.
        ssl_expiry: Certificate notAfter, None if not captured.
        ssl_certificate: Certificate details, None if not captured.
        redirect_chain: Redirect hops in traversal order.
        checked_at: When the probe started.
        id: Database id, None until stored.
        site_id: Owning site, None until stored.
    """

    status_code: int | None
    response_time_ms: int | None
    is_up: bool
    error_message: str | None
    checked_at: datetime
    error_code: str | None = None
    headers_snapshot: dict[str, str] | None = None
    body_hash: str | None = None
    ssl_valid: bool | None = None
    ssl_expiry: datetime | None = None
    ssl_certificate: SslCertificate | None = None
    redirect_chain: list[RedirectHop] = field(default_factory=list)
    id: int | None = None
    site_id: int | None = None


@dataclass(frozen=True)
class AnomalyRecord:
    """A typed, severity-ranked deviation found in a check."""

    check_id: int
    site_id: int
    type: AnomalyType
    description: str
    severity: Severity
    created_at: datetime

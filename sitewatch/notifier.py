"""Webhook notification dispatch with rate limiting and downtime escalation."""

import logging
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import requests

from . import database
from .models import AnomalyRecord, AnomalyType, Severity, Site, SiteSettings
from .security import UnsafeUrlError, mask_url, validate_webhook_url

logger = logging.getLogger(__name__)

# Settings table key holding the outbound webhook URL
WEBHOOK_URL_KEY = "webhook_url"

# Settings table key prefix for global per-type switches ("false" disables)
GLOBAL_NOTIFY_PREFIX = "global_notify_"

DEFAULT_RATE_LIMIT_SECONDS = 300
WEBHOOK_TIMEOUT_SECONDS = 10

SEVERITY_EMOJI: dict[Severity, str] = {
    Severity.CRITICAL: "\U0001f534",
    Severity.HIGH: "\U0001f7e0",
    Severity.MEDIUM: "\U0001f7e1",
    Severity.LOW: "\U0001f535",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class DispatchState:
    """In-memory rate-limit and escalation state, lost on restart."""

    last_notified: dict[tuple[int, str], datetime] = field(default_factory=dict)  # {(site_id, type): time}
    downtime_start: dict[int, datetime] = field(default_factory=dict)  # {site_id: first downtime}


class Dispatcher:
    """Sends anomaly alerts to the configured webhook.

    Each Dispatcher owns its own state, so independent instances never share
    rate-limit windows or downtime markers.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        clock: Callable[[], datetime] = _utcnow,
        rate_limit_seconds: int = DEFAULT_RATE_LIMIT_SECONDS,
        allow_private: bool = False,
        max_workers: int = 2,
    ):
        """Initialize the dispatcher.

        Args:
            conn: Database connection used to read the webhook URL and switches.
            clock: Source of the current time for rate limiting and escalation.
            rate_limit_seconds: Minimum time between alerts per site and anomaly type.
            allow_private: Allow webhook URLs on private network addresses.
            max_workers: Threads used by ``submit`` for background delivery.
        """
        self._conn = conn
        self._clock = clock
        self._rate_limit = timedelta(seconds=rate_limit_seconds)
        self._allow_private = allow_private
        self._state = DispatchState()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier")

    def record_downtime(self, site_id: int) -> None:
        """Mark the start of a downtime streak unless one is already open."""
        with self._lock:
            self._state.downtime_start.setdefault(site_id, self._clock())

    def clear_downtime(self, site_id: int) -> None:
        """Close the downtime streak for a site that is back up."""
        with self._lock:
            if self._state.downtime_start.pop(site_id, None) is not None:
                logger.info("Site %d recovered, downtime streak cleared", site_id)

    def is_escalated(self, site_id: int, threshold_minutes: int) -> bool:
        """Whether the site has been continuously down for at least the threshold."""
        with self._lock:
            started = self._state.downtime_start.get(site_id)
        if started is None:
            return False
        return self._clock() - started >= timedelta(minutes=threshold_minutes)

    def _is_rate_limited(self, site_id: int, anomaly_type: AnomalyType) -> bool:
        """Check the per-(site, type) window and record the attempt if it passes."""
        key = (site_id, anomaly_type.value)
        now = self._clock()
        with self._lock:
            last = self._state.last_notified.get(key)
            if last is not None and now - last < self._rate_limit:
                return True
            self._state.last_notified[key] = now
            return False

    def _is_globally_disabled(self, anomaly_type: AnomalyType) -> bool:
        value = database.get_setting(self._conn, f"{GLOBAL_NOTIFY_PREFIX}{anomaly_type.value}")
        return value is not None and value.strip().lower() == "false"

    def dispatch(self, anomaly: AnomalyRecord, site: Site, settings: SiteSettings | None = None) -> None:
        """Send one anomaly alert, best-effort.

        A missing webhook URL, a global switch, or the rate limit makes this a
        silent no-op. Delivery failures are logged and never retried. Never raises.

        Args:
            anomaly: The anomaly to report.
            site: The site the anomaly belongs to.
            settings: Per-site settings, used for the display name and escalation threshold.
        """
        try:
            webhook_url = database.get_setting(self._conn, WEBHOOK_URL_KEY)
            if not webhook_url:
                return

            if self._is_globally_disabled(anomaly.type):
                logger.debug("Notifications for %s are disabled globally", anomaly.type.value)
                return

            if self._is_rate_limited(site.id, anomaly.type):
                logger.debug("Rate limit active for %s/%s, skipping", site.name, anomaly.type.value)
                return

            escalated = False
            if anomaly.type == AnomalyType.DOWNTIME:
                threshold = (settings or SiteSettings(site_id=site.id)).escalation_threshold_minutes
                escalated = self.is_escalated(site.id, threshold)

            validate_webhook_url(webhook_url, allow_private=self._allow_private)
        except UnsafeUrlError as e:
            logger.error("Webhook URL validation failed for %s: %s", mask_url(webhook_url), e)
            return
        except database.DatabaseError as e:
            logger.error("Cannot dispatch %s alert for %s: %s", anomaly.type.value, site.name, e)
            return

        payload = self._build_payload(anomaly, site, settings, escalated)
        self._post(webhook_url, payload, f"{anomaly.type.value} alert for {site.name}")

    def submit(self, anomaly: AnomalyRecord, site: Site, settings: SiteSettings | None = None) -> Future:
        """Dispatch in the background and return the Future without waiting on it."""
        return self._executor.submit(self._guarded_dispatch, anomaly, site, settings)

    def _guarded_dispatch(self, anomaly: AnomalyRecord, site: Site, settings: SiteSettings | None) -> None:
        try:
            self.dispatch(anomaly, site, settings)
        except Exception:
            logger.exception("Unexpected error dispatching %s alert for %s", anomaly.type.value, site.name)

    def close(self) -> None:
        """Wait for queued deliveries and release the worker threads."""
        self._executor.shutdown(wait=True)

    def _post(self, webhook_url: str, payload: dict, label: str) -> bool:
        try:
            response = requests.post(webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Webhook delivery failed for %s to %s: %s", label, mask_url(webhook_url), e)
            return False

        logger.info("Webhook sent for %s to %s", label, mask_url(webhook_url))
        return True

    def _build_payload(
        self,
        anomaly: AnomalyRecord,
        site: Site,
        settings: SiteSettings | None,
        escalated: bool,
    ) -> dict:
        """Build the webhook payload.

        Returns:
            JSON-serializable payload with a human-readable ``text`` summary.
        """
        display_name = (settings.custom_name if settings else None) or site.name
        summary = f"{SEVERITY_EMOJI[anomaly.severity]} Anomaly detected on {display_name}: {anomaly.type.value}"
        if escalated:
            summary = f"[ESCALATED] {summary}"

        return {
            "event": "anomaly_detected",
            "text": f"{summary}\n{anomaly.description}",
            "site": {
                "id": site.id,
                "name": display_name,
                "url": site.url,
            },
            "anomaly": {
                "check_id": anomaly.check_id,
                "type": anomaly.type.value,
                "severity": anomaly.severity.value,
                "description": anomaly.description,
            },
            "escalated": escalated,
            "timestamp": anomaly.created_at.isoformat(),
        }

    def send_test_alert(self) -> bool:
        """Post a test payload to the configured webhook.

        Returns:
            True if the webhook accepted the payload, False otherwise.
        """
        webhook_url = database.get_setting(self._conn, WEBHOOK_URL_KEY)
        if not webhook_url:
            logger.warning("No webhook URL configured")
            return False

        try:
            validate_webhook_url(webhook_url, allow_private=self._allow_private)
        except UnsafeUrlError as e:
            logger.error("Webhook URL validation failed for %s: %s", mask_url(webhook_url), e)
            return False

        payload = {
            "event": "test",
            "text": f"{SEVERITY_EMOJI[Severity.LOW]} SiteWatch test notification",
            "timestamp": self._clock().isoformat(),
        }
        return self._post(webhook_url, payload, "test alert")

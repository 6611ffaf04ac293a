"""Fixed-tick scheduler driving the probe, detect and dispatch pipeline."""

import logging
import sqlite3
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from threading import Event, Thread

from . import database
from .config import Config
from .detector import AnomalyDetector, should_notify
from .models import AnomalyType, CheckResult, Site, SiteSettings
from .notifier import Dispatcher
from .prober import probe

logger = logging.getLogger(__name__)

# Run retention cleanup every N ticks.
# At the default 10s tick this is roughly every 100 minutes.
CLEANUP_INTERVAL_TICKS = 600

Prober = Callable[[str, float, Callable[[], datetime]], CheckResult]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Scheduler:
    """Threaded scheduler that checks every due site on a fixed tick.

    The tick interval is global; each site is only checked once its own
    ``check_interval`` has elapsed since its last stored check. Due sites are
    processed concurrently and a failure in one site's pipeline never affects
    the others.

    Example:
        scheduler = Scheduler(config, conn, detector, dispatcher)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        config: Config,
        conn: sqlite3.Connection,
        detector: AnomalyDetector,
        dispatcher: Dispatcher,
        prober: Prober = probe,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Application configuration.
            conn: Database connection for sites, checks and anomalies.
            detector: Detector run on every stored check.
            dispatcher: Dispatcher receiving eligible anomalies.
            prober: Callable ``(url, timeout, clock=...) -> CheckResult``.
            clock: Source of the current time for due-site filtering and check timestamps.
        """
        self._config = config
        self._conn = conn
        self._detector = detector
        self._dispatcher = dispatcher
        self._prober = prober
        self._clock = clock
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._tick_count = 0

    def start(self) -> None:
        """Start the scheduler loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="scheduler-loop")
        self._thread.start()
        logger.info("Scheduler started (tick every %ds)", self._config.monitor.tick_seconds)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop scheduling new ticks.

        Probes already in flight run to their own timeout.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping scheduler...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Scheduler thread did not stop within timeout")
        else:
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        """Check if the scheduler loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        """Main scheduler loop - runs in background thread."""
        logger.debug("Scheduler loop started")

        while not self._stop_event.is_set():
            try:
                self.run_tick()
            except Exception as e:
                logger.error("Scheduler tick failed: %s", e)

            self._tick_count += 1
            if self._tick_count >= CLEANUP_INTERVAL_TICKS:
                self._run_cleanup()
                self._tick_count = 0

            self._stop_event.wait(timeout=self._config.monitor.tick_seconds)

        logger.debug("Scheduler loop exited")

    def _get_sites_due(self, now: datetime) -> list[tuple[Site, SiteSettings | None]]:
        """Get active sites whose check interval has elapsed, with their settings."""
        last_checked = database.get_last_check_times(self._conn)
        due: list[tuple[Site, SiteSettings | None]] = []

        for site in database.get_active_sites(self._conn):
            settings = database.get_site_settings(self._conn, site.id)
            interval = (settings or SiteSettings(site_id=site.id)).check_interval
            last = last_checked.get(site.id)
            if last is None or last + timedelta(seconds=interval) <= now:
                due.append((site, settings))
        return due

    def run_tick(self) -> dict[int, bool]:
        """Check every due site once, concurrently.

        Returns:
            Mapping of site id to whether its pipeline completed.
        """
        due = self._get_sites_due(self._clock())
        if not due:
            return {}

        logger.debug("Checking %d due sites", len(due))
        outcomes: dict[int, bool] = {}

        with ThreadPoolExecutor(max_workers=self._config.monitor.max_workers) as executor:
            futures = {executor.submit(self._process_site, site, settings): site for site, settings in due}

            for future in as_completed(futures):
                site = futures[future]
                try:
                    future.result()
                    outcomes[site.id] = True
                except Exception as e:
                    logger.error("Pipeline failed for %s: %s", site.name, e)
                    outcomes[site.id] = False

        return outcomes

    def _process_site(self, site: Site, settings: SiteSettings | None) -> None:
        """Probe one site, store the check, detect anomalies and notify."""
        result = self._prober(site.url, self._config.monitor.probe_timeout, clock=self._clock)
        check_id = database.insert_check(self._conn, site.id, result)

        if result.is_up:
            logger.debug("%s: UP %s (%sms)", site.name, result.status_code, result.response_time_ms)
        else:
            logger.debug("%s: DOWN %s", site.name, result.error_code or result.status_code)

        anomalies = self._detector.detect(check_id, site.id)
        database.insert_anomalies(self._conn, anomalies)

        if any(anomaly.type == AnomalyType.DOWNTIME for anomaly in anomalies):
            self._dispatcher.record_downtime(site.id)
        elif result.is_up:
            self._dispatcher.clear_downtime(site.id)

        for anomaly in anomalies:
            if should_notify(settings, anomaly.type, anomaly.severity):
                self._dispatcher.submit(anomaly, site, settings)

    def _run_cleanup(self) -> None:
        """Run periodic cleanup of old checks and anomalies."""
        retention_days = self._config.database.retention_days
        try:
            deleted_checks, deleted_anomalies = database.cleanup_old_records(
                self._conn, retention_days, now=self._clock()
            )
            if deleted_checks or deleted_anomalies:
                logger.info("Cleaned up %d checks and %d anomalies", deleted_checks, deleted_anomalies)
        except database.DatabaseError as e:
            logger.error("Cleanup failed: %s", e)

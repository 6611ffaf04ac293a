"""SQLite persistence for sites, checks, anomalies and settings."""

import json
import sqlite3
import threading
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .config import SiteConfig
from .models import (
    AnomalyRecord,
    AnomalyType,
    CheckResult,
    RedirectHop,
    Severity,
    Site,
    SiteSettings,
    SslCertificate,
)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# Site pipelines and alert delivery share one connection from worker threads.
_db_lock = threading.Lock()

_NOTIFY_COLUMNS: dict[AnomalyType, str] = {
    AnomalyType.DOWNTIME: "notify_downtime",
    AnomalyType.SLOW_RESPONSE: "notify_slow_response",
    AnomalyType.STATUS_CODE: "notify_status_code",
    AnomalyType.CONTENT_CHANGE: "notify_content_change",
    AnomalyType.SSL_ISSUE: "notify_ssl_issue",
    AnomalyType.HEADER_ANOMALY: "notify_header_anomaly",
}

_CHECK_COLUMNS = """
    id, site_id, status_code, response_time_ms, is_up, error_message, error_code,
    headers_snapshot, body_hash, ssl_valid, ssl_expiry, ssl_certificate, redirect_chain, checked_at
"""


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS sites (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS site_settings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                site_id INTEGER NOT NULL UNIQUE REFERENCES sites(id) ON DELETE CASCADE,
                response_time_threshold INTEGER,
                ssl_expiry_warning_days INTEGER,
                check_interval INTEGER,
                custom_name TEXT,
                notify_downtime INTEGER,
                notify_slow_response INTEGER,
                notify_status_code INTEGER,
                notify_content_change INTEGER,
                notify_ssl_issue INTEGER,
                notify_header_anomaly INTEGER,
                severity_threshold TEXT,
                escalation_threshold INTEGER,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                site_id INTEGER NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
                status_code INTEGER,
                response_time_ms INTEGER,
                is_up INTEGER NOT NULL,
                error_message TEXT,
                error_code TEXT,
                headers_snapshot TEXT,
                body_hash TEXT,
                ssl_valid INTEGER,
                ssl_expiry TEXT,
                ssl_certificate TEXT,
                redirect_chain TEXT,
                checked_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS anomalies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                check_id INTEGER NOT NULL REFERENCES checks(id) ON DELETE CASCADE,
                site_id INTEGER NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                description TEXT,
                severity TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_site_id ON checks(site_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_checked_at ON checks(checked_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_checks_site_checked ON checks(site_id, checked_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_anomalies_check_id ON anomalies(check_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_anomalies_site_type ON anomalies(site_id, type)")

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_flag(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _from_flag(value: int | None) -> bool | None:
    return None if value is None else bool(value)


def _dump_certificate(cert: SslCertificate | None) -> str | None:
    if cert is None:
        return None
    data = asdict(cert)
    data["valid_from"] = _to_iso(cert.valid_from)
    data["valid_to"] = _to_iso(cert.valid_to)
    return json.dumps(data)


def _load_certificate(raw: str | None) -> SslCertificate | None:
    if not raw:
        return None
    data = json.loads(raw)
    data["valid_from"] = _from_iso(data.get("valid_from"))
    data["valid_to"] = _from_iso(data.get("valid_to"))
    return SslCertificate(**data)


def _site_from_row(row: sqlite3.Row) -> Site:
    return Site(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
    )


def _check_from_row(row: sqlite3.Row) -> CheckResult:
    chain_raw = row["redirect_chain"]
    chain = [RedirectHop(url=hop["url"], status_code=hop["status_code"]) for hop in json.loads(chain_raw)] if chain_raw else []
    headers_raw = row["headers_snapshot"]

    return CheckResult(
        id=row["id"],
        site_id=row["site_id"],
        status_code=row["status_code"],
        response_time_ms=row["response_time_ms"],
        is_up=bool(row["is_up"]),
        error_message=row["error_message"],
        error_code=row["error_code"],
        headers_snapshot=json.loads(headers_raw) if headers_raw else None,
        body_hash=row["body_hash"],
        ssl_valid=_from_flag(row["ssl_valid"]),
        ssl_expiry=_from_iso(row["ssl_expiry"]),
        ssl_certificate=_load_certificate(row["ssl_certificate"]),
        redirect_chain=chain,
        checked_at=datetime.fromisoformat(row["checked_at"]),
    )


def add_site(conn: sqlite3.Connection, url: str, name: str, is_active: bool = True) -> int:
    """Insert a site and return its id.

    Raises:
        DatabaseError: If the insert fails.
    """
    now = datetime.now(UTC).isoformat()
    try:
        with _db_lock:
            cursor = conn.execute(
                "INSERT INTO sites (url, name, is_active, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (url, name, 1 if is_active else 0, now, now),
            )
            conn.commit()
            return int(cursor.lastrowid)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert site: {e}")


def get_site(conn: sqlite3.Connection, site_id: int) -> Site | None:
    """Get a site by id, or None if it does not exist."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _site_from_row(row) if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get site {site_id}: {e}")


def get_active_sites(conn: sqlite3.Connection) -> list[Site]:
    """Get all sites flagged active, ordered by id."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT * FROM sites WHERE is_active = 1 ORDER BY id").fetchall()
        return [_site_from_row(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get active sites: {e}")


def get_site_settings(conn: sqlite3.Connection, site_id: int) -> SiteSettings | None:
    """Get the settings row for a site.

    Null columns fall back to the SiteSettings defaults.

    Returns:
        SiteSettings, or None when the site has no settings row.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM site_settings WHERE site_id = ?", (site_id,)).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get settings for site {site_id}: {e}")

    if row is None:
        return None

    defaults = SiteSettings(site_id=site_id)
    toggles = {column: _from_flag(row[column]) for column in _NOTIFY_COLUMNS.values()}

    return SiteSettings(
        site_id=site_id,
        response_time_threshold=row["response_time_threshold"],
        ssl_expiry_warning_days=row["ssl_expiry_warning_days"] or defaults.ssl_expiry_warning_days,
        check_interval=row["check_interval"] or defaults.check_interval,
        custom_name=row["custom_name"],
        severity_threshold=Severity(row["severity_threshold"] or defaults.severity_threshold.value),
        escalation_threshold_minutes=row["escalation_threshold"] or defaults.escalation_threshold_minutes,
        **toggles,
    )


def upsert_site_settings(conn: sqlite3.Connection, settings: SiteSettings) -> None:
    """Insert or replace the settings row for ``settings.site_id``."""
    toggles = [_to_flag(settings.notify_toggle(anomaly_type)) for anomaly_type in _NOTIFY_COLUMNS]
    try:
        with _db_lock:
            conn.execute(
                f"""
                INSERT INTO site_settings
                (site_id, response_time_threshold, ssl_expiry_warning_days, check_interval, custom_name,
                 {", ".join(_NOTIFY_COLUMNS.values())},
                 severity_threshold, escalation_threshold, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(site_id) DO UPDATE SET
                    response_time_threshold = excluded.response_time_threshold,
                    ssl_expiry_warning_days = excluded.ssl_expiry_warning_days,
                    check_interval = excluded.check_interval,
                    custom_name = excluded.custom_name,
                    notify_downtime = excluded.notify_downtime,
                    notify_slow_response = excluded.notify_slow_response,
                    notify_status_code = excluded.notify_status_code,
                    notify_content_change = excluded.notify_content_change,
                    notify_ssl_issue = excluded.notify_ssl_issue,
                    notify_header_anomaly = excluded.notify_header_anomaly,
                    severity_threshold = excluded.severity_threshold,
                    escalation_threshold = excluded.escalation_threshold,
                    updated_at = excluded.updated_at
                """,
                (
                    settings.site_id,
                    settings.response_time_threshold,
                    settings.ssl_expiry_warning_days,
                    settings.check_interval,
                    settings.custom_name,
                    *toggles,
                    settings.severity_threshold.value,
                    settings.escalation_threshold_minutes,
                    datetime.now(UTC).isoformat(),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to save settings for site {settings.site_id}: {e}")


def sync_sites(conn: sqlite3.Connection, site_configs: list[SiteConfig]) -> list[int]:
    """Make the sites table reflect the sites declared in the configuration.

    Sites are matched by URL. Existing rows get their name and active flag
    updated, new URLs are inserted. Sites absent from the configuration are
    left untouched.

    Returns:
        Site ids in configuration order.
    """
    site_ids: list[int] = []
    now = datetime.now(UTC).isoformat()

    for site_config in site_configs:
        try:
            with _db_lock:
                row = conn.execute("SELECT id FROM sites WHERE url = ? ORDER BY id LIMIT 1", (site_config.url,)).fetchone()
                if row is not None:
                    conn.execute(
                        "UPDATE sites SET name = ?, is_active = ?, updated_at = ? WHERE id = ?",
                        (site_config.name, 1 if site_config.active else 0, now, row["id"]),
                    )
                    conn.commit()
                    site_id = int(row["id"])
                else:
                    site_id = None
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to sync site '{site_config.name}': {e}")

        if site_id is None:
            site_id = add_site(conn, site_config.url, site_config.name, site_config.active)

        if site_config.settings is not None:
            declared = site_config.settings
            upsert_site_settings(
                conn,
                SiteSettings(
                    site_id=site_id,
                    response_time_threshold=declared.response_time_threshold,
                    ssl_expiry_warning_days=declared.ssl_expiry_warning_days,
                    check_interval=declared.check_interval,
                    custom_name=declared.custom_name,
                    notify_downtime=declared.notify.get("downtime"),
                    notify_slow_response=declared.notify.get("slow_response"),
                    notify_status_code=declared.notify.get("status_code"),
                    notify_content_change=declared.notify.get("content_change"),
                    notify_ssl_issue=declared.notify.get("ssl_issue"),
                    notify_header_anomaly=declared.notify.get("header_anomaly"),
                    severity_threshold=Severity(declared.severity_threshold),
                    escalation_threshold_minutes=declared.escalation_threshold_minutes,
                ),
            )

        site_ids.append(site_id)

    return site_ids


def insert_check(conn: sqlite3.Connection, site_id: int, result: CheckResult) -> int:
    """Insert a check result for a site.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        site_id: Site the check belongs to.
        result: Check result to insert.

    Returns:
        The generated check id.

    Raises:
        DatabaseError: If the insert fails.
    """
    chain = [{"url": hop.url, "status_code": hop.status_code} for hop in result.redirect_chain]
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                INSERT INTO checks
                (site_id, status_code, response_time_ms, is_up, error_message, error_code,
                 headers_snapshot, body_hash, ssl_valid, ssl_expiry, ssl_certificate, redirect_chain, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    site_id,
                    result.status_code,
                    result.response_time_ms,
                    1 if result.is_up else 0,
                    result.error_message,
                    result.error_code,
                    json.dumps(result.headers_snapshot) if result.headers_snapshot is not None else None,
                    result.body_hash,
                    _to_flag(result.ssl_valid),
                    _to_iso(result.ssl_expiry),
                    _dump_certificate(result.ssl_certificate),
                    json.dumps(chain),
                    result.checked_at.isoformat(),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check result: {e}")


def get_check(conn: sqlite3.Connection, check_id: int) -> CheckResult | None:
    """Get a stored check by id, or None if it does not exist."""
    try:
        with _db_lock:
            row = conn.execute(f"SELECT {_CHECK_COLUMNS} FROM checks WHERE id = ?", (check_id,)).fetchone()
        return _check_from_row(row) if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get check {check_id}: {e}")


def get_recent_checks(
    conn: sqlite3.Connection,
    site_id: int,
    limit: int,
    exclude_id: int | None = None,
) -> list[CheckResult]:
    """Get the most recent checks for a site.

    Args:
        conn: Database connection.
        site_id: Site to query.
        limit: Maximum number of checks to return.
        exclude_id: Check id to leave out (typically the check under evaluation).

    Returns:
        Checks ordered by checked_at descending (newest first).

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                f"""
                SELECT {_CHECK_COLUMNS} FROM checks
                WHERE site_id = ? AND id != ?
                ORDER BY checked_at DESC, id DESC
                LIMIT ?
                """,
                (site_id, exclude_id if exclude_id is not None else -1, limit),
            ).fetchall()
        return [_check_from_row(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get recent checks for site {site_id}: {e}")


def get_last_check_times(conn: sqlite3.Connection) -> dict[int, datetime]:
    """Get the timestamp of the latest check for every site that has one."""
    try:
        with _db_lock:
            rows = conn.execute(
                "SELECT site_id, MAX(checked_at) AS last_checked FROM checks GROUP BY site_id"
            ).fetchall()
        return {row["site_id"]: datetime.fromisoformat(row["last_checked"]) for row in rows}
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get last check times: {e}")


def insert_anomalies(conn: sqlite3.Connection, anomalies: list[AnomalyRecord]) -> int:
    """Insert a batch of anomalies in a single transaction.

    Returns:
        Number of inserted rows.
    """
    if not anomalies:
        return 0

    try:
        with _db_lock:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO anomalies (check_id, site_id, type, description, severity, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            anomaly.check_id,
                            anomaly.site_id,
                            anomaly.type.value,
                            anomaly.description,
                            anomaly.severity.value,
                            anomaly.created_at.isoformat(),
                        )
                        for anomaly in anomalies
                    ],
                )
        return len(anomalies)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert anomalies: {e}")


def get_anomalies_for_check(conn: sqlite3.Connection, check_id: int) -> list[AnomalyRecord]:
    """Get the anomalies recorded for a check, in insertion order."""
    try:
        with _db_lock:
            rows = conn.execute(
                "SELECT * FROM anomalies WHERE check_id = ? ORDER BY id",
                (check_id,),
            ).fetchall()
        return [
            AnomalyRecord(
                check_id=row["check_id"],
                site_id=row["site_id"],
                type=AnomalyType(row["type"]),
                description=row["description"],
                severity=Severity(row["severity"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get anomalies for check {check_id}: {e}")


def get_setting(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a global setting value by key, or None if unset."""
    try:
        with _db_lock:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get setting '{key}': {e}")


def delete_setting(conn: sqlite3.Connection, key: str) -> None:
    """Remove a global setting."""
    try:
        with _db_lock:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete setting '{key}': {e}")


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a global setting (insert or update). An empty value removes the key."""
    if value == "":
        delete_setting(conn, key)
        return

    try:
        with _db_lock:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to set setting '{key}': {e}")


def cleanup_old_records(
    conn: sqlite3.Connection,
    retention_days: int,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Delete anomalies and checks older than the retention period.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        retention_days: Delete records older than this many days.
        now: Reference time, defaults to the current UTC time.

    Returns:
        Tuple of (deleted_checks, deleted_anomalies).

    Raises:
        DatabaseError: If the cleanup fails.
    """
    cutoff = ((now or datetime.now(UTC)) - timedelta(days=retention_days)).isoformat()

    try:
        with _db_lock:
            with conn:
                deleted_anomalies = conn.execute("DELETE FROM anomalies WHERE created_at < ?", (cutoff,)).rowcount
                deleted_checks = conn.execute("DELETE FROM checks WHERE checked_at < ?", (cutoff,)).rowcount
        return deleted_checks, deleted_anomalies

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old records: {e}")

"""SQLite persistence: schema, transactions and query helpers.

A single ``sqlite3.Connection`` is opened at startup with ``get_connection``
and passed to the orchestrator and scheduler. Every multi-statement write
runs inside ``transaction`` so project updates, run output and the history
ledger merge are atomic per project.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from relevx.errors import ProjectNotFoundError
from relevx.models import (
    AdminNotification,
    DeliveryLog,
    DeliveryStats,
    Finding,
    ProcessedUrl,
    Project,
    ProjectSettings,
    QueryPerformance,
    SearchHistory,
    SearchParameters,
    utcnow,
)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    frequency TEXT NOT NULL DEFAULT 'daily',
    delivery_time TEXT NOT NULL DEFAULT '09:00',
    timezone TEXT NOT NULL DEFAULT 'UTC',
    day_of_week INTEGER,
    day_of_month INTEGER,
    search_parameters TEXT NOT NULL DEFAULT '{}',
    settings TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'active',
    last_run_at TEXT,
    next_run_at TEXT,
    last_error TEXT,
    prepared_delivery_log_id TEXT,
    research_started_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS findings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    delivery_log_id TEXT,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL,
    source_query TEXT NOT NULL,
    search_engine TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL DEFAULT '',
    snippet TEXT NOT NULL,
    full_content TEXT,
    relevancy_score REAL NOT NULL,
    relevancy_reason TEXT NOT NULL DEFAULT '',
    key_points TEXT NOT NULL DEFAULT '[]',
    author TEXT,
    published_date TEXT,
    image_url TEXT,
    word_count INTEGER NOT NULL DEFAULT 0,
    fetched_at TEXT NOT NULL,
    analyzed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS delivery_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    report_markdown TEXT NOT NULL,
    report_title TEXT NOT NULL,
    report_summary TEXT NOT NULL DEFAULT '',
    stats TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    result_urls TEXT NOT NULL DEFAULT '[]',
    research_started_at TEXT,
    research_completed_at TEXT,
    delivered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS search_history (
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, project_id)
);

CREATE TABLE IF NOT EXISTS admin_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    severity TEXT NOT NULL,
    project_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    project_title TEXT NOT NULL,
    error_message TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    occurred_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS research_analytics (
    scope TEXT NOT NULL,
    date_key TEXT NOT NULL,
    completed_research INTEGER NOT NULL DEFAULT 0,
    project_ids TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (scope, date_key)
);

CREATE INDEX IF NOT EXISTS idx_projects_status ON projects(status);
CREATE INDEX IF NOT EXISTS idx_findings_project ON findings(user_id, project_id);
CREATE INDEX IF NOT EXISTS idx_delivery_logs_project ON delivery_logs(user_id, project_id);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction; rolls back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def new_id() -> str:
    return uuid.uuid4().hex


def _dt_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(s: str | None) -> datetime | None:
    if s is None:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# --- Project helpers ---


def insert_project(conn: sqlite3.Connection, project: Project) -> str:
    """Insert a project, returning its ID."""
    project.id = project.id or new_id()
    now = _dt_str(utcnow())
    with transaction(conn):
        conn.execute(
            """INSERT INTO projects
               (id, user_id, title, description, frequency, delivery_time, timezone,
                day_of_week, day_of_month, search_parameters, settings, status,
                last_run_at, next_run_at, last_error, prepared_delivery_log_id,
                research_started_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                project.id,
                project.user_id,
                project.title,
                project.description,
                project.frequency,
                project.delivery_time,
                project.timezone,
                project.day_of_week,
                project.day_of_month,
                json.dumps(asdict(project.search_parameters)),
                json.dumps(asdict(project.settings)),
                project.status,
                _dt_str(project.last_run_at),
                _dt_str(project.next_run_at),
                project.last_error,
                project.prepared_delivery_log_id,
                _dt_str(project.research_started_at),
                _dt_str(project.created_at),
                now,
            ),
        )
    return project.id


def get_project(conn: sqlite3.Connection, user_id: str, project_id: str) -> Project:
    """Load one project or raise ProjectNotFoundError."""
    row = conn.execute(
        "SELECT * FROM projects WHERE user_id = ? AND id = ?", (user_id, project_id)
    ).fetchone()
    if row is None:
        raise ProjectNotFoundError(user_id, project_id)
    return _row_to_project(row)


def get_projects_by_status(conn: sqlite3.Connection, status: str) -> list[Project]:
    rows = conn.execute(
        "SELECT * FROM projects WHERE status = ? ORDER BY next_run_at", (status,)
    ).fetchall()
    return [_row_to_project(row) for row in rows]


_UPDATABLE_PROJECT_FIELDS = {
    "status",
    "last_run_at",
    "next_run_at",
    "last_error",
    "prepared_delivery_log_id",
    "research_started_at",
}


def _update_project(
    conn: sqlite3.Connection, user_id: str, project_id: str, fields: dict
) -> None:
    unknown = set(fields) - _UPDATABLE_PROJECT_FIELDS
    if unknown:
        raise ValueError(f"Cannot update project fields: {sorted(unknown)}")
    values = [
        _dt_str(v) if isinstance(v, datetime) else v for v in fields.values()
    ]
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(
        f"UPDATE projects SET {assignments}, updated_at = ? WHERE user_id = ? AND id = ?",
        (*values, _dt_str(utcnow()), user_id, project_id),
    )


def update_project(
    conn: sqlite3.Connection, user_id: str, project_id: str, **fields
) -> None:
    """Atomically update lifecycle fields of one project."""
    with transaction(conn):
        _update_project(conn, user_id, project_id, fields)


def mark_projects_running(
    conn: sqlite3.Connection, projects: list[Project], now: datetime
) -> list[Project]:
    """Claim projects for a run; returns only those still ``active`` at claim time."""
    claimed = []
    with transaction(conn):
        for project in projects:
            cur = conn.execute(
                """UPDATE projects SET status = 'running', research_started_at = ?,
                   updated_at = ? WHERE user_id = ? AND id = ? AND status = 'active'""",
                (_dt_str(now), _dt_str(now), project.user_id, project.id),
            )
            if cur.rowcount:
                project.status = "running"
                project.research_started_at = now
                claimed.append(project)
    return claimed


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        frequency=row["frequency"],
        delivery_time=row["delivery_time"],
        timezone=row["timezone"],
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        search_parameters=SearchParameters(**json.loads(row["search_parameters"])),
        settings=ProjectSettings(**json.loads(row["settings"])),
        status=row["status"],
        last_run_at=_parse_dt(row["last_run_at"]),
        next_run_at=_parse_dt(row["next_run_at"]),
        last_error=row["last_error"],
        prepared_delivery_log_id=row["prepared_delivery_log_id"],
        research_started_at=_parse_dt(row["research_started_at"]),
        created_at=_parse_dt(row["created_at"]),
    )


# --- Finding helpers ---


def _insert_finding(conn: sqlite3.Connection, finding: Finding) -> str:
    finding.id = finding.id or new_id()
    conn.execute(
        """INSERT INTO findings
           (id, user_id, project_id, delivery_log_id, url, normalized_url, source_query,
            search_engine, title, snippet, full_content, relevancy_score, relevancy_reason,
            key_points, author, published_date, image_url, word_count, fetched_at, analyzed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            finding.id,
            finding.user_id,
            finding.project_id,
            finding.delivery_log_id,
            finding.url,
            finding.normalized_url,
            finding.source_query,
            finding.search_engine,
            finding.title,
            finding.snippet,
            finding.full_content,
            finding.relevancy_score,
            finding.relevancy_reason,
            json.dumps(finding.key_points),
            finding.author,
            finding.published_date,
            finding.image_url,
            finding.word_count,
            _dt_str(finding.fetched_at),
            _dt_str(finding.analyzed_at),
        ),
    )
    return finding.id


def get_findings(
    conn: sqlite3.Connection,
    user_id: str,
    project_id: str,
    delivery_log_id: str | None = None,
) -> list[Finding]:
    """Findings for a project, optionally limited to one delivery."""
    sql = "SELECT * FROM findings WHERE user_id = ? AND project_id = ?"
    params: tuple = (user_id, project_id)
    if delivery_log_id is not None:
        sql += " AND delivery_log_id = ?"
        params += (delivery_log_id,)
    rows = conn.execute(sql + " ORDER BY relevancy_score DESC", params).fetchall()
    return [_row_to_finding(row) for row in rows]


def _row_to_finding(row: sqlite3.Row) -> Finding:
    return Finding(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row["project_id"],
        delivery_log_id=row["delivery_log_id"],
        url=row["url"],
        normalized_url=row["normalized_url"],
        source_query=row["source_query"],
        search_engine=row["search_engine"],
        title=row["title"],
        snippet=row["snippet"],
        full_content=row["full_content"],
        relevancy_score=row["relevancy_score"],
        relevancy_reason=row["relevancy_reason"],
        key_points=json.loads(row["key_points"]),
        author=row["author"],
        published_date=row["published_date"],
        image_url=row["image_url"],
        word_count=row["word_count"],
        fetched_at=_parse_dt(row["fetched_at"]),
        analyzed_at=_parse_dt(row["analyzed_at"]),
    )


# --- Delivery log helpers ---


def _insert_delivery_log(conn: sqlite3.Connection, log: DeliveryLog) -> str:
    log.id = log.id or new_id()
    conn.execute(
        """INSERT INTO delivery_logs
           (id, user_id, project_id, report_markdown, report_title, report_summary, stats,
            status, retry_count, error, result_urls, research_started_at,
            research_completed_at, delivered_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            log.id,
            log.user_id,
            log.project_id,
            log.report_markdown,
            log.report_title,
            log.report_summary,
            json.dumps(asdict(log.stats)),
            log.status,
            log.retry_count,
            log.error,
            json.dumps(log.result_urls),
            _dt_str(log.research_started_at),
            _dt_str(log.research_completed_at),
            _dt_str(log.delivered_at),
            _dt_str(log.created_at),
        ),
    )
    return log.id


def get_delivery_log(
    conn: sqlite3.Connection, user_id: str, project_id: str, log_id: str
) -> DeliveryLog | None:
    row = conn.execute(
        "SELECT * FROM delivery_logs WHERE user_id = ? AND project_id = ? AND id = ?",
        (user_id, project_id, log_id),
    ).fetchone()
    return _row_to_delivery_log(row) if row else None


def get_delivery_logs(
    conn: sqlite3.Connection, user_id: str, project_id: str
) -> list[DeliveryLog]:
    rows = conn.execute(
        """SELECT * FROM delivery_logs WHERE user_id = ? AND project_id = ?
           ORDER BY created_at DESC""",
        (user_id, project_id),
    ).fetchall()
    return [_row_to_delivery_log(row) for row in rows]


def get_recent_delivery_logs(conn: sqlite3.Connection, limit: int = 10) -> list[sqlite3.Row]:
    """Fetch recent delivery logs across all projects."""
    return conn.execute(
        "SELECT * FROM delivery_logs ORDER BY created_at DESC LIMIT ?", (limit,)
    ).fetchall()


def _set_delivery_status(
    conn: sqlite3.Connection,
    user_id: str,
    project_id: str,
    log_id: str,
    status: str,
    delivered_at: datetime | None,
) -> None:
    conn.execute(
        """UPDATE delivery_logs SET status = ?, delivered_at = ?
           WHERE user_id = ? AND project_id = ? AND id = ?""",
        (status, _dt_str(delivered_at), user_id, project_id, log_id),
    )


def release_delivery(
    conn: sqlite3.Connection,
    project: Project,
    log_id: str,
    now: datetime,
    next_run_at: datetime,
) -> None:
    """Flip a log to ``success`` and reschedule the project in one transaction."""
    with transaction(conn):
        _set_delivery_status(conn, project.user_id, project.id, log_id, "success", now)
        _update_project(
            conn,
            project.user_id,
            project.id,
            {
                "status": "active",
                "prepared_delivery_log_id": None,
                "last_run_at": now,
                "next_run_at": next_run_at,
                "last_error": None,
            },
        )


def _row_to_delivery_log(row: sqlite3.Row) -> DeliveryLog:
    return DeliveryLog(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row["project_id"],
        report_markdown=row["report_markdown"],
        report_title=row["report_title"],
        report_summary=row["report_summary"],
        stats=DeliveryStats(**json.loads(row["stats"])),
        status=row["status"],
        retry_count=row["retry_count"],
        error=row["error"],
        result_urls=json.loads(row["result_urls"]),
        research_started_at=_parse_dt(row["research_started_at"]),
        research_completed_at=_parse_dt(row["research_completed_at"]),
        delivered_at=_parse_dt(row["delivered_at"]),
        created_at=_parse_dt(row["created_at"]),
    )


# --- Search history helpers ---


def _history_to_json(history: SearchHistory) -> str:
    return json.dumps(
        {
            "processed_urls": [
                {**asdict(p), "first_seen_at": _dt_str(p.first_seen_at)}
                for p in history.processed_urls.values()
            ],
            "query_performance": [
                {**asdict(q), "last_used_at": _dt_str(q.last_used_at)}
                for q in history.query_performance.values()
            ],
            "total_searches_executed": history.total_searches_executed,
        }
    )


def get_search_history(
    conn: sqlite3.Connection, user_id: str, project_id: str
) -> SearchHistory:
    """Load the project's ledger, or an empty one if none exists yet."""
    row = conn.execute(
        "SELECT data, updated_at FROM search_history WHERE user_id = ? AND project_id = ?",
        (user_id, project_id),
    ).fetchone()
    if row is None:
        return SearchHistory(user_id=user_id, project_id=project_id)

    data = json.loads(row["data"])
    processed = {}
    for item in data.get("processed_urls", []):
        item["first_seen_at"] = _parse_dt(item["first_seen_at"])
        entry = ProcessedUrl(**item)
        processed[entry.normalized_url] = entry
    performance = {}
    for item in data.get("query_performance", []):
        item["last_used_at"] = _parse_dt(item["last_used_at"])
        entry = QueryPerformance(**item)
        performance[entry.query] = entry

    return SearchHistory(
        user_id=user_id,
        project_id=project_id,
        processed_urls=processed,
        query_performance=performance,
        total_searches_executed=data.get("total_searches_executed", 0),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _save_search_history(conn: sqlite3.Connection, history: SearchHistory) -> None:
    conn.execute(
        """INSERT INTO search_history (user_id, project_id, data, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(user_id, project_id)
           DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at""",
        (
            history.user_id,
            history.project_id,
            _history_to_json(history),
            _dt_str(history.updated_at),
        ),
    )


def update_search_history(conn: sqlite3.Connection, user_id: str, project_id: str, merge) -> SearchHistory:
    """Read-modify-write the ledger atomically; ``merge`` mutates the loaded history."""
    with transaction(conn):
        history = get_search_history(conn, user_id, project_id)
        merge(history)
        _save_search_history(conn, history)
    return history


# --- Run output ---


def save_research_output(
    conn: sqlite3.Connection,
    log: DeliveryLog,
    findings: list[Finding],
    merge_history,
) -> str:
    """Persist a run's delivery log, findings, ledger merge and analytics atomically."""
    with transaction(conn):
        log_id = _insert_delivery_log(conn, log)
        for finding in findings:
            finding.delivery_log_id = log_id
            _insert_finding(conn, finding)
        history = get_search_history(conn, log.user_id, log.project_id)
        merge_history(history)
        _save_search_history(conn, history)
        record_completed_research(
            conn, log.user_id, log.project_id, log.research_completed_at or utcnow()
        )
    return log_id


# --- Admin notifications ---


def _insert_admin_notification(
    conn: sqlite3.Connection, notification: AdminNotification
) -> int:
    cur = conn.execute(
        """INSERT INTO admin_notifications
           (type, severity, project_id, user_id, project_title, error_message,
            retry_count, status, occurred_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            notification.type,
            notification.severity,
            notification.project_id,
            notification.user_id,
            notification.project_title,
            notification.error_message,
            notification.retry_count,
            notification.status,
            _dt_str(notification.occurred_at),
        ),
    )
    notification.id = cur.lastrowid
    return cur.lastrowid


def escalate_failure(
    conn: sqlite3.Connection,
    notification: AdminNotification,
    next_run_at: datetime,
) -> int:
    """Record an operator alert and park the project in ``error`` atomically."""
    with transaction(conn):
        notification_id = _insert_admin_notification(conn, notification)
        _update_project(
            conn,
            notification.user_id,
            notification.project_id,
            {
                "status": "error",
                "last_error": notification.error_message,
                "next_run_at": next_run_at,
            },
        )
    return notification_id


def get_admin_notifications(
    conn: sqlite3.Connection, status: str | None = None
) -> list[AdminNotification]:
    sql = "SELECT * FROM admin_notifications"
    params: tuple = ()
    if status is not None:
        sql += " WHERE status = ?"
        params = (status,)
    rows = conn.execute(sql + " ORDER BY id", params).fetchall()
    return [
        AdminNotification(
            id=row["id"],
            type=row["type"],
            severity=row["severity"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            project_title=row["project_title"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            status=row["status"],
            occurred_at=_parse_dt(row["occurred_at"]),
        )
        for row in rows
    ]


# --- Analytics ---


def record_completed_research(
    conn: sqlite3.Connection, user_id: str, project_id: str, now: datetime
) -> None:
    """Bump the user's daily and the global monthly completed-research counters.

    Runs inside the caller's transaction.
    """
    day_key = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
    month_key = day_key[:7]
    for scope, key in ((f"user:{user_id}", day_key), ("global", month_key)):
        row = conn.execute(
            "SELECT completed_research, project_ids FROM research_analytics "
            "WHERE scope = ? AND date_key = ?",
            (scope, key),
        ).fetchone()
        count = row["completed_research"] if row else 0
        project_ids = json.loads(row["project_ids"]) if row else []
        if scope != "global" and project_id not in project_ids:
            project_ids.append(project_id)
        conn.execute(
            """INSERT OR REPLACE INTO research_analytics
               (scope, date_key, completed_research, project_ids) VALUES (?, ?, ?, ?)""",
            (scope, key, count + 1, json.dumps(project_ids)),
        )


def get_research_analytics(
    conn: sqlite3.Connection, scope: str, date_key: str
) -> dict | None:
    row = conn.execute(
        "SELECT * FROM research_analytics WHERE scope = ? AND date_key = ?",
        (scope, date_key),
    ).fetchone()
    if row is None:
        return None
    return {
        "completed_research": row["completed_research"],
        "project_ids": json.loads(row["project_ids"]),
    }

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from typing import Any, Iterable

from .logger import get_logger
from .utils import utc_now_iso

log = get_logger(__name__)

ISSUE_STATUSES: tuple[str, ...] = ("submitted", "acknowledged", "in_progress", "resolved", "closed")

# Columns callers may set through update_issue(); identity and submission fields are immutable.
_UPDATABLE_ISSUE_COLUMNS = frozenset({
    "ai_detected_category",
    "ai_severity",
    "ai_suggested_department",
    "ai_suggestions",
    "priority_score",
    "status",
    "assigned_to_department",
    "assigned_to_officer",
    "resolution_notes",
    "acknowledged_at",
    "resolved_at",
    "closed_at",
    "escalated",
    "escalated_at",
})


def _row_to_issue(row: Any) -> dict[str, Any]:
    """Normalize an issue row with parsed JSON and boolean fields."""
    issue = dict(row)
    raw = issue.get("ai_suggestions")
    if isinstance(raw, str) and raw:
        try:
            issue["ai_suggestions"] = json.loads(raw)
        except json.JSONDecodeError:
            issue["ai_suggestions"] = {}
    issue["escalated"] = bool(issue.get("escalated"))
    return issue


def _normalize_db_path(db_path: str) -> str:
    if not db_path:
        raise ValueError("Database path must be provided")
    normalized = db_path.strip()
    if normalized.startswith("sqlite:///"):
        normalized = normalized[len("sqlite:///"):]
    return normalized


def connect(db_path: str) -> sqlite3.Connection:
    path = _normalize_db_path(db_path)
    db_dir = os.path.dirname(os.path.abspath(path))
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)

    conn = sqlite3.connect(path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn


def init_db(db_path: str) -> None:
    conn = connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS departments (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    transparency_score REAL NOT NULL DEFAULT 0,
                    avg_resolution_days REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    full_name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'citizen'
                        CHECK (role IN ('citizen', 'officer', 'admin')),
                    city TEXT,
                    ward TEXT,
                    department_id TEXT REFERENCES departments(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issues (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    location_address TEXT,
                    ward TEXT,
                    city TEXT,
                    photo_url TEXT,
                    ai_detected_category TEXT,
                    ai_severity TEXT CHECK (ai_severity IN ('low', 'medium', 'high')),
                    ai_suggested_department TEXT,
                    ai_suggestions TEXT,
                    priority_score INTEGER NOT NULL DEFAULT 50
                        CHECK (priority_score BETWEEN 0 AND 100),
                    status TEXT NOT NULL DEFAULT 'submitted'
                        CHECK (status IN ('submitted', 'acknowledged', 'in_progress', 'resolved', 'closed')),
                    submitted_by TEXT,
                    assigned_to_department TEXT REFERENCES departments(id) ON DELETE SET NULL,
                    assigned_to_officer TEXT,
                    resolution_notes TEXT,
                    submitted_at TEXT NOT NULL,
                    acknowledged_at TEXT,
                    resolved_at TEXT,
                    closed_at TEXT,
                    escalated INTEGER NOT NULL DEFAULT 0,
                    escalated_at TEXT
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_votes (
                    id TEXT PRIMARY KEY,
                    issue_id TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (issue_id, user_id)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_feedback (
                    id TEXT PRIMARY KEY,
                    issue_id TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
                    comment TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_timeline (
                    id TEXT PRIMARY KEY,
                    issue_id TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    notes TEXT,
                    updated_by TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_issues_priority ON issues(priority_score DESC);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_issues_department ON issues(assigned_to_department);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_votes_issue ON issue_votes(issue_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_timeline_issue ON issue_timeline(issue_id, created_at);")
    finally:
        conn.close()


# ============================================================================
# Departments
# ============================================================================

def upsert_department(db_path: str, name: str, description: str | None = None) -> str:
    """Insert a department if its name is new; return the department id either way."""
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO departments (id, name, description, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO NOTHING;
                """,
                (str(uuid.uuid4()), name, description, utc_now_iso()),
            )
            row = conn.execute("SELECT id FROM departments WHERE name = ?;", (name,)).fetchone()
        return str(row["id"])
    finally:
        conn.close()


def get_department_by_name(db_path: str, name: str) -> dict[str, Any] | None:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM departments WHERE name = ?;", (name,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_departments(db_path: str) -> list[dict[str, Any]]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM departments ORDER BY name;").fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def update_department_metrics(
    db_path: str,
    department_id: str,
    transparency_score: float,
    avg_resolution_days: float,
) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                UPDATE departments
                SET transparency_score = ?, avg_resolution_days = ?
                WHERE id = ?;
                """,
                (transparency_score, avg_resolution_days, department_id),
            )
    finally:
        conn.close()


# ============================================================================
# Profiles
# ============================================================================

def upsert_profile(
    db_path: str,
    profile_id: str,
    full_name: str,
    role: str = "citizen",
    city: str | None = None,
    ward: str | None = None,
    department_id: str | None = None,
) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO profiles (id, full_name, role, city, ward, department_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name = excluded.full_name,
                    role = excluded.role,
                    city = excluded.city,
                    ward = excluded.ward,
                    department_id = excluded.department_id;
                """,
                (profile_id, full_name, role, city, ward, department_id, utc_now_iso()),
            )
    finally:
        conn.close()


def count_profiles(db_path: str) -> int:
    conn = connect(db_path)
    try:
        return int(conn.execute("SELECT COUNT(*) FROM profiles;").fetchone()[0])
    finally:
        conn.close()


# ============================================================================
# Issues
# ============================================================================

def insert_issue(db_path: str, row: dict[str, Any]) -> str:
    """Insert a new issue and its initial timeline entry; return the issue id."""
    issue_id = str(row.get("id") or uuid.uuid4())
    submitted_at = row.get("submitted_at") or utc_now_iso()
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO issues (
                    id, title, description, category, latitude, longitude,
                    location_address, ward, city, photo_url,
                    priority_score, status, submitted_by, submitted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'submitted', ?, ?);
                """,
                (
                    issue_id,
                    row["title"],
                    row["description"],
                    row["category"],
                    row.get("latitude"),
                    row.get("longitude"),
                    row.get("location_address"),
                    row.get("ward"),
                    row.get("city"),
                    row.get("photo_url"),
                    int(row.get("priority_score", 50)),
                    row.get("submitted_by"),
                    submitted_at,
                ),
            )
            conn.execute(
                """
                INSERT INTO issue_timeline (id, issue_id, status, notes, updated_by, created_at)
                VALUES (?, ?, 'submitted', ?, ?, ?);
                """,
                (str(uuid.uuid4()), issue_id, "Issue reported", row.get("submitted_by"), submitted_at),
            )
        return issue_id
    finally:
        conn.close()


def get_issue(db_path: str, issue_id: str) -> dict[str, Any] | None:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM issues WHERE id = ?;", (issue_id,)).fetchone()
        return _row_to_issue(row) if row else None
    finally:
        conn.close()


def issue_exists(db_path: str, issue_id: str) -> bool:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT 1 FROM issues WHERE id = ?;", (issue_id,)).fetchone()
        return row is not None
    finally:
        conn.close()


def list_issues(
    db_path: str,
    status: str | None = None,
    category: str | None = None,
    department_id: str | None = None,
    search: str | None = None,
    submitted_by: str | None = None,
    limit: int | None = None,
    lat_range: tuple[float, float] | None = None,
    lng_range: tuple[float, float] | None = None,
) -> list[dict[str, Any]]:
    """List issues ordered by priority (highest first), then oldest submission.

    ``lat_range``/``lng_range`` restrict to located issues inside the inclusive bounds.
    """
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if category:
        clauses.append("category = ?")
        params.append(category)
    if department_id:
        clauses.append("assigned_to_department = ?")
        params.append(department_id)
    if submitted_by:
        clauses.append("submitted_by = ?")
        params.append(submitted_by)
    if search:
        clauses.append("(LOWER(title) LIKE ? OR LOWER(description) LIKE ?)")
        needle = f"%{search.lower()}%"
        params.extend([needle, needle])
    if lat_range:
        clauses.append("latitude BETWEEN ? AND ?")
        params.extend(lat_range)
    if lng_range:
        clauses.append("longitude BETWEEN ? AND ?")
        params.extend(lng_range)

    sql = "SELECT * FROM issues"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY priority_score DESC, submitted_at ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))

    conn = connect(db_path)
    try:
        rows = conn.execute(sql + ";", params).fetchall()
        return [_row_to_issue(r) for r in rows]
    finally:
        conn.close()


def update_issue(db_path: str, issue_id: str, updates: dict[str, Any]) -> bool:
    """Apply a single UPDATE to an issue. Returns False when no row matched."""
    unknown = set(updates) - _UPDATABLE_ISSUE_COLUMNS
    if unknown:
        raise ValueError(f"Columns cannot be updated: {sorted(unknown)}")
    if not updates:
        return issue_exists(db_path, issue_id)

    set_clauses: list[str] = []
    params: list[Any] = []
    for column, value in updates.items():
        if column == "ai_suggestions" and value is not None:
            value = json.dumps(value, ensure_ascii=False)
        elif column == "escalated":
            value = 1 if value else 0
        set_clauses.append(f"{column} = ?")
        params.append(value)
    params.append(issue_id)

    conn = connect(db_path)
    try:
        with conn:
            cur = conn.execute(
                f"UPDATE issues SET {', '.join(set_clauses)} WHERE id = ?;",
                params,
            )
            return cur.rowcount > 0
    finally:
        conn.close()


def adjust_priority_score(db_path: str, issue_id: str, delta: int, floor: int = 0, cap: int = 100) -> int | None:
    """Atomically shift priority_score by ``delta`` within [floor, cap]; return the new score."""
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                "UPDATE issues SET priority_score = MAX(?, MIN(?, priority_score + ?)) WHERE id = ?;",
                (floor, cap, delta, issue_id),
            )
            row = conn.execute("SELECT priority_score FROM issues WHERE id = ?;", (issue_id,)).fetchone()
        return int(row["priority_score"]) if row else None
    finally:
        conn.close()


def mark_escalated(db_path: str, issue_ids: Iterable[str], escalated_at: str) -> int:
    ids = list(issue_ids)
    if not ids:
        return 0
    conn = connect(db_path)
    try:
        with conn:
            cur = conn.executemany(
                "UPDATE issues SET escalated = 1, escalated_at = ? WHERE id = ? AND escalated = 0;",
                [(escalated_at, i) for i in ids],
            )
            return cur.rowcount
    finally:
        conn.close()


def delete_issue(db_path: str, issue_id: str) -> bool:
    conn = connect(db_path)
    try:
        with conn:
            cur = conn.execute("DELETE FROM issues WHERE id = ?;", (issue_id,))
            return cur.rowcount > 0
    finally:
        conn.close()


# ============================================================================
# Votes
# ============================================================================

def insert_vote(db_path: str, issue_id: str, user_id: str) -> bool:
    """Insert a vote. Returns False when the (issue, user) pair already exists."""
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                "INSERT INTO issue_votes (id, issue_id, user_id, created_at) VALUES (?, ?, ?, ?);",
                (str(uuid.uuid4()), issue_id, user_id, utc_now_iso()),
            )
        return True
    except sqlite3.IntegrityError as exc:
        if "UNIQUE" not in str(exc).upper():
            raise
        log.info("Duplicate vote ignored for issue=%s user=%s", issue_id, user_id)
        return False
    finally:
        conn.close()


def delete_vote(db_path: str, issue_id: str, user_id: str) -> bool:
    conn = connect(db_path)
    try:
        with conn:
            cur = conn.execute(
                "DELETE FROM issue_votes WHERE issue_id = ? AND user_id = ?;",
                (issue_id, user_id),
            )
            return cur.rowcount > 0
    finally:
        conn.close()


def has_vote(db_path: str, issue_id: str, user_id: str) -> bool:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT 1 FROM issue_votes WHERE issue_id = ? AND user_id = ?;",
            (issue_id, user_id),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def count_votes(db_path: str, issue_id: str) -> int:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT COUNT(*) FROM issue_votes WHERE issue_id = ?;", (issue_id,)).fetchone()
        return int(row[0])
    finally:
        conn.close()


# ============================================================================
# Timeline and feedback
# ============================================================================

def insert_timeline_entry(
    db_path: str,
    issue_id: str,
    status: str,
    notes: str | None = None,
    updated_by: str | None = None,
) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO issue_timeline (id, issue_id, status, notes, updated_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (str(uuid.uuid4()), issue_id, status, notes, updated_by, utc_now_iso()),
            )
    finally:
        conn.close()


def list_timeline(db_path: str, issue_id: str) -> list[dict[str, Any]]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM issue_timeline WHERE issue_id = ? ORDER BY created_at, rowid;",
            (issue_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def insert_feedback(db_path: str, issue_id: str, user_id: str, rating: int, comment: str | None = None) -> str:
    feedback_id = str(uuid.uuid4())
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO issue_feedback (id, issue_id, user_id, rating, comment, created_at)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (feedback_id, issue_id, user_id, rating, comment, utc_now_iso()),
            )
        return feedback_id
    finally:
        conn.close()


def list_feedback(db_path: str) -> list[dict[str, Any]]:
    conn = connect(db_path)
    try:
        rows = conn.execute("SELECT issue_id, rating FROM issue_feedback;").fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()

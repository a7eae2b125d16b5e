"""
Database module for the hrgate authority.

Provides SQLite-based storage for profiles, gate targets, monitoring
sessions, readings and the issuance log. The debounce stamp on
``gate_targets.last_issued_at`` is the only cross-request mutex: it is taken
with one conditional UPDATE, so concurrent callers in any thread or process
sharing the database file cannot both win.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config

DB_PATH = Path(config.DB_PATH)

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 30

# Thread-local storage for connection pooling
_local = threading.local()


def _get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread for performance.
    """
    if getattr(_local, 'conn', None) is None or getattr(_local, 'path', None) != DB_PATH:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = DB_PATH
    return _local.conn


@contextmanager
def _transaction():
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on failure.
    """
    conn = _get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def init_db() -> None:
    """
    Initialize database schema with proper indexes.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with _transaction() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            user_id TEXT PRIMARY KEY,
            threshold REAL NOT NULL,
            updated_at INTEGER NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS gate_targets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            subject_key TEXT NOT NULL,
            ref_name TEXT NOT NULL,
            credential TEXT NOT NULL,
            backend TEXT NOT NULL DEFAULT 'signed_ref',
            ruleset_id INTEGER,
            active INTEGER NOT NULL DEFAULT 1,
            active_session_id TEXT,
            last_issued_at INTEGER,
            created_at INTEGER NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_gate_targets_user
        ON gate_targets(user_id, active);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_gate_targets_session
        ON gate_targets(active_session_id);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            started_at INTEGER NOT NULL,
            ended_at INTEGER,
            threshold REAL NOT NULL,
            source TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            last_reading REAL,
            last_reading_at INTEGER,
            last_decision INTEGER,
            last_expires_at INTEGER,
            enforcement_active INTEGER NOT NULL DEFAULT 0,
            display_state TEXT NOT NULL DEFAULT 'LOCKED'
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_sessions_user_active
        ON sessions(user_id, active);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS readings (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            value REAL NOT NULL,
            ts INTEGER NOT NULL,
            source TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_readings_session
        ON readings(session_id, ts);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS issuance_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            target_id INTEGER NOT NULL,
            session_id TEXT,
            trigger TEXT NOT NULL,
            decision INTEGER NOT NULL,
            expires_at INTEGER,
            published INTEGER NOT NULL,
            error TEXT,
            created_at INTEGER NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_issuance_log_target
        ON issuance_log(target_id, seq);""")


# ============================================================
# Profiles
# ============================================================

def get_threshold(user_id: str) -> float:
    """Configured threshold for a user, or the default."""
    conn = _get_connection()
    row = conn.execute("SELECT threshold FROM profiles WHERE user_id=?", (user_id,)).fetchone()
    return row['threshold'] if row else config.DEFAULT_THRESHOLD


def set_threshold(user_id: str, threshold: float, now: int) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO profiles(user_id, threshold, updated_at) VALUES(?,?,?) "
            "ON CONFLICT(user_id) DO UPDATE SET threshold=excluded.threshold, updated_at=excluded.updated_at",
            (user_id, threshold, now)
        )


# ============================================================
# Gate Targets
# ============================================================

def create_gate_target(
    user_id: str,
    owner: str,
    name: str,
    subject_key: str,
    ref_name: str,
    credential: str,
    backend: str,
    ruleset_id: Optional[int],
    now: int
) -> Dict[str, Any]:
    with _transaction() as conn:
        cur = conn.execute(
            "INSERT INTO gate_targets(user_id, owner, name, subject_key, ref_name, credential, "
            "backend, ruleset_id, active, created_at) VALUES(?,?,?,?,?,?,?,?,1,?)",
            (user_id, owner, name, subject_key, ref_name, credential, backend, ruleset_id, now)
        )
        target_id = cur.lastrowid
    return get_gate_target(target_id)


def get_gate_target(target_id: int) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    return _row(conn.execute("SELECT * FROM gate_targets WHERE id=?", (target_id,)).fetchone())


def find_active_target(user_id: str, owner: str, name: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    return _row(conn.execute(
        "SELECT * FROM gate_targets WHERE user_id=? AND owner=? AND name=? AND active=1",
        (user_id, owner, name)
    ).fetchone())


def list_gate_targets(user_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
    conn = _get_connection()
    sql = "SELECT * FROM gate_targets WHERE user_id=?"
    if not include_inactive:
        sql += " AND active=1"
    return [dict(r) for r in conn.execute(sql + " ORDER BY id", (user_id,)).fetchall()]


def deactivate_gate_target(user_id: str, target_id: int) -> bool:
    """Deactivate a target. Rows are kept; the session binding is cleared."""
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE gate_targets SET active=0, active_session_id=NULL WHERE id=? AND user_id=? AND active=1",
            (target_id, user_id)
        )
        return cur.rowcount == 1


def bind_targets(user_id: str, session_id: str, target_ids: Optional[List[int]] = None) -> List[int]:
    """
    Bind the user's active targets to a session.

    Args:
        target_ids: Restrict binding to these targets (default: all active)

    Returns:
        IDs of the targets bound
    """
    with _transaction() as conn:
        rows = conn.execute(
            "SELECT id FROM gate_targets WHERE user_id=? AND active=1 ORDER BY id", (user_id,)
        ).fetchall()
        ids = [r['id'] for r in rows if target_ids is None or r['id'] in target_ids]
        conn.executemany(
            "UPDATE gate_targets SET active_session_id=? WHERE id=?",
            [(session_id, i) for i in ids]
        )
    return ids


def targets_for_session(session_id: str) -> List[Dict[str, Any]]:
    conn = _get_connection()
    return [dict(r) for r in conn.execute(
        "SELECT * FROM gate_targets WHERE active_session_id=? AND active=1 ORDER BY id",
        (session_id,)
    ).fetchall()]


def unbind_session(session_id: str) -> None:
    with _transaction() as conn:
        conn.execute("UPDATE gate_targets SET active_session_id=NULL WHERE active_session_id=?", (session_id,))


# ============================================================
# Debounce
# ============================================================

def claim_issuance(target_id: int, now: int, window: int) -> bool:
    """
    Take the debounce stamp for a target.

    Succeeds only if no issuance happened within ``window`` seconds before
    ``now``. Uses atomic UPDATE with WHERE clause for thread and process
    safety; exactly one concurrent caller sees rowcount 1.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE gate_targets SET last_issued_at=? "
            "WHERE id=? AND active=1 AND (last_issued_at IS NULL OR last_issued_at <= ?)",
            (now, target_id, now - window)
        )
        return cur.rowcount == 1


def stamp_issuance(target_id: int, now: int) -> None:
    """Unconditionally stamp a target (forced denies bypass the window)."""
    with _transaction() as conn:
        conn.execute("UPDATE gate_targets SET last_issued_at=? WHERE id=?", (now, target_id))


# ============================================================
# Sessions and Readings
# ============================================================

def create_session(session_id: str, user_id: str, threshold: float, source: Optional[str], now: int) -> Dict[str, Any]:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO sessions(id, user_id, started_at, threshold, source, active) VALUES(?,?,?,?,?,1)",
            (session_id, user_id, now, threshold, source)
        )
    return get_session(session_id)


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    return _row(conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone())


def get_active_session(user_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    return _row(conn.execute(
        "SELECT * FROM sessions WHERE user_id=? AND active=1 ORDER BY started_at DESC LIMIT 1",
        (user_id,)
    ).fetchone())


def close_session(session_id: str, now: int) -> bool:
    """
    Close a session. Returns True if this call closed it.
    Uses atomic UPDATE with WHERE clause, so only one closer wins.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE sessions SET active=0, ended_at=?, enforcement_active=0, display_state='LOCKED' "
            "WHERE id=? AND active=1",
            (now, session_id)
        )
        return cur.rowcount == 1


def record_reading(
    session_id: str,
    value: float,
    ts: int,
    received_at: int,
    source: Optional[str],
    display_state: str
) -> bool:
    """
    Append a reading and update the session's heartbeat and indicator.

    Returns:
        False if the session is not active
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE sessions SET last_reading=?, last_reading_at=?, display_state=? WHERE id=? AND active=1",
            (value, received_at, display_state, session_id)
        )
        if cur.rowcount != 1:
            return False
        conn.execute(
            "INSERT INTO readings(session_id, value, ts, source) VALUES(?,?,?,?)",
            (session_id, value, ts, source)
        )
        return True


def set_session_decision(session_id: str, decision: bool, expires_at: int, require_active: bool = True) -> bool:
    """
    Record the last published decision for a session.

    With ``require_active`` the write only lands on an open session, so a
    reading published during a close cannot re-arm the closed row.

    Returns:
        True if the row was updated
    """
    sql = "UPDATE sessions SET last_decision=?, last_expires_at=?, enforcement_active=? WHERE id=?"
    if require_active:
        sql += " AND active=1"
    with _transaction() as conn:
        cur = conn.execute(sql, (int(decision), expires_at, int(decision), session_id))
        return cur.rowcount == 1


def stale_sessions(cutoff: int) -> List[Dict[str, Any]]:
    """Active sessions with a live allow whose last reading is older than ``cutoff``."""
    conn = _get_connection()
    return [dict(r) for r in conn.execute(
        "SELECT * FROM sessions WHERE active=1 AND enforcement_active=1 "
        "AND (last_reading_at IS NULL OR last_reading_at < ?)",
        (cutoff,)
    ).fetchall()]


def mark_session_stale(session_id: str, cutoff: int) -> bool:
    """
    Clear a stale session's enforcement flag.

    Returns True if this call cleared it; a reading arriving in between or
    a concurrent supervisor makes it return False.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE sessions SET enforcement_active=0, display_state='LOCKED' "
            "WHERE id=? AND active=1 AND enforcement_active=1 "
            "AND (last_reading_at IS NULL OR last_reading_at < ?)",
            (session_id, cutoff)
        )
        return cur.rowcount == 1


def list_readings(session_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    conn = _get_connection()
    return [dict(r) for r in conn.execute(
        "SELECT value, ts, source FROM readings WHERE session_id=? ORDER BY seq DESC LIMIT ?",
        (session_id, limit)
    ).fetchall()]


# ============================================================
# Issuance Log
# ============================================================

def append_issuance_log(
    target_id: int,
    session_id: Optional[str],
    trigger: str,
    decision: bool,
    expires_at: Optional[int],
    published: bool,
    error: Optional[str],
    now: int
) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO issuance_log(target_id, session_id, trigger, decision, expires_at, "
            "published, error, created_at) VALUES(?,?,?,?,?,?,?,?)",
            (target_id, session_id, trigger, int(decision), expires_at, int(published), error, now)
        )


def list_issuance_log(target_id: Optional[int] = None) -> List[Dict[str, Any]]:
    conn = _get_connection()
    if target_id is None:
        cur = conn.execute("SELECT * FROM issuance_log ORDER BY seq ASC")
    else:
        cur = conn.execute("SELECT * FROM issuance_log WHERE target_id=? ORDER BY seq ASC", (target_id,))
    return [dict(r) for r in cur.fetchall()]


# ============================================================
# Metrics and Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Get database statistics for monitoring."""
    conn = _get_connection()
    stats = {}
    for table in ['profiles', 'gate_targets', 'sessions', 'readings', 'issuance_log']:
        cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        stats[f"{table}_count"] = cur.fetchone()['cnt']
    return stats


# ============================================================
# Test Support: Database Reset
# ============================================================

def reset_db() -> None:
    """
    Reset the database for test isolation.
    Clears all tables but preserves schema.
    """
    with _transaction() as conn:
        conn.execute("DELETE FROM profiles")
        conn.execute("DELETE FROM gate_targets")
        conn.execute("DELETE FROM sessions")
        conn.execute("DELETE FROM readings")
        conn.execute("DELETE FROM issuance_log")


def close_connection() -> None:
    """Close the thread-local connection (for cleanup)."""
    if getattr(_local, 'conn', None) is not None:
        _local.conn.close()
        _local.conn = None

"""Shared SQLite helpers — WAL mode, row_factory defaults."""

import sqlite3
from pathlib import Path

BUSY_TIMEOUT_MS = 5000


def wal_connect(
    db_path: str | Path, row_factory: bool = False, autocommit: bool = False
) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        autocommit: If True, disable the implicit transaction handling so callers
            issue BEGIN/COMMIT themselves.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_MS / 1000)
    if autocommit:
        conn.isolation_level = None
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    except sqlite3.Error:
        conn.close()
        raise
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def has_fts5(conn: sqlite3.Connection) -> bool:
    """Whether this SQLite build ships the FTS5 extension."""
    try:
        conn.execute("CREATE VIRTUAL TABLE IF NOT EXISTS temp._fts5_probe USING fts5(x)")
        conn.execute("DROP TABLE IF EXISTS temp._fts5_probe")
        return True
    except sqlite3.OperationalError:
        return False

"""
Database connection management.

Provides the SQLite connection and the per-user storage location.
"""

import sqlite3
from pathlib import Path

LEDGER_DIR_NAME = ".shell-ai"
LEDGER_FILE_NAME = "logs.db"


def default_db_path() -> Path:
    """Return the per-user ledger location, ``~/.shell-ai/logs.db``."""
    return Path.home() / LEDGER_DIR_NAME / LEDGER_FILE_NAME


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

"""
Request ledger.

Durable, append-only record of every query attempt with token usage and cost.
Two variants share one interface: ``ActiveLedger`` writes to SQLite and
``DisabledLedger`` accepts every call and stores nothing. Use ``open_ledger``
to get the right one for the current environment.
"""

import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from .db import default_db_path, get_connection
from .models import LedgerEntry

logger = logging.getLogger(__name__)

DISABLE_ENV_VAR = "SHELL_AI_DISABLE_LOGGING"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SCHEMA = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        name TEXT,
        model TEXT
    );

    CREATE TABLE IF NOT EXISTS responses (
        id TEXT PRIMARY KEY,
        model TEXT,
        prompt TEXT,
        system TEXT,
        response TEXT,
        conversation_id TEXT REFERENCES conversations(id),
        duration_ms INTEGER,
        datetime_utc TEXT,
        input_tokens INTEGER,
        output_tokens INTEGER,
        estimated_cost REAL,
        error TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_responses_datetime ON responses(datetime_utc);
    CREATE INDEX IF NOT EXISTS idx_responses_conversation ON responses(conversation_id);
    CREATE INDEX IF NOT EXISTS idx_responses_model ON responses(model);
"""

SELECT_COLUMNS = """
    SELECT id, model, prompt, system, response, conversation_id,
           duration_ms, datetime_utc, input_tokens, output_tokens,
           estimated_cost, error
    FROM responses
"""


class LedgerError(Exception):
    """Base class for ledger failures."""


class ConfigError(LedgerError):
    """The storage location could not be resolved, created or opened."""


class LedgerWriteError(LedgerError):
    """An entry could not be persisted."""


@dataclass(frozen=True)
class LedgerStats:
    """Aggregate figures over every persisted entry."""
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    requests_by_model: Dict[str, int] = field(default_factory=dict)


def format_timestamp(ts: datetime) -> str:
    """Render a timestamp as an RFC 3339 UTC string with second precision.

    Naive datetimes are taken to be UTC already.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


def _row_to_entry(row: tuple) -> LedgerEntry:
    prompt_tokens = row[8] or 0
    completion_tokens = row[9] or 0
    return LedgerEntry(
        id=row[0] or "",
        model=row[1] or "",
        prompt_text=row[2] or "",
        system_text=row[3] or "",
        response_text=row[4] or "",
        conversation_id=row[5],
        duration_ms=row[6] or 0,
        timestamp=parse_timestamp(row[7]),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated_cost=float(row[10] or 0.0),
        error=row[11] or "",
    )


def _rows_to_entries(rows: List[tuple]) -> List[LedgerEntry]:
    """Convert rows, skipping any that cannot be read back."""
    entries = []
    for row in rows:
        try:
            entries.append(_row_to_entry(row))
        except (TypeError, ValueError) as e:
            logger.warning("Skipping unreadable log row %r: %s", row[0], e)
    return entries


class RequestLedger(ABC):
    """Interface shared by the active and disabled ledgers."""

    @abstractmethod
    def persist(self, entry: LedgerEntry) -> None:
        """Insert one entry. Raises LedgerWriteError on failure."""

    @abstractmethod
    def recent(self, limit: int) -> List[LedgerEntry]:
        """Return up to ``limit`` entries, newest first."""

    @abstractmethod
    def all_entries(self) -> List[LedgerEntry]:
        """Return every entry, newest first."""

    @abstractmethod
    def stats(self) -> LedgerStats:
        """Return aggregate figures over every entry."""

    @abstractmethod
    def path(self) -> str:
        """Return the storage location."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying store handle."""

    @property
    def enabled(self) -> bool:
        return True

    def __enter__(self) -> "RequestLedger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DisabledLedger(RequestLedger):
    """Ledger used when persistence is opted out. Every call is a no-op."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self._path = str(db_path) if db_path else None

    @property
    def enabled(self) -> bool:
        return False

    def persist(self, entry: LedgerEntry) -> None:
        return None

    def recent(self, limit: int) -> List[LedgerEntry]:
        return []

    def all_entries(self) -> List[LedgerEntry]:
        return []

    def stats(self) -> LedgerStats:
        return LedgerStats()

    def path(self) -> str:
        return self._path or str(default_db_path())

    def close(self) -> None:
        return None


class ActiveLedger(RequestLedger):
    """SQLite-backed ledger.

    Opens the database on construction and keeps one connection until
    ``close`` is called. The schema is created if missing.

    Args:
        db_path: Path to SQLite database file

    Raises:
        ConfigError: If the directory or the database cannot be created
    """

    def __init__(self, db_path: Union[str, Path]):
        self._path = str(db_path)
        try:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"failed to create log directory: {e}") from e

        try:
            self._conn: Optional[sqlite3.Connection] = get_connection(self._path)
        except sqlite3.Error as e:
            raise ConfigError(f"failed to open database {self._path}: {e}") from e

        try:
            self._initialize_schema()
        except sqlite3.Error as e:
            self.close()
            raise ConfigError(f"failed to initialize schema: {e}") from e

    def _initialize_schema(self) -> None:
        conn = self._connection()
        conn.executescript(SCHEMA)

        # Databases created before the error column existed
        columns = [row[1] for row in conn.execute("PRAGMA table_info(responses)")]
        if "error" not in columns:
            logger.debug("Adding error column to %s", self._path)
            conn.execute("ALTER TABLE responses ADD COLUMN error TEXT")
        conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise LedgerError("ledger is closed")
        return self._conn

    def persist(self, entry: LedgerEntry) -> None:
        """Insert a single entry into the append-only ledger.

        An empty id is stored as NULL so that failed requests without a
        provider id do not collide with each other.

        Raises:
            LedgerWriteError: On a duplicate id or any database failure
        """
        try:
            conn = self._connection()
            conn.execute("""
                INSERT INTO responses (
                    id, model, prompt, system, response,
                    conversation_id, duration_ms, datetime_utc,
                    input_tokens, output_tokens, estimated_cost, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id or None,
                entry.model,
                entry.prompt_text,
                entry.system_text,
                entry.response_text,
                entry.conversation_id,
                entry.duration_ms,
                format_timestamp(entry.timestamp),
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.estimated_cost,
                entry.error,
            ))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise LedgerWriteError(f"duplicate request id {entry.id!r}: {e}") from e
        except (sqlite3.Error, LedgerError) as e:
            raise LedgerWriteError(f"failed to write log entry: {e}") from e

    def recent(self, limit: int) -> List[LedgerEntry]:
        """Return up to ``limit`` entries ordered by timestamp, newest first."""
        if limit <= 0:
            return []
        cursor = self._connection().execute(
            SELECT_COLUMNS + " ORDER BY datetime_utc DESC, rowid DESC LIMIT ?",
            (limit,)
        )
        return _rows_to_entries(cursor.fetchall())

    def all_entries(self) -> List[LedgerEntry]:
        cursor = self._connection().execute(
            SELECT_COLUMNS + " ORDER BY datetime_utc DESC, rowid DESC"
        )
        return _rows_to_entries(cursor.fetchall())

    def stats(self) -> LedgerStats:
        conn = self._connection()
        row = conn.execute("""
            SELECT
                COUNT(*),
                SUM(COALESCE(input_tokens, 0) + COALESCE(output_tokens, 0)),
                SUM(estimated_cost)
            FROM responses
        """).fetchone()
        by_model = conn.execute("""
            SELECT model, COUNT(*) FROM responses
            GROUP BY model
            ORDER BY COUNT(*) DESC, model
        """).fetchall()
        return LedgerStats(
            total_requests=row[0] or 0,
            total_tokens=row[1] or 0,
            total_cost=float(row[2] or 0.0),
            requests_by_model={model or "": count for model, count in by_model},
        )

    def path(self) -> str:
        return self._path

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def logging_disabled() -> bool:
    """True when the opt-out environment variable holds any non-empty value."""
    return bool(os.environ.get(DISABLE_ENV_VAR))


def open_ledger(db_path: Optional[Union[str, Path]] = None) -> RequestLedger:
    """Open the ledger for the current environment.

    Args:
        db_path: Override for the default ``~/.shell-ai/logs.db`` location

    Returns:
        A DisabledLedger when opted out, otherwise an ActiveLedger

    Raises:
        ConfigError: If the storage location cannot be resolved or created
    """
    if logging_disabled():
        logger.debug("%s is set, request logging disabled", DISABLE_ENV_VAR)
        return DisabledLedger(db_path)

    if db_path is None:
        try:
            db_path = default_db_path()
        except RuntimeError as e:
            raise ConfigError(f"failed to get home directory: {e}") from e

    return ActiveLedger(db_path)

"""SQLite database layer for pages, events and sessions."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar, Union

from .config import TrackerSettings
from .errors import CommitError
from .models import Event, EventType, Page, Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY = ":memory:"

_RETRYABLE_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def open_database(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        str(path),
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS pages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            domain TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            first_visit INTEGER NOT NULL,
            last_visit INTEGER NOT NULL,
            total_active_time_ms INTEGER NOT NULL DEFAULT 0,
            open_accrual_start INTEGER,
            visit_count INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            page_id INTEGER,
            session_id TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            type TEXT NOT NULL,
            payload TEXT,
            FOREIGN KEY (page_id) REFERENCES pages(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL UNIQUE,
            start_time INTEGER NOT NULL,
            end_time INTEGER,
            is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_pages_domain ON pages(domain);
        CREATE INDEX IF NOT EXISTS idx_pages_last_visit ON pages(last_visit);
        CREATE INDEX IF NOT EXISTS idx_events_page ON events(page_id);
        CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(is_active);
        CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
        """
    )


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block of statements atomically on an autocommit connection."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def row_to_page(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        url=row["url"],
        domain=row["domain"],
        title=row["title"],
        first_visit=row["first_visit"],
        last_visit=row["last_visit"],
        total_active_time_ms=row["total_active_time_ms"],
        open_accrual_start=row["open_accrual_start"],
        visit_count=row["visit_count"],
    )


def row_to_event(row: sqlite3.Row) -> Event:
    payload = json.loads(row["payload"]) if row["payload"] else None
    return Event(
        id=row["id"],
        page_id=row["page_id"],
        session_id=row["session_id"],
        timestamp=row["timestamp"],
        type=EventType(row["type"]),
        payload=payload,
    )


def row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        session_id=row["session_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        is_active=bool(row["is_active"]),
    )


def insert_event(
    conn: sqlite3.Connection,
    page_id: Optional[int],
    session_id: str,
    timestamp: int,
    event_type: EventType,
    payload: Optional[dict[str, Any]] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO events (page_id, session_id, timestamp, type, payload)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            page_id,
            session_id,
            timestamp,
            event_type.value,
            json.dumps(payload, sort_keys=True) if payload is not None else None,
        ),
    )
    return int(cur.lastrowid)


def fetch_page(conn: sqlite3.Connection, page_id: int) -> Optional[Page]:
    row = conn.execute("SELECT * FROM pages WHERE id = ?", (page_id,)).fetchone()
    return row_to_page(row) if row else None


def fetch_page_by_url(conn: sqlite3.Connection, url: str) -> Optional[Page]:
    row = conn.execute("SELECT * FROM pages WHERE url = ?", (url,)).fetchone()
    return row_to_page(row) if row else None


def fetch_pages(conn: sqlite3.Connection, domain: Optional[str] = None) -> list[Page]:
    if domain is None:
        rows = conn.execute("SELECT * FROM pages ORDER BY id")
    else:
        rows = conn.execute("SELECT * FROM pages WHERE domain = ? ORDER BY id", (domain,))
    return [row_to_page(row) for row in rows]


def fetch_events(
    conn: sqlite3.Connection,
    *,
    page_id: Optional[int] = None,
    types: Optional[list[EventType]] = None,
    since: Optional[int] = None,
    until: Optional[int] = None,
) -> list[Event]:
    clauses: list[str] = []
    params: list[object] = []
    if page_id is not None:
        clauses.append("page_id = ?")
        params.append(page_id)
    if types:
        clauses.append(f"type IN ({', '.join('?' for _ in types)})")
        params.extend(t.value for t in types)
    if since is not None:
        clauses.append("timestamp >= ?")
        params.append(since)
    if until is not None:
        clauses.append("timestamp <= ?")
        params.append(until)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM events {where} ORDER BY timestamp, id",
        params,
    )
    return [row_to_event(row) for row in rows]


def fetch_sessions(
    conn: sqlite3.Connection, *, active_only: bool = False, since: Optional[int] = None
) -> list[Session]:
    clauses: list[str] = []
    params: list[object] = []
    if active_only:
        clauses.append("is_active = 1")
    if since is not None:
        clauses.append("start_time >= ?")
        params.append(since)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(f"SELECT * FROM sessions {where} ORDER BY start_time, id", params)
    return [row_to_session(row) for row in rows]


def store_setting(conn: sqlite3.Connection, key: str, value: Any, now: int) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json.dumps(value), now),
    )


def fetch_settings(conn: sqlite3.Connection) -> dict[str, Any]:
    return {
        row["key"]: json.loads(row["value"])
        for row in conn.execute("SELECT key, value FROM settings ORDER BY key")
    }


def _is_retryable(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


class Database:
    """Serializes access to one SQLite connection from the event loop.

    Every call runs in a worker thread, so awaiting it yields to the loop. Writes
    that hit a locked database are retried with exponential backoff and then
    surfaced as :class:`CommitError`.
    """

    def __init__(
        self,
        path: Union[Path, str],
        settings: Optional[TrackerSettings] = None,
    ) -> None:
        self.path = path
        self.settings = settings or TrackerSettings()
        self._conn = open_database(path, check_same_thread=False)
        self._lock = threading.Lock()

    @classmethod
    def open_in_memory(cls, settings: Optional[TrackerSettings] = None) -> "Database":
        return cls(MEMORY, settings=settings)

    async def read(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._call, fn, args)

    async def write(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        attempts = max(self.settings.commit_retries, 1)
        delay = self.settings.commit_retry_delay.total_seconds()
        last_exception: Optional[sqlite3.OperationalError] = None
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(self._call, fn, args)
            except sqlite3.OperationalError as exc:
                if not _is_retryable(exc):
                    raise CommitError(operation, exc) from exc
                last_exception = exc
                backoff = delay * (2 ** attempt)
                logger.warning(
                    "Database locked on attempt %d/%d for %s. Retrying in %.2fs...",
                    attempt + 1,
                    attempts,
                    operation,
                    backoff,
                )
                await asyncio.sleep(backoff)
            except sqlite3.DatabaseError as exc:
                raise CommitError(operation, exc) from exc
        logger.error("Failed to persist %s after %d attempts", operation, attempts)
        raise CommitError(operation, last_exception)

    def _call(self, fn: Callable[..., T], args: tuple[Any, ...]) -> T:
        with self._lock:
            return fn(self._conn, *args)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

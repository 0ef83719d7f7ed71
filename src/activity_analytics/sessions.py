"""Process-run sessions used to tag every recorded event."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional

from .clock import Clock, to_datetime
from .db import Database, fetch_sessions, insert_event, row_to_session, transaction
from .models import EventType, Session

logger = logging.getLogger(__name__)


class SessionManager:
    """Issues one logical session per process run and keeps sessions from overlapping."""

    def __init__(self, db: Database, clock: Clock) -> None:
        self._db = db
        self._clock = clock
        self._current_session_id: Optional[str] = None
        self._session_start_time: Optional[int] = None

    @property
    def is_session_active(self) -> bool:
        return self._current_session_id is not None

    async def current_session_id(self) -> str:
        """Return the active session id, starting a session if none is running."""
        if self._current_session_id is None:
            return await self.start_session()
        return self._current_session_id

    def current_session_time(self) -> int:
        if self._session_start_time is None:
            return 0
        return max(0, self._clock.now_ms() - self._session_start_time)

    async def start_session(self) -> str:
        """End any active session, then record and return a new one."""
        if self._current_session_id is not None:
            await self.end_session()

        session_id = uuid.uuid4().hex
        start_time = await self._db.write(
            "session start", _start_session, session_id, self._clock
        )
        self._current_session_id = session_id
        self._session_start_time = start_time
        logger.info("Started new session: %s", session_id)
        return session_id

    async def end_session(self) -> None:
        if self._current_session_id is None:
            return
        session_id = self._current_session_id
        self._current_session_id = None
        self._session_start_time = None
        closed = await self._db.write(
            "session end", _end_session, session_id, self._clock.now_ms()
        )
        if closed:
            logger.info("Ended session %s", session_id)

    def forget(self) -> None:
        """Drop the in-memory session without touching storage (after a data wipe)."""
        self._current_session_id = None
        self._session_start_time = None

    async def initialize(self) -> str:
        """Close sessions left open by an abnormal exit, then start a fresh one."""
        self.forget()
        closed = await self._db.write(
            "orphaned session cleanup", _close_active_sessions, self._clock.now_ms()
        )
        if closed:
            logger.info("Found %d unclosed session(s), closing them", closed)
        return await self.start_session()

    async def get_current_session(self) -> Optional[Session]:
        if self._current_session_id is None:
            return None
        return await self._db.read(_fetch_session, self._current_session_id)

    async def session_stats(self, days: int = 30) -> dict[str, Any]:
        cutoff = self._clock.now_ms() - _days_ms(days)
        sessions = await self._db.read(lambda conn: fetch_sessions(conn, since=cutoff))
        completed = [session for session in sessions if session.end_time is not None]
        durations = [session.duration_ms or 0 for session in completed]
        total_time = sum(durations)

        daily: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"count": 0, "totalTime": 0})
        for session, duration in zip(completed, durations):
            day = to_datetime(session.start_time).strftime("%Y-%m-%d")
            daily[day]["count"] += 1
            daily[day]["totalTime"] += duration

        return {
            "totalSessions": len(sessions),
            "completedSessions": len(completed),
            "activeSessions": sum(1 for session in sessions if session.is_active),
            "totalTime": total_time,
            "avgSessionTime": total_time / len(sessions) if sessions else 0,
            "maxSessionTime": max(durations) if durations else 0,
            "dailyStats": [{"date": day, **stats} for day, stats in sorted(daily.items())],
        }

    async def cleanup_old_sessions(self, days_to_keep: int = 90) -> int:
        cutoff = self._clock.now_ms() - _days_ms(days_to_keep)
        removed = await self._db.write("session cleanup", _delete_sessions_before, cutoff)
        logger.info("Cleaned up sessions older than %d days", days_to_keep)
        return removed


def _days_ms(days: int) -> int:
    return int(timedelta(days=days).total_seconds() * 1000)


def _start_session(conn: sqlite3.Connection, session_id: str, clock: Clock) -> int:
    with transaction(conn):
        # Earlier sessions must end no later than this one starts.
        latest = conn.execute(
            "SELECT MAX(COALESCE(end_time, start_time)) AS latest FROM sessions"
        ).fetchone()
        start_time = max(clock.now_ms(), latest["latest"] or 0)
        _close_active(conn, start_time)
        conn.execute(
            "INSERT INTO sessions (session_id, start_time, end_time, is_active) VALUES (?, ?, NULL, 1)",
            (session_id, start_time),
        )
        insert_event(conn, None, session_id, start_time, EventType.SESSION_START)
    return start_time


def _end_session(conn: sqlite3.Connection, session_id: str, now: int) -> bool:
    with transaction(conn):
        row = conn.execute(
            "SELECT * FROM sessions WHERE session_id = ? AND is_active = 1", (session_id,)
        ).fetchone()
        if row is None:
            return False
        end_time = max(now, row["start_time"])
        conn.execute(
            "UPDATE sessions SET end_time = ?, is_active = 0 WHERE id = ?",
            (end_time, row["id"]),
        )
        insert_event(conn, None, session_id, end_time, EventType.SESSION_END)
    return True


def _close_active_sessions(conn: sqlite3.Connection, now: int) -> int:
    with transaction(conn):
        return _close_active(conn, now)


def _close_active(conn: sqlite3.Connection, now: int) -> int:
    rows = conn.execute("SELECT * FROM sessions WHERE is_active = 1").fetchall()
    for row in rows:
        end_time = max(now, row["start_time"])
        conn.execute(
            "UPDATE sessions SET end_time = ?, is_active = 0 WHERE id = ?",
            (end_time, row["id"]),
        )
        insert_event(conn, None, row["session_id"], end_time, EventType.SESSION_END)
    return len(rows)


def _fetch_session(conn: sqlite3.Connection, session_id: str) -> Optional[Session]:
    row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
    return row_to_session(row) if row else None


def _delete_sessions_before(conn: sqlite3.Connection, cutoff: int) -> int:
    cur = conn.execute(
        "DELETE FROM sessions WHERE start_time < ? AND is_active = 0", (cutoff,)
    )
    return cur.rowcount

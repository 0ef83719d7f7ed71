"""Page aggregates and the append-only event log."""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from typing import Any, Optional

from .clock import Clock, start_of_day_ms
from .db import (
    Database,
    fetch_events,
    fetch_page,
    fetch_page_by_url,
    fetch_pages,
    fetch_sessions,
    insert_event,
    transaction,
)
from .models import DomainTotals, Event, EventType, Page
from .normalization import extract_domain, normalize_url

logger = logging.getLogger(__name__)


class EventStore:
    """Append-only log of typed events tagged with a page and a session."""

    def __init__(self, db: Database, clock: Clock) -> None:
        self._db = db
        self._clock = clock

    async def append_event(
        self,
        page_id: Optional[int],
        session_id: str,
        event_type: EventType,
        payload: Optional[dict[str, Any]] = None,
    ) -> int:
        return await self._db.write(
            f"{event_type.value} event",
            insert_event,
            page_id,
            session_id,
            self._clock.now_ms(),
            event_type,
            payload,
        )

    async def events(
        self,
        *,
        page_id: Optional[int] = None,
        types: Optional[list[EventType]] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[Event]:
        return await self._db.read(
            lambda conn: fetch_events(conn, page_id=page_id, types=types, since=since, until=until)
        )


class PageRegistry:
    """Durable per-URL aggregates and the statistics derived from them.

    With ``project_open=False`` statistics count committed time only and ignore
    accrual markers, for readers that run without a live tracker.
    """

    def __init__(self, db: Database, clock: Clock, *, project_open: bool = True) -> None:
        self._db = db
        self._clock = clock
        self._project_open = project_open

    async def upsert_page(self, url: str, title: str, *, count_visit: bool = True) -> Page:
        """Create the page for ``url`` or count one more visit to it.

        With ``count_visit=False`` an existing page only has its title refreshed;
        startup enumeration uses this so restarts are not counted as page views.
        """
        normalized = normalize_url(url)
        return await self._db.write(
            f"page {normalized}",
            _upsert_page,
            normalized,
            extract_domain(normalized),
            title or "",
            self._clock.now_ms(),
            count_visit,
        )

    async def get_page(self, page_id: int) -> Optional[Page]:
        return await self._db.read(fetch_page, page_id)

    async def get_page_by_url(self, url: str) -> Optional[Page]:
        return await self._db.read(fetch_page_by_url, normalize_url(url))

    async def pages(self, domain: Optional[str] = None) -> list[Page]:
        return await self._db.read(fetch_pages, domain)

    async def begin_accrual(self, page_id: int) -> bool:
        """Open an accrual for the page; returns False if one was already open."""
        return await self._db.write(
            f"accrual start for page {page_id}",
            _begin_accrual,
            page_id,
            self._clock.now_ms(),
        )

    async def end_accrual(
        self, page_id: int, session_id: str, reason: str = EventType.FOCUS_LOST.value
    ) -> int:
        """Commit the open accrual and return the elapsed milliseconds (0 if none)."""
        return await self._db.write(
            f"accrual stop for page {page_id}",
            _end_accrual,
            page_id,
            session_id,
            reason,
            self._clock.now_ms(),
        )

    async def current_active_time(self, page_id: int) -> int:
        page = await self.get_page(page_id)
        if page is None:
            return 0
        return page.active_time_at(self._clock.now_ms())

    def _page_time(self, page: Page, now: int) -> int:
        if self._project_open:
            return page.active_time_at(now)
        return page.total_active_time_ms

    async def discard_open_accruals(self) -> int:
        """Drop accrual markers that no running tracker owns."""
        count = await self._db.write("stale accrual cleanup", _discard_open_accruals)
        if count:
            logger.warning("Discarded %d stale accrual marker(s) from a previous run.", count)
        return count

    async def top_domains(self, limit: int = 10) -> list[DomainTotals]:
        pages = await self.pages()
        now = self._clock.now_ms()
        totals: dict[str, DomainTotals] = {}
        for page in pages:
            entry = totals.setdefault(page.domain, DomainTotals(domain=page.domain))
            entry.total_time_ms += self._page_time(page, now)
            entry.page_count += 1
            entry.visit_count += page.visit_count
        ranked = sorted(
            (entry for entry in totals.values() if entry.total_time_ms > 0),
            key=lambda entry: (-entry.total_time_ms, entry.domain),
        )
        return ranked[:limit]

    async def today_active_time(self) -> int:
        """Sum the active time that fell inside the current local calendar day."""
        now = self._clock.now_ms()
        return await self._db.read(
            _active_time_since, start_of_day_ms(now), now, self._project_open
        )

    async def domain_stats(self, domain: str) -> dict[str, Any]:
        pages = await self.pages(domain)
        now = self._clock.now_ms()
        total_time = sum(self._page_time(page, now) for page in pages)
        total_visits = sum(page.visit_count for page in pages)
        ranked = sorted(pages, key=lambda page: self._page_time(page, now), reverse=True)
        return {
            "domain": domain,
            "pageCount": len(pages),
            "totalActiveTime": total_time,
            "totalVisits": total_visits,
            "avgTimePerPage": total_time / len(pages) if pages else 0,
            "avgTimePerVisit": total_time / total_visits if total_visits else 0,
            "pages": [page.to_dict() for page in ranked],
        }

    async def page_detailed_stats(self, page_id: int) -> Optional[dict[str, Any]]:
        page = await self.get_page(page_id)
        if page is None:
            return None
        spans_events = await self._db.read(
            lambda conn: fetch_events(conn, page_id=page_id, types=[EventType.ACTIVE_SPAN])
        )
        spans = []
        for event in spans_events:
            payload = event.payload or {}
            duration = int(payload.get("activeTimeMs", 0))
            start = int(payload.get("accrualStart", event.timestamp - duration))
            spans.append({"start": start, "end": start + duration, "duration": duration})
        if page.open_accrual_start is not None:
            now = self._clock.now_ms()
            spans.append(
                {
                    "start": page.open_accrual_start,
                    "end": now,
                    "duration": max(0, now - page.open_accrual_start),
                }
            )
        durations = [span["duration"] for span in spans]
        stats = page.to_dict()
        stats.update(
            {
                "sessionCount": len(spans),
                "avgSessionTime": sum(durations) / len(durations) if durations else 0,
                "maxSessionTime": max(durations) if durations else 0,
                "minSessionTime": min(durations) if durations else 0,
                "activeSessions": spans,
            }
        )
        return stats

    async def clear_all(self) -> None:
        """Wipe pages, events and sessions in one transaction."""
        await self._db.write("data wipe", _clear_all)
        logger.info("All pages, events and sessions cleared.")

    async def cleanup_old_data(self, days_to_keep: int) -> int:
        cutoff = self._clock.now_ms() - int(timedelta(days=days_to_keep).total_seconds() * 1000)
        removed = await self._db.write("data retention cleanup", _cleanup_old_data, cutoff)
        logger.info("Removed %d page(s) older than %d days.", removed, days_to_keep)
        return removed

    async def dump(self) -> dict[str, list[dict[str, Any]]]:
        return await self._db.read(_dump_tables)


def _upsert_page(
    conn: sqlite3.Connection,
    url: str,
    domain: str,
    title: str,
    now: int,
    count_visit: bool,
) -> Page:
    with transaction(conn):
        existing = fetch_page_by_url(conn, url)
        if existing is None:
            cur = conn.execute(
                """
                INSERT INTO pages (
                    url, domain, title, first_visit, last_visit,
                    total_active_time_ms, open_accrual_start, visit_count
                ) VALUES (?, ?, ?, ?, ?, 0, NULL, 1)
                """,
                (url, domain, title, now, now),
            )
            page_id = int(cur.lastrowid)
        else:
            conn.execute(
                """
                UPDATE pages
                SET title = ?, last_visit = ?, visit_count = visit_count + ?
                WHERE id = ?
                """,
                (
                    title or existing.title,
                    max(now, existing.last_visit),
                    1 if count_visit else 0,
                    existing.id,
                ),
            )
            page_id = existing.id
        page = fetch_page(conn, page_id)
    if page is None:
        raise sqlite3.DatabaseError(f"Page {url} vanished during upsert")
    return page


def _begin_accrual(conn: sqlite3.Connection, page_id: int, now: int) -> bool:
    cur = conn.execute(
        """
        UPDATE pages
        SET open_accrual_start = ?, last_visit = MAX(last_visit, ?)
        WHERE id = ? AND open_accrual_start IS NULL
        """,
        (now, now, page_id),
    )
    return cur.rowcount == 1


def _end_accrual(
    conn: sqlite3.Connection,
    page_id: int,
    session_id: str,
    reason: str,
    now: int,
) -> int:
    with transaction(conn):
        page = fetch_page(conn, page_id)
        if page is None or page.open_accrual_start is None:
            return 0
        start = page.open_accrual_start
        elapsed = max(0, now - start)
        conn.execute(
            """
            UPDATE pages
            SET total_active_time_ms = total_active_time_ms + ?,
                open_accrual_start = NULL,
                last_visit = MAX(last_visit, ?)
            WHERE id = ? AND open_accrual_start = ?
            """,
            (elapsed, now, page_id, start),
        )
        if elapsed:
            insert_event(
                conn,
                page_id,
                session_id,
                now,
                EventType.ACTIVE_SPAN,
                {"activeTimeMs": elapsed, "accrualStart": start, "reason": reason},
            )
    return elapsed


def _discard_open_accruals(conn: sqlite3.Connection) -> int:
    cur = conn.execute(
        "UPDATE pages SET open_accrual_start = NULL WHERE open_accrual_start IS NOT NULL"
    )
    return cur.rowcount


def _active_time_since(
    conn: sqlite3.Connection, day_start: int, now: int, include_open: bool = True
) -> int:
    total = 0
    for event in fetch_events(conn, types=[EventType.ACTIVE_SPAN], since=day_start):
        payload = event.payload or {}
        duration = int(payload.get("activeTimeMs", 0))
        start = int(payload.get("accrualStart", event.timestamp - duration))
        total += max(0, start + duration - max(start, day_start))
    if not include_open:
        return total
    rows = conn.execute(
        "SELECT open_accrual_start FROM pages WHERE open_accrual_start IS NOT NULL"
    )
    for row in rows:
        total += max(0, now - max(row["open_accrual_start"], day_start))
    return total


def _clear_all(conn: sqlite3.Connection) -> None:
    with transaction(conn):
        conn.execute("DELETE FROM events")
        conn.execute("DELETE FROM pages")
        conn.execute("DELETE FROM sessions")


def _cleanup_old_data(conn: sqlite3.Connection, cutoff: int) -> int:
    with transaction(conn):
        conn.execute("DELETE FROM events WHERE timestamp < ?", (cutoff,))
        cur = conn.execute(
            "DELETE FROM pages WHERE last_visit < ? AND open_accrual_start IS NULL",
            (cutoff,),
        )
    return cur.rowcount


def _dump_tables(conn: sqlite3.Connection) -> dict[str, list[dict[str, Any]]]:
    return {
        "pages": [page.to_dict() for page in fetch_pages(conn)],
        "events": [event.to_dict() for event in fetch_events(conn)],
        "sessions": [session.to_dict() for session in fetch_sessions(conn)],
    }

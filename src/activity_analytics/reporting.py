"""Simple reporting utilities for CLI output."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

from .clock import SystemClock, iso_timestamp
from .config import TrackerSettings
from .db import Database
from .models import DomainTotals
from .registry import PageRegistry
from .sessions import SessionManager


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, db_path: Path, settings: Optional[TrackerSettings] = None) -> None:
        self.db_path = Path(db_path)
        self.settings = settings or TrackerSettings()

    def print_daily_summary(self) -> None:
        today_ms, domains = asyncio.run(self._load_daily())
        if not domains and not today_ms:
            print("No activity recorded yet.")
            return

        print(f"Summary for {iso_timestamp(SystemClock().now_ms())[:10]}")
        print("-" * 40)
        print(f"Active today: {format_duration(today_ms / 1000)}")
        print()
        if domains:
            print("Top domains (all time):")
            for entry in domains:
                visits = f"{entry.visit_count} visit{'s' if entry.visit_count != 1 else ''}"
                print(
                    f"  {entry.domain[:30]:<30} {format_duration(entry.total_time_ms / 1000)}"
                    f"  {visits}"
                )

    def print_session_summary(self, days: int) -> None:
        stats = asyncio.run(self._load_sessions(days))
        if not stats["totalSessions"]:
            print(f"No sessions recorded in the last {days} days.")
            return

        print(f"Sessions in the last {days} days")
        print("-" * 40)
        print(f"Total:     {stats['totalSessions']} ({stats['activeSessions']} active)")
        print(f"Completed: {stats['completedSessions']}")
        print(f"Total time:   {format_duration(stats['totalTime'] / 1000)}")
        print(f"Average time: {format_duration(stats['avgSessionTime'] / 1000)}")
        print(f"Longest:      {format_duration(stats['maxSessionTime'] / 1000)}")
        if stats["dailyStats"]:
            print()
            for day in stats["dailyStats"]:
                print(f"  {day['date']}  {day['count']:>3}  {format_duration(day['totalTime'] / 1000)}")

    async def _load_daily(self) -> tuple[int, list[DomainTotals]]:
        db = Database(self.db_path, self.settings)
        try:
            pages = PageRegistry(db, SystemClock(), project_open=False)
            return (
                await pages.today_active_time(),
                await pages.top_domains(self.settings.top_domains_limit),
            )
        finally:
            db.close()

    async def _load_sessions(self, days: int) -> dict[str, Any]:
        db = Database(self.db_path, self.settings)
        try:
            return await SessionManager(db, SystemClock()).session_stats(days)
        finally:
            db.close()


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"

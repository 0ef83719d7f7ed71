"""Read-only badge projection of the focused tab's accumulated time."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .clock import Clock
from .tracker import TabActivityTracker

logger = logging.getLogger(__name__)

BADGE_TITLE = "Activity Analytics"


@dataclass(slots=True)
class BadgeView:
    text: str = ""
    title: str = BADGE_TITLE
    tab_id: Optional[int] = None
    total_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "title": self.title,
            "tabId": self.tab_id,
            "totalMs": self.total_ms,
        }


class BadgeSink(Protocol):
    async def show(self, view: BadgeView) -> None: ...


class BadgeProjector:
    """Projects committed plus in-progress time of the focused tab into badge text.

    Nothing is shown until the focused tab has kept its identity for
    ``min_elapsed_ms``. Failures are logged and never reach the tracker.
    """

    def __init__(
        self,
        tracker: TabActivityTracker,
        clock: Clock,
        min_elapsed_ms: int = 5000,
        sink: Optional[BadgeSink] = None,
    ) -> None:
        self._tracker = tracker
        self._clock = clock
        self._min_elapsed_ms = min_elapsed_ms
        self._sink = sink
        self._enabled = True
        self._identity: Optional[tuple[int, int]] = None
        self._changed_at = clock.now_ms()
        self._view = BadgeView()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_view(self) -> BadgeView:
        return self._view

    def attach(self, sink: Optional[BadgeSink]) -> None:
        self._sink = sink

    async def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        await self.refresh()

    async def on_tracker_change(self) -> None:
        self._track_identity()
        await self.refresh()

    async def refresh(self) -> BadgeView:
        try:
            view = await self._project()
        except Exception:
            logger.exception("Failed to update badge")
            view = BadgeView()
        self._view = view
        if self._sink is not None:
            try:
                await self._sink.show(view)
            except Exception:
                logger.exception("Badge sink rejected update")
        return view

    def _track_identity(self) -> None:
        tab = self._tracker.current_tab()
        identity = (tab.tab_id, tab.page_id) if tab is not None else None
        if identity != self._identity:
            self._identity = identity
            self._changed_at = self._clock.now_ms()

    async def _project(self) -> BadgeView:
        if not self._enabled:
            return BadgeView()
        self._track_identity()
        tab = self._tracker.current_tab()
        if tab is None:
            return BadgeView()

        since_change = max(0, self._clock.now_ms() - self._changed_at)
        if since_change < self._min_elapsed_ms:
            return BadgeView(tab_id=tab.tab_id)

        total = await self._tracker.current_active_time()
        title = "\n".join(
            [
                BADGE_TITLE,
                tab.domain,
                f"Total: {format_full_time(total)}",
                f"This session: {format_full_time(since_change)}",
            ]
        )
        return BadgeView(
            text=format_badge_time(total), title=title, tab_id=tab.tab_id, total_ms=total
        )


def format_badge_time(ms: int) -> str:
    """Compact badge text: ``45s``, ``12m``, ``3h``, ``2d``."""
    seconds = max(0, int(ms)) // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


def format_full_time(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"

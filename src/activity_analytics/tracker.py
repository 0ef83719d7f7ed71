"""Per-tab accrual state machine.

A tab accrues active time only while it is the single focused tab, its content
is visible and the host is not idle. Every transition goes
through :meth:`TabActivityTracker._sync`, which recomputes the rule from the
live tab table after each storage round trip.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from .clock import Clock
from .errors import CommitError, HostError
from .host import BrowserHost
from .models import ActiveTabState, EventType, Page
from .normalization import is_trackable_url
from .registry import EventStore, PageRegistry
from .sessions import SessionManager

logger = logging.getLogger(__name__)

CHECKPOINT = "checkpoint"

ChangeListener = Callable[[], Awaitable[None]]


class TabActivityTracker:
    """Fuses focus, visibility and idle signals into page accrual decisions."""

    def __init__(
        self,
        pages: PageRegistry,
        events: EventStore,
        sessions: SessionManager,
        host: BrowserHost,
        clock: Clock,
    ) -> None:
        self._pages = pages
        self._events = events
        self._sessions = sessions
        self._host = host
        self._clock = clock
        self._tabs: dict[int, ActiveTabState] = {}
        self._focused_tab: Optional[int] = None
        self._is_idle = False
        self._listeners: list[ChangeListener] = []

    @property
    def focused_tab_id(self) -> Optional[int]:
        return self._focused_tab

    @property
    def is_idle(self) -> bool:
        return self._is_idle

    def get_active_tabs(self) -> dict[int, ActiveTabState]:
        return dict(self._tabs)

    def get_tab(self, tab_id: int) -> Optional[ActiveTabState]:
        return self._tabs.get(tab_id)

    def current_tab(self) -> Optional[ActiveTabState]:
        if self._focused_tab is None:
            return None
        return self._tabs.get(self._focused_tab)

    async def current_active_time(self) -> int:
        tab = self.current_tab()
        if tab is None:
            return 0
        return await self._pages.current_active_time(tab.page_id)

    def on_change(self, listener: ChangeListener) -> None:
        """Register a callback for accrual start/stop and tab identity changes."""
        self._listeners.append(listener)

    def should_accrue(self, tab: ActiveTabState) -> bool:
        return tab.tab_id == self._focused_tab and tab.is_visible and not self._is_idle

    # Signal handlers

    async def handle_page_view(
        self,
        tab_id: int,
        url: str,
        title: str,
        window_id: Optional[int] = None,
        referrer: Optional[str] = None,
    ) -> Optional[Page]:
        """Rebind a tab to the page it just loaded."""
        previous = self._tabs.get(tab_id)
        if previous is not None and previous.accruing:
            await self._stop(previous, EventType.PAGE_VIEW.value)

        if not is_trackable_url(url):
            if self._tabs.pop(tab_id, None) is not None:
                logger.debug("Tab %s left tracked pages for %s", tab_id, url)
                await self._changed()
            return None

        if referrer is None:
            referrer = await self._lookup_referrer(tab_id)

        page = await self._pages.upsert_page(url, title)
        session_id = await self._sessions.current_session_id()
        await self._events.append_event(
            page.id, session_id, EventType.PAGE_VIEW, {"referrer": referrer, "tabId": tab_id}
        )

        current = self._tabs.get(tab_id)
        if current is not None and current.accruing:
            await self._stop(current, EventType.PAGE_VIEW.value)
            current = self._tabs.get(tab_id)

        if window_id is None and current is not None:
            window_id = current.window_id
        is_visible = current.is_visible if current is not None else self._focused_tab == tab_id
        self._tabs[tab_id] = ActiveTabState(
            tab_id=tab_id,
            page_id=page.id,
            url=page.url,
            domain=page.domain,
            window_id=window_id,
            is_visible=is_visible,
            is_idle=self._is_idle,
            last_activity_time=self._clock.now_ms(),
        )
        logger.info("Page view: %s (tab %s)", page.url, tab_id)
        await self._changed()
        await self._sync(tab_id, EventType.PAGE_VIEW.value)
        return page

    async def handle_focus_gain(self, tab_id: int) -> None:
        previous_id = self._focused_tab
        self._focused_tab = tab_id
        if previous_id is not None and previous_id != tab_id:
            await self._lose_focus(previous_id)

        tab = self._tabs.get(tab_id)
        if tab is None or self._focused_tab != tab_id:
            return
        changed = previous_id != tab_id or not tab.is_visible
        tab.is_visible = True
        tab.last_activity_time = self._clock.now_ms()
        if changed:
            session_id = await self._sessions.current_session_id()
            await self._events.append_event(tab.page_id, session_id, EventType.FOCUS_GAIN)
            logger.debug("Tab gained focus: %s (tab %s)", tab.url, tab_id)
            await self._changed()
        await self._sync(tab_id, EventType.FOCUS_GAIN.value)

    async def handle_focus_lost(self, tab_id: int) -> int:
        if self._focused_tab == tab_id:
            self._focused_tab = None
        return await self._lose_focus(tab_id)

    async def handle_window_focus_changed(self, window_id: Optional[int]) -> None:
        if window_id is None:
            if self._focused_tab is not None:
                await self.handle_focus_lost(self._focused_tab)
            return
        try:
            tab = await self._host.active_tab(window_id)
        except HostError as exc:
            logger.warning("Error handling window focus for window %s: %s", window_id, exc)
            return
        if tab is None:
            if self._focused_tab is not None:
                await self.handle_focus_lost(self._focused_tab)
            return
        await self.handle_focus_gain(tab.tab_id)

    async def handle_visibility_change(self, tab_id: int, visible: bool) -> None:
        tab = self._tabs.get(tab_id)
        if tab is None or tab.is_visible == visible:
            return
        tab.is_visible = visible
        session_id = await self._sessions.current_session_id()
        await self._events.append_event(
            tab.page_id, session_id, EventType.VISIBILITY_CHANGE, {"visible": visible}
        )
        await self._sync(tab_id, EventType.VISIBILITY_CHANGE.value)

    async def handle_idle_change(self, is_idle: bool) -> None:
        if self._is_idle == is_idle:
            return
        self._is_idle = is_idle
        for tab in self._tabs.values():
            tab.is_idle = is_idle
        logger.info("Idle state changed: %s", "idle" if is_idle else "active")

        tab = self.current_tab()
        if tab is None:
            return
        event_type = EventType.IDLE_START if is_idle else EventType.IDLE_END
        elapsed = await self._sync(tab.tab_id, event_type.value)
        session_id = await self._sessions.current_session_id()
        payload = {"activeTimeMs": elapsed} if is_idle else None
        await self._events.append_event(tab.page_id, session_id, event_type, payload)

    async def handle_tab_close(self, tab_id: int) -> None:
        if self._focused_tab == tab_id:
            self._focused_tab = None
        tab = self._tabs.get(tab_id)
        if tab is not None:
            elapsed = await self._sync(tab_id, EventType.TAB_CLOSE.value)
            session_id = await self._sessions.current_session_id()
            await self._events.append_event(
                tab.page_id, session_id, EventType.TAB_CLOSE, {"activeTimeMs": elapsed}
            )
            logger.info("Tab closed: %s (tab %s)", tab.url, tab_id)
        self._tabs.pop(tab_id, None)
        if self._focused_tab == tab_id:
            self._focused_tab = None
        await self._changed()

    # Lifecycle

    async def start(self, is_idle: bool = False) -> None:
        """Rebuild tab state from the browser and resume accrual on the focused tab."""
        self._tabs.clear()
        self._focused_tab = None
        self._is_idle = is_idle
        await self._pages.discard_open_accruals()

        try:
            tabs = await self._host.query_tabs()
        except HostError:
            logger.exception("Error initializing tab tracker")
            return

        for info in tabs:
            if not is_trackable_url(info.url):
                continue
            page = await self._pages.upsert_page(info.url or "", info.title, count_visit=False)
            self._tabs[info.tab_id] = ActiveTabState(
                tab_id=info.tab_id,
                page_id=page.id,
                url=page.url,
                domain=page.domain,
                window_id=info.window_id,
                is_visible=info.active,
                is_idle=self._is_idle,
                last_activity_time=self._clock.now_ms(),
            )
            if not info.active:
                continue
            try:
                window = await self._host.get_window(info.window_id)
            except HostError as exc:
                logger.warning("Could not get window info for tab %s: %s", info.tab_id, exc)
                continue
            if window.focused:
                self._focused_tab = info.tab_id

        logger.info("Initialized tab tracker with %d tabs", len(self._tabs))
        await self._changed()
        if self._focused_tab is not None:
            await self._sync(self._focused_tab, EventType.FOCUS_GAIN.value)

    async def release(self) -> None:
        """Commit every open accrual, then drop all in-memory tab state.

        Every tab is attempted even if one commit fails; the first failure is
        raised once the rest have been tried.
        """
        self._focused_tab = None
        failures: list[CommitError] = []
        seen: set[int] = set()
        for tab in list(self._tabs.values()):
            tab.accruing = False
            if tab.page_id in seen:
                continue
            seen.add(tab.page_id)
            try:
                session_id = await self._sessions.current_session_id()
                await self._pages.end_accrual(tab.page_id, session_id, EventType.FOCUS_LOST.value)
            except CommitError as exc:
                logger.error("Could not commit accrual for tab %s: %s", tab.tab_id, exc)
                failures.append(exc)
        self._tabs.clear()
        logger.info("Tab tracker released")
        await self._changed()
        if failures:
            raise failures[0]

    async def checkpoint(self) -> int:
        """Commit the running accrual and immediately reopen it."""
        tab = self.current_tab()
        if tab is None or not tab.accruing:
            return 0
        elapsed = await self._stop(tab, CHECKPOINT)
        await self._sync(tab.tab_id, CHECKPOINT)
        if elapsed:
            logger.debug("Checkpointed %dms for tab %s", elapsed, tab.tab_id)
        return elapsed

    # Internals

    async def _lose_focus(self, tab_id: int) -> int:
        tab = self._tabs.get(tab_id)
        if tab is None:
            return 0
        elapsed = await self._sync(tab_id, EventType.FOCUS_LOST.value)
        session_id = await self._sessions.current_session_id()
        await self._events.append_event(
            tab.page_id, session_id, EventType.FOCUS_LOST, {"activeTimeMs": elapsed}
        )
        logger.debug("Tab lost focus: %s (tab %s)", tab.url, tab_id)
        await self._changed()
        return elapsed

    async def _sync(self, tab_id: int, reason: str) -> int:
        """Apply the accrual rule to a tab until stored state matches it.

        Returns the milliseconds committed along the way.
        """
        committed = 0
        while True:
            tab = self._tabs.get(tab_id)
            if tab is None:
                return committed
            wanted = self.should_accrue(tab)
            if wanted == tab.accruing:
                return committed
            if wanted:
                await self._start(tab)
            else:
                committed += await self._stop(tab, reason)

    async def _start(self, tab: ActiveTabState) -> None:
        tab.accruing = True
        try:
            started = await self._pages.begin_accrual(tab.page_id)
        except CommitError:
            tab.accruing = False
            raise
        tab.last_activity_time = self._clock.now_ms()
        if started:
            logger.debug("Started activity tracking for tab %s: %s", tab.tab_id, tab.url)
        await self._changed()

    async def _stop(self, tab: ActiveTabState, reason: str) -> int:
        tab.accruing = False
        try:
            session_id = await self._sessions.current_session_id()
            elapsed = await self._pages.end_accrual(tab.page_id, session_id, reason)
        except CommitError:
            tab.accruing = True
            raise
        if elapsed > 0:
            logger.debug(
                "Ended activity tracking for tab %s: %s, time: %dms", tab.tab_id, tab.url, elapsed
            )
        await self._changed()
        return elapsed

    async def _lookup_referrer(self, tab_id: int) -> Optional[str]:
        try:
            info = await self._host.get_tab(tab_id)
        except HostError as exc:
            logger.debug("Referrer lookup failed for tab %s: %s", tab_id, exc)
            return None
        return info.previous_url

    async def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Tracker change listener failed")

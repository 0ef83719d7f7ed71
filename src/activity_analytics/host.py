"""Browser-side collaborators: tab and window lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Protocol

from .errors import HostError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TabInfo:
    tab_id: int
    window_id: int
    url: Optional[str] = None
    title: str = ""
    active: bool = False
    previous_url: Optional[str] = None


@dataclass(slots=True)
class WindowInfo:
    window_id: int
    focused: bool = False


class BrowserHost(Protocol):
    async def query_tabs(self) -> list[TabInfo]: ...

    async def get_tab(self, tab_id: int) -> TabInfo: ...

    async def get_window(self, window_id: int) -> WindowInfo: ...

    async def active_tab(self, window_id: int) -> Optional[TabInfo]: ...


class BrowserMirror:
    """Local copy of the browser's tab and window layout.

    The browser extension pushes its state through the same signals the tracker
    consumes; the mirror keeps enough of it to answer startup enumeration and
    window-focus lookups without a round trip.
    """

    def __init__(self) -> None:
        self._tabs: dict[int, TabInfo] = {}
        self._focused_window: Optional[int] = None
        self._focus_known = False

    @property
    def focused_window(self) -> Optional[int]:
        return self._focused_window

    @property
    def browser_unfocused(self) -> bool:
        """True once the browser has reported that none of its windows has focus."""
        return self._focus_known and self._focused_window is None

    def load_snapshot(self, tabs: list[TabInfo], focused_window_id: Optional[int]) -> None:
        self._tabs = {tab.tab_id: replace(tab) for tab in tabs}
        self._focused_window = focused_window_id
        self._focus_known = True
        logger.debug("Loaded browser snapshot with %d tabs", len(self._tabs))

    def tab_updated(
        self,
        tab_id: int,
        url: Optional[str],
        title: Optional[str],
        window_id: Optional[int] = None,
    ) -> None:
        tab = self._tabs.get(tab_id)
        if tab is None:
            tab = TabInfo(tab_id=tab_id, window_id=window_id if window_id is not None else -1)
            self._tabs[tab_id] = tab
        if window_id is not None:
            tab.window_id = window_id
        if url and url != tab.url:
            tab.previous_url = tab.url
            tab.url = url
        if title is not None:
            tab.title = title

    def tab_activated(self, tab_id: int, window_id: Optional[int] = None) -> None:
        tab = self._tabs.get(tab_id)
        if tab is None:
            tab = TabInfo(tab_id=tab_id, window_id=window_id if window_id is not None else -1)
            self._tabs[tab_id] = tab
        elif window_id is not None:
            tab.window_id = window_id
        for other in self._tabs.values():
            if other.window_id == tab.window_id:
                other.active = other.tab_id == tab_id

    def tab_removed(self, tab_id: int) -> None:
        self._tabs.pop(tab_id, None)

    def window_focus_changed(self, window_id: Optional[int]) -> None:
        self._focused_window = window_id
        self._focus_known = True

    async def query_tabs(self) -> list[TabInfo]:
        return [replace(tab) for tab in self._tabs.values()]

    async def get_tab(self, tab_id: int) -> TabInfo:
        tab = self._tabs.get(tab_id)
        if tab is None:
            raise HostError(f"No tab with id: {tab_id}")
        return replace(tab)

    async def get_window(self, window_id: int) -> WindowInfo:
        if not any(tab.window_id == window_id for tab in self._tabs.values()):
            raise HostError(f"No window with id: {window_id}")
        return WindowInfo(window_id=window_id, focused=window_id == self._focused_window)

    async def active_tab(self, window_id: int) -> Optional[TabInfo]:
        for tab in self._tabs.values():
            if tab.window_id == window_id and tab.active:
                return replace(tab)
        return None

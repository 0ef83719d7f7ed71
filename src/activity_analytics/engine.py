"""The tracking engine: one context object and the router that feeds it."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from .badge import BadgeProjector
from .clock import Clock, SystemClock, iso_timestamp
from .config import TrackerSettings
from .db import Database, fetch_settings, store_setting
from .errors import CommitError
from .host import BrowserMirror
from .idle import IdleMonitor, IdleSampler, default_sampler
from .paths import get_db_path
from .registry import EventStore, PageRegistry
from .sessions import SessionManager
from .signals import (
    Checkpoint,
    IdlePoll,
    IdleStateChanged,
    IdleTransition,
    Signal,
    Startup,
    Suspend,
    TabActivated,
    TabRemoved,
    TabsSnapshot,
    TabUpdated,
    VisibilityChanged,
    WindowFocusChanged,
)
from .ticker import PeriodicTick
from .tracker import TabActivityTracker

logger = logging.getLogger(__name__)

TRACKING_ENABLED_KEY = "tracking_enabled"
IDLE_THRESHOLD_KEY = "idleThreshold"
BADGE_ENABLED_KEY = "badgeEnabled"
EXPORT_VERSION = "1.0"

Handler = Callable[[Any], Awaitable[None]]
_QueueItem = Optional[tuple[Signal, Optional["asyncio.Future[None]"]]]


class Engine:
    """Owns every tracking component and processes inbound signals one at a time.

    Signals are queued with :meth:`submit` or :meth:`post` and handled by the
    router task started in :meth:`start`. Control operations that touch tracker
    state take the same turn lock as the router, so they never interleave with
    a signal that is mid-flight.
    """

    def __init__(
        self,
        db: Database,
        settings: TrackerSettings,
        clock: Clock,
        host: BrowserMirror,
        idle: IdleMonitor,
    ) -> None:
        self.db = db
        self.settings = settings
        self.clock = clock
        self.host = host
        self.idle = idle
        self.events = EventStore(db, clock)
        self.pages = PageRegistry(db, clock)
        self.sessions = SessionManager(db, clock)
        self.tracker = TabActivityTracker(self.pages, self.events, self.sessions, host, clock)
        self.badge = BadgeProjector(self.tracker, clock, settings.badge_min_elapsed_ms)
        self.tracking_enabled = True

        self._queue: asyncio.Queue[_QueueItem] = asyncio.Queue()
        self._pending: deque[Signal] = deque()
        self._turn = asyncio.Lock()
        self._router: Optional[asyncio.Task[None]] = None
        self._ticks: list[PeriodicTick] = []
        self._handlers: dict[type, Handler] = {
            TabActivated: self._on_tab_activated,
            TabUpdated: self._on_tab_updated,
            TabRemoved: self._on_tab_removed,
            WindowFocusChanged: self._on_window_focus_changed,
            VisibilityChanged: self._on_visibility_changed,
            IdleStateChanged: self._on_idle_state_changed,
            TabsSnapshot: self._on_tabs_snapshot,
            Startup: self._on_startup,
            Suspend: self._on_suspend,
            Checkpoint: self._on_checkpoint,
            IdlePoll: self._on_idle_poll,
            IdleTransition: self._on_idle_transition,
        }

        self.tracker.on_change(self.badge.on_tracker_change)
        self.idle.subscribe(self._on_idle_change)

    @property
    def is_running(self) -> bool:
        return bool(self._router and not self._router.done())

    # Lifecycle

    async def initialize(self) -> None:
        """Restore stored settings, recover sessions and rebuild tab state."""
        async with self._turn:
            stored = await self.db.read(fetch_settings)
            if stored.get(TRACKING_ENABLED_KEY) is not None:
                self.tracking_enabled = bool(stored[TRACKING_ENABLED_KEY])
            if stored.get(IDLE_THRESHOLD_KEY) is not None:
                self._apply_idle_threshold(int(stored[IDLE_THRESHOLD_KEY]))
            if stored.get(BADGE_ENABLED_KEY) is not None:
                await self.badge.set_enabled(bool(stored[BADGE_ENABLED_KEY]))
            await self.sessions.initialize()
            if self.idle.has_sampler:
                await self.idle.sample()
            self._pending.clear()
            if self.tracking_enabled:
                await self.tracker.start(is_idle=self.idle.is_idle)
            else:
                await self.pages.discard_open_accruals()
        logger.info("Engine initialized (tracking %s)", "on" if self.tracking_enabled else "paused")

    async def start(self) -> None:
        await self.initialize()
        self._router = asyncio.create_task(self.run(), name="engine-router")
        self._ticks = [
            PeriodicTick("checkpoint", self.settings.checkpoint_interval, self._post_checkpoint),
            PeriodicTick("badge", self.settings.badge_refresh_interval, self._refresh_badge),
        ]
        if self.idle.has_sampler:
            self._ticks.append(
                PeriodicTick("idle-poll", self.settings.idle_poll_interval, self._post_idle_poll)
            )
        for tick in self._ticks:
            tick.start()
        logger.info("Engine started.")

    async def shutdown(self) -> None:
        """Drain queued signals, commit open accruals and close storage."""
        for tick in self._ticks:
            await tick.stop()
        self._ticks = []
        if self._router is not None:
            await self._queue.put(None)
            await self._router
            self._router = None

        async with self._turn:
            try:
                await self.tracker.release()
            except CommitError:
                logger.exception("Failed to commit open accruals on shutdown")
            try:
                await self.sessions.end_session()
            except CommitError:
                logger.exception("Failed to close the session on shutdown")
        self.idle.close()
        self.db.close()
        logger.info("Engine shut down.")

    # Router

    async def submit(self, signal: Signal) -> None:
        """Queue a signal and wait until the router has handled it."""
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._queue.put((signal, future))
        await future

    def post(self, signal: Signal) -> None:
        """Queue a signal without waiting for it."""
        self._queue.put_nowait((signal, None))

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                signal, future = item
                try:
                    await self.dispatch(signal)
                except Exception as exc:
                    if future is not None and not future.done():
                        future.set_exception(exc)
                    elif not isinstance(exc, CommitError):
                        logger.exception("Error handling %s signal", signal.kind)
                else:
                    if future is not None and not future.done():
                        future.set_result(None)
            finally:
                self._queue.task_done()

    async def dispatch(self, signal: Signal) -> None:
        """Handle one signal to completion, then any idle transitions it caused."""
        async with self._turn:
            try:
                await self._route(signal)
                while self._pending:
                    await self._route(self._pending.popleft())
            except CommitError as exc:
                await self._escalate(exc)
                raise

    async def _route(self, signal: Signal) -> None:
        handler = self._handlers.get(type(signal))
        if handler is None:
            logger.warning("No handler registered for %s", type(signal).__name__)
            return
        logger.debug("Routing %s", signal.kind)
        await handler(signal)

    async def _escalate(self, exc: CommitError) -> None:
        logger.exception("Could not persist %s; disabling tracking", exc.operation)
        await self.disable_tracking()

    # Handlers

    async def _on_tab_activated(self, signal: TabActivated) -> None:
        self.host.tab_activated(signal.tab_id, signal.window_id)
        if not self.tracking_enabled:
            return
        if self.host.browser_unfocused:
            logger.debug("Tab %s activated while no browser window has focus", signal.tab_id)
            return
        focused_window = self.host.focused_window
        if (
            signal.window_id is not None
            and focused_window is not None
            and focused_window != signal.window_id
        ):
            logger.debug("Tab %s activated in unfocused window %s", signal.tab_id, signal.window_id)
            return
        await self.tracker.handle_focus_gain(signal.tab_id)

    async def _on_tab_updated(self, signal: TabUpdated) -> None:
        self.host.tab_updated(signal.tab_id, signal.url, signal.title, signal.window_id)
        if not self.tracking_enabled or not signal.is_complete:
            return
        await self.tracker.handle_page_view(
            signal.tab_id,
            signal.url or "",
            signal.title or "",
            window_id=signal.window_id,
            referrer=signal.referrer,
        )

    async def _on_tab_removed(self, signal: TabRemoved) -> None:
        self.host.tab_removed(signal.tab_id)
        await self.tracker.handle_tab_close(signal.tab_id)

    async def _on_window_focus_changed(self, signal: WindowFocusChanged) -> None:
        self.host.window_focus_changed(signal.window_id)
        if self.tracking_enabled:
            await self.tracker.handle_window_focus_changed(signal.window_id)

    async def _on_visibility_changed(self, signal: VisibilityChanged) -> None:
        if self.tracking_enabled:
            await self.tracker.handle_visibility_change(signal.tab_id, signal.visible)

    async def _on_idle_state_changed(self, signal: IdleStateChanged) -> None:
        await self.idle.report(signal.state)

    async def _on_idle_poll(self, signal: IdlePoll) -> None:
        await self.idle.sample()

    async def _on_idle_transition(self, signal: IdleTransition) -> None:
        if self.tracking_enabled:
            await self.tracker.handle_idle_change(signal.is_idle)

    async def _on_checkpoint(self, signal: Checkpoint) -> None:
        if self.tracking_enabled:
            await self.tracker.checkpoint()

    async def _on_tabs_snapshot(self, signal: TabsSnapshot) -> None:
        self.host.load_snapshot(
            [tab.to_tab_info() for tab in signal.tabs], signal.focused_window_id
        )
        if self.tracking_enabled:
            await self._restart_tracker()

    async def _on_startup(self, signal: Startup) -> None:
        logger.info("Browser startup detected")
        await self.tracker.release()
        await self.sessions.initialize()
        if self.tracking_enabled:
            await self.tracker.start(is_idle=self.idle.is_idle)

    async def _on_suspend(self, signal: Suspend) -> None:
        logger.info("Browser suspending...")
        await self.tracker.release()
        await self.sessions.end_session()

    def _on_idle_change(self, is_idle: bool) -> None:
        self._pending.append(IdleTransition(is_idle=is_idle))

    async def _restart_tracker(self) -> None:
        await self.tracker.release()
        await self.tracker.start(is_idle=self.idle.is_idle)

    # Ticks

    async def _post_checkpoint(self) -> None:
        self.post(Checkpoint())

    async def _post_idle_poll(self) -> None:
        self.post(IdlePoll())

    async def _refresh_badge(self) -> None:
        await self.badge.refresh()

    # Control operations

    async def disable_tracking(self) -> None:
        """Stop all accrual and drop tab state. Runs inside the current turn."""
        self.tracking_enabled = False
        self._pending.clear()
        try:
            await self.tracker.release()
        except CommitError:
            logger.exception("Could not commit open accruals while disabling tracking")

    async def pause_tracking(self) -> None:
        async with self._turn:
            await self.disable_tracking()
            await self._store_tracking_flag()
        logger.info("Tracking paused")

    async def resume_tracking(self) -> None:
        async with self._turn:
            self.tracking_enabled = True
            await self._store_tracking_flag()
            await self._restart_tracker()
        logger.info("Tracking resumed")

    async def clear_data(self) -> None:
        async with self._turn:
            await self.tracker.release()
            await self.pages.clear_all()
            self.sessions.forget()
            await self.sessions.start_session()
            if self.tracking_enabled:
                await self.tracker.start(is_idle=self.idle.is_idle)
        logger.info("All data cleared")

    async def export_data(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(await self.pages.dump())
        data["exportDate"] = iso_timestamp(self.clock.now_ms())
        data["version"] = EXPORT_VERSION
        return data

    async def stored_settings(self) -> dict[str, Any]:
        stored = await self.db.read(fetch_settings)
        stored["isTrackingEnabled"] = self.tracking_enabled
        return stored

    async def update_setting(self, key: str, value: Any) -> None:
        """Store one setting and apply the ones that take effect immediately."""
        if key == TRACKING_ENABLED_KEY:
            if value:
                await self.resume_tracking()
            else:
                await self.pause_tracking()
            return
        if key == IDLE_THRESHOLD_KEY:
            self._apply_idle_threshold(int(value))
        elif key == BADGE_ENABLED_KEY:
            await self.badge.set_enabled(bool(value))
        await self._store_setting(key, value)
        logger.info("Setting %s updated", key)

    async def set_badge_enabled(self, enabled: bool) -> None:
        await self.update_setting(BADGE_ENABLED_KEY, enabled)

    def _apply_idle_threshold(self, seconds: int) -> None:
        self.settings.idle_threshold = timedelta(seconds=seconds)
        self.idle.set_threshold(seconds)

    async def _store_tracking_flag(self) -> None:
        await self._store_setting(TRACKING_ENABLED_KEY, self.tracking_enabled)

    async def _store_setting(self, key: str, value: Any) -> None:
        await self.db.write(
            f"setting {key}",
            store_setting,
            key,
            value,
            self.clock.now_ms(),
        )

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "trackingEnabled": self.tracking_enabled,
            "focusedTabId": self.tracker.focused_tab_id,
            "openTabs": len(self.tracker.get_active_tabs()),
            "idleState": self.idle.state.value,
            "isIdle": self.idle.is_idle,
            "sessionActive": self.sessions.is_session_active,
            "sessionTime": self.sessions.current_session_time(),
            "databasePath": str(self.db.path),
            "idleThresholdSeconds": self.settings.idle_threshold_seconds,
            "checkpointSeconds": self.settings.checkpoint_interval.total_seconds(),
        }


def build_engine(
    db_path: Union[Path, str, None] = None,
    settings: Optional[TrackerSettings] = None,
    *,
    clock: Optional[Clock] = None,
    host: Optional[BrowserMirror] = None,
    sampler: Optional[IdleSampler] = None,
) -> Engine:
    """Wire every component around one database and one clock."""
    resolved_settings = settings or TrackerSettings()
    if sampler is None and resolved_settings.sample_idle:
        sampler = default_sampler()
    db = Database(db_path or get_db_path(), resolved_settings)
    idle = IdleMonitor(resolved_settings.idle_threshold_seconds, sampler)
    return Engine(
        db,
        resolved_settings,
        clock or SystemClock(),
        host or BrowserMirror(),
        idle,
    )

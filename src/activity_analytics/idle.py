"""Host idle detection with debounced change notifications."""

from __future__ import annotations

import ctypes
import inspect
import logging
import sys
from ctypes import wintypes
from typing import Awaitable, Callable, Optional, Protocol, Union

from .models import IdleState

logger = logging.getLogger(__name__)

IdleListener = Callable[[bool], Union[None, Awaitable[None]]]


class IdleSampler(Protocol):
    def query_state(self, threshold_seconds: int) -> IdleState: ...

    def close(self) -> None: ...


class WindowsIdleSampler:
    """Detects idle state using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        elapsed = self._kernel32.GetTickCount64() - last_input.dwTime
        return int(elapsed)

    def query_state(self, threshold_seconds: int) -> IdleState:
        idle_ms = self.milliseconds_since_input()
        return IdleState.IDLE if idle_ms >= threshold_seconds * 1000 else IdleState.ACTIVE

    def close(self) -> None:
        self._user32 = None
        self._kernel32 = None


def default_sampler() -> Optional[IdleSampler]:
    """Return a local sampler for this platform, or None to rely on browser reports."""
    if sys.platform == "win32":
        return WindowsIdleSampler()
    return None


class IdleMonitor:
    """Tracks whether the host is idle and tells listeners when that changes."""

    def __init__(
        self, threshold_seconds: int = 30, sampler: Optional[IdleSampler] = None
    ) -> None:
        self._threshold_seconds = threshold_seconds
        self._sampler = sampler
        self._listeners: list[IdleListener] = []
        self._is_idle = False
        self._state = IdleState.ACTIVE

    @property
    def is_idle(self) -> bool:
        return self._is_idle

    @property
    def state(self) -> IdleState:
        return self._state

    @property
    def threshold_seconds(self) -> int:
        return self._threshold_seconds

    @property
    def has_sampler(self) -> bool:
        return self._sampler is not None

    def subscribe(self, listener: IdleListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: IdleListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def set_threshold(self, seconds: int) -> None:
        """Change the detection threshold used by later samples."""
        self._threshold_seconds = seconds
        logger.info("Idle threshold updated to %ss", seconds)

    async def report(self, state: IdleState) -> bool:
        """Apply a host report; returns True if it changed the idle flag."""
        was_idle = self._is_idle
        self._state = state
        self._is_idle = state.is_idle
        logger.debug(
            "Idle state reported: %s (was idle: %s, now idle: %s)",
            state.value,
            was_idle,
            self._is_idle,
        )
        if was_idle == self._is_idle:
            return False
        await self._notify()
        return True

    async def sample(self) -> bool:
        """Query the sampler once and apply the reading."""
        if self._sampler is None:
            return False
        try:
            state = self._sampler.query_state(self._threshold_seconds)
        except OSError:
            logger.exception("Failed to query idle state; keeping previous state.")
            return False
        return await self.report(state)

    async def _notify(self) -> None:
        is_idle = self._is_idle
        for listener in list(self._listeners):
            try:
                result = listener(is_idle)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in idle listener %r", listener)

    def close(self) -> None:
        if self._sampler is not None:
            self._sampler.close()
            self._sampler = None
        self._listeners.clear()
        logger.info("Idle monitor closed.")

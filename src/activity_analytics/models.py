"""Domain models for pages, events and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    FOCUS_GAIN = "focus_gain"
    FOCUS_LOST = "focus_lost"
    VISIBILITY_CHANGE = "visibility_change"
    TAB_CLOSE = "tab_close"
    IDLE_START = "idle_start"
    IDLE_END = "idle_end"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    ACTIVE_SPAN = "active_span"


class IdleState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    LOCKED = "locked"

    @property
    def is_idle(self) -> bool:
        return self is not IdleState.ACTIVE


@dataclass(slots=True)
class Page:
    """Durable aggregate for one normalized URL."""

    id: int
    url: str
    domain: str
    title: str
    first_visit: int
    last_visit: int
    total_active_time_ms: int = 0
    open_accrual_start: Optional[int] = None
    visit_count: int = 1

    def active_time_at(self, now_ms: int) -> int:
        """Committed time plus any open accrual projected to ``now_ms``."""
        if self.open_accrual_start is None:
            return self.total_active_time_ms
        return self.total_active_time_ms + max(0, now_ms - self.open_accrual_start)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "firstVisit": self.first_visit,
            "lastVisit": self.last_visit,
            "totalActiveTimeMs": self.total_active_time_ms,
            "openAccrualStart": self.open_accrual_start,
            "visitCount": self.visit_count,
        }


@dataclass(slots=True)
class Event:
    id: int
    page_id: Optional[int]
    session_id: str
    timestamp: int
    type: EventType
    payload: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pageId": self.page_id,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "payload": self.payload,
        }


@dataclass(slots=True)
class Session:
    id: int
    session_id: str
    start_time: int
    end_time: Optional[int] = None
    is_active: bool = True

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "isActive": self.is_active,
        }


@dataclass(slots=True)
class DomainTotals:
    domain: str
    total_time_ms: int = 0
    page_count: int = 0
    visit_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "totalTime": self.total_time_ms,
            "pageCount": self.page_count,
            "visitCount": self.visit_count,
        }


@dataclass(slots=True)
class ActiveTabState:
    """In-memory view of one open tab, owned by the tracker."""

    tab_id: int
    page_id: int
    url: str
    domain: str
    window_id: Optional[int] = None
    is_visible: bool = False
    is_idle: bool = False
    last_activity_time: int = 0
    accruing: bool = field(default=False)

"""Request/response control channel for statistics and tracking control."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .engine import IDLE_THRESHOLD_KEY, Engine
from .errors import TrackerError

logger = logging.getLogger(__name__)

MIN_IDLE_THRESHOLD_SECONDS = 15


class ControlRequest(BaseModel):
    type: str
    data: Optional[Dict[str, Any]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class ControlResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    unsupported: bool = False


class InvalidRequest(ValueError):
    """A control request had a missing or invalid field."""


ControlHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ControlChannel:
    """Answers control requests against one engine."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._handlers: dict[str, ControlHandler] = {
            "GET_STATS": self.get_stats,
            "GET_TODAY_TIME": self.get_today_time,
            "GET_DOMAIN_STATS": self.get_domain_stats,
            "GET_PAGE_STATS": self.get_page_stats,
            "GET_SESSION_STATS": self.get_session_stats,
            "GET_SETTINGS": self.get_settings,
            "UPDATE_SETTINGS": self.update_settings,
            "SET_BADGE_ENABLED": self.set_badge_enabled,
            "IS_TRACKING_ENABLED": self.is_tracking_enabled,
            "PAUSE_TRACKING": self.pause_tracking,
            "RESUME_TRACKING": self.resume_tracking,
            "EXPORT_DATA": self.export_data,
            "CLEAR_DATA": self.clear_data,
        }

    async def handle(self, request: ControlRequest) -> ControlResponse:
        handler = self._handlers.get(request.type)
        if handler is None:
            logger.warning("Unsupported control request: %s", request.type)
            return ControlResponse(
                success=False,
                error=f"Unsupported request type: {request.type}",
                unsupported=True,
            )
        try:
            data = await handler(request.data or {})
        except InvalidRequest as exc:
            logger.warning("Rejected %s request: %s", request.type, exc)
            return ControlResponse(success=False, error=str(exc))
        except TrackerError as exc:
            logger.exception("Error handling %s request", request.type)
            return ControlResponse(success=False, error=str(exc))
        return ControlResponse(success=True, data=data)

    async def get_stats(self, data: Dict[str, Any]) -> Dict[str, Any]:
        engine = self._engine
        top_domains = await engine.pages.top_domains(engine.settings.top_domains_limit)
        current_tab: Optional[Dict[str, Any]] = None
        tab = engine.tracker.current_tab()
        if tab is not None:
            current_tab = {
                "tabId": tab.tab_id,
                "pageId": tab.page_id,
                "url": tab.url,
                "domain": tab.domain,
                "activeTime": await engine.pages.current_active_time(tab.page_id),
            }
        return {
            "topDomains": [entry.to_dict() for entry in top_domains],
            "currentTab": current_tab,
            "todayTime": await engine.pages.today_active_time(),
            "sessionStats": await engine.sessions.session_stats(engine.settings.session_stats_days),
            "isTrackingEnabled": engine.tracking_enabled,
        }

    async def get_today_time(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"todayTime": await self._engine.pages.today_active_time()}

    async def get_domain_stats(self, data: Dict[str, Any]) -> Dict[str, Any]:
        domain = data.get("domain")
        if not domain:
            raise InvalidRequest("Domain is required")
        return await self._engine.pages.domain_stats(str(domain).lower())

    async def get_page_stats(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        page_id = data.get("pageId")
        if not page_id:
            raise InvalidRequest("Page ID is required")
        try:
            page_id = int(page_id)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid page ID: {page_id!r}") from exc
        return await self._engine.pages.page_detailed_stats(page_id)

    async def get_session_stats(self, data: Dict[str, Any]) -> Dict[str, Any]:
        days = data.get("days", self._engine.settings.session_stats_days)
        try:
            days = int(days)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid number of days: {days!r}") from exc
        stats = await self._engine.sessions.session_stats(days)
        current = await self._engine.sessions.get_current_session()
        stats["currentSession"] = current.to_dict() if current is not None else None
        return stats

    async def get_settings(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._engine.stored_settings()

    async def update_settings(self, data: Dict[str, Any]) -> Dict[str, Any]:
        key = data.get("key")
        if not key:
            raise InvalidRequest("Setting key is required")
        if "value" not in data:
            raise InvalidRequest("Setting value is required")
        value = data["value"]
        if key == IDLE_THRESHOLD_KEY:
            value = _parse_idle_threshold(value)
        await self._engine.update_setting(str(key), value)
        return {"key": key, "value": value}

    async def set_badge_enabled(self, data: Dict[str, Any]) -> Dict[str, Any]:
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise InvalidRequest("enabled must be true or false")
        await self._engine.set_badge_enabled(enabled)
        return {"enabled": enabled}

    async def is_tracking_enabled(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"enabled": self._engine.tracking_enabled}

    async def pause_tracking(self, data: Dict[str, Any]) -> Dict[str, Any]:
        await self._engine.pause_tracking()
        return {"enabled": False}

    async def resume_tracking(self, data: Dict[str, Any]) -> Dict[str, Any]:
        await self._engine.resume_tracking()
        return {"enabled": True}

    async def export_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._engine.export_data()

    async def clear_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        await self._engine.clear_data()
        return {"cleared": True}


def _parse_idle_threshold(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidRequest(f"Invalid idle threshold: {value!r}")
    try:
        seconds = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"Invalid idle threshold: {value!r}") from exc
    if seconds < MIN_IDLE_THRESHOLD_SECONDS:
        raise InvalidRequest(
            f"Idle threshold must be at least {MIN_IDLE_THRESHOLD_SECONDS} seconds"
        )
    return seconds

"""Inbound signals processed by the engine's router."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .host import TabInfo
from .models import IdleState


class _Signal(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TabActivated(_Signal):
    kind: Literal["tab_activated"] = "tab_activated"
    tab_id: int
    window_id: Optional[int] = None


class TabUpdated(_Signal):
    kind: Literal["tab_updated"] = "tab_updated"
    tab_id: int
    status: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    window_id: Optional[int] = None
    referrer: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status == "complete" and bool(self.url)


class TabRemoved(_Signal):
    kind: Literal["tab_removed"] = "tab_removed"
    tab_id: int


class WindowFocusChanged(_Signal):
    kind: Literal["window_focus_changed"] = "window_focus_changed"
    window_id: Optional[int] = None


class VisibilityChanged(_Signal):
    kind: Literal["visibility_changed"] = "visibility_changed"
    tab_id: int
    visible: bool


class IdleStateChanged(_Signal):
    kind: Literal["idle_state_changed"] = "idle_state_changed"
    state: IdleState


class SnapshotTab(BaseModel):
    tab_id: int
    window_id: int
    url: Optional[str] = None
    title: str = ""
    active: bool = False

    def to_tab_info(self) -> TabInfo:
        return TabInfo(
            tab_id=self.tab_id,
            window_id=self.window_id,
            url=self.url,
            title=self.title,
            active=self.active,
        )


class TabsSnapshot(_Signal):
    kind: Literal["tabs_snapshot"] = "tabs_snapshot"
    tabs: list[SnapshotTab] = Field(default_factory=list)
    focused_window_id: Optional[int] = None


class Startup(_Signal):
    kind: Literal["startup"] = "startup"


class Suspend(_Signal):
    kind: Literal["suspend"] = "suspend"


class Checkpoint(_Signal):
    kind: Literal["checkpoint"] = "checkpoint"


class IdlePoll(_Signal):
    kind: Literal["idle_poll"] = "idle_poll"


class IdleTransition(_Signal):
    kind: Literal["idle_transition"] = "idle_transition"
    is_idle: bool


BrowserSignal = Annotated[
    Union[
        TabActivated,
        TabUpdated,
        TabRemoved,
        WindowFocusChanged,
        VisibilityChanged,
        IdleStateChanged,
        TabsSnapshot,
        Startup,
        Suspend,
    ],
    Field(discriminator="kind"),
]

Signal = Union[
    TabActivated,
    TabUpdated,
    TabRemoved,
    WindowFocusChanged,
    VisibilityChanged,
    IdleStateChanged,
    TabsSnapshot,
    Startup,
    Suspend,
    Checkpoint,
    IdlePoll,
    IdleTransition,
]

_browser_signal = TypeAdapter(BrowserSignal)


def parse_signal(data: dict) -> Signal:
    """Validate a JSON object posted by the browser extension."""
    return _browser_signal.validate_python(data)

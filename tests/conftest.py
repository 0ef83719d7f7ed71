"""Shared fixtures: a settable clock, an in-memory database and engine factory."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import pytest

from activity_analytics.clock import to_ms
from activity_analytics.config import TrackerSettings
from activity_analytics.db import Database
from activity_analytics.engine import Engine, build_engine
from activity_analytics.host import BrowserMirror, TabInfo

NOON = to_ms(datetime(2026, 1, 15, 12, 0, 0))


class FakeClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, now_ms: int = NOON) -> None:
        self.now = now_ms

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def fast_settings(**overrides) -> TrackerSettings:
    values = {"commit_retry_delay": timedelta(0)}
    values.update(overrides)
    return TrackerSettings(**values)


def tab(tab_id: int, url: str, *, window_id: int = 1, active: bool = False, title: str = "") -> TabInfo:
    return TabInfo(tab_id=tab_id, window_id=window_id, url=url, title=title, active=active)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> TrackerSettings:
    return fast_settings()


@pytest.fixture
def db(settings):
    database = Database.open_in_memory(settings)
    yield database
    database.close()


@pytest.fixture
def mirror() -> BrowserMirror:
    return BrowserMirror()


@pytest.fixture
def make_engine(clock, mirror, settings) -> Callable[..., Engine]:
    created: list[Engine] = []

    def factory(db_path: Optional[str] = None, **kwargs) -> Engine:
        engine = build_engine(
            db_path or ":memory:",
            kwargs.pop("settings", settings),
            clock=kwargs.pop("clock", clock),
            host=kwargs.pop("host", mirror),
            **kwargs,
        )
        created.append(engine)
        return engine

    yield factory
    for engine in created:
        engine.db.close()

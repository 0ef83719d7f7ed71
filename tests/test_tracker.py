"""Tests for the per-tab accrual state machine."""

import asyncio

import pytest

from activity_analytics.errors import CommitError
from activity_analytics.models import EventType

from conftest import tab


async def _open_pages(engine):
    return [page for page in await engine.pages.pages() if page.open_accrual_start is not None]


async def _focus_new_tab(tracker, tab_id, url, window_id=1):
    await tracker.handle_page_view(tab_id, url, "", window_id=window_id)
    await tracker.handle_focus_gain(tab_id)


class TestAccrualRule:
    def test_focused_visible_tab_accrues_until_focus_is_lost(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await tracker.handle_page_view(1, "https://a.com/x?q=1", "A", window_id=1)
            await tracker.handle_focus_gain(1)
            clock.advance(5000)
            committed = await tracker.handle_focus_lost(1)
            return committed, await engine.pages.get_page_by_url("https://a.com/x")

        committed, page = asyncio.run(scenario())
        assert committed == 5000
        assert page.total_active_time_ms == 5000
        assert page.visit_count == 1
        assert page.open_accrual_start is None

    def test_unfocused_tab_does_not_accrue(self, make_engine, clock):
        engine = make_engine()

        async def scenario():
            await engine.tracker.handle_page_view(1, "https://a.com/", "", window_id=1)
            clock.advance(5000)
            return await engine.pages.get_page_by_url("https://a.com/")

        page = asyncio.run(scenario())
        assert page.open_accrual_start is None
        assert page.total_active_time_ms == 0

    def test_hidden_content_stops_accrual(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1500)
            await tracker.handle_visibility_change(1, False)
            clock.advance(4000)
            await tracker.handle_visibility_change(1, True)
            clock.advance(500)
            await tracker.handle_focus_lost(1)
            return await engine.pages.get_page_by_url("https://a.com/")

        assert asyncio.run(scenario()).total_active_time_ms == 2000

    def test_idle_gating_commits_only_active_time(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(2000)
            await tracker.handle_idle_change(True)
            clock.advance(3000)
            await tracker.handle_idle_change(False)
            page = await engine.pages.get_page_by_url("https://a.com/")
            return page, await tracker.current_active_time()

        page, current = asyncio.run(scenario())
        assert page.total_active_time_ms == 2000
        assert page.open_accrual_start == clock.now
        assert current == 2000

    def test_idle_events_are_recorded_for_focused_page(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1000)
            await tracker.handle_idle_change(True)
            await tracker.handle_idle_change(True)
            await tracker.handle_idle_change(False)
            return await engine.events.events(types=[EventType.IDLE_START, EventType.IDLE_END])

        recorded = asyncio.run(scenario())
        assert [event.type for event in recorded] == [EventType.IDLE_START, EventType.IDLE_END]
        assert recorded[0].payload == {"activeTimeMs": 1000}


class TestFocus:
    def test_focus_moves_between_tabs(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1000)
            await _focus_new_tab(tracker, 2, "https://b.com/")
            open_pages = await _open_pages(engine)
            clock.advance(3000)
            await tracker.handle_focus_gain(1)
            return open_pages, await _open_pages(engine)

        after_b, after_a = asyncio.run(scenario())
        assert [page.domain for page in after_b] == ["b.com"]
        assert [page.domain for page in after_a] == ["a.com"]
        assert engine.tracker.focused_tab_id == 1

    def test_at_most_one_page_accrues(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            counts = []
            for step, tab_id in enumerate([1, 2, 3, 2, 1, 3]):
                if tracker.get_tab(tab_id) is None:
                    await _focus_new_tab(tracker, tab_id, f"https://site{tab_id}.com/")
                else:
                    await tracker.handle_focus_gain(tab_id)
                clock.advance(100 * (step + 1))
                counts.append(len(await _open_pages(engine)))
            return counts

        assert asyncio.run(scenario()) == [1, 1, 1, 1, 1, 1]

    def test_window_blur_stops_accrual(self, make_engine, mirror, clock):
        engine = make_engine()
        tracker = engine.tracker
        mirror.load_snapshot([tab(1, "https://a.com/", window_id=7, active=True)], 7)

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/", window_id=7)
            clock.advance(800)
            await tracker.handle_window_focus_changed(None)
            clock.advance(5000)
            await tracker.handle_window_focus_changed(7)
            return await engine.pages.get_page_by_url("https://a.com/")

        page = asyncio.run(scenario())
        assert page.total_active_time_ms == 800
        assert page.open_accrual_start == clock.now
        assert tracker.focused_tab_id == 1

    def test_mirror_tells_unknown_focus_from_no_focus(self, mirror):
        assert mirror.browser_unfocused is False
        mirror.window_focus_changed(None)
        assert mirror.browser_unfocused is True
        mirror.window_focus_changed(3)
        assert mirror.browser_unfocused is False
        mirror.load_snapshot([tab(1, "https://a.com/", active=True)], None)
        assert mirror.browser_unfocused is True

    def test_unknown_window_is_a_lost_signal(self, make_engine):
        engine = make_engine()
        asyncio.run(engine.tracker.handle_window_focus_changed(99))
        assert engine.tracker.focused_tab_id is None


class TestNavigation:
    def test_navigation_commits_previous_page(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1000)
            await tracker.handle_page_view(1, "https://b.com/", "B")
            clock.advance(2000)
            await tracker.handle_focus_lost(1)
            return {page.domain: page.total_active_time_ms for page in await engine.pages.pages()}

        assert asyncio.run(scenario()) == {"a.com": 1000, "b.com": 2000}

    def test_same_url_in_two_tabs_shares_one_page(self, make_engine):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            first = await tracker.handle_page_view(1, "https://a.com/", "A")
            second = await tracker.handle_page_view(2, "https://a.com/?from=2", "A")
            return first, second, await engine.pages.get_page(first.id)

        first, second, page = asyncio.run(scenario())
        assert first.id == second.id
        assert page.visit_count == 2

    def test_untrackable_url_unbinds_tab(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(600)
            result = await tracker.handle_page_view(1, "chrome://newtab/", "")
            return result, await engine.pages.get_page_by_url("https://a.com/")

        result, page = asyncio.run(scenario())
        assert result is None
        assert page.total_active_time_ms == 600
        assert tracker.get_tab(1) is None

    def test_page_view_records_referrer_from_host(self, make_engine, mirror):
        engine = make_engine()
        mirror.tab_updated(1, "https://a.com/", "A", window_id=1)
        mirror.tab_updated(1, "https://b.com/", "B", window_id=1)

        async def scenario():
            await engine.tracker.handle_page_view(1, "https://b.com/", "B", window_id=1)
            return await engine.events.events(types=[EventType.PAGE_VIEW])

        (view,) = asyncio.run(scenario())
        assert view.payload == {"referrer": "https://a.com/", "tabId": 1}


class TestTabClose:
    def test_close_commits_and_keeps_page(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1200)
            await tracker.handle_tab_close(1)
            closes = await engine.events.events(types=[EventType.TAB_CLOSE])
            return await engine.pages.get_page_by_url("https://a.com/"), closes

        page, closes = asyncio.run(scenario())
        assert page.total_active_time_ms == 1200
        assert closes[0].payload == {"activeTimeMs": 1200}
        assert tracker.get_tab(1) is None
        assert tracker.focused_tab_id is None


class TestLifecycle:
    def test_start_resumes_only_the_focused_active_tab(self, make_engine, mirror, clock):
        engine = make_engine()
        mirror.load_snapshot(
            [
                tab(1, "https://a.com/", window_id=1, active=True),
                tab(2, "https://b.com/", window_id=1),
                tab(3, "https://c.com/", window_id=2, active=True),
                tab(4, "chrome://settings/", window_id=2),
            ],
            focused_window_id=1,
        )

        async def scenario():
            await engine.tracker.start()
            return await _open_pages(engine), await engine.pages.pages()

        open_pages, pages = asyncio.run(scenario())
        assert [page.domain for page in open_pages] == ["a.com"]
        assert sorted(page.domain for page in pages) == ["a.com", "b.com", "c.com"]
        assert engine.tracker.focused_tab_id == 1
        assert set(engine.tracker.get_active_tabs()) == {1, 2, 3}

    def test_restart_does_not_count_visits(self, make_engine, mirror):
        engine = make_engine()
        mirror.load_snapshot([tab(1, "https://a.com/", active=True)], focused_window_id=1)

        async def scenario():
            await engine.tracker.handle_page_view(1, "https://a.com/", "")
            await engine.tracker.start()
            await engine.tracker.start()
            return await engine.pages.get_page_by_url("https://a.com/")

        assert asyncio.run(scenario()).visit_count == 1

    def test_release_commits_every_open_accrual(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(2500)
            await tracker.release()
            return await engine.pages.get_page_by_url("https://a.com/"), await _open_pages(engine)

        page, open_pages = asyncio.run(scenario())
        assert page.total_active_time_ms == 2500
        assert open_pages == []
        assert tracker.get_active_tabs() == {}

    def test_checkpoint_commits_and_reopens(self, make_engine, clock):
        engine = make_engine()
        tracker = engine.tracker

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(30_000)
            committed = await tracker.checkpoint()
            return committed, await engine.pages.get_page_by_url("https://a.com/")

        committed, page = asyncio.run(scenario())
        assert committed == 30_000
        assert page.total_active_time_ms == 30_000
        assert page.open_accrual_start == clock.now

    def test_commit_failure_propagates_and_keeps_state(self, make_engine, clock, monkeypatch):
        engine = make_engine()
        tracker = engine.tracker

        async def failing_end(page_id, session_id, reason="focus_lost"):
            raise CommitError("accrual stop")

        async def scenario():
            await _focus_new_tab(tracker, 1, "https://a.com/")
            clock.advance(1000)
            monkeypatch.setattr(engine.pages, "end_accrual", failing_end)
            with pytest.raises(CommitError):
                await tracker.handle_focus_lost(1)

        asyncio.run(scenario())
        assert tracker.get_tab(1).accruing

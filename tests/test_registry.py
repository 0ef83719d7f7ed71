"""Tests for the page registry, event log and database retry layer."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from activity_analytics.clock import start_of_day_ms
from activity_analytics.errors import CommitError
from activity_analytics.models import EventType
from activity_analytics.registry import EventStore, PageRegistry


@pytest.fixture
def pages(db, clock):
    return PageRegistry(db, clock)


@pytest.fixture
def events(db, clock):
    return EventStore(db, clock)


class TestUpsertPage:
    def test_new_page_starts_with_one_visit(self, pages):
        page = asyncio.run(pages.upsert_page("https://a.com/x?q=1", "A"))
        assert page.url == "https://a.com/x"
        assert page.domain == "a.com"
        assert page.visit_count == 1
        assert page.total_active_time_ms == 0

    def test_repeat_visit_increments_and_refreshes_title(self, pages, clock):
        async def scenario():
            first = await pages.upsert_page("https://a.com/x", "Old")
            clock.advance(1000)
            second = await pages.upsert_page("https://a.com/x#frag", "New")
            return first, second

        first, second = asyncio.run(scenario())
        assert second.id == first.id
        assert second.visit_count == 2
        assert second.title == "New"
        assert second.last_visit == first.last_visit + 1000

    def test_enumeration_does_not_count_a_visit(self, pages):
        async def scenario():
            await pages.upsert_page("https://a.com/", "A")
            return await pages.upsert_page("https://a.com/", "A", count_visit=False)

        assert asyncio.run(scenario()).visit_count == 1


class TestAccrual:
    def test_commit_adds_elapsed_and_records_span(self, pages, events, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            assert await pages.begin_accrual(page.id)
            clock.advance(2500)
            elapsed = await pages.end_accrual(page.id, "s1")
            spans = await events.events(page_id=page.id, types=[EventType.ACTIVE_SPAN])
            return elapsed, await pages.get_page(page.id), spans

        elapsed, page, spans = asyncio.run(scenario())
        assert elapsed == 2500
        assert page.total_active_time_ms == 2500
        assert page.open_accrual_start is None
        assert len(spans) == 1
        assert spans[0].payload["activeTimeMs"] == 2500
        assert spans[0].session_id == "s1"

    def test_second_begin_is_a_no_op(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(1000)
            started_again = await pages.begin_accrual(page.id)
            return started_again, await pages.get_page(page.id)

        started_again, page = asyncio.run(scenario())
        assert started_again is False
        assert page.open_accrual_start == page.first_visit

    def test_end_accrual_is_idempotent(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(700)
            first = await pages.end_accrual(page.id, "s1")
            clock.advance(700)
            second = await pages.end_accrual(page.id, "s1")
            return first, second, await pages.get_page(page.id)

        first, second, page = asyncio.run(scenario())
        assert (first, second) == (700, 0)
        assert page.total_active_time_ms == 700

    def test_total_equals_sum_of_committed_spans(self, pages, events, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            for duration in (1000, 0, 2500, 300):
                await pages.begin_accrual(page.id)
                clock.advance(duration)
                await pages.end_accrual(page.id, "s1")
                clock.advance(50)
            spans = await events.events(page_id=page.id, types=[EventType.ACTIVE_SPAN])
            return await pages.get_page(page.id), spans

        page, spans = asyncio.run(scenario())
        assert page.total_active_time_ms == 3800
        assert sum(span.payload["activeTimeMs"] for span in spans) == 3800

    def test_current_active_time_projects_open_accrual(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(1200)
            return await pages.current_active_time(page.id)

        assert asyncio.run(scenario()) == 1200

    def test_discard_open_accruals_clears_stale_markers(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(5000)
            discarded = await pages.discard_open_accruals()
            return discarded, await pages.get_page(page.id)

        discarded, page = asyncio.run(scenario())
        assert discarded == 1
        assert page.open_accrual_start is None
        assert page.total_active_time_ms == 0


class TestStatistics:
    def test_top_domains_groups_sorts_and_omits_zero(self, pages, clock):
        async def scenario():
            for url, duration in (
                ("https://a.com/1", 1000),
                ("https://a.com/2", 2000),
                ("https://b.com/", 5000),
                ("https://c.com/", 0),
            ):
                page = await pages.upsert_page(url, "")
                await pages.begin_accrual(page.id)
                clock.advance(duration)
                await pages.end_accrual(page.id, "s1")
            return await pages.top_domains(10)

        ranked = asyncio.run(scenario())
        assert [entry.domain for entry in ranked] == ["b.com", "a.com"]
        assert ranked[1].total_time_ms == 3000
        assert ranked[1].page_count == 2
        assert ranked[1].visit_count == 2

    def test_top_domains_includes_open_accrual(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(900)
            return await pages.top_domains(10)

        ranked = asyncio.run(scenario())
        assert ranked[0].to_dict() == {
            "domain": "a.com",
            "totalTime": 900,
            "pageCount": 1,
            "visitCount": 1,
        }

    def test_today_counts_only_time_after_midnight(self, db, clock):
        midnight = start_of_day_ms(clock.now)
        clock.now = midnight - 60_000
        pages = PageRegistry(db, clock)

        async def scenario():
            page = await pages.upsert_page("https://a.com/", "A")
            await pages.begin_accrual(page.id)
            clock.advance(90_000)
            await pages.end_accrual(page.id, "s1")
            return await pages.today_active_time(), await pages.get_page(page.id)

        today, page = asyncio.run(scenario())
        assert page.total_active_time_ms == 90_000
        assert today == 30_000

    def test_committed_only_reader_ignores_open_markers(self, db, clock):
        live = PageRegistry(db, clock)
        offline = PageRegistry(db, clock, project_open=False)

        async def scenario():
            page = await live.upsert_page("https://a.com/", "A")
            await live.begin_accrual(page.id)
            clock.advance(1000)
            await live.end_accrual(page.id, "s1")
            await live.begin_accrual(page.id)
            clock.advance(3_600_000)
            return (
                await offline.today_active_time(),
                await offline.top_domains(10),
                await offline.domain_stats("a.com"),
                await live.today_active_time(),
            )

        offline_today, offline_top, offline_domain, live_today = asyncio.run(scenario())
        assert offline_today == 1000
        assert [entry.total_time_ms for entry in offline_top] == [1000]
        assert offline_domain["totalActiveTime"] == 1000
        assert live_today == 3_601_000

    def test_domain_stats(self, pages, clock):
        async def scenario():
            first = await pages.upsert_page("https://a.com/1", "")
            await pages.upsert_page("https://a.com/2", "")
            await pages.begin_accrual(first.id)
            clock.advance(4000)
            await pages.end_accrual(first.id, "s1")
            return await pages.domain_stats("a.com")

        stats = asyncio.run(scenario())
        assert stats["pageCount"] == 2
        assert stats["totalActiveTime"] == 4000
        assert stats["avgTimePerPage"] == 2000
        assert stats["pages"][0]["url"] == "https://a.com/1"

    def test_page_detailed_stats_rebuilds_spans(self, pages, clock):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "")
            for duration in (1000, 3000):
                await pages.begin_accrual(page.id)
                clock.advance(duration)
                await pages.end_accrual(page.id, "s1")
            return await pages.page_detailed_stats(page.id)

        stats = asyncio.run(scenario())
        assert stats["sessionCount"] == 2
        assert stats["maxSessionTime"] == 3000
        assert stats["minSessionTime"] == 1000
        assert stats["avgSessionTime"] == 2000

    def test_clear_all_wipes_everything(self, pages, events):
        async def scenario():
            page = await pages.upsert_page("https://a.com/", "")
            await events.append_event(page.id, "s1", EventType.PAGE_VIEW)
            await pages.clear_all()
            return await pages.dump()

        assert asyncio.run(scenario()) == {"pages": [], "events": [], "sessions": []}


class TestWriteRetry:
    def test_locked_database_is_retried(self, db):
        calls = []

        def flaky(conn):
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert asyncio.run(db.write("flaky write", flaky)) == "ok"
        assert len(calls) == 3

    def test_persistent_lock_raises_commit_error(self, db):
        def locked(conn):
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(CommitError) as excinfo:
            asyncio.run(db.write("locked write", locked))
        assert excinfo.value.operation == "locked write"

    def test_other_errors_are_not_retried(self, db):
        calls = []

        def broken(conn):
            calls.append(1)
            raise sqlite3.OperationalError("no such table: nowhere")

        with pytest.raises(CommitError):
            asyncio.run(db.write("broken write", broken))
        assert len(calls) == 1


def test_cleanup_old_data_keeps_recent_pages(pages, clock):
    async def scenario():
        await pages.upsert_page("https://old.com/", "")
        clock.advance(int(timedelta(days=40).total_seconds() * 1000))
        await pages.upsert_page("https://new.com/", "")
        removed = await pages.cleanup_old_data(30)
        return removed, [page.domain for page in await pages.pages()]

    removed, remaining = asyncio.run(scenario())
    assert removed == 1
    assert remaining == ["new.com"]

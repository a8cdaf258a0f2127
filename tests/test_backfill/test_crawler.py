"""Tests for BackfillCrawler.

Exchange access is replaced by a scripted adapter; persistence by the
in-memory FakeStore from conftest.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from scraper.backfill.crawler import BackfillCrawler, CrawlState, sweep_order
from scraper.config import BackfillSettings
from scraper.exceptions import ExchangeConnectionError, MalformedRecord
from scraper.exchange.client import ExchangeAdapter
from scraper.models import Exchange, GridCell, Page, Timeframe


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ScriptedAdapter(ExchangeAdapter):
    """Returns canned pages in order, then empty pages forever."""

    exchange = Exchange.BINANCE
    source = "rest"

    def __init__(self, pages=None, step=timedelta(days=30), errors=None) -> None:
        self.pages = list(pages or [])
        self.step = step
        self.errors = list(errors or [])
        self.requested: list[datetime] = []

    def interval_token(self, timeframe: Timeframe) -> str:
        return timeframe.value

    async def fetch_historical_page(self, cell, cursor):
        self.requested.append(cursor)
        if self.errors:
            raise self.errors.pop(0)
        if self.pages:
            return self.pages.pop(0)
        return Page()

    def empty_page_advance(self, cursor, cell):
        return cursor + self.step

    def stream_url(self, cell):
        return "wss://example.invalid"

    def parse_stream_message(self, raw, cell):
        return None

    async def close(self) -> None:
        return None


def fixed_clock(day: date):
    moment = datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc)
    return lambda: moment


def make_crawler(adapter, store, clock, policy, **overrides) -> BackfillCrawler:
    settings = BackfillSettings(
        start_date=date(2024, 1, 1),
        fetch_delay=0,
        fetch_retry_base_delay=0,
        **overrides,
    )
    return BackfillCrawler(
        {adapter.exchange: adapter},
        store,
        settings,
        policy,
        clock=clock,
        sleep=AsyncMock(),
    )


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------


class TestCrawlCell:
    """Tests for the per-cell state machine."""

    @pytest.mark.asyncio
    async def test_three_pages_last_empty(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        """Two non-empty pages then an empty one: two upserts, cursor stepped."""
        page_1 = Page([make_candle(i) for i in range(0, 3)])
        page_2 = Page([make_candle(i) for i in range(3, 6)])
        adapter = ScriptedAdapter(pages=[page_1, page_2, Page()])
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        assert len(fake_store.candle_calls) == 2
        assert len(fake_store.derived_calls) == 2
        assert adapter.requested == [
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            page_1.last_close_time,
            page_2.last_close_time,
        ]
        assert crawler.cursor == page_2.last_close_time + adapter.step
        assert crawler.state == CrawlState.DONE

    @pytest.mark.asyncio
    async def test_empty_pages_always_advance(
        self, fake_store, fast_policy, btc_h1
    ) -> None:
        """Forward progress: strictly increasing cursors until today."""
        adapter = ScriptedAdapter(step=timedelta(days=31))
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 12, 15)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        requested = adapter.requested
        assert len(requested) > 1
        assert all(a < b for a, b in zip(requested, requested[1:]))
        assert crawler.cursor.date() >= date(2024, 12, 15)
        assert fake_store.candle_calls == []

    @pytest.mark.asyncio
    async def test_page_without_progress_uses_step(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        """A page ending at or before the cursor never repeats the cursor."""
        stale = Page([make_candle(-5)])
        adapter = ScriptedAdapter(pages=[stale], step=timedelta(days=1))
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 3)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        assert adapter.requested == [
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 1, 2, tzinfo=timezone.utc),
        ]

    @pytest.mark.asyncio
    async def test_today_reevaluated_every_iteration(
        self, fake_store, fast_policy, btc_h1
    ) -> None:
        readings = iter(
            [datetime(2024, 1, 3, tzinfo=timezone.utc)] * 2
            + [datetime(2024, 1, 5, tzinfo=timezone.utc)] * 10
        )
        adapter = ScriptedAdapter(step=timedelta(days=1))
        crawler = make_crawler(adapter, fake_store, lambda: next(readings), fast_policy)

        await crawler.crawl_cell(btc_h1)

        assert len(adapter.requested) == 4

    @pytest.mark.asyncio
    async def test_already_current_fetches_nothing(
        self, fake_store, fast_policy, btc_h1
    ) -> None:
        adapter = ScriptedAdapter()
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 1)), fast_policy)
        assert await crawler.crawl_cell(btc_h1) == 0
        assert adapter.requested == []

    @pytest.mark.asyncio
    async def test_carry_threads_across_pages(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        pages = [Page([make_candle(0, "100")]), Page([make_candle(1, "105")])]
        adapter = ScriptedAdapter(pages=pages)
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        first, second = fake_store.derived_calls
        assert first[0].return_to_last_candle is None
        assert second[0].return_to_last_candle == Decimal("5")

    @pytest.mark.asyncio
    async def test_seed_carry_from_store(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        await fake_store.upsert_candles([make_candle(-1, "90")])
        adapter = ScriptedAdapter(pages=[Page([make_candle(0, "100")])])
        crawler = make_crawler(
            adapter,
            fake_store,
            fixed_clock(date(2024, 1, 2)),
            fast_policy,
            seed_carry_from_store=True,
        )

        await crawler.crawl_cell(btc_h1)

        assert fake_store.derived_calls[0][0].return_to_last_candle == Decimal("10")


# ---------------------------------------------------------------------------
# Cursor persistence and resume
# ---------------------------------------------------------------------------


class TestCursorPersistence:
    """Tests for cursor persistence and resume."""

    @pytest.mark.asyncio
    async def test_cursor_saved_after_each_advance(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        page = Page([make_candle(0), make_candle(1)])
        adapter = ScriptedAdapter(pages=[page])
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        assert fake_store.cursor_history[0] == page.last_close_time
        assert fake_store.cursors[(btc_h1, "rest")] == crawler.cursor

    @pytest.mark.asyncio
    async def test_resumes_from_saved_cursor(self, fake_store, fast_policy, btc_h1) -> None:
        saved = datetime(2024, 3, 1, tzinfo=timezone.utc)
        await fake_store.update_backfill_cursor(btc_h1, "rest", saved)
        adapter = ScriptedAdapter()
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 3, 2)), fast_policy)

        await crawler.crawl_cell(btc_h1)

        assert adapter.requested[0] == saved

    @pytest.mark.asyncio
    async def test_resume_disabled_starts_over(self, fake_store, fast_policy, btc_h1) -> None:
        await fake_store.update_backfill_cursor(
            btc_h1, "rest", datetime(2024, 3, 1, tzinfo=timezone.utc)
        )
        adapter = ScriptedAdapter()
        crawler = make_crawler(
            adapter,
            fake_store,
            fixed_clock(date(2024, 1, 2)),
            fast_policy,
            resume_from_cursor=False,
        )

        await crawler.crawl_cell(btc_h1)

        assert adapter.requested[0] == datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Failures and sweeps
# ---------------------------------------------------------------------------


class TestFailures:
    """Tests for fetch retry and error propagation."""

    @pytest.mark.asyncio
    async def test_transient_fetch_error_retried(
        self, fake_store, fast_policy, make_candle, btc_h1
    ) -> None:
        adapter = ScriptedAdapter(
            pages=[Page([make_candle(0)])],
            errors=[ExchangeConnectionError("reset")],
        )
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        assert await crawler.crawl_cell(btc_h1) == 1
        assert adapter.requested[0] == adapter.requested[1]

    @pytest.mark.asyncio
    async def test_fetch_gives_up_after_max_retries(
        self, fake_store, fast_policy, btc_h1
    ) -> None:
        adapter = ScriptedAdapter(errors=[ExchangeConnectionError("down")] * 5)
        crawler = make_crawler(
            adapter,
            fake_store,
            fixed_clock(date(2024, 1, 2)),
            fast_policy,
            fetch_max_retries=2,
        )

        with pytest.raises(ExchangeConnectionError):
            await crawler.crawl_cell(btc_h1)
        assert len(adapter.requested) == 2

    @pytest.mark.asyncio
    async def test_malformed_page_aborts_cell(self, fake_store, fast_policy, btc_h1) -> None:
        adapter = ScriptedAdapter(errors=[MalformedRecord("bad row")])
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        with pytest.raises(MalformedRecord):
            await crawler.crawl_cell(btc_h1)
        assert fake_store.candle_calls == []


class TestRunSweep:
    """Tests for serial sweeps with per-cell isolation."""

    def test_sweep_order(self) -> None:
        cells = [
            GridCell(Exchange.BYBIT, "btcusdt", Timeframe.M5),
            GridCell(Exchange.BINANCE, "ethusdt", Timeframe.M5),
            GridCell(Exchange.BINANCE, "btcusdt", Timeframe.D1),
            GridCell(Exchange.BINANCE, "btcusdt", Timeframe.M5),
        ]
        assert sweep_order(cells) == [cells[3], cells[2], cells[1], cells[0]]

    @pytest.mark.asyncio
    async def test_failing_cell_does_not_stop_sweep(
        self, fake_store, fast_policy, make_candle
    ) -> None:
        eth = GridCell(Exchange.BINANCE, "ethusdt", Timeframe.H1)
        btc = GridCell(Exchange.BINANCE, "btcusdt", Timeframe.H1)
        # btc is crawled first and fails; eth still gets its page
        adapter = ScriptedAdapter(
            pages=[Page([make_candle(0, asset="ethusdt")])],
            errors=[MalformedRecord("bad row")],
        )
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        result = await crawler.run_sweep([eth, btc])

        assert result == {"completed": 1, "failed": 1}
        assert await fake_store.count_candles(eth) == 1
        assert crawler.current_cell is None

    @pytest.mark.asyncio
    async def test_cell_without_adapter_counted_failed(
        self, fake_store, fast_policy
    ) -> None:
        adapter = ScriptedAdapter()
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 1)), fast_policy)
        result = await crawler.run_sweep(
            [GridCell(Exchange.BYBIT, "btcusdt", Timeframe.H1)]
        )
        assert result == {"completed": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_new_carry_per_cell(self, fake_store, fast_policy, make_candle) -> None:
        eth = GridCell(Exchange.BINANCE, "ethusdt", Timeframe.H1)
        btc = GridCell(Exchange.BINANCE, "btcusdt", Timeframe.H1)
        adapter = ScriptedAdapter(
            pages=[
                Page([make_candle(0, "100")]),
                Page(),
                Page([make_candle(0, "3000", asset="ethusdt")]),
            ]
        )
        crawler = make_crawler(adapter, fake_store, fixed_clock(date(2024, 1, 2)), fast_policy)

        await crawler.run_sweep([btc, eth])

        eth_metric = fake_store.derived_calls[1][0]
        assert eth_metric.asset_name == "ethusdt"
        assert eth_metric.return_to_last_candle is None

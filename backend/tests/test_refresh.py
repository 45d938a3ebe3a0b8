from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import pytest

from backend.app.config import RefreshPolicy
from backend.app.market_data import CacheKey, ESTIMATED_TOTAL_RETURN, OBSERVED_PRICE, ReturnMode
from backend.app.services.refresh import RefreshState, SeriesRefresher, classify, needs_historical_refresh
from backend.app.services.upstream import AllProvidersFailedError

from backend.tests.factories import FakeFetcher, business_rows, make_series, profile_url

NDX_PRICE = CacheKey("nasdaq100", ReturnMode.PRICE)
NDX_TOTAL = CacheKey("nasdaq100", ReturnMode.TOTAL_RETURN)
POLICY = RefreshPolicy()


def _price_answer(start=date(2000, 1, 3), count=300, source_index=0):
    return {profile_url("nasdaq100", ReturnMode.PRICE): (source_index, business_rows(start, count))}


class TestClassify:
    now = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)

    def _aged(self, hours, mode=ReturnMode.PRICE, **kwargs):
        series = make_series("nasdaq100", mode, **kwargs)
        series.fetched_at = self.now - timedelta(hours=hours)
        return series

    def test_missing(self):
        assert classify(None, POLICY, now=self.now) is RefreshState.MISSING

    def test_fresh(self):
        assert classify(self._aged(1), POLICY, now=self.now) is RefreshState.FRESH

    def test_background_after_trigger(self):
        assert classify(self._aged(3), POLICY, now=self.now) is RefreshState.STALE_BACKGROUND

    def test_blocking_after_fresh_window(self):
        assert classify(self._aged(7), POLICY, now=self.now) is RefreshState.STALE_BLOCKING

    def test_non_blocking_caller_never_blocks(self):
        assert classify(self._aged(7), POLICY, block_on_stale=False, now=self.now) is RefreshState.STALE_BACKGROUND
        assert classify(self._aged(24 * 10), POLICY, block_on_stale=False, now=self.now) is RefreshState.STALE_BACKGROUND

    def test_estimated_total_return_wants_upgrade(self):
        series = self._aged(0.5, mode=ReturnMode.TOTAL_RETURN, kind=ESTIMATED_TOTAL_RETURN)
        assert classify(series, POLICY, now=self.now) is RefreshState.STALE_BACKGROUND

    def test_short_price_history_forces_refresh(self):
        series = make_series("sp500", ReturnMode.PRICE, rows=business_rows(date(2000, 1, 3), 300))
        series.fetched_at = self.now
        assert needs_historical_refresh(series) is True
        assert classify(series, POLICY, now=self.now) is RefreshState.STALE_BLOCKING
        assert classify(series, POLICY, block_on_stale=False, now=self.now) is RefreshState.STALE_BACKGROUND

    def test_full_price_history_is_fine(self):
        series = make_series("sp500", ReturnMode.PRICE, rows=business_rows(date(1989, 1, 3), 300))
        assert needs_historical_refresh(series) is False


def test_concurrent_refreshes_share_one_fetch(store):
    fetcher = FakeFetcher(_price_answer())

    async def scenario():
        fetcher.gate = asyncio.Event()
        refresher = SeriesRefresher(store, fetcher, POLICY)
        jobs = [refresher.refresh("nasdaq100", ReturnMode.PRICE) for _ in range(5)]
        assert all(job is jobs[0] for job in jobs)
        assert refresher.in_flight() == [NDX_PRICE]

        waiters = [asyncio.ensure_future(asyncio.shield(job)) for job in jobs]
        await asyncio.sleep(0)
        fetcher.gate.set()
        results = await asyncio.gather(*waiters)
        await asyncio.sleep(0)
        return refresher, results

    refresher, results = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert all(result is results[0] for result in results)
    assert refresher.in_flight() == []
    assert store.get(NDX_PRICE) is results[0]


def test_concurrent_missing_requests_share_one_fetch(store):
    fetcher = FakeFetcher(_price_answer())

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, POLICY)
        return await asyncio.gather(*(refresher.get_series("nasdaq100", "price") for _ in range(4)))

    results = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert {id(series) for series in results} == {id(results[0])}
    assert results[0].provider == "Stooq"


def test_failed_job_is_unregistered_and_retried(store):
    fetcher = FakeFetcher()

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, POLICY)
        for _ in range(2):
            with pytest.raises(AllProvidersFailedError):
                await asyncio.shield(refresher.refresh("nasdaq100", ReturnMode.PRICE))
            await asyncio.sleep(0)
            assert refresher.in_flight() == []

    asyncio.run(scenario())
    assert len(fetcher.calls) == 2


def test_missing_series_with_failing_upstream_raises(store):
    refresher = SeriesRefresher(store, FakeFetcher(), POLICY)
    with pytest.raises(AllProvidersFailedError, match="upstream data unavailable"):
        asyncio.run(refresher.get_series("nasdaq100", ReturnMode.PRICE))


def test_fresh_cache_skips_upstream(store):
    cached = make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(minutes=10))
    store.put(NDX_PRICE, cached)
    fetcher = FakeFetcher(_price_answer())
    refresher = SeriesRefresher(store, fetcher, POLICY)

    assert asyncio.run(refresher.get_series("nasdaq100", ReturnMode.PRICE)) is cached
    assert fetcher.calls == []


def test_blocking_refresh_timeout_serves_stale_and_keeps_job(store):
    cached = make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(days=1))
    store.put(NDX_PRICE, cached)
    fetcher = FakeFetcher(_price_answer(count=320))

    async def scenario():
        fetcher.gate = asyncio.Event()
        refresher = SeriesRefresher(store, fetcher, POLICY)
        served = await refresher.get_series("nasdaq100", ReturnMode.PRICE, refresh_timeout=0.05)
        assert served is cached
        assert refresher.in_flight() == [NDX_PRICE]

        job = refresher.refresh("nasdaq100", ReturnMode.PRICE)
        fetcher.gate.set()
        updated = await job
        await asyncio.sleep(0)
        assert refresher.in_flight() == []
        return updated

    updated = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert len(updated.rows) == 320
    assert store.get(NDX_PRICE) is updated


def test_blocking_refresh_returns_new_data_within_budget(store):
    store.put(NDX_PRICE, make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(days=1)))
    refresher = SeriesRefresher(store, FakeFetcher(_price_answer(count=320)), POLICY)
    served = asyncio.run(refresher.get_series("nasdaq100", ReturnMode.PRICE, refresh_timeout=5))
    assert len(served.rows) == 320


def test_blocking_refresh_failure_serves_stale(store):
    cached = make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(days=1))
    store.put(NDX_PRICE, cached)
    refresher = SeriesRefresher(store, FakeFetcher(), POLICY)
    assert asyncio.run(refresher.get_series("nasdaq100", ReturnMode.PRICE)) is cached


def test_background_refresh_failure_is_swallowed(store):
    cached = make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(hours=3))
    store.put(NDX_PRICE, cached)
    fetcher = FakeFetcher()

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, POLICY)
        served = await refresher.get_series("nasdaq100", ReturnMode.PRICE)
        assert refresher.in_flight() == [NDX_PRICE]
        for _ in range(5):
            await asyncio.sleep(0)
        assert refresher.in_flight() == []
        return served

    assert asyncio.run(scenario()) is cached
    assert len(fetcher.calls) == 1
    assert store.get(NDX_PRICE) is cached


def test_background_refresh_updates_store(store):
    store.put(NDX_PRICE, make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(hours=3)))
    fetcher = FakeFetcher(_price_answer(count=330))

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, POLICY)
        served = await refresher.get_series("nasdaq100", ReturnMode.PRICE, block_on_stale=False)
        await asyncio.gather(*(refresher.refresh(key.asset_id, key.return_mode) for key in refresher.in_flight()))
        return served

    served = asyncio.run(scenario())
    assert len(served.rows) == 300
    assert len(store.get(NDX_PRICE).rows) == 330


def test_total_return_aliases_cached_price(store):
    price = make_series("nasdaq100", ReturnMode.PRICE)
    store.put(NDX_PRICE, price)
    fetcher = FakeFetcher()

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, POLICY)
        served = await refresher.get_series("nasdaq100", ReturnMode.TOTAL_RETURN)
        assert refresher.in_flight() == [NDX_TOTAL]
        await refresher.close()
        return served

    served = asyncio.run(scenario())
    assert served.kind == ESTIMATED_TOTAL_RETURN
    assert served.requested_mode is ReturnMode.TOTAL_RETURN
    assert served.earliest_date == price.earliest_date
    assert not store.path_for(NDX_TOTAL).exists()


def test_total_return_from_price_provider_is_estimated(store):
    answers = {profile_url("nasdaq100", ReturnMode.TOTAL_RETURN): (1, business_rows(date(2000, 1, 3), 300))}
    refresher = SeriesRefresher(store, FakeFetcher(answers), POLICY)

    series = asyncio.run(refresher.fetch_remote("nasdaq100", ReturnMode.TOTAL_RETURN))
    assert series.kind == ESTIMATED_TOTAL_RETURN
    assert series.is_proxy is True
    assert series.provider == "FRED + DividendModel"


def test_observed_total_return_is_backfilled_from_price(store):
    answers = {
        profile_url("nasdaq100", ReturnMode.TOTAL_RETURN): (0, business_rows(date(2001, 1, 2), 300, start_px=40)),
        **_price_answer(start=date(1995, 1, 2), count=1800),
    }
    fetcher = FakeFetcher(answers)
    refresher = SeriesRefresher(store, fetcher, POLICY)

    series = asyncio.run(refresher.fetch_remote("nasdaq100", ReturnMode.TOTAL_RETURN))
    assert series.earliest_date == date(1995, 1, 2)
    assert series.is_estimated is False
    assert series.provider == "Stooq + HistoryBackfill"
    # Price history was pulled through the single-flight path and cached.
    assert store.get(NDX_PRICE).earliest_date == date(1995, 1, 2)
    assert len(fetcher.calls) == 2


def test_refresh_all_reports_failures(store):
    fetcher = FakeFetcher(_price_answer())
    refresher = SeriesRefresher(store, fetcher, POLICY)
    result = asyncio.run(refresher.refresh_all("test"))
    assert result == {"reason": "test", "total": 4, "failed": 3}
    assert store.get(NDX_PRICE) is not None


def test_warmup_loads_files_and_queues_stale(store):
    from backend.app.services.series_store import SeriesStore

    store.put(NDX_PRICE, make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(days=10)))
    store.put(NDX_TOTAL, make_series("nasdaq100", ReturnMode.TOTAL_RETURN))
    fresh_store = SeriesStore(store.cache_dir)

    async def scenario():
        refresher = SeriesRefresher(fresh_store, FakeFetcher(), POLICY)
        loaded = await refresher.warmup()
        queued = refresher.in_flight()
        await refresher.close()
        return loaded, queued

    loaded, queued = asyncio.run(scenario())
    assert loaded == 2
    assert queued == [NDX_PRICE]


def test_auto_refresh_runs_sweep_after_startup_delay(store):
    fetcher = FakeFetcher()
    policy = RefreshPolicy(startup_delay=0.01, interval=60)

    async def scenario():
        refresher = SeriesRefresher(store, fetcher, policy)
        timer = refresher.start_auto_refresh()
        assert refresher.start_auto_refresh() is timer
        await asyncio.sleep(0.2)
        await refresher.close()
        return timer

    timer = asyncio.run(scenario())
    assert timer.cancelled()
    assert len(fetcher.calls) == 4


def test_status_rows(store):
    store.put(NDX_PRICE, make_series("nasdaq100", ReturnMode.PRICE))
    refresher = SeriesRefresher(store, FakeFetcher(), POLICY)
    rows = {row["key"]: row for row in refresher.status()}

    assert rows["nasdaq100:price"]["state"] == "fresh"
    assert rows["nasdaq100:price"]["rows"] == 300
    assert rows["sp500:total_return"] == {"key": "sp500:total_return", "state": "missing", "refreshing": False}


def test_cached_total_return_is_backfilled_without_download(store):
    from backend.app.services.series_store import SeriesStore

    store.put(NDX_PRICE, make_series("nasdaq100", ReturnMode.PRICE, rows=business_rows(date(1995, 1, 2), 1800)))
    store.put(
        NDX_TOTAL,
        make_series("nasdaq100", ReturnMode.TOTAL_RETURN, rows=business_rows(date(2001, 1, 2), 300, start_px=40)),
    )
    fetcher = FakeFetcher()
    refresher = SeriesRefresher(SeriesStore(store.cache_dir), fetcher, POLICY)

    served = asyncio.run(refresher.get_series("nasdaq100", ReturnMode.TOTAL_RETURN))
    assert served.earliest_date == date(1995, 1, 2)
    assert served.provider == "Stooq + HistoryBackfill"
    assert served.is_estimated is False
    assert fetcher.calls == []

    on_disk = json.loads(store.path_for(NDX_TOTAL).read_text(encoding="utf-8"))
    assert on_disk["earliestDate"] == "1995-01-02"
    assert on_disk["provider"] == "Stooq + HistoryBackfill"


def test_cached_total_return_holding_price_data_becomes_estimate(store):
    from backend.app.services.series_store import SeriesStore

    store.put(NDX_TOTAL, make_series("nasdaq100", ReturnMode.TOTAL_RETURN, kind=OBSERVED_PRICE))

    async def scenario():
        refresher = SeriesRefresher(SeriesStore(store.cache_dir), FakeFetcher(), POLICY)
        served = await refresher.get_series("nasdaq100", ReturnMode.TOTAL_RETURN)
        # Estimates are upgraded in the background.
        assert refresher.in_flight() == [NDX_TOTAL]
        await refresher.close()
        return served

    served = asyncio.run(scenario())
    assert served.kind == ESTIMATED_TOTAL_RETURN
    assert served.provider == "Stooq + DividendModel"

    on_disk = json.loads(store.path_for(NDX_TOTAL).read_text(encoding="utf-8"))
    assert on_disk["isEstimated"] is True
    assert on_disk["resolvedReturnMode"] == "total_return"
    assert on_disk["provider"] == "Stooq + DividendModel"


def test_short_price_history_blocks_then_serves_stale_on_timeout(store):
    spx_price = CacheKey("sp500", ReturnMode.PRICE)
    cached = make_series("sp500", ReturnMode.PRICE, rows=business_rows(date(2000, 1, 3), 300))
    store.put(spx_price, cached)
    fetcher = FakeFetcher({profile_url("sp500", ReturnMode.PRICE): (0, business_rows(date(1989, 1, 2), 600))})

    async def scenario():
        fetcher.gate = asyncio.Event()
        refresher = SeriesRefresher(store, fetcher, POLICY)
        served = await refresher.get_series("sp500", ReturnMode.PRICE, refresh_timeout=0.05)
        assert served is cached
        assert refresher.in_flight() == [spx_price]

        job = refresher.refresh("sp500", ReturnMode.PRICE)
        fetcher.gate.set()
        return served, await job

    served, updated = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert updated.earliest_date == date(1989, 1, 2)
    assert store.get(spx_price) is updated


def test_hard_stale_age_only_drives_warmup(store):
    from backend.app.services.series_store import SeriesStore

    policy = RefreshPolicy(background_trigger=10 * 24 * 3600, fresh_window=20 * 24 * 3600, hard_stale=24 * 3600)
    cached = make_series("nasdaq100", ReturnMode.PRICE, age=timedelta(days=2))
    store.put(NDX_PRICE, cached)
    assert classify(cached, policy) is RefreshState.FRESH

    async def scenario():
        refresher = SeriesRefresher(SeriesStore(store.cache_dir), FakeFetcher(), policy)
        await refresher.warmup()
        queued = refresher.in_flight()
        await refresher.close()
        return queued

    assert asyncio.run(scenario()) == [NDX_PRICE]

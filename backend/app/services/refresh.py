"""
Refresh orchestration for cached market series.

Every upstream fetch for a cache key runs as a single asyncio task registered
under that key; callers arriving while it is in flight await the same task.
Request paths decide per call whether to serve the cached entry as-is, wait a
bounded time for a refresh, or kick one off in the background.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..assets import get_asset, get_asset_profile
from ..config import RefreshPolicy, settings
from ..market_data import (
    AssetSeries,
    CacheKey,
    ReturnMode,
    SeriesKind,
    build_series,
    normalize_return_mode,
    series_age_seconds,
    utc_now,
)
from .return_modes import (
    backfill_total_return,
    needs_total_return_upgrade,
    resolve_return_mode,
    to_estimated_total_return,
)
from .series_store import SeriesStore, all_cache_keys
from .upstream import SourceFetcher

logger = logging.getLogger(__name__)


class RefreshState(str, Enum):
    FRESH = "fresh"
    STALE_BACKGROUND = "stale_background"
    STALE_BLOCKING = "stale_blocking"
    MISSING = "missing"


def needs_historical_refresh(series: Optional[AssetSeries]) -> bool:
    if series is None:
        return True
    asset = get_asset(series.asset_id)
    if asset.expected_price_start is None or series.requested_mode is not ReturnMode.PRICE:
        return False
    return series.earliest_date > asset.expected_price_start


def classify(
    series: Optional[AssetSeries],
    policy: RefreshPolicy,
    block_on_stale: bool = True,
    now: Optional[datetime] = None,
) -> RefreshState:
    if series is None:
        return RefreshState.MISSING
    if needs_historical_refresh(series):
        return RefreshState.STALE_BLOCKING if block_on_stale else RefreshState.STALE_BACKGROUND

    age = series_age_seconds(series, now)
    if block_on_stale and age > policy.fresh_window:
        return RefreshState.STALE_BLOCKING
    if age > policy.background_trigger or needs_total_return_upgrade(series):
        return RefreshState.STALE_BACKGROUND
    return RefreshState.FRESH


class SeriesRefresher:
    def __init__(
        self,
        store: SeriesStore,
        fetcher: Optional[SourceFetcher] = None,
        policy: Optional[RefreshPolicy] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher or SourceFetcher()
        self.policy = policy or settings.refresh
        self._jobs: Dict[CacheKey, asyncio.Task] = {}
        self._timer: Optional[asyncio.Task] = None

    # ----------------------------
    # Single-flight refresh jobs
    # ----------------------------

    def in_flight(self) -> List[CacheKey]:
        return list(self._jobs.keys())

    def refresh(self, asset_id: str, mode: ReturnMode) -> asyncio.Task:
        """Return the in-flight job for the key, starting one if none is running."""
        asset = get_asset(asset_id)
        key = CacheKey(asset.id, normalize_return_mode(mode))
        job = self._jobs.get(key)
        if job is not None:
            return job

        job = asyncio.get_running_loop().create_task(self._run_refresh(key), name=f"refresh:{key}")
        self._jobs[key] = job
        job.add_done_callback(lambda task, key=key: self._job_done(key, task))
        return job

    def _job_done(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._jobs.get(key) is task:
            del self._jobs[key]
        if not task.cancelled():
            # Failures were logged by the job itself; mark them retrieved.
            task.exception()

    async def _run_refresh(self, key: CacheKey) -> AssetSeries:
        asset = get_asset(key.asset_id)
        try:
            remote = await self.fetch_remote(key.asset_id, key.return_mode)
            stored = self.store.put(key, remote)
        except Exception as exc:
            logger.warning("%s [%s] refresh failed: %s", asset.name, key.return_mode.label, exc)
            raise
        if stored is remote:
            logger.info(
                "%s [%s] updated, range %s -> %s (%s -> %s)",
                asset.name,
                key.return_mode.label,
                stored.earliest_date,
                stored.latest_date,
                stored.provider,
                stored.resolved_mode.label,
            )
        return stored

    def _refresh_in_background(self, key: CacheKey) -> None:
        self.refresh(key.asset_id, key.return_mode)

    async def _refresh_with_fallback(self, key: CacheKey, fallback: AssetSeries, timeout: float) -> AssetSeries:
        asset = get_asset(key.asset_id)
        job = self.refresh(key.asset_id, key.return_mode)
        try:
            if timeout > 0:
                # shield: a timed-out request must not cancel the shared job
                return await asyncio.wait_for(asyncio.shield(job), timeout)
            return await asyncio.shield(job)
        except asyncio.TimeoutError:
            logger.warning(
                "%s [%s] refresh still running after %.1fs; serving cached data",
                asset.name,
                key.return_mode.label,
                timeout,
            )
        except Exception as exc:
            logger.warning("%s [%s] request-time refresh failed: %s", asset.name, key.return_mode.label, exc)
        return fallback

    # ----------------------------
    # Upstream + return mode
    # ----------------------------

    async def fetch_remote(self, asset_id: str, mode: ReturnMode) -> AssetSeries:
        asset, profile = get_asset_profile(asset_id, mode)
        result = await self.fetcher.fetch(profile.sources, context=f"{asset.name} [{mode.label}]")
        source = result.source
        series = build_series(
            asset.id,
            asset.name,
            result.rows,
            requested_mode=mode,
            kind=SeriesKind(source.resolved_mode),
            symbol=source.symbol or profile.symbol,
            is_proxy=source.is_proxy,
            provider=source.provider,
            source_url=source.url,
        )
        if mode is not ReturnMode.TOTAL_RETURN:
            return series
        if series.resolved_mode is not ReturnMode.TOTAL_RETURN:
            return to_estimated_total_return(series, asset.dividend_yields)
        price = await self._price_series_for_backfill(asset.id, allow_fetch=True)
        return backfill_total_return(series, price, asset.dividend_yields)

    async def _price_series_for_backfill(self, asset_id: str, allow_fetch: bool) -> Optional[AssetSeries]:
        series = self.store.load(CacheKey(asset_id, ReturnMode.PRICE))
        if series is not None or not allow_fetch:
            return series
        try:
            return await asyncio.shield(self.refresh(asset_id, ReturnMode.PRICE))
        except Exception as exc:
            logger.warning("Price history for %s backfill unavailable: %s", asset_id, exc)
            return None

    def _prepare_cached(self, key: CacheKey, series: AssetSeries) -> AssetSeries:
        """Bring a cached total-return entry up to its requested mode and full history."""
        asset = get_asset(key.asset_id)
        resolved = resolve_return_mode(series, key.return_mode, asset.dividend_yields)
        if resolved is not series:
            series = self.store.replace(key, resolved)
        if key.return_mode is not ReturnMode.TOTAL_RETURN:
            return series
        price = self.store.load(CacheKey(key.asset_id, ReturnMode.PRICE))
        backfilled = backfill_total_return(series, price, asset.dividend_yields)
        if backfilled.earliest_date != series.earliest_date:
            series = self.store.replace(key, backfilled)
        return series

    # ----------------------------
    # Request path
    # ----------------------------

    async def get_series(
        self,
        asset_id: str,
        mode: Any = ReturnMode.TOTAL_RETURN,
        *,
        block_on_stale: bool = True,
        refresh_timeout: Optional[float] = None,
    ) -> AssetSeries:
        asset = get_asset(asset_id)
        key = CacheKey(asset.id, normalize_return_mode(mode))
        timeout = self.policy.refresh_timeout if refresh_timeout is None else max(0.0, refresh_timeout)

        series = self.store.load(key)
        if series is None and key.return_mode is ReturnMode.TOTAL_RETURN:
            price = self.store.load(CacheKey(asset.id, ReturnMode.PRICE))
            if price is not None:
                alias = to_estimated_total_return(price, asset.dividend_yields)
                self.store.replace(key, alias, persist=False)
                self._refresh_in_background(key)
                return alias
        if series is not None:
            series = self._prepare_cached(key, series)

        state = classify(series, self.policy, block_on_stale)
        if state is RefreshState.MISSING:
            return await asyncio.shield(self.refresh(key.asset_id, key.return_mode))
        if state is RefreshState.STALE_BLOCKING:
            return await self._refresh_with_fallback(key, series, timeout)
        if state is RefreshState.STALE_BACKGROUND:
            self._refresh_in_background(key)
        return series

    # ----------------------------
    # Sweeps and lifecycle
    # ----------------------------

    async def refresh_all(self, reason: str = "manual") -> Dict[str, Any]:
        keys = all_cache_keys()
        results = await asyncio.gather(
            *(asyncio.shield(self.refresh(key.asset_id, key.return_mode)) for key in keys),
            return_exceptions=True,
        )
        failed = sum(1 for result in results if isinstance(result, BaseException))
        if failed:
            logger.warning("Refresh sweep (%s) finished, %d/%d failed", reason, failed, len(keys))
        else:
            logger.info("Refresh sweep (%s) finished, %d jobs", reason, len(keys))
        return {"reason": reason, "total": len(keys), "failed": failed}

    async def warmup(self) -> int:
        """Load persisted series into memory and queue refreshes for any that need one."""
        keys = all_cache_keys()
        loaded = self.store.warm(keys)
        now = utc_now()
        for key in keys:
            series = self.store.get(key)
            if series is None:
                continue
            series = self._prepare_cached(key, series)
            if (
                series_age_seconds(series, now) > self.policy.hard_stale
                or needs_historical_refresh(series)
                or needs_total_return_upgrade(series)
            ):
                self._refresh_in_background(key)
        logger.info("Local cache warmup loaded %d series", loaded)
        return loaded

    async def _auto_refresh_loop(self) -> None:
        await asyncio.sleep(self.policy.startup_delay)
        reason = "startup"
        while True:
            try:
                await self.refresh_all(reason)
            except Exception as exc:
                logger.warning("Scheduled refresh (%s) failed: %s", reason, exc)
            reason = "interval"
            await asyncio.sleep(self.policy.interval)

    def start_auto_refresh(self) -> asyncio.Task:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._auto_refresh_loop(), name="auto-refresh")
        return self._timer

    async def close(self) -> None:
        pending = [task for task in (self._timer, *self._jobs.values()) if task is not None]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timer = None
        self._jobs.clear()

    def status(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utc_now()
        out: List[Dict[str, Any]] = []
        for key in all_cache_keys():
            series = self.store.get(key)
            entry: Dict[str, Any] = {
                "key": str(key),
                "state": classify(series, self.policy, block_on_stale=False, now=now).value,
                "refreshing": key in self._jobs,
            }
            if series is not None:
                entry.update(
                    {
                        "provider": series.provider,
                        "resolved_mode": series.resolved_mode.value,
                        "is_estimated": series.is_estimated,
                        "earliest_date": series.earliest_date.isoformat(),
                        "latest_date": series.latest_date.isoformat(),
                        "rows": len(series.rows),
                        "age_seconds": round(series_age_seconds(series, now), 1),
                    }
                )
            out.append(entry)
        return out

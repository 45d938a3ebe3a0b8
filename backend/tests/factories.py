from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from backend.app.assets import get_asset
from backend.app.market_data import (
    OBSERVED_PRICE,
    OBSERVED_TOTAL_RETURN,
    AssetSeries,
    ReturnMode,
    SeriesKind,
    build_series,
)
from backend.app.services.upstream import AllProvidersFailedError, FetchResult


def business_rows(start: date, count: int, start_px: float = 100.0, step: float = 0.1):
    rows = []
    cursor = start
    px = start_px
    while len(rows) < count:
        if cursor.weekday() < 5:
            rows.append((cursor, round(px, 6)))
            px += step
        cursor += timedelta(days=1)
    return rows


def make_series(
    asset_id: str = "nasdaq100",
    mode: ReturnMode = ReturnMode.PRICE,
    rows=None,
    kind: SeriesKind | None = None,
    age: timedelta = timedelta(0),
    provider: str = "Stooq",
) -> AssetSeries:
    asset = get_asset(asset_id)
    if kind is None:
        kind = OBSERVED_PRICE if mode is ReturnMode.PRICE else OBSERVED_TOTAL_RETURN
    return build_series(
        asset.id,
        asset.name,
        rows if rows is not None else business_rows(date(2000, 1, 3), 300),
        requested_mode=mode,
        kind=kind,
        symbol=asset.profiles[mode].symbol,
        is_proxy=asset.profiles[mode].is_proxy,
        provider=provider,
        fetched_at=datetime.now(timezone.utc) - age,
    )


def profile_url(asset_id: str, mode: ReturnMode) -> str:
    return get_asset(asset_id).profiles[mode].sources[0].url


class FakeFetcher:
    """Stands in for SourceFetcher; answers by the first source URL of a profile.

    An answer is either an exception to raise or ``(source_index, rows)``,
    where ``source_index`` picks which provider of the profile "succeeded".
    """

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls: list[str] = []
        self.gate = None

    async def fetch(self, sources, context=""):
        sources = tuple(sources)
        self.calls.append(context)
        if self.gate is not None:
            await self.gate.wait()
        answer = self.answers.get(sources[0].url)
        if answer is None:
            raise AllProvidersFailedError(f"{context} upstream data unavailable (offline)", ["offline"])
        if isinstance(answer, Exception):
            raise answer
        source_index, rows = answer
        return FetchResult(sources[source_index], rows)

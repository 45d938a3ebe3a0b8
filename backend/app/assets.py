from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from .market_data import ReturnMode


class UnknownAssetError(ValueError):
    pass


@dataclass(frozen=True)
class CsvLayout:
    date_column: int
    close_column: int


# Column layouts for the delimited text each provider returns.
CSV_LAYOUTS = {
    # Date,Open,High,Low,Close,Volume
    "stooq": CsvLayout(date_column=0, close_column=4),
    # observation_date,SERIES_ID
    "fred": CsvLayout(date_column=0, close_column=1),
}


@dataclass(frozen=True)
class SourceConfig:
    provider: str
    format: str
    url: str
    timeout: float
    resolved_mode: ReturnMode
    symbol: str
    is_proxy: bool

    @property
    def layout(self) -> CsvLayout:
        return CSV_LAYOUTS[self.format]


@dataclass(frozen=True)
class AssetProfile:
    symbol: str
    is_proxy: bool
    sources: tuple[SourceConfig, ...]


@dataclass(frozen=True)
class YieldRange:
    start: date
    end: date
    annual_pct: float


@dataclass(frozen=True)
class AssetMeta:
    id: str
    name: str
    profiles: dict[ReturnMode, AssetProfile]
    dividend_yields: tuple[YieldRange, ...] = ()
    # A price series starting later than this is missing history and is refetched.
    expected_price_start: Optional[date] = None


def _stooq(url: str, timeout: float, mode: ReturnMode, symbol: str, is_proxy: bool) -> SourceConfig:
    return SourceConfig("Stooq", "stooq", url, timeout, mode, symbol, is_proxy)


def _fred(series_id: str, symbol: str) -> SourceConfig:
    return SourceConfig(
        "FRED",
        "fred",
        f"https://fred.stlouisfed.org/graph/fredgraph.csv?id={series_id}",
        22.0,
        ReturnMode.PRICE,
        symbol,
        False,
    )


ASSETS: dict[str, AssetMeta] = {
    "sp500": AssetMeta(
        id="sp500",
        name="S&P 500",
        profiles={
            ReturnMode.TOTAL_RETURN: AssetProfile(
                symbol="SPY.US",
                is_proxy=True,
                sources=(
                    _stooq("https://stooq.com/q/d/l/?s=spy.us&i=d", 140.0, ReturnMode.TOTAL_RETURN, "SPY.US", True),
                    _fred("SP500", "^SPX"),
                ),
            ),
            ReturnMode.PRICE: AssetProfile(
                symbol="^SPX",
                is_proxy=False,
                sources=(
                    _stooq("https://stooq.com/q/d/l/?s=%5Espx&i=d", 240.0, ReturnMode.PRICE, "^SPX", False),
                    _fred("SP500", "^SPX"),
                ),
            ),
        },
        dividend_yields=(
            YieldRange(date(1985, 1, 1), date(1999, 12, 31), 2.4),
            YieldRange(date(2000, 1, 1), date(2009, 12, 31), 1.9),
            YieldRange(date(2010, 1, 1), date(2019, 12, 31), 2.0),
            YieldRange(date(2020, 1, 1), date(2099, 12, 31), 1.5),
        ),
        expected_price_start=date(1990, 1, 1),
    ),
    "nasdaq100": AssetMeta(
        id="nasdaq100",
        name="Nasdaq 100",
        profiles={
            ReturnMode.TOTAL_RETURN: AssetProfile(
                symbol="QQQ.US",
                is_proxy=True,
                sources=(
                    _stooq(
                        "https://stooq.com/q/d/l/?s=qqq.us&i=d&d1=19990101",
                        140.0,
                        ReturnMode.TOTAL_RETURN,
                        "QQQ.US",
                        True,
                    ),
                    _fred("NASDAQ100", "^NDX"),
                ),
            ),
            ReturnMode.PRICE: AssetProfile(
                symbol="^NDX",
                is_proxy=False,
                sources=(
                    _stooq("https://stooq.com/q/d/l/?s=%5Endx&i=d", 120.0, ReturnMode.PRICE, "^NDX", False),
                    _fred("NASDAQ100", "^NDX"),
                ),
            ),
        },
        dividend_yields=(
            YieldRange(date(1985, 1, 1), date(2003, 12, 31), 0.25),
            YieldRange(date(2004, 1, 1), date(2013, 12, 31), 0.8),
            YieldRange(date(2014, 1, 1), date(2019, 12, 31), 0.9),
            YieldRange(date(2020, 1, 1), date(2099, 12, 31), 0.7),
        ),
    ),
}


def get_asset(asset_id: str) -> AssetMeta:
    asset = ASSETS.get((asset_id or "").strip().lower())
    if asset is None:
        raise UnknownAssetError(f"Unsupported asset: {asset_id}")
    return asset


def get_asset_profile(asset_id: str, mode: ReturnMode) -> tuple[AssetMeta, AssetProfile]:
    asset = get_asset(asset_id)
    profile = asset.profiles.get(mode)
    if profile is None:
        raise UnknownAssetError(f"Asset {asset_id} has no {mode.label} profile")
    return asset, profile

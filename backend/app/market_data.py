from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable, NamedTuple

MIN_SUPPORTED_DATE = date(1985, 1, 1)

Row = tuple[date, float]


class ReturnMode(str, Enum):
    PRICE = "price"
    TOTAL_RETURN = "total_return"

    @property
    def label(self) -> str:
        return "price return" if self is ReturnMode.PRICE else "total return"


ALL_RETURN_MODES = (ReturnMode.PRICE, ReturnMode.TOTAL_RETURN)


class Provenance(str, Enum):
    OBSERVED = "observed"
    ESTIMATED = "estimated"


@dataclass(frozen=True)
class SeriesKind:
    """What a series' values actually are: return mode x how they were obtained."""

    return_mode: ReturnMode
    provenance: Provenance = Provenance.OBSERVED

    @property
    def is_estimated(self) -> bool:
        return self.provenance is Provenance.ESTIMATED


OBSERVED_PRICE = SeriesKind(ReturnMode.PRICE)
OBSERVED_TOTAL_RETURN = SeriesKind(ReturnMode.TOTAL_RETURN)
ESTIMATED_TOTAL_RETURN = SeriesKind(ReturnMode.TOTAL_RETURN, Provenance.ESTIMATED)


class CacheKey(NamedTuple):
    asset_id: str
    return_mode: ReturnMode

    def __str__(self) -> str:
        return f"{self.asset_id}:{self.return_mode.value}"


def normalize_return_mode(raw: Any) -> ReturnMode:
    if isinstance(raw, ReturnMode):
        return raw
    return ReturnMode.PRICE if str(raw or "").strip().lower() == "price" else ReturnMode.TOTAL_RETURN


@dataclass
class AssetSeries:
    asset_id: str
    asset_name: str
    symbol: str
    requested_mode: ReturnMode
    kind: SeriesKind
    is_proxy: bool
    provider: str
    source_url: str
    fetched_at: datetime
    rows: list[Row] = field(default_factory=list)

    @property
    def resolved_mode(self) -> ReturnMode:
        return self.kind.return_mode

    @property
    def is_estimated(self) -> bool:
        return self.kind.is_estimated

    @property
    def earliest_date(self) -> date:
        return self.rows[0][0]

    @property
    def latest_date(self) -> date:
        return self.rows[-1][0]

    def with_rows(self, rows: list[Row], **changes: Any) -> "AssetSeries":
        return replace(self, rows=rows, **changes)


def parse_day(raw: Any) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        return None


def parse_close(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def is_valid_row(day: date | None, close: float | None) -> bool:
    return day is not None and day >= MIN_SUPPORTED_DATE and close is not None and close > 0


def normalize_rows(raw_rows: Iterable[Any]) -> list[Row]:
    parsed: list[Row] = []
    for entry in raw_rows or []:
        if not entry:
            continue
        if isinstance(entry, dict):
            raw_date, raw_close = entry.get("date"), entry.get("close")
        else:
            try:
                raw_date, raw_close = entry[0], entry[1]
            except (IndexError, KeyError, TypeError):
                continue
        day = parse_day(raw_date)
        close = parse_close(raw_close)
        if not is_valid_row(day, close):
            continue
        parsed.append((day, close))

    # Stable sort, so a later duplicate replaces an earlier one.
    parsed.sort(key=lambda item: item[0])
    deduped: list[Row] = []
    for row in parsed:
        if deduped and deduped[-1][0] == row[0]:
            deduped[-1] = row
            continue
        deduped.append(row)
    return deduped


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_series(
    asset_id: str,
    asset_name: str,
    raw_rows: Iterable[Any],
    *,
    requested_mode: ReturnMode,
    kind: SeriesKind | None = None,
    symbol: str = "",
    is_proxy: bool = False,
    provider: str = "Local cache",
    source_url: str = "",
    fetched_at: datetime | None = None,
) -> AssetSeries:
    rows = normalize_rows(raw_rows)
    if not rows:
        raise ValueError(f"{asset_name} has no valid history rows")
    return AssetSeries(
        asset_id=asset_id,
        asset_name=asset_name,
        symbol=symbol,
        requested_mode=requested_mode,
        kind=kind or SeriesKind(requested_mode),
        is_proxy=bool(is_proxy),
        provider=provider,
        source_url=source_url,
        fetched_at=fetched_at or utc_now(),
        rows=rows,
    )


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: Any) -> datetime | None:
    if not raw:
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def series_age_seconds(series: AssetSeries | None, now: datetime | None = None) -> float:
    if series is None:
        return math.inf
    now = now or utc_now()
    return max(0.0, (now - series.fetched_at).total_seconds())


def series_to_payload(series: AssetSeries) -> dict[str, Any]:
    return {
        "assetId": series.asset_id,
        "assetName": series.asset_name,
        "symbol": series.symbol,
        "requestedReturnMode": series.requested_mode.value,
        "resolvedReturnMode": series.resolved_mode.value,
        "isProxy": series.is_proxy,
        "isEstimated": series.is_estimated,
        "provider": series.provider,
        "sourceUrl": series.source_url,
        "fetchedAt": format_timestamp(series.fetched_at),
        "earliestDate": series.earliest_date.isoformat(),
        "latestDate": series.latest_date.isoformat(),
        "rows": [[d.isoformat(), round(close, 6)] for d, close in series.rows],
    }


def series_from_payload(payload: dict[str, Any], *, asset_id: str, asset_name: str, fallback_mode: ReturnMode) -> AssetSeries:
    requested = normalize_return_mode(payload.get("requestedReturnMode") or fallback_mode.value)
    resolved = normalize_return_mode(payload.get("resolvedReturnMode") or requested.value)
    provenance = Provenance.ESTIMATED if payload.get("isEstimated") else Provenance.OBSERVED
    return build_series(
        asset_id,
        payload.get("assetName") or asset_name,
        payload.get("rows") or [],
        requested_mode=requested,
        kind=SeriesKind(resolved, provenance),
        symbol=str(payload.get("symbol") or ""),
        is_proxy=bool(payload.get("isProxy")),
        provider=str(payload.get("provider") or "Local cache"),
        source_url=str(payload.get("sourceUrl") or ""),
        # Unknown fetch time means "infinitely old" for staleness checks.
        fetched_at=parse_timestamp(payload.get("fetchedAt")) or datetime.min.replace(tzinfo=timezone.utc),
    )

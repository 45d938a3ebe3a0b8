from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from statistics import stdev
from typing import Optional, Sequence

TRADING_DAYS = 252
FREQUENCIES = ("daily", "weekly", "monthly")
PRECISIONS = ("weekly", "monthly")

Row = tuple[date, float]


class SimulationRangeError(ValueError):
    pass


@dataclass
class SimulationParams:
    start_date: date
    end_date: date
    frequency: str = "monthly"
    amount: float = 100.0
    precision: str = "monthly"


@dataclass
class DailyState:
    date: date
    close: float
    contribution_count: int
    total_invested: float
    account_value: float
    profit_loss: float
    total_return_pct: float
    drawdown_pct: float


@dataclass
class Snapshot:
    period_key: str
    date: date
    total_invested: float
    account_value: float
    profit_loss: float
    total_return_pct: float
    drawdown_pct: float


@dataclass
class SimulationSummary:
    total_contributions: int
    total_invested: float
    ending_value: float
    profit_loss: float
    total_return_pct: float
    max_drawdown_pct: float
    max_drawdown_peak_date: Optional[date]
    max_drawdown_trough_date: Optional[date]
    drawdown_recovery_date: Optional[date]
    drawdown_recovery_days: Optional[int]
    drawdown_peak_to_recovery_days: Optional[int]
    annualized_volatility_pct: float


@dataclass
class SimulationResult:
    effective_start_date: date
    end_date: date
    snapshots: list[Snapshot]
    summary: SimulationSummary
    daily: list[DailyState] = field(default_factory=list, repr=False)

    @property
    def annualized_return_pct(self) -> Optional[float]:
        # Measured from the first traded row; the requested start may be a non-trading day.
        first_date = self.daily[0].date if self.daily else self.effective_start_date
        value = annualized_return(
            self.summary.ending_value,
            self.summary.total_invested,
            difference_in_days(first_date, self.end_date),
        )
        return None if value is None else value * 100


def add_one_month(day: date, anchor_day: int) -> date:
    year = day.year + day.month // 12
    month = day.month % 12 + 1
    return date(year, month, min(anchor_day, calendar.monthrange(year, month)[1]))


def next_contribution_date(current: date, frequency: str, anchor_day: int) -> date:
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency == "monthly":
        return add_one_month(current, anchor_day)
    return current + timedelta(days=1)


def difference_in_days(start: date, end: date) -> int:
    return max(0, (end - start).days)


def iso_week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def period_key(day: date, precision: str) -> str:
    return iso_week_key(day) if precision == "weekly" else day.strftime("%Y-%m")


class DrawdownTracker:
    """High-watermark drawdown with the single deepest peak/trough pair."""

    def __init__(self) -> None:
        self.high_watermark = 0.0
        self.high_watermark_index = 0
        self.max_drawdown_pct = 0.0
        self.peak_index = 0
        self.trough_index: Optional[int] = None

    def update(self, index: int, value: float) -> float:
        if value > self.high_watermark:
            self.high_watermark = value
            self.high_watermark_index = index
        drawdown = (value - self.high_watermark) / self.high_watermark * 100 if self.high_watermark > 0 else 0.0
        if drawdown < self.max_drawdown_pct:
            self.max_drawdown_pct = drawdown
            self.peak_index = self.high_watermark_index
            self.trough_index = index
        return drawdown

    def recovery_index(self, values: Sequence[float]) -> Optional[int]:
        if self.trough_index is None:
            return None
        target = values[self.peak_index]
        for idx in range(self.trough_index + 1, len(values)):
            if values[idx] >= target:
                return idx
        return None


def annualized_volatility_pct(values: Sequence[float]) -> float:
    rets: list[float] = []
    for prev, cur in zip(values, values[1:]):
        if prev > 0:
            rets.append((cur - prev) / prev)
    if len(rets) < 2:
        return 0.0
    return stdev(rets) * math.sqrt(TRADING_DAYS) * 100


def annualized_return(ending_value: float, total_invested: float, duration_days: int) -> Optional[float]:
    if total_invested <= 0 or duration_days <= 0 or ending_value < 0:
        return None
    return (ending_value / total_invested) ** (365.25 / duration_days) - 1


def _to_snapshot(row: DailyState, precision: str) -> Snapshot:
    return Snapshot(
        period_key=period_key(row.date, precision),
        date=row.date,
        total_invested=row.total_invested,
        account_value=row.account_value,
        profit_loss=row.profit_loss,
        total_return_pct=row.total_return_pct,
        drawdown_pct=row.drawdown_pct,
    )


def aggregate_snapshots(daily: Sequence[DailyState], precision: str) -> list[Snapshot]:
    if not daily:
        return []
    bucket: dict[str, Snapshot] = {}
    for row in daily:
        snap = _to_snapshot(row, precision)
        bucket[snap.period_key] = snap

    snapshots = list(bucket.values())
    first = _to_snapshot(daily[0], precision)
    if not snapshots or snapshots[0].date != first.date:
        snapshots.insert(0, first)
    return snapshots


def _validate(params: SimulationParams) -> None:
    if params.frequency not in FREQUENCIES:
        raise ValueError(f"frequency must be one of {', '.join(FREQUENCIES)}")
    if params.precision not in PRECISIONS:
        raise ValueError(f"precision must be one of {', '.join(PRECISIONS)}")
    if not (params.amount > 0 and math.isfinite(params.amount)):
        raise ValueError("amount must be a positive number")


def simulate_dca(rows: Sequence[Row], params: SimulationParams) -> SimulationResult:
    _validate(params)
    if not rows:
        raise SimulationRangeError("No price history available")

    first_date, last_date = rows[0][0], rows[-1][0]
    if params.start_date > last_date:
        raise SimulationRangeError(f"Start date {params.start_date} is after the last available date {last_date}")

    start = max(params.start_date, first_date)
    end = min(params.end_date, last_date)
    if start > end:
        raise SimulationRangeError("Effective backtest range is empty")

    usable = [row for row in rows if start <= row[0] <= end]
    if not usable:
        raise SimulationRangeError("No trading days after the start date")

    shares = 0.0
    total_invested = 0.0
    total_contributions = 0
    schedule = start
    anchor_day = start.day
    tracker = DrawdownTracker()
    daily: list[DailyState] = []

    for day, close in usable:
        if params.frequency == "daily":
            count = 1
        else:
            count = 0
            while day >= schedule:
                count += 1
                schedule = next_contribution_date(schedule, params.frequency, anchor_day)

        if count:
            contribution = params.amount * count
            shares += contribution / close
            total_invested += contribution
            total_contributions += count

        account_value = shares * close
        drawdown = tracker.update(len(daily), account_value)
        profit_loss = account_value - total_invested
        daily.append(
            DailyState(
                date=day,
                close=close,
                contribution_count=count,
                total_invested=total_invested,
                account_value=account_value,
                profit_loss=profit_loss,
                total_return_pct=profit_loss / total_invested * 100 if total_invested > 0 else 0.0,
                drawdown_pct=drawdown,
            )
        )

    values = [row.account_value for row in daily]
    ending = daily[-1]

    peak_date = trough_date = recovery_date = None
    recovery_days = peak_to_recovery_days = None
    if tracker.trough_index is not None:
        peak = daily[tracker.peak_index]
        trough = daily[tracker.trough_index]
        peak_date, trough_date = peak.date, trough.date
        recovery_idx = tracker.recovery_index(values)
        if recovery_idx is not None:
            recovery_date = daily[recovery_idx].date
            recovery_days = difference_in_days(trough.date, recovery_date)
            peak_to_recovery_days = difference_in_days(peak.date, recovery_date)

    return SimulationResult(
        effective_start_date=start,
        end_date=ending.date,
        snapshots=aggregate_snapshots(daily, params.precision),
        summary=SimulationSummary(
            total_contributions=total_contributions,
            total_invested=ending.total_invested,
            ending_value=ending.account_value,
            profit_loss=ending.profit_loss,
            total_return_pct=ending.total_return_pct,
            max_drawdown_pct=tracker.max_drawdown_pct,
            max_drawdown_peak_date=peak_date,
            max_drawdown_trough_date=trough_date,
            drawdown_recovery_date=recovery_date,
            drawdown_recovery_days=recovery_days,
            drawdown_peak_to_recovery_days=peak_to_recovery_days,
            annualized_volatility_pct=annualized_volatility_pct(values),
        ),
        daily=daily,
    )

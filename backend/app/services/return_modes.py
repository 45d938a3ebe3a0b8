"""
Return-mode resolution: dividend-model total-return estimates and history backfill.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from typing import Optional, Sequence

from ..assets import YieldRange
from ..market_data import (
    ESTIMATED_TOTAL_RETURN,
    OBSERVED_TOTAL_RETURN,
    AssetSeries,
    ReturnMode,
    Row,
)

logger = logging.getLogger(__name__)

TRADING_DAYS = 252


def dividend_yield_pct(table: Sequence[YieldRange], day: date) -> float:
    if not table:
        return 0.0
    for item in table:
        if item.start <= day <= item.end:
            return item.annual_pct
    return table[-1].annual_pct


def estimate_total_return_rows(rows: Sequence[Row], table: Sequence[YieldRange]) -> list[Row]:
    """Compound price moves with a daily dividend accrual, starting at the first price level."""
    if not rows:
        return []

    level = rows[0][1]
    out: list[Row] = [(rows[0][0], level)]
    for (prev_day, prev_close), (day, close) in zip(rows, rows[1:]):
        if prev_close <= 0 or close <= 0:
            continue
        price_factor = close / prev_close
        gap_days = max(1, (day - prev_day).days)
        daily_yield = dividend_yield_pct(table, day) / 100 / TRADING_DAYS
        level = level * price_factor * (1 + daily_yield) ** gap_days
        out.append((day, level))
    return out


def to_estimated_total_return(series: AssetSeries, table: Sequence[YieldRange]) -> AssetSeries:
    if series.resolved_mode is ReturnMode.TOTAL_RETURN:
        return series
    return series.with_rows(
        estimate_total_return_rows(series.rows, table),
        requested_mode=ReturnMode.TOTAL_RETURN,
        kind=ESTIMATED_TOTAL_RETURN,
        is_proxy=True,
        provider=f"{series.provider} + DividendModel",
    )


def resolve_return_mode(series: AssetSeries, requested: ReturnMode, table: Sequence[YieldRange]) -> AssetSeries:
    if requested is ReturnMode.TOTAL_RETURN:
        return to_estimated_total_return(series, table)
    if series.requested_mode is requested:
        return series
    return replace(series, requested_mode=requested)


def needs_total_return_upgrade(series: Optional[AssetSeries]) -> bool:
    if series is None:
        return False
    return series.requested_mode is ReturnMode.TOTAL_RETURN and (
        series.resolved_mode is not ReturnMode.TOTAL_RETURN or series.is_estimated
    )


def find_closest_row(rows: Sequence[Row], target: date) -> Optional[Row]:
    if not rows:
        return None
    left: Optional[Row] = None
    right: Optional[Row] = None
    for row in rows:
        if row[0] <= target:
            left = row
            continue
        right = row
        break

    if left is None:
        return right
    if right is None:
        return left
    # Ties go to the earlier row.
    return left if (target - left[0]).days <= (right[0] - target).days else right


def backfill_total_return(
    total: AssetSeries,
    price: Optional[AssetSeries],
    table: Sequence[YieldRange],
) -> AssetSeries:
    """Prepend scaled dividend-model history to a shorter observed total-return series."""
    if price is None or not total.rows or not price.rows:
        return total
    if total.resolved_mode is not ReturnMode.TOTAL_RETURN or total.is_estimated:
        return total
    if total.earliest_date <= price.earliest_date:
        return total

    estimated = estimate_total_return_rows(price.rows, table)
    if len(estimated) < 2:
        return total

    anchor_day, anchor_close = total.rows[0]
    anchor = find_closest_row(estimated, anchor_day)
    if anchor is None or anchor[1] <= 0 or anchor_close <= 0:
        return total

    scale = anchor_close / anchor[1]
    history = [(day, close * scale) for day, close in estimated if day < anchor_day]
    if not history:
        return total

    logger.info(
        "Backfilled %s total return from %s to %s (%d rows, scale %.6f)",
        total.asset_id,
        history[0][0],
        anchor_day,
        len(history),
        scale,
    )
    return total.with_rows(
        history + list(total.rows),
        requested_mode=ReturnMode.TOTAL_RETURN,
        kind=OBSERVED_TOTAL_RETURN,
        provider=f"{total.provider} + HistoryBackfill",
    )

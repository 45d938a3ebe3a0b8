from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from ..assets import ASSETS
from ..market_data import AssetSeries, ReturnMode, format_timestamp, utc_now
from ..schemas import SimulationRequest
from ..simulation import SimulationParams, SimulationRangeError, simulate_dca
from .refresh import SeriesRefresher


def asset_info(series: AssetSeries) -> Dict[str, Any]:
    return {
        "id": series.asset_id,
        "name": series.asset_name,
        "symbol": series.symbol,
        "requested_return_mode": series.requested_mode,
        "resolved_return_mode": series.resolved_mode,
        "is_proxy": series.is_proxy,
        "is_estimated": series.is_estimated,
        "earliest_date": series.earliest_date,
        "latest_date": series.latest_date,
        "provider": series.provider,
        "fetched_at": format_timestamp(series.fetched_at),
    }


def _mode_warnings(series_list: List[AssetSeries], requested: ReturnMode) -> List[str]:
    warnings: List[str] = []
    for series in series_list:
        if series.resolved_mode is not requested:
            warnings.append(
                f"{series.asset_name} is falling back to {series.resolved_mode.label} (requested {requested.label})"
            )
        elif series.is_estimated:
            warnings.append(f"{series.asset_name} {requested.label} is estimated from price history with a dividend model")
    return warnings


async def describe_assets(refresher: SeriesRefresher, mode: ReturnMode) -> Dict[str, Any]:
    series_list = await asyncio.gather(
        *(refresher.get_series(asset_id, mode, block_on_stale=False) for asset_id in ASSETS)
    )
    providers = list(dict.fromkeys(series.provider for series in series_list))
    return {
        "generated_at": format_timestamp(utc_now()),
        "return_mode": mode,
        "assets": [asset_info(series) for series in series_list],
        "warnings": _mode_warnings(series_list, mode),
        "source": f"Daily closes ({'/'.join(providers)}), {mode.label} basis",
    }


async def run_backtest(refresher: SeriesRefresher, request: SimulationRequest) -> Dict[str, Any]:
    mode = request.return_mode
    series_list = await asyncio.gather(*(refresher.get_series(asset_id, mode) for asset_id in request.assets))

    common_start = max(series.earliest_date for series in series_list)
    common_end = min(series.latest_date for series in series_list)
    if request.start_date > common_end:
        raise SimulationRangeError(f"Start date is after the common available range; choose a date on or before {common_end}")

    effective_start = max(request.start_date, common_start)
    warnings: List[str] = []
    if effective_start != request.start_date:
        warnings.append(f"Start date moved to {effective_start}, the first date all selected assets share")
    warnings.extend(_mode_warnings(series_list, mode))

    params = SimulationParams(
        start_date=effective_start,
        end_date=common_end,
        frequency=request.frequency,
        amount=request.amount,
        precision=request.precision,
    )
    results = []
    for series in series_list:
        simulation = simulate_dca(series.rows, params)
        summary = dict(vars(simulation.summary))
        summary["annualized_return_pct"] = simulation.annualized_return_pct
        results.append(
            {
                **asset_info(series),
                "snapshots": [vars(snap) for snap in simulation.snapshots],
                "summary": summary,
            }
        )

    return {
        "generated_at": format_timestamp(utc_now()),
        "request": {
            "assets": request.assets,
            "return_mode": mode,
            "frequency": request.frequency,
            "precision": request.precision,
            "amount": request.amount,
            "input_start_date": request.start_date,
            "effective_start_date": effective_start,
            "end_date": common_end,
        },
        "warnings": warnings,
        "series": results,
        "source": f"Daily closes cached locally, {mode.label} basis",
    }

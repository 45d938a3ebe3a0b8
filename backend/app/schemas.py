from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .assets import ASSETS
from .market_data import ReturnMode, normalize_return_mode


class SimulationRequest(BaseModel):
    assets: List[str]
    return_mode: ReturnMode = ReturnMode.TOTAL_RETURN
    frequency: Literal["daily", "weekly", "monthly"]
    precision: Literal["weekly", "monthly"]
    start_date: date
    amount: float = Field(gt=0, allow_inf_nan=False)

    @field_validator("assets")
    @classmethod
    def _check_assets(cls, value: List[str]) -> List[str]:
        unique = list(dict.fromkeys(item.strip().lower() for item in value if item and item.strip()))
        if not 1 <= len(unique) <= 2:
            raise ValueError("choose one or two assets")
        unknown = [item for item in unique if item not in ASSETS]
        if unknown:
            raise ValueError(f"unsupported asset: {', '.join(unknown)}")
        return unique

    @field_validator("return_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        return normalize_return_mode(value)


class SnapshotOut(BaseModel):
    period_key: str
    date: date
    total_invested: float
    account_value: float
    profit_loss: float
    total_return_pct: float
    drawdown_pct: float


class SummaryOut(BaseModel):
    total_contributions: int
    total_invested: float
    ending_value: float
    profit_loss: float
    total_return_pct: float
    annualized_return_pct: Optional[float] = None
    max_drawdown_pct: float
    max_drawdown_peak_date: Optional[date] = None
    max_drawdown_trough_date: Optional[date] = None
    drawdown_recovery_date: Optional[date] = None
    drawdown_recovery_days: Optional[int] = None
    drawdown_peak_to_recovery_days: Optional[int] = None
    annualized_volatility_pct: float


class AssetInfo(BaseModel):
    id: str
    name: str
    symbol: str
    requested_return_mode: ReturnMode
    resolved_return_mode: ReturnMode
    is_proxy: bool
    is_estimated: bool
    earliest_date: date
    latest_date: date
    provider: str
    fetched_at: str


class SeriesResult(AssetInfo):
    snapshots: List[SnapshotOut]
    summary: SummaryOut


class SimulationEcho(BaseModel):
    assets: List[str]
    return_mode: ReturnMode
    frequency: str
    precision: str
    amount: float
    input_start_date: date
    effective_start_date: date
    end_date: date


class SimulationResponse(BaseModel):
    generated_at: str
    request: SimulationEcho
    warnings: List[str]
    series: List[SeriesResult]
    source: str


class MetaResponse(BaseModel):
    generated_at: str
    return_mode: ReturnMode
    assets: List[AssetInfo]
    warnings: List[str]
    source: str


class CacheStatus(BaseModel):
    key: str
    state: str
    refreshing: bool
    provider: Optional[str] = None
    resolved_mode: Optional[str] = None
    is_estimated: Optional[bool] = None
    earliest_date: Optional[str] = None
    latest_date: Optional[str] = None
    rows: Optional[int] = None
    age_seconds: Optional[float] = None


class DataStatus(BaseModel):
    component: str
    asof: str
    source: str
    ok: bool
